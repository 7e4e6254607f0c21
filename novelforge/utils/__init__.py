"""Utility modules for NovelForge."""

from novelforge.utils.logging import (
    get_logger,
    get_log_buffer,
    configure_logging,
    LogLevel,
    LogEntry,
    LogBuffer,
    AppLogger,
    job_logger,
    pipeline_logger,
    progress_logger,
    agent_logger,
    api_logger,
)

__all__ = [
    "get_logger",
    "get_log_buffer",
    "configure_logging",
    "LogLevel",
    "LogEntry",
    "LogBuffer",
    "AppLogger",
    "job_logger",
    "pipeline_logger",
    "progress_logger",
    "agent_logger",
    "api_logger",
]
