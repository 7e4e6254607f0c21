"""
Centralized logging for the NovelForge pipeline.

Every message goes to Python logging and to an in-memory buffer that the
queue routes read. Job log lines carry `job_id` / `target_id` / `job_type`
metadata, which the buffer indexes so the activity of one chapter, book or
job can be pulled back without external log aggregation.
"""

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Deque, Dict, List, Optional


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def severity(self) -> int:
        return getattr(logging, self.name)


@dataclass
class LogEntry:
    level: LogLevel
    message: str
    source: str = "system"
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def job_id(self) -> Optional[str]:
        return self.metadata.get("job_id")

    @property
    def target_id(self) -> Optional[str]:
        return self.metadata.get("target_id")

    def matches(
        self,
        level: Optional[LogLevel] = None,
        source: Optional[str] = None,
        target_id: Optional[str] = None,
        job_id: Optional[str] = None
    ) -> bool:
        if level is not None and self.level != level:
            return False
        if source is not None and self.source != source:
            return False
        if target_id is not None and self.target_id != target_id:
            return False
        if job_id is not None and self.job_id != job_id:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "message": self.message,
            "source": self.source,
            "job_id": self.job_id,
            "target_id": self.target_id,
            "metadata": self.metadata,
        }


class LogBuffer:
    """
    Bounded, thread-safe ring of recent log entries.

    Entries below `min_level` are not kept. Counters survive eviction so the
    stats still show how many errors happened since the last `clear()`.
    """

    def __init__(self, max_size: int = 1000, min_level: LogLevel = LogLevel.DEBUG):
        self.min_level = min_level
        self._entries: Deque[LogEntry] = deque(maxlen=max_size)
        self._lock = Lock()
        self._counts: Counter = Counter()

    def add(self, entry: LogEntry):
        if entry.level.severity < self.min_level.severity:
            return
        with self._lock:
            self._entries.append(entry)
            self._counts[entry.level.value] += 1

    def _snapshot(self) -> List[LogEntry]:
        with self._lock:
            return list(self._entries)

    def get_recent(
        self,
        limit: int = 100,
        level: Optional[LogLevel] = None,
        source: Optional[str] = None,
        target_id: Optional[str] = None,
        job_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Newest first."""
        found = []
        for entry in reversed(self._snapshot()):
            if entry.matches(level, source, target_id, job_id):
                found.append(entry.to_dict())
                if len(found) >= limit:
                    break
        return found

    def get_job_trail(self, job_id: str) -> List[Dict[str, Any]]:
        """Everything logged for one job, oldest first (claim, retries, outcome)."""
        return [entry.to_dict() for entry in self._snapshot() if entry.job_id == job_id]

    def get_stats(self) -> Dict[str, Any]:
        entries = self._snapshot()
        with self._lock:
            counts = dict(self._counts)
        return {
            "total": len(entries),
            "by_level": dict(Counter(e.level.value for e in entries)),
            "by_source": dict(Counter(e.source for e in entries)),
            "error_count": counts.get("error", 0) + counts.get("critical", 0),
            "warning_count": counts.get("warning", 0),
        }

    def clear(self):
        with self._lock:
            self._entries.clear()
            self._counts.clear()


_log_buffer = LogBuffer()


def get_log_buffer() -> LogBuffer:
    return _log_buffer


class AppLogger:
    """
    Logs to Python logging and to the shared buffer.

    Keyword arguments become structured metadata:
        job_logger.info("Claimed job", job_id=job.job_id, target_id=job.target_id)
    """

    def __init__(self, source: str):
        self.source = source
        self._logger = logging.getLogger(f"novelforge.{source}")

    def _log(self, level: LogLevel, message: str, metadata: Dict[str, Any], exc_info: bool = False):
        _log_buffer.add(LogEntry(level, message, self.source, metadata))
        suffix = f" | {metadata}" if metadata else ""
        self._logger.log(level.severity, f"{message}{suffix}", exc_info=exc_info)

    def debug(self, message: str, **metadata):
        self._log(LogLevel.DEBUG, message, metadata)

    def info(self, message: str, **metadata):
        self._log(LogLevel.INFO, message, metadata)

    def warning(self, message: str, **metadata):
        self._log(LogLevel.WARNING, message, metadata)

    def error(self, message: str, **metadata):
        self._log(LogLevel.ERROR, message, metadata)

    def exception(self, message: str, **metadata):
        """Error plus the traceback of the exception being handled."""
        self._log(LogLevel.ERROR, message, metadata, exc_info=True)

    def critical(self, message: str, **metadata):
        self._log(LogLevel.CRITICAL, message, metadata)


def get_logger(source: str) -> AppLogger:
    return AppLogger(source)


_configured = False


def configure_logging(level: str = "INFO"):
    """
    Set the level of the novelforge loggers and the buffer, and install a
    console handler the first time it is called.
    """
    global _configured
    try:
        buffer_level = LogLevel(level.lower())
    except ValueError:
        buffer_level = LogLevel.INFO
    _log_buffer.min_level = buffer_level

    root = logging.getLogger("novelforge")
    root.setLevel(buffer_level.severity)
    if _configured:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root.addHandler(handler)
    _configured = True


job_logger = AppLogger("job_queue")
pipeline_logger = AppLogger("pipeline")
progress_logger = AppLogger("progress")
agent_logger = AppLogger("agents")
api_logger = AppLogger("api")
