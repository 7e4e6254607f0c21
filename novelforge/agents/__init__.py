"""LLM-backed collaborators called by the pipeline stage handlers."""

from novelforge.agents.base import Agent, build_chat_model, extract_json
from novelforge.agents.editor import EditorAgent, EditorType, EditResult
from novelforge.agents.outline import OutlineAgent
from novelforge.agents.states import StateTrackerAgent
from novelforge.agents.writer import SummaryAgent, WriterAgent

__all__ = [
    "Agent",
    "build_chat_model",
    "extract_json",
    "EditorAgent",
    "EditorType",
    "EditResult",
    "OutlineAgent",
    "StateTrackerAgent",
    "SummaryAgent",
    "WriterAgent",
]
