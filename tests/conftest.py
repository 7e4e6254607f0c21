"""Shared fixtures: an isolated service container on a temp SQLite file with fake chat models."""

import json
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from novelforge.agents import (
    EditorAgent,
    EditorType,
    OutlineAgent,
    StateTrackerAgent,
    SummaryAgent,
    WriterAgent,
)
from novelforge.config import AppConfig
from novelforge.container import build_services


CHAPTER_TEXT = (
    "The harbor bells rang twice before Mara reached the pier. "
    "Tomas was already there, coat soaked, holding the letter she had burned."
)

SUMMARY_TEXT = "Mara meets Tomas at the harbor and learns the burned letter survived."

SCENE_CARDS = [
    {"goal": "Mara confronts Tomas", "characters": ["Mara", "Tomas"], "location": "harbor"},
    {"goal": "Mara reads the letter", "characters": ["Mara"], "location": "lighthouse"},
]

EDITOR_RESPONSES = {
    EditorType.DEVELOPMENTAL: {
        "approved": True,
        "suggestions": [{"location": "paragraph 1", "issue": "pacing", "suggestion": "open on the bells"}],
        "flags": [],
        "notes": "Solid opening.",
    },
    EditorType.LINE: {
        "approved": True,
        "suggestions": [{"location": "paragraph 2", "issue": "wordy", "suggestion": "cut 'already'"}],
        "flags": [],
        "revised_content": CHAPTER_TEXT + " She said nothing.",
        "notes": "Tightened.",
    },
    EditorType.CONTINUITY: {
        "approved": True,
        "suggestions": [],
        "flags": [{"severity": "high", "message": "The letter was burned in chapter 0", "location": "paragraph 2"}],
        "notes": "One continuity issue.",
    },
    EditorType.COPY: {
        "approved": True,
        "suggestions": [],
        "flags": [],
        "notes": "Clean.",
    },
}

CHARACTER_STATES = {
    "Mara": {
        "location": "lighthouse",
        "emotional_state": "shaken",
        "goals": ["find who copied the letter"],
        "conflicts": ["distrusts Tomas"],
    },
    "Tomas": {
        "location": "harbor",
        "emotional_state": "guilty",
        "goals": ["win Mara back"],
        "conflicts": ["hiding the copy"],
    },
    "Narrator": {"location": "nowhere"},
}


def fake_llm(*responses) -> FakeListChatModel:
    return FakeListChatModel(responses=[
        r if isinstance(r, str) else json.dumps(r) for r in responses
    ])


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


async def run_until_idle(worker, max_polls=20):
    """Poll the worker until a poll finds nothing to do; returns jobs processed."""
    total = 0
    for _ in range(max_polls):
        processed = await worker.process_jobs()
        if not processed:
            return total
        total += processed
    raise AssertionError("queue still busy after %d polls" % max_polls)


def make_editors(**overrides):
    """EditorAgents on fake models; overrides map editor value -> response."""
    editors = {}
    for editor_type in EditorType:
        response = overrides.get(editor_type.value, EDITOR_RESPONSES[editor_type])
        editors[editor_type] = EditorAgent(editor_type, llm=fake_llm(response))
    return editors


@pytest.fixture
def settings(tmp_path):
    return AppConfig(
        _env_file=None,
        JOB_DB_PATH=str(tmp_path / "novelforge-test.db"),
        STORAGE_PATH=None,
        EMBEDDED_WORKER=False,
        WORKER_POLL_INTERVAL_SECONDS=60,
        STORE_ERROR_BACKOFF_SECONDS=0,
        JOB_MAX_ATTEMPTS=3,
        JOB_RETRY_BACKOFF_SECONDS=0,
    )


@pytest.fixture
def fake_agents():
    return {
        "writer": WriterAgent(llm=fake_llm(CHAPTER_TEXT)),
        "summarizer": SummaryAgent(llm=fake_llm(SUMMARY_TEXT)),
        "state_tracker": StateTrackerAgent(llm=fake_llm(CHARACTER_STATES)),
        "outliner": OutlineAgent(llm=fake_llm("{}")),
        "editors": make_editors(),
    }


@pytest_asyncio.fixture
async def services(settings, fake_agents):
    services = await build_services(settings, **fake_agents)
    yield services
    await services.worker.stop(timeout=1)
    await services.close()


@pytest_asyncio.fixture
async def chapter_id(services):
    return await services.chapters.create_chapter(
        "book-1",
        1,
        title="The Harbor",
        scene_cards=SCENE_CARDS,
        chapter_id="chapter-1",
    )
