"""
EditorAgent: one of the four editing passes a chapter goes through.

  developmental -> line -> continuity -> copy

Each pass reviews the chapter and returns suggestions, flags for human
review and an approval verdict. Line and copy edits may also return a
revised chapter text. A disapproval never stops the pipeline; flags are
stored on the chapter for separate review.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from langchain_core.language_models import BaseChatModel

from novelforge.agents.base import Agent, extract_json
from novelforge.config import AppConfig


class EditorType(str, Enum):
    DEVELOPMENTAL = "developmental"
    LINE = "line"
    CONTINUITY = "continuity"
    COPY = "copy"


EDITOR_BRIEFS = {
    EditorType.DEVELOPMENTAL: (
        "You are a developmental editor. Review structure, pacing, stakes, "
        "character motivation and whether the chapter advances the plot.",
        False,
    ),
    EditorType.LINE: (
        "You are a line editor. Tighten prose, vary sentence rhythm, sharpen "
        "dialogue and remove filler. Return a revised chapter.",
        True,
    ),
    EditorType.CONTINUITY: (
        "You are a continuity editor. Check the chapter against the earlier "
        "chapter summaries and character states for contradictions in "
        "timeline, locations, names, objects and character knowledge.",
        False,
    ),
    EditorType.COPY: (
        "You are a copy editor. Fix grammar, spelling, punctuation and "
        "consistency of style. Return a corrected chapter.",
        True,
    ),
}


@dataclass
class EditResult:
    """Result from one editing pass."""
    editor_type: str
    approved: bool
    suggestions: List[Dict[str, Any]] = field(default_factory=list)
    flags: List[Dict[str, Any]] = field(default_factory=list)
    revised_content: Optional[str] = None
    notes: Optional[str] = None
    edit_time: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "editor_type": self.editor_type,
            "approved": self.approved,
            "suggestions": self.suggestions,
            "flags": self.flags,
            "revised_content": self.revised_content,
            "notes": self.notes,
            "edit_time": self.edit_time,
            "error": self.error,
        }


def parse_approved(value: Any) -> bool:
    """Only an explicit false (boolean or the string "false") disapproves."""
    if isinstance(value, str):
        return value.strip().lower() != "false"
    return value is not False


class EditorAgent(Agent):
    """Runs a single editing pass over a chapter."""

    model_setting = "EDITOR_MODEL"
    temperature = 0.5
    max_tokens = 10000

    def __init__(
        self,
        editor_type: EditorType,
        llm: Optional[BaseChatModel] = None,
        model_name: Optional[str] = None,
        settings: Optional[AppConfig] = None
    ):
        super().__init__(llm=llm, model_name=model_name, settings=settings)
        self.editor_type = EditorType(editor_type)
        self.brief, self.returns_revision = EDITOR_BRIEFS[self.editor_type]

    async def edit(
        self,
        content: str,
        title: Optional[str] = None,
        previous_summaries: Optional[List[Dict[str, Any]]] = None,
        character_states: Optional[Dict[str, Any]] = None
    ) -> EditResult:
        """
        Review a chapter.

        Model/network errors propagate so the job can be retried; only
        unparseable output is absorbed (approved, no suggestions).
        """
        start_time = time.time()
        prompt = self._build_prompt(content, title, previous_summaries, character_states)
        response_text = await self._complete(prompt, system=self.brief)
        return self._parse_response(response_text, time.time() - start_time)

    def _build_prompt(
        self,
        content: str,
        title: Optional[str],
        previous_summaries: Optional[List[Dict[str, Any]]],
        character_states: Optional[Dict[str, Any]]
    ) -> str:
        context = ""
        if previous_summaries:
            lines = [
                f"- Chapter {s['chapter_number']}: {s['summary']}"
                for s in previous_summaries
            ]
            context += "## EARLIER CHAPTERS\n" + "\n".join(lines) + "\n\n"
        if character_states:
            lines = [f"- {name}: {state}" for name, state in character_states.items()]
            context += "## CHARACTER STATES\n" + "\n".join(lines) + "\n\n"

        revision_field = (
            '  "revised_content": "the full revised chapter text",\n'
            if self.returns_revision else ""
        )

        return f"""{context}## CHAPTER{f': {title}' if title else ''}

{content}

## OUTPUT FORMAT

Return JSON:

```json
{{
  "approved": true,
  "suggestions": [{{"location": "paragraph 3", "issue": "...", "suggestion": "..."}}],
  "flags": [{{"severity": "low|medium|high", "message": "...", "location": "..."}}],
{revision_field}  "notes": "one paragraph summary of the pass"
}}
```

Set `approved: false` only when the chapter needs human attention before publication.
"""

    def _parse_response(self, response_text: str, edit_time: float) -> EditResult:
        try:
            data = extract_json(response_text)
        except ValueError as e:
            return EditResult(
                editor_type=self.editor_type.value,
                approved=True,
                edit_time=edit_time,
                error=f"Failed to parse editor response: {e}",
            )

        revised = data.get("revised_content") if self.returns_revision else None
        if isinstance(revised, str) and not revised.strip():
            revised = None

        return EditResult(
            editor_type=self.editor_type.value,
            approved=parse_approved(data.get("approved", True)),
            suggestions=[s for s in data.get("suggestions") or [] if isinstance(s, dict)],
            flags=[f for f in data.get("flags") or [] if isinstance(f, dict)],
            revised_content=revised,
            notes=data.get("notes"),
            edit_time=edit_time,
        )
