"""
OutlineAgent: builds a book outline act by act.

Generation is the longest stage in the system, so it reports progress
after every step and hands the partial structure to an incremental-save
callback once each act's chapters exist. Passing the acts saved by an
earlier, interrupted run resumes from the first act without chapters.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

from novelforge.agents.base import Agent, extract_json
from novelforge.jobs.errors import RetryableStageError
from novelforge.jobs.progress import ProgressSnapshot
from novelforge.utils.logging import agent_logger as logger


AVG_WORDS_PER_CHAPTER = 2200

STRUCTURE_TEMPLATES = {
    "three_act": ["Setup", "Confrontation", "Resolution"],
    "four_act": ["Setup", "Complication", "Crisis", "Resolution"],
    "five_act": ["Exposition", "Rising Action", "Climax", "Falling Action", "Denouement"],
}

ProgressCallback = Callable[[ProgressSnapshot], None]
SaveCallback = Callable[[Dict[str, Any]], Awaitable[None]]

JSON_ONLY_SYSTEM_PROMPT = (
    "You are a JSON API that generates story outlines. Always respond with "
    "valid JSON only, no explanations."
)


class OutlineAgent(Agent):
    model_setting = "WRITER_MODEL"
    temperature = 0.8
    max_tokens = 6000

    async def generate(
        self,
        request: Dict[str, Any],
        on_progress: Optional[ProgressCallback] = None,
        on_incremental_save: Optional[SaveCallback] = None,
        existing_acts: Optional[List[Dict[str, Any]]] = None
    ) -> Dict[str, Any]:
        """
        Generate {"type", "acts": [{..., "chapters": [...]}]} for a book.

        `request` carries concept, structure_type and target_word_count.
        """
        structure_type = request.get("structure_type", "three_act")
        target_word_count = int(request.get("target_word_count", 80000))
        target_chapters = max(1, round(target_word_count / AVG_WORDS_PER_CHAPTER))

        def report(phase: str, message: str, percent: float, generated: int = 0, total: Optional[int] = None):
            if on_progress:
                on_progress(ProgressSnapshot(
                    phase=phase,
                    message=message,
                    percent_complete=int(percent),
                    generated_count=generated,
                    total_count=total,
                ))

        if existing_acts:
            acts = existing_acts
            logger.info("Resuming outline from saved acts", acts=len(acts))
        else:
            report("acts", "Generating act structure breakdown...", 5)
            acts = await self.generate_acts(request, structure_type, target_chapters)
            report("acts", f"Act structure complete ({len(acts)} acts)", 15)

        total_acts = len(acts)
        generated = sum(len(act.get("chapters") or []) for act in acts)

        for index, act in enumerate(acts):
            if act.get("chapters"):
                continue

            report(
                "chapters",
                f"Generating chapters for Act {index + 1}...",
                15 + (index / total_acts) * 80,
                generated,
                target_chapters,
            )
            act["chapters"] = await self.generate_chapters_for_act(request, act, first_number=generated + 1)
            generated += len(act["chapters"])

            if on_incremental_save:
                await on_incremental_save({"type": structure_type, "acts": acts})

        structure = {"type": structure_type, "acts": acts}
        report("complete", "Outline generation complete!", 100, generated, generated)
        return structure

    async def generate_acts(
        self,
        request: Dict[str, Any],
        structure_type: str,
        target_chapters: int
    ) -> List[Dict[str, Any]]:
        act_names = STRUCTURE_TEMPLATES.get(structure_type, STRUCTURE_TEMPLATES["three_act"])
        prompt = f"""You are a master story architect. Generate an act breakdown for this novel.

**Story Concept:**
{self._format_concept(request)}

**Structure:** {structure_type} ({', '.join(act_names)})
**Target:** {target_chapters} chapters total

Return JSON:
{{
  "acts": [
    {{
      "number": 1,
      "name": "Act Name",
      "description": "What happens in this act for THIS story",
      "chapterCount": 10
    }}
  ]
}}

Chapter counts must add up to {target_chapters}."""

        data = await self._complete_json(prompt, "act breakdown")
        acts = [act for act in data.get("acts") or [] if isinstance(act, dict)]
        if not acts:
            raise RetryableStageError("Empty acts array in response")

        for number, act in enumerate(acts, start=1):
            act.setdefault("number", number)
            act["chapters"] = []
        return acts

    async def generate_chapters_for_act(
        self,
        request: Dict[str, Any],
        act: Dict[str, Any],
        first_number: int = 1
    ) -> List[Dict[str, Any]]:
        chapter_count = act.get("chapterCount") or 3
        prompt = f"""Outline the chapters of Act {act['number']} "{act.get('name', '')}".

**Story Concept:**
{self._format_concept(request)}

**Act Description:**
{act.get('description', '')}

Write {chapter_count} chapters, numbered from {first_number}.

Return JSON:
{{
  "chapters": [
    {{
      "number": {first_number},
      "title": "Chapter title",
      "summary": "What happens",
      "scenes": [{{"goal": "...", "characters": ["Name"], "location": "..."}}]
    }}
  ]
}}"""

        data = await self._complete_json(prompt, f"act {act['number']} chapters")
        chapters = [chapter for chapter in data.get("chapters") or [] if isinstance(chapter, dict)]
        if not chapters:
            raise RetryableStageError(f"No chapters returned for act {act['number']}")
        return chapters

    async def _complete_json(self, prompt: str, what: str) -> Dict[str, Any]:
        response = await self._complete(prompt, system=JSON_ONLY_SYSTEM_PROMPT)
        try:
            return extract_json(response)
        except ValueError as e:
            logger.error(f"Failed to parse {what}", error=str(e), response=response[:500])
            raise RetryableStageError(f"Failed to parse {what}: {e}") from e

    @staticmethod
    def _format_concept(request: Dict[str, Any]) -> str:
        concept = request.get("concept") or {}
        if isinstance(concept, str):
            return concept
        return "\n".join(
            f"{key.title()}: {value}" for key, value in concept.items() if value
        ) or "Untitled novel"
