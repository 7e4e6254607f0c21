"""
WriterAgent: drafts chapter text and writes the short summaries that
later chapters use as context.
"""

from typing import Any, Dict, List, Optional

from novelforge.agents.base import Agent


SUMMARY_SYSTEM_PROMPT = (
    "You are a professional story analyst. Your task is to create concise, "
    "informative chapter summaries for use as context in subsequent chapters."
)


class WriterAgent(Agent):
    """Drafts a chapter from its scene cards and the preceding summaries."""

    model_setting = "WRITER_MODEL"
    temperature = 1.0
    max_tokens = 8000

    async def write_chapter(
        self,
        title: Optional[str],
        chapter_number: int,
        scene_cards: List[Dict[str, Any]],
        previous_summaries: List[Dict[str, Any]]
    ) -> str:
        prompt = self._build_prompt(title, chapter_number, scene_cards, previous_summaries)
        content = await self._complete(
            prompt,
            system="You are a novelist writing one chapter of a book. Write prose only."
        )
        return content.strip()

    def _build_prompt(
        self,
        title: Optional[str],
        chapter_number: int,
        scene_cards: List[Dict[str, Any]],
        previous_summaries: List[Dict[str, Any]]
    ) -> str:
        story_so_far = "\n".join(
            f"Chapter {s['chapter_number']}: {s['summary']}" for s in previous_summaries
        ) or "This is the opening of the book."

        scenes = "\n".join(
            f"{i}. {card.get('goal') or card.get('summary', '')}"
            f" (characters: {', '.join(card.get('characters', [])) or 'n/a'};"
            f" location: {card.get('location', 'n/a')})"
            for i, card in enumerate(scene_cards, start=1)
        ) or "No scene cards; follow the story naturally."

        return f"""Write chapter {chapter_number}{f' "{title}"' if title else ''}.

## STORY SO FAR
{story_so_far}

## SCENES TO COVER
{scenes}

Write the complete chapter now:"""


class SummaryAgent(Agent):
    """Summarises a finished chapter in about 200 words."""

    model_setting = "SUMMARY_MODEL"
    temperature = 0.7
    max_tokens = 500
    timeout = 60.0

    async def summarize(self, content: str) -> str:
        prompt = f"""Read the following chapter and create a summary in approximately 200 words.

Focus on:
1. Key plot events that happened
2. Character emotional states and changes
3. Important revelations or information learned
4. Relationships that changed
5. Setup for future events

Write the summary in past tense, third person.

CHAPTER CONTENT:
{content}

Write the summary now:"""
        summary = await self._complete(prompt, system=SUMMARY_SYSTEM_PROMPT)
        return summary.strip()
