"""
StateTrackerAgent: reads a finished chapter and reports where each
character ended up, so the next chapter starts from the right state.
"""

from typing import Any, Dict, List

from novelforge.agents.base import Agent, extract_json
from novelforge.utils.logging import agent_logger as logger


class StateTrackerAgent(Agent):
    model_setting = "SUMMARY_MODEL"
    temperature = 0.5
    max_tokens = 1000
    timeout = 60.0

    async def analyze(self, content: str, character_names: List[str]) -> Dict[str, Dict[str, Any]]:
        """
        Returns {name: {location, emotional_state, goals, conflicts}} for the
        requested characters. Unparseable output yields an empty dict.
        """
        names = ", ".join(character_names)
        prompt = f"""Read this chapter and update the states for the following characters: {names}

For each character, determine:
1. Their current location (where they are at the end of the chapter)
2. Their emotional state (how they're feeling)
3. Their current goals (what they want now)
4. Their current conflicts (what's opposing them)

CHAPTER CONTENT:
{content}

Respond with a JSON object with this structure:
{{
  "Character Name": {{
    "location": "where they are",
    "emotional_state": "how they feel",
    "goals": ["goal 1", "goal 2"],
    "conflicts": ["conflict 1", "conflict 2"]
  }}
}}

Output only valid JSON, no commentary:"""

        response = await self._complete(
            prompt,
            system="You are a continuity tracker for a novel."
        )

        try:
            data = extract_json(response)
        except ValueError as e:
            logger.warning("Could not parse character states", error=str(e))
            return {}

        wanted = set(character_names)
        return {
            name: state
            for name, state in data.items()
            if name in wanted and isinstance(state, dict)
        }
