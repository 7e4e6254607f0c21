"""
Shared plumbing for the pipeline agents: model construction and the
lenient JSON extraction every agent applies to model output.
"""

import json
import re
from typing import Any, Dict, List, Optional

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from novelforge.config import AppConfig, config


_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def build_chat_model(
    model_name: str,
    temperature: float,
    max_tokens: int,
    timeout: float = 300.0,
    api_key: Optional[str] = None
) -> ChatAnthropic:
    """Without an explicit key, ChatAnthropic reads ANTHROPIC_API_KEY from the environment."""
    kwargs: Dict[str, Any] = {}
    if api_key:
        kwargs["anthropic_api_key"] = api_key
    return ChatAnthropic(
        model=model_name,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=timeout,
        **kwargs,
    )


def extract_json(text: str) -> Dict[str, Any]:
    """
    Pull a JSON object out of a model reply.

    Handles ```json fenced blocks and prose around the object. Raises
    ValueError when nothing parseable is found.
    """
    text = text.strip()

    if "```json" in text:
        text = text.split("```json")[1].split("```")[0].strip()
    elif "```" in text:
        text = text.split("```")[1].split("```")[0].strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(text)
        if not match:
            raise ValueError("No JSON found in response")
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in response: {e}") from e

    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data


def message_text(response: Any) -> str:
    """Text of a chat model reply (content may be a list of blocks)."""
    content = getattr(response, "content", response)
    if isinstance(content, list):
        return "".join(
            block.get("text", "") if isinstance(block, dict) else str(block)
            for block in content
        )
    return str(content)


class Agent:
    """
    Base for agents that call a chat model.

    The model is created lazily so importing or constructing an agent never
    needs credentials; tests pass any LangChain chat model as `llm`.
    `model_setting` names the AppConfig field holding the model id.
    """

    model_setting: str = "WRITER_MODEL"
    temperature: float = 0.7
    max_tokens: int = 4096
    timeout: float = 300.0

    def __init__(
        self,
        llm: Optional[BaseChatModel] = None,
        model_name: Optional[str] = None,
        settings: Optional[AppConfig] = None
    ):
        self._llm = llm
        self.settings = settings or config
        self.model_name = model_name or getattr(self.settings, self.model_setting)

    @property
    def llm(self) -> BaseChatModel:
        if self._llm is None:
            self._llm = build_chat_model(
                self.model_name,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                timeout=self.timeout,
                api_key=self.settings.ANTHROPIC_API_KEY,
            )
        return self._llm

    async def _complete(self, prompt: str, system: Optional[str] = None) -> str:
        messages: List[Any] = []
        if system:
            messages.append(SystemMessage(content=system))
        messages.append(HumanMessage(content=prompt))
        response = await self.llm.ainvoke(messages)
        return message_text(response)
