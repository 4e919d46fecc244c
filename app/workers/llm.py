from __future__ import annotations

from typing import Any, AsyncIterator, List, Optional, Sequence

from pydantic_ai import Agent
from pydantic_ai.messages import (
    ModelRequest,
    ModelResponse,
    SystemPromptPart,
    TextPart,
    UserPromptPart,
)
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.litellm import LiteLLMProvider
from pydantic_ai.settings import ModelSettings

from app.config import get_settings
from app.constants.default_system_prompt import DefaultSystemPrompt
from app.infra.logging_config import get_logger
from app.schemas.chat import ChatTurn

logger = get_logger()


def _history_to_message_list(history: Sequence[ChatTurn]) -> List[Any]:
    """Convert {role, content} turns to pydantic_ai ModelMessage list for message_history."""
    out: List[Any] = []
    for item in history:
        content = (item.content or "").strip()
        if not content:
            continue
        if item.role == "user":
            out.append(ModelRequest(parts=[UserPromptPart(content=content)]))
        elif item.role == "assistant":
            out.append(ModelResponse(parts=[TextPart(content=content)]))
        elif item.role == "system":
            out.append(ModelRequest(parts=[SystemPromptPart(content=content)]))
    return out


def _message_list_with_system_prompt(
    system_prompt: str,
    history: Sequence[ChatTurn],
) -> List[Any]:
    """Build message_history with system prompt always first, then conversation history."""

    # https://github.com/pydantic/pydantic-ai/issues/4039
    # https://ai.pydantic.dev/agent/#system-prompts
    system_message = ModelRequest(parts=[SystemPromptPart(content=system_prompt)])
    return [system_message] + _history_to_message_list(history)


def split_prompt(history: Sequence[ChatTurn]) -> tuple[str, List[ChatTurn]]:
    """The last user turn is the prompt; everything before it is history."""
    turns = list(history)
    for index in range(len(turns) - 1, -1, -1):
        if turns[index].role == "user":
            return turns[index].content, turns[:index]
    raise ValueError("history has no user message to answer")


class LLMRunner:
    def __init__(
        self,
        model_name: str,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 8192,
    ) -> None:
        provider = LiteLLMProvider(api_key=api_key, api_base=api_base)
        model = OpenAIChatModel(model_name, provider=provider)
        logger.info(f"Initializing LLM runner with model {model_name}")
        self._system_prompt = system_prompt or DefaultSystemPrompt.CONTENT
        self._model_settings = ModelSettings(
            temperature=temperature, max_tokens=max_tokens
        )
        self._agent = Agent(model)

    async def stream(self, history: Sequence[ChatTurn]) -> AsyncIterator[str]:
        """Yield text deltas for a reply to the last user turn in ``history``."""
        prompt, previous = split_prompt(history)
        message_history = _message_list_with_system_prompt(self._system_prompt, previous)
        async with self._agent.run_stream(
            prompt,
            message_history=message_history,
            model_settings=self._model_settings,
        ) as result:
            async for delta in result.stream_text(delta=True):
                yield delta


def build_llm_runner_from_env() -> LLMRunner:
    settings = get_settings()
    logger.info(
        "LLM runner config: model=%s, api_key=%s, api_base=%s",
        settings.llm_model,
        "set" if settings.litellm_api_key else "not set",
        settings.litellm_api_base or "(default)",
    )
    if not settings.litellm_api_key:
        logger.warning(
            "LITELLM_API_KEY is not set; set it to a valid OpenAI or LiteLLM API key to avoid 401 errors."
        )

    return LLMRunner(
        model_name=settings.llm_model,
        api_key=settings.litellm_api_key,
        api_base=settings.litellm_api_base,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
    )
