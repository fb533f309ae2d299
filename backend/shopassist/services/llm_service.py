from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI

from shopassist.core.config import Settings, settings as default_settings
from shopassist.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ToolCallDelta:
    """One fragment of a streamed tool call. Fragments for the same call share an index."""

    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None


@dataclass(frozen=True)
class StreamDelta:
    content: Optional[str] = None
    tool_calls: List[ToolCallDelta] = field(default_factory=list)
    finish_reason: Optional[str] = None


def build_openai_client(config: Optional[Settings] = None) -> AsyncOpenAI:
    config = config or default_settings
    if not config.OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY not set; LLM calls will fail")
    return AsyncOpenAI(
        api_key=config.OPENAI_API_KEY or "missing",
        timeout=config.LLM_TIMEOUT_SECONDS,
        max_retries=1,
    )


class LLMService:
    """Chat completions against the OpenAI API. The client is injected, never global."""

    def __init__(self, client: AsyncOpenAI, config: Optional[Settings] = None):
        self.client = client
        self.settings = config or default_settings
        self.model = self.settings.OPENAI_MODEL

    async def generate_chat_json(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.0,
        max_tokens: Optional[int] = 300,
    ) -> Dict[str, Any]:
        """Generate strict JSON output using response_format=json_object."""
        response = await self.client.chat.completions.create(
            model=model or self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content or "{}"
        return json.loads(content)

    async def stream_chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[StreamDelta]:
        """Stream a chat completion, normalising provider chunks into StreamDelta."""
        kwargs: Dict[str, Any] = dict(
            model=model or self.model,
            messages=messages,
            temperature=self.settings.CHAT_TEMPERATURE if temperature is None else temperature,
            stream=True,
        )
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        stream = await self.client.chat.completions.create(**kwargs)
        async for chunk in stream:
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta
            fragments: List[ToolCallDelta] = []
            if delta is not None and delta.tool_calls:
                for tc in delta.tool_calls:
                    function = tc.function
                    fragments.append(
                        ToolCallDelta(
                            index=tc.index,
                            id=tc.id,
                            name=function.name if function else None,
                            arguments=function.arguments if function else None,
                        )
                    )
            yield StreamDelta(
                content=delta.content if delta is not None else None,
                tool_calls=fragments,
                finish_reason=choice.finish_reason,
            )
