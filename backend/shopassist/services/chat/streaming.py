from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, TypeVar

from pydantic import BaseModel

from shopassist.services.llm_service import ToolCallDelta

T = TypeVar("T")


@dataclass
class ToolCall:
    """A finalized tool call. `arguments` is None when the buffer was not a JSON object."""

    index: int
    id: str
    name: str
    raw_arguments: str
    arguments: Optional[Dict[str, Any]] = None
    argument_error: Optional[str] = None

    def as_openai(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.raw_arguments},
        }


@dataclass
class _ToolCallBuilder:
    index: int
    id: str = ""
    name: str = ""
    arguments: List[str] = field(default_factory=list)


class ToolCallAccumulator:
    """Index-addressed buffer of in-progress tool calls from one streamed response.

    Providers send the id and name on the first fragment for an index and then
    stream the JSON arguments in arbitrary slices; fragments for different
    indices may interleave.
    """

    def __init__(self) -> None:
        self._builders: Dict[int, _ToolCallBuilder] = {}

    def __bool__(self) -> bool:
        return bool(self._builders)

    def add(self, delta: ToolCallDelta) -> None:
        builder = self._builders.get(delta.index)
        if builder is None:
            builder = _ToolCallBuilder(index=delta.index)
            self._builders[delta.index] = builder
        if delta.id:
            builder.id = delta.id
        if delta.name:
            builder.name += delta.name
        if delta.arguments:
            builder.arguments.append(delta.arguments)

    def finalize(self) -> List[ToolCall]:
        calls: List[ToolCall] = []
        for index in sorted(self._builders):
            builder = self._builders[index]
            raw = "".join(builder.arguments)
            arguments: Optional[Dict[str, Any]] = None
            error: Optional[str] = None
            try:
                parsed = json.loads(raw) if raw.strip() else {}
                if isinstance(parsed, dict):
                    arguments = parsed
                else:
                    error = "arguments must be a JSON object"
            except json.JSONDecodeError:
                error = "arguments are not valid JSON"
            calls.append(
                ToolCall(
                    index=index,
                    id=builder.id or f"call_{index}",
                    name=builder.name,
                    raw_arguments=raw or "{}",
                    arguments=arguments,
                    argument_error=error,
                )
            )
        return calls


def format_sse(frame: BaseModel) -> str:
    return f"data: {frame.model_dump_json(by_alias=True)}\n\n"


async def iter_with_idle_timeout(stream: AsyncIterator[T], timeout: float) -> AsyncIterator[T]:
    """Re-yield `stream`, raising asyncio.TimeoutError if no item arrives within `timeout` seconds."""
    iterator = stream.__aiter__()
    try:
        while True:
            try:
                item = await asyncio.wait_for(iterator.__anext__(), timeout=timeout)
            except StopAsyncIteration:
                return
            yield item
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
