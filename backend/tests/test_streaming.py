import asyncio
import json

import pytest

pytest.importorskip("pydantic_settings")
pytest.importorskip("openai")

from shopassist.schemas.chat import ContentFrame, ErrorFrame, ProductCard, ProductsFrame
from shopassist.services.chat.streaming import ToolCallAccumulator, format_sse, iter_with_idle_timeout
from shopassist.services.llm_service import ToolCallDelta


def test_accumulator_reassembles_interleaved_fragments() -> None:
    acc = ToolCallAccumulator()
    acc.add(ToolCallDelta(index=0, id="call_a", name="search_products", arguments='{"que'))
    acc.add(ToolCallDelta(index=1, id="call_b", name="search_faq", arguments=""))
    acc.add(ToolCallDelta(index=0, arguments='ry": "elder'))
    acc.add(ToolCallDelta(index=1, arguments='{"query": "returns"}'))
    acc.add(ToolCallDelta(index=0, arguments=' wand"}'))

    calls = acc.finalize()

    assert [call.name for call in calls] == ["search_products", "search_faq"]
    assert calls[0].id == "call_a"
    assert calls[0].arguments == {"query": "elder wand"}
    assert calls[1].arguments == {"query": "returns"}
    assert calls[0].as_openai()["function"]["arguments"] == '{"query": "elder wand"}'


def test_accumulator_marks_malformed_arguments() -> None:
    acc = ToolCallAccumulator()
    acc.add(ToolCallDelta(index=0, id="call_a", name="search_products", arguments='{"query": "wand"'))
    acc.add(ToolCallDelta(index=1, id="call_b", name="order_status", arguments='["12345"]'))

    broken, not_object = acc.finalize()

    assert broken.arguments is None
    assert broken.argument_error == "arguments are not valid JSON"
    assert not_object.arguments is None
    assert not_object.argument_error == "arguments must be a JSON object"


def test_accumulator_empty_arguments_become_empty_object() -> None:
    acc = ToolCallAccumulator()
    assert not acc
    acc.add(ToolCallDelta(index=0, id="call_a", name="create_handoff_ticket"))
    (call,) = acc.finalize()
    assert call.arguments == {}
    assert call.raw_arguments == "{}"


def test_format_sse_uses_wire_aliases() -> None:
    card = ProductCard(
        id="7b0e8f8e-9a43-4a57-9d1b-0c6f3b1c0a11",
        name="Elder Wand",
        price="19.99",
        currency="$",
        image_url="https://img.example/w.png",
    )

    frame = format_sse(ProductsFrame(products=[card]))

    assert frame.startswith("data: ") and frame.endswith("\n\n")
    payload = json.loads(frame[len("data: "):])
    assert payload["type"] == "products"
    assert payload["products"][0]["imageUrl"] == "https://img.example/w.png"
    assert json.loads(format_sse(ContentFrame(content="hi"))[6:]) == {"type": "content", "content": "hi"}
    assert json.loads(format_sse(ErrorFrame(error="provider_error"))[6:])["error"] == "provider_error"


@pytest.mark.asyncio
async def test_idle_timeout_raises_when_stream_stalls() -> None:
    async def stalled():
        yield "first"
        await asyncio.sleep(1)
        yield "never"

    received = []
    with pytest.raises(asyncio.TimeoutError):
        async for item in iter_with_idle_timeout(stalled(), 0.01):
            received.append(item)

    assert received == ["first"]
