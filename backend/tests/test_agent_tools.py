import asyncio
import uuid

import pytest

pytest.importorskip("sqlalchemy")
pytest.importorskip("pgvector")
pytest.importorskip("pydantic_settings")

from fakes import FakeEmbeddings, FakeKnowledgeStore, make_faq, make_product
from shopassist.core.config import settings
from shopassist.models.missing_demand import MissingDemandType
from shopassist.schemas.intent import Intent
from shopassist.services.agent_tools import (
    FAQ_NO_RESULTS,
    FAQ_VERIFIED,
    ToolDispatcher,
    tool_definitions,
)
from shopassist.services.chat.streaming import ToolCall
from shopassist.services.retrieval.hybrid_search import HybridRetriever
from shopassist.services.retrieval.policy import CORPUS_FAQ, CORPUS_PRODUCT, RetrievalPolicy


def _call(name: str, arguments=None, *, call_id: str = "call_1", error: str = None) -> ToolCall:
    return ToolCall(
        index=0,
        id=call_id,
        name=name,
        raw_arguments="{}",
        arguments=arguments,
        argument_error=error,
    )


def _dispatcher(intent: Intent, store_id=None, knowledge=None, embeddings=None) -> ToolDispatcher:
    store_id = store_id or uuid.uuid4()
    retriever = HybridRetriever(knowledge or FakeKnowledgeStore(), embeddings or FakeEmbeddings())
    return ToolDispatcher(store_id=store_id, retriever=retriever, policy=RetrievalPolicy.for_intent(intent))


def test_tool_definitions_follow_allowed_set() -> None:
    names = [tool["function"]["name"] for tool in tool_definitions({"order_status"})]
    assert names == ["order_status"]
    assert tool_definitions(set()) == []
    assert len(tool_definitions()) == 4


@pytest.mark.asyncio
async def test_search_products_returns_cards_and_dedupes_across_calls() -> None:
    store_id = uuid.uuid4()
    knowledge = FakeKnowledgeStore()
    wand = make_product(store_id, "Elder Wand", price=120, currency="$")
    knowledge.add(store_id, CORPUS_PRODUCT, wand, semantic=0.8, keyword_rank=0.2, keyword_match=True)
    dispatcher = _dispatcher(Intent.PRODUCT_DISCOVERY, store_id, knowledge)

    first = await dispatcher.execute(_call("search_products", {"query": "elder wand"}))
    await dispatcher.execute(_call("search_products", {"query": "wand", "limit": 2}, call_id="call_2"))

    assert first.ok
    assert first.content.startswith("Found 1 products:")
    assert "- Elder Wand ($120)" in first.content
    assert [card.name for card in dispatcher.products] == ["Elder Wand"]
    assert dispatcher.products[0].price == "120"
    assert dispatcher.missing_demand_type() is None
    assert dispatcher.tools_called == ["search_products", "search_products"]


@pytest.mark.asyncio
async def test_search_faq_wraps_hits_with_verified_marker() -> None:
    store_id = uuid.uuid4()
    knowledge = FakeKnowledgeStore()
    knowledge.add(
        store_id, CORPUS_FAQ,
        make_faq(store_id, "How long is shipping?", "3-5 business days.", "shipping"),
        semantic=0.7,
    )
    dispatcher = _dispatcher(Intent.SHIPPING_RETURNS, store_id, knowledge)

    result = await dispatcher.execute(_call("search_faq", {"query": "shipping time"}))

    assert result.content.startswith(FAQ_VERIFIED)
    assert "[FAQ Entry 1 - Category: shipping]\nQ: How long is shipping?\nA: 3-5 business days." in result.content
    assert knowledge.calls[0]["categories"] == ("shipping", "returns")
    assert knowledge.calls[0]["min_similarity"] == pytest.approx(0.3)


@pytest.mark.asyncio
async def test_empty_searches_aggregate_into_one_missing_demand_type() -> None:
    dispatcher = _dispatcher(Intent.GENERAL_SUPPORT)

    faq = await dispatcher.execute(_call("search_faq", {"query": "gift cards"}))
    assert faq.content.startswith(FAQ_NO_RESULTS)
    assert dispatcher.missing_demand_type() == MissingDemandType.FAQ

    products = await dispatcher.execute(_call("search_products", {"query": "gift cards"}, call_id="call_2"))
    assert products.content == "No products found matching your search."
    assert dispatcher.missing_demand_type() == MissingDemandType.BOTH
    assert dispatcher.tools_called == ["search_faq", "search_products"]


@pytest.mark.asyncio
async def test_retrieval_failure_is_treated_as_no_results() -> None:
    dispatcher = _dispatcher(Intent.PRODUCT_DETAILS, embeddings=FakeEmbeddings(error=RuntimeError("down")))

    result = await dispatcher.execute(_call("search_products", {"query": "elder wand"}))

    assert result.ok
    assert result.content == "No products found matching your search."
    assert dispatcher.missing_demand_type() == MissingDemandType.PRODUCT


@pytest.mark.asyncio
async def test_disallowed_tool_is_inert_and_never_searches() -> None:
    knowledge = FakeKnowledgeStore()
    embeddings = FakeEmbeddings()
    dispatcher = _dispatcher(Intent.ORDER_STATUS, knowledge=knowledge, embeddings=embeddings)

    result = await dispatcher.execute(_call("search_products", {"query": "wand"}))

    assert result.ok is False
    assert result.content.startswith("[TOOL ERROR]")
    assert embeddings.calls == []
    assert knowledge.calls == []
    assert dispatcher.tools_called == []
    assert dispatcher.missing_demand_type() is None


@pytest.mark.asyncio
async def test_unknown_tool_is_inert() -> None:
    result = await _dispatcher(Intent.GENERAL_SUPPORT).execute(_call("delete_store", {}))
    assert result.ok is False
    assert "Unknown tool: delete_store" in result.content


@pytest.mark.parametrize(
    "name,arguments,error",
    [
        ("search_products", None, "arguments are not valid JSON"),
        ("search_products", {}, None),
        ("search_products", {"query": "   "}, None),
        ("search_faq", {"query": "returns", "limit": 99}, None),
        ("search_faq", {"query": "returns", "drop": "table"}, None),
    ],
)
@pytest.mark.asyncio
async def test_invalid_arguments_are_inert(name, arguments, error) -> None:
    embeddings = FakeEmbeddings()
    dispatcher = _dispatcher(Intent.GENERAL_SUPPORT, embeddings=embeddings)

    result = await dispatcher.execute(_call(name, arguments, error=error))

    assert result.ok is False
    assert result.content.startswith(f"[TOOL ERROR] {name}:")
    assert embeddings.calls == []


@pytest.mark.asyncio
async def test_order_status_stub_points_to_support() -> None:
    dispatcher = _dispatcher(Intent.ORDER_STATUS)

    result = await dispatcher.execute(_call("order_status", {"orderId": "#12345"}))

    assert result.ok
    assert "order #12345" in result.content
    assert settings.SUPPORT_CONTACT_EMAIL in result.content


@pytest.mark.asyncio
async def test_handoff_ticket_returns_reference() -> None:
    dispatcher = _dispatcher(Intent.GENERAL_SUPPORT)

    result = await dispatcher.execute(
        _call("create_handoff_ticket", {"reason": "wand arrived broken", "customerEmail": "harry@hogwarts.example"})
    )

    assert result.ok
    assert "at harry@hogwarts.example" in result.content
    assert "Reference: " in result.content
    assert result.as_message() == {"role": "tool", "tool_call_id": "call_1", "content": result.content}


@pytest.mark.asyncio
async def test_slow_tool_times_out_and_counts_as_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "TOOL_TIMEOUT_SECONDS", 0.01)

    class SlowEmbeddings(FakeEmbeddings):
        async def embed(self, text):
            await asyncio.sleep(1)
            return [0.0]

    dispatcher = _dispatcher(Intent.SHIPPING_RETURNS, embeddings=SlowEmbeddings())

    result = await dispatcher.execute(_call("search_faq", {"query": "returns window"}))

    assert result.ok is False
    assert "timed out" in result.content
    assert dispatcher.missing_demand_type() == MissingDemandType.FAQ


@pytest.mark.asyncio
async def test_unexpected_handler_error_becomes_inert_result() -> None:
    store_id = uuid.uuid4()
    knowledge = FakeKnowledgeStore()
    broken = make_product(store_id, "Broken Wand")
    broken.name = None
    knowledge.add(store_id, CORPUS_PRODUCT, broken, semantic=0.9)
    dispatcher = _dispatcher(Intent.PRODUCT_DISCOVERY, store_id, knowledge)

    result = await dispatcher.execute(_call("search_products", {"query": "wand"}))

    assert result.ok is False
    assert result.content.startswith("[TOOL ERROR] search_products failed")
    assert dispatcher.products == []
    assert dispatcher.tools_called == ["search_products"]
