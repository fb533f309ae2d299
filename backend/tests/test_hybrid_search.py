import uuid
from datetime import datetime, timezone

import pytest

pytest.importorskip("sqlalchemy")
pytest.importorskip("pgvector")
pytest.importorskip("pydantic_settings")

from sqlalchemy.dialects import postgresql

from fakes import FakeEmbeddings, FakeKnowledgeStore, make_faq, make_product
from shopassist.core.exceptions import RetrievalError
from shopassist.services.retrieval.hybrid_search import (
    HybridRetriever,
    HybridWeights,
    SearchFilters,
    normalize_lexical_query,
    rank_candidates,
)
from shopassist.services.retrieval.policy import CORPUS_FAQ, CORPUS_PRODUCT
from shopassist.services.retrieval.store import Candidate, KnowledgeStore


def _compile(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


def test_normalize_lexical_query_builds_prefix_or_query() -> None:
    assert normalize_lexical_query("Harry's Wand!") == "harry:* | wand:*"
    assert normalize_lexical_query("elder  WAND wand") == "elder:* | wand:*"


def test_normalize_lexical_query_drops_single_characters_and_symbols() -> None:
    assert normalize_lexical_query("a ? ! _") is None
    assert normalize_lexical_query("") is None
    assert normalize_lexical_query("x y zz") == "zz:*"


def test_rank_candidates_orders_by_hybrid_score() -> None:
    high = Candidate(item="high", semantic_score=0.9, keyword_rank=0.0, keyword_match=False)
    low = Candidate(item="low", semantic_score=0.5, keyword_rank=0.0, keyword_match=False)

    hits = rank_candidates([low, high], min_similarity=0.2, limit=5, weights=HybridWeights())

    assert [hit.item for hit in hits] == ["high", "low"]
    assert hits[0].hybrid_score == pytest.approx(0.54)
    assert hits[1].hybrid_score == pytest.approx(0.30)


def test_rank_candidates_keyword_match_rescues_low_semantic_score() -> None:
    rescued = Candidate(item="wand", semantic_score=0.05, keyword_rank=0.1, keyword_match=True)
    dropped = Candidate(item="cloak", semantic_score=0.15, keyword_rank=0.0, keyword_match=False)

    hits = rank_candidates([rescued, dropped], min_similarity=0.2, limit=5, weights=HybridWeights())

    assert [hit.item for hit in hits] == ["wand"]
    assert hits[0].keyword_score == pytest.approx(0.2)
    assert hits[0].hybrid_score == pytest.approx(0.6 * 0.05 + 0.4 * 0.2)


def test_rank_candidates_breaks_ties_by_most_recent_update() -> None:
    older = Candidate(
        item="older", semantic_score=0.5, keyword_rank=0.0, keyword_match=False,
        updated_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )
    newer = Candidate(
        item="newer", semantic_score=0.5, keyword_rank=0.0, keyword_match=False,
        updated_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )

    hits = rank_candidates([older, newer], min_similarity=0.2, limit=5, weights=HybridWeights())

    assert [hit.item for hit in hits] == ["newer", "older"]


def test_rank_candidates_respects_limit() -> None:
    candidates = [
        Candidate(item=i, semantic_score=0.3 + i / 100, keyword_rank=0.0, keyword_match=False)
        for i in range(10)
    ]
    hits = rank_candidates(candidates, min_similarity=0.2, limit=3, weights=HybridWeights())
    assert [hit.item for hit in hits] == [9, 8, 7]


@pytest.mark.asyncio
async def test_excluded_corpus_returns_empty_without_embedding_call() -> None:
    embeddings = FakeEmbeddings()
    store = FakeKnowledgeStore()
    retriever = HybridRetriever(store, embeddings)

    hits = await retriever.search(
        store_id=uuid.uuid4(),
        corpus=CORPUS_PRODUCT,
        query_text="elder wand",
        filters=SearchFilters(source_types=frozenset({CORPUS_FAQ})),
    )

    assert hits == []
    assert embeddings.calls == []
    assert store.calls == []


@pytest.mark.asyncio
async def test_search_never_returns_another_tenants_items() -> None:
    tenant_a, tenant_b = uuid.uuid4(), uuid.uuid4()
    store = FakeKnowledgeStore()
    store.add(tenant_a, CORPUS_PRODUCT, make_product(tenant_a, "Elder Wand"), semantic=0.95, keyword_match=True)
    store.add(tenant_b, CORPUS_PRODUCT, make_product(tenant_b, "Holly Wand"), semantic=0.4)
    retriever = HybridRetriever(store, FakeEmbeddings())

    hits = await retriever.search(store_id=tenant_b, corpus=CORPUS_PRODUCT, query_text="elder wand")

    assert [hit.item.name for hit in hits] == ["Holly Wand"]
    assert all(hit.item.store_id == tenant_b for hit in hits)
    assert store.calls[0]["store_id"] == tenant_b


@pytest.mark.asyncio
async def test_search_passes_policy_floor_and_categories_to_store() -> None:
    tenant = uuid.uuid4()
    store = FakeKnowledgeStore()
    store.add(tenant, CORPUS_FAQ, make_faq(tenant, "Do you ship abroad?", "Yes.", "shipping"), semantic=0.5)
    store.add(tenant, CORPUS_FAQ, make_faq(tenant, "Can I pay by card?", "Yes.", "payment"), semantic=0.9)
    retriever = HybridRetriever(store, FakeEmbeddings())

    hits = await retriever.search(
        store_id=tenant,
        corpus=CORPUS_FAQ,
        query_text="ship abroad",
        filters=SearchFilters(categories=("shipping", "returns"), min_similarity=0.3),
    )

    assert [hit.item.category for hit in hits] == ["shipping"]
    call = store.calls[0]
    assert call["min_similarity"] == 0.3
    assert call["categories"] == ("shipping", "returns")
    assert call["tsquery"] == "ship:* | abroad:*"


@pytest.mark.asyncio
async def test_default_limits_and_clamping() -> None:
    tenant = uuid.uuid4()
    store = FakeKnowledgeStore()
    for i in range(12):
        store.add(tenant, CORPUS_PRODUCT, make_product(tenant, f"Wand {i}"), semantic=0.5 + i / 100)
        store.add(tenant, CORPUS_FAQ, make_faq(tenant, f"Question {i}", "Answer"), semantic=0.5 + i / 100)
    retriever = HybridRetriever(store, FakeEmbeddings())

    products = await retriever.search(store_id=tenant, corpus=CORPUS_PRODUCT, query_text="wand")
    faqs = await retriever.search(store_id=tenant, corpus=CORPUS_FAQ, query_text="question")
    many = await retriever.search(store_id=tenant, corpus=CORPUS_PRODUCT, query_text="wand", limit=50)

    assert len(products) == 5
    assert len(faqs) == 3
    assert len(many) == 10


@pytest.mark.asyncio
async def test_embedding_failure_raises_retrieval_error() -> None:
    retriever = HybridRetriever(FakeKnowledgeStore(), FakeEmbeddings(error=RuntimeError("provider down")))

    with pytest.raises(RetrievalError):
        await retriever.search(store_id=uuid.uuid4(), corpus=CORPUS_FAQ, query_text="returns")


def test_store_statement_is_scoped_to_one_tenant() -> None:
    tenant = uuid.uuid4()
    stmt = KnowledgeStore(db=None).build_statement(
        store_id=tenant,
        corpus=CORPUS_PRODUCT,
        query_embedding=[0.1, 0.2, 0.3],
        tsquery="elder:* | wand:*",
        min_similarity=0.2,
        categories=None,
        semantic_weight=0.6,
        keyword_weight=0.4,
        keyword_scale=2.0,
        limit=20,
    )
    sql = _compile(stmt)

    assert "products.store_id = " in sql
    assert "<=>" in sql
    assert "to_tsquery" in sql
    assert "ts_rank" in sql
    assert "@@" in sql
    assert "ORDER BY" in sql and "products.updated_at DESC" in sql


def test_faq_statement_applies_category_filter_and_skips_lexical_without_tokens() -> None:
    stmt = KnowledgeStore(db=None).build_statement(
        store_id=uuid.uuid4(),
        corpus=CORPUS_FAQ,
        query_embedding=[0.1, 0.2, 0.3],
        tsquery=None,
        min_similarity=0.4,
        categories=("policy", "returns"),
        semantic_weight=0.6,
        keyword_weight=0.4,
        keyword_scale=2.0,
        limit=12,
    )
    sql = _compile(stmt)

    assert "faqs.store_id = " in sql
    assert "faqs.category IN" in sql
    assert "to_tsquery" not in sql
