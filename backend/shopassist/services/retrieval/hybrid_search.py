from __future__ import annotations

import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, FrozenSet, List, Optional, Sequence, Tuple
from uuid import UUID

from shopassist.core.config import Settings, settings as default_settings
from shopassist.core.exceptions import RetrievalError
from shopassist.core.logging import get_logger
from shopassist.services.embedding import EmbeddingService
from shopassist.services.retrieval.policy import CORPUS_FAQ, CORPUS_PRODUCT, RetrievalConstraints
from shopassist.services.retrieval.store import Candidate, KnowledgeStore

logger = get_logger(__name__)

_NON_WORD = re.compile(r"[^\w\s]|_", re.UNICODE)
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def normalize_lexical_query(text: str) -> Optional[str]:
    """Build a prefix-match OR tsquery: "Harry's wand!" -> "harry:* | wand:*"."""
    cleaned = _NON_WORD.sub(" ", (text or "").lower())
    tokens = [token for token in cleaned.split() if len(token) > 1]
    if not tokens:
        return None
    return " | ".join(f"{token}:*" for token in dict.fromkeys(tokens))


@dataclass(frozen=True)
class SearchFilters:
    source_types: Optional[FrozenSet[str]] = None  # None = every corpus
    categories: Optional[Tuple[str, ...]] = None
    min_similarity: Optional[float] = None

    @classmethod
    def from_constraints(cls, constraints: RetrievalConstraints) -> "SearchFilters":
        return cls(
            source_types=constraints.source_types,
            categories=constraints.categories,
            min_similarity=constraints.min_similarity,
        )

    def allows(self, corpus: str) -> bool:
        return self.source_types is None or corpus in self.source_types


@dataclass(frozen=True)
class HybridWeights:
    semantic: float = 0.6
    keyword: float = 0.4
    keyword_scale: float = 2.0

    @classmethod
    def from_settings(cls, config: Settings) -> "HybridWeights":
        return cls(
            semantic=config.HYBRID_SEMANTIC_WEIGHT,
            keyword=config.HYBRID_KEYWORD_WEIGHT,
            keyword_scale=config.HYBRID_KEYWORD_SCALE,
        )

    def keyword_score(self, keyword_rank: float) -> float:
        return keyword_rank * self.keyword_scale

    def blend(self, semantic_score: float, keyword_score: float) -> float:
        return self.semantic * semantic_score + self.keyword * keyword_score


@dataclass(frozen=True)
class SearchHit:
    item: Any
    semantic_score: float
    keyword_score: float
    hybrid_score: float
    keyword_match: bool


def _recency(candidate: Candidate) -> float:
    updated_at = candidate.updated_at
    if updated_at is None:
        return _EPOCH.timestamp()
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    return updated_at.timestamp()


def rank_candidates(
    candidates: Sequence[Candidate],
    *,
    min_similarity: float,
    limit: int,
    weights: HybridWeights,
) -> List[SearchHit]:
    """Keep candidates above the floor or with a keyword hit; order by hybrid score, then recency."""
    scored: List[Tuple[float, float, SearchHit]] = []
    for candidate in candidates:
        if not (candidate.semantic_score > min_similarity or candidate.keyword_match):
            continue
        keyword_score = weights.keyword_score(candidate.keyword_rank)
        hybrid = weights.blend(candidate.semantic_score, keyword_score)
        hit = SearchHit(
            item=candidate.item,
            semantic_score=candidate.semantic_score,
            keyword_score=keyword_score,
            hybrid_score=hybrid,
            keyword_match=candidate.keyword_match,
        )
        scored.append((hybrid, _recency(candidate), hit))

    scored.sort(key=lambda entry: (entry[0], entry[1]), reverse=True)
    return [hit for _, _, hit in scored[: max(0, limit)]]


class HybridRetriever:
    """Semantic + lexical search over one tenant's products or FAQ entries."""

    def __init__(
        self,
        store: KnowledgeStore,
        embeddings: EmbeddingService,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.embeddings = embeddings
        self.settings = config or default_settings
        self.weights = HybridWeights.from_settings(self.settings)

    def _default_limit(self, corpus: str) -> int:
        if corpus == CORPUS_PRODUCT:
            return self.settings.PRODUCT_SEARCH_LIMIT
        return self.settings.FAQ_SEARCH_LIMIT

    async def search(
        self,
        *,
        store_id: UUID,
        corpus: str,
        query_text: str,
        limit: Optional[int] = None,
        filters: Optional[SearchFilters] = None,
    ) -> List[SearchHit]:
        if corpus not in (CORPUS_PRODUCT, CORPUS_FAQ):
            raise ValueError(f"Unknown corpus: {corpus}")
        filters = filters or SearchFilters()
        if not filters.allows(corpus):
            return []
        query_text = (query_text or "").strip()
        if not query_text:
            return []

        limit = limit or self._default_limit(corpus)
        limit = max(1, min(int(limit), self.settings.SEARCH_MAX_LIMIT))
        min_similarity = (
            self.settings.RETRIEVAL_MIN_SIMILARITY_DEFAULT
            if filters.min_similarity is None
            else float(filters.min_similarity)
        )

        started = time.monotonic()
        try:
            query_embedding = await self.embeddings.embed(query_text)
        except Exception as exc:
            raise RetrievalError(f"embedding failed for {corpus} search") from exc

        tsquery = normalize_lexical_query(query_text)
        try:
            candidates = await self.store.fetch_candidates(
                store_id=store_id,
                corpus=corpus,
                query_embedding=query_embedding,
                tsquery=tsquery,
                min_similarity=min_similarity,
                categories=filters.categories,
                semantic_weight=self.weights.semantic,
                keyword_weight=self.weights.keyword,
                keyword_scale=self.weights.keyword_scale,
                limit=limit * max(1, self.settings.RETRIEVAL_CANDIDATE_MULTIPLIER),
            )
        except Exception as exc:
            raise RetrievalError(f"{corpus} candidate lookup failed") from exc

        hits = rank_candidates(candidates, min_similarity=min_similarity, limit=limit, weights=self.weights)
        logger.info(
            f"[RAG] hybrid {corpus} search: store={store_id} floor={min_similarity} "
            f"tsquery={tsquery!r} candidates={len(candidates)} hits={len(hits)} "
            f"elapsed_ms={int((time.monotonic() - started) * 1000)}"
        )
        return hits
