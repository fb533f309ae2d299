from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import false, func, literal, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

from shopassist.models.knowledge import FaqEntry, Product
from shopassist.services.retrieval.policy import CORPUS_FAQ, CORPUS_PRODUCT


@dataclass(frozen=True)
class Candidate:
    item: Any
    semantic_score: float
    keyword_rank: float
    keyword_match: bool
    updated_at: Optional[datetime] = None


class KnowledgeStore:
    """pgvector + tsvector candidate lookup over one tenant's products or FAQs."""

    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def _model_for(corpus: str):
        if corpus == CORPUS_PRODUCT:
            return Product
        if corpus == CORPUS_FAQ:
            return FaqEntry
        raise ValueError(f"Unknown corpus: {corpus}")

    def build_statement(
        self,
        *,
        store_id: UUID,
        corpus: str,
        query_embedding: Sequence[float],
        tsquery: Optional[str],
        min_similarity: float,
        categories: Optional[Sequence[str]],
        semantic_weight: float,
        keyword_weight: float,
        keyword_scale: float,
        limit: int,
    ) -> Select:
        model = self._model_for(corpus)

        distance = model.embedding.cosine_distance(list(query_embedding))
        semantic = func.coalesce(1 - distance, 0.0)
        if tsquery:
            ts_query = func.to_tsquery("simple", tsquery)
            keyword_rank = func.coalesce(func.ts_rank(model.search_vector, ts_query), 0.0)
            keyword_match = func.coalesce(model.search_vector.bool_op("@@")(ts_query), false())
            qualifies = or_(semantic > min_similarity, keyword_match)
        else:
            keyword_rank = literal(0.0)
            keyword_match = false()
            qualifies = semantic > min_similarity

        hybrid = semantic_weight * semantic + keyword_weight * (keyword_rank * keyword_scale)

        stmt = (
            select(
                model,
                semantic.label("semantic_score"),
                keyword_rank.label("keyword_rank"),
                keyword_match.label("keyword_match"),
            )
            .where(model.store_id == store_id)
            .where(qualifies)
        )
        if corpus == CORPUS_FAQ and categories:
            stmt = stmt.where(model.category.in_(list(categories)))

        return stmt.order_by(hybrid.desc(), model.updated_at.desc()).limit(limit)

    async def fetch_candidates(self, **kwargs: Any) -> List[Candidate]:
        stmt = self.build_statement(**kwargs)
        result = await self.db.execute(stmt)
        candidates: List[Candidate] = []
        for item, semantic_score, keyword_rank, keyword_match in result.all():
            candidates.append(
                Candidate(
                    item=item,
                    semantic_score=float(semantic_score or 0.0),
                    keyword_rank=float(keyword_rank or 0.0),
                    keyword_match=bool(keyword_match),
                    updated_at=getattr(item, "updated_at", None),
                )
            )
        return candidates

    async def count_items(self, store_id: UUID) -> tuple[int, int]:
        product_count = await self.db.scalar(
            select(func.count()).select_from(Product).where(Product.store_id == store_id)
        )
        faq_count = await self.db.scalar(
            select(func.count()).select_from(FaqEntry).where(FaqEntry.store_id == store_id)
        )
        return int(product_count or 0), int(faq_count or 0)
