from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from shopassist.core.logging import get_logger
from shopassist.models.chat_session import ChatSession
from shopassist.models.message import Message, MessageRole
from shopassist.models.missing_demand import MissingDemand, MissingDemandType
from shopassist.models.tenant import Store
from shopassist.services.retrieval.store import KnowledgeStore

logger = get_logger(__name__)


class ConversationStore:
    """Tenant-scoped persistence for sessions, messages and missing-demand telemetry."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_store(self, store_id: UUID) -> Optional[Store]:
        return await self.db.get(Store, store_id)

    async def count_items(self, store_id: UUID) -> Tuple[int, int]:
        return await KnowledgeStore(self.db).count_items(store_id)

    @staticmethod
    def session_upsert_statement(store_id: UUID, session_token: str):
        stmt = insert(ChatSession).values(store_id=store_id, session_token=session_token, session_metadata={})
        return stmt.on_conflict_do_nothing(constraint="chat_sessions_store_token_unique")

    async def get_or_create_session(self, store_id: UUID, session_token: str) -> ChatSession:
        # Insert-or-ignore then read back: concurrent first messages resolve to one row.
        await self.db.execute(self.session_upsert_statement(store_id, session_token))
        await self.db.commit()
        result = await self.db.execute(
            select(ChatSession)
            .where(ChatSession.store_id == store_id)
            .where(ChatSession.session_token == session_token)
        )
        return result.scalar_one()

    async def get_recent_history(self, session_id: UUID, limit: int = 10) -> List[Dict[str, str]]:
        """Last `limit` messages of the session, oldest first, as OpenAI chat messages."""
        result = await self.db.execute(
            select(Message)
            .where(Message.session_id == session_id)
            .order_by(Message.created_at.desc())
            .limit(limit)
        )
        rows = list(result.scalars().all())
        rows.reverse()
        return [{"role": row.role, "content": row.content} for row in rows]

    async def add_message(
        self,
        session_id: UUID,
        role: MessageRole,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Message:
        message = Message(
            session_id=session_id,
            role=role.value,
            content=content,
            message_metadata=metadata or {},
        )
        self.db.add(message)
        await self.db.commit()
        return message

    async def record_missing_demand(
        self,
        *,
        store_id: UUID,
        session_id: Optional[UUID],
        query: str,
        query_type: MissingDemandType,
        tools_called: Sequence[str],
        results_count: int = 0,
        intent: Optional[str] = None,
    ) -> MissingDemand:
        entry = MissingDemand(
            store_id=store_id,
            session_id=session_id,
            query=query,
            query_type=query_type.value,
            demand_metadata={
                "toolsCalled": list(dict.fromkeys(tools_called)),
                "resultsCount": results_count,
                "intent": intent,
            },
        )
        self.db.add(entry)
        await self.db.commit()
        logger.info(f"[DEMAND] store={store_id} type={query_type.value} tools={list(tools_called)}")
        return entry
