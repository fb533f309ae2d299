from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from shopassist.db.session import AsyncSessionLocal
from shopassist.services.chat.conversation_store import ConversationStore
from shopassist.services.chat.intent_classifier import IntentClassifier
from shopassist.services.chat.orchestrator import ChatOrchestrator
from shopassist.services.chat.prompt_builder import PromptBuilder
from shopassist.services.embedding import EmbeddingService
from shopassist.services.llm_service import LLMService
from shopassist.services.retrieval.hybrid_search import HybridRetriever
from shopassist.services.retrieval.store import KnowledgeStore
from shopassist.services.usage_service import UsageService


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for database session."""
    async with AsyncSessionLocal() as session:
        yield session


def get_llm_service(request: Request) -> LLMService:
    return request.app.state.llm_service


def get_embedding_service(request: Request) -> EmbeddingService:
    return request.app.state.embedding_service


def build_chat_orchestrator(
    db: AsyncSession,
    llm: LLMService,
    embeddings: EmbeddingService,
) -> ChatOrchestrator:
    """Wire one turn's collaborators around a single database session."""
    return ChatOrchestrator(
        conversations=ConversationStore(db),
        usage=UsageService(db),
        classifier=IntentClassifier(llm),
        prompt_builder=PromptBuilder(),
        llm=llm,
        retriever=HybridRetriever(KnowledgeStore(db), embeddings),
    )


def get_turn_session() -> AsyncSession:
    """A session that outlives the request handler; the streaming response closes it."""
    return AsyncSessionLocal()


def get_chat_orchestrator(
    db: AsyncSession = Depends(get_turn_session),
    llm: LLMService = Depends(get_llm_service),
    embeddings: EmbeddingService = Depends(get_embedding_service),
) -> ChatOrchestrator:
    return build_chat_orchestrator(db, llm, embeddings)
