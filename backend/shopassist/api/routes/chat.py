from contextlib import aclosing
from typing import AsyncIterator
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from shopassist.core.exceptions import AdmissionError
from shopassist.core.logging import get_logger
from shopassist.dependencies import get_chat_orchestrator, get_db, get_turn_session
from shopassist.schemas.chat import ChatRequest
from shopassist.schemas.usage import UsageResponse
from shopassist.services.chat.orchestrator import ChatOrchestrator, TurnContext
from shopassist.services.usage_service import UsageService

router = APIRouter()
logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post("/")
async def chat(
    payload: ChatRequest,
    request: Request,
    db: AsyncSession = Depends(get_turn_session),
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
):
    """
    Storefront chat endpoint (Server-Sent Events).

    Admission failures (unknown store, disabled widget, quota) are returned as
    plain HTTP errors before the stream opens. After that every outcome,
    including failures, is delivered as an SSE frame.
    """
    try:
        ctx = await orchestrator.prepare_turn(payload)
    except AdmissionError:
        await db.close()
        raise
    except Exception as e:
        await db.close()
        logger.error(f"Chat setup error for store {payload.tenant_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "internal_error", "message": "Sorry, something went wrong. Please try again."},
        )

    async def event_stream(turn: TurnContext) -> AsyncIterator[str]:
        # Close the turn first so partial persistence runs before the session goes away.
        try:
            async with aclosing(orchestrator.stream_turn(turn, is_disconnected=request.is_disconnected)) as frames:
                async for frame in frames:
                    yield frame
        finally:
            await db.close()

    return StreamingResponse(event_stream(ctx), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/usage/{tenant_id}", response_model=UsageResponse)
async def get_usage(
    tenant_id: UUID,
    months: int = 6,
    db: AsyncSession = Depends(get_db),
):
    """Current month's usage snapshot plus recent monthly counts, for the widget and dashboard."""
    service = UsageService(db)
    usage = await service.get_store_usage(tenant_id)
    history = await service.get_usage_history(tenant_id, months=max(1, min(months, 24)))
    return UsageResponse(usage=usage, history=history)
