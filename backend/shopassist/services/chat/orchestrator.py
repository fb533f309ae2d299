"""
Two-round streaming chat turn.

    IDLE -> STREAMING_1 -> [TOOL_EXEC -> STREAMING_2] -> DONE | ERROR

Round 1 streams the model's reply with the tools the intent allows. If the
model stops with finish_reason == "tool_calls", the accumulated calls are
executed and round 2 streams the final answer without tools. The turn is
closed by persisting the assistant message, the usage increment and any
missing-demand entry; only then is the "done" frame sent.
"""

from __future__ import annotations

import asyncio
import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from shopassist.core.config import Settings, settings as default_settings
from shopassist.core.exceptions import (
    ChatbotDisabledError,
    PersistenceError,
    ProviderStreamError,
    QuotaExceededError,
    StoreNotFoundError,
)
from shopassist.core.logging import get_logger
from shopassist.models.chat_session import ChatSession
from shopassist.models.message import MessageRole
from shopassist.models.tenant import Store
from shopassist.schemas.chat import ChatRequest, ContentFrame, DoneFrame, ErrorFrame, ProductsFrame
from shopassist.schemas.intent import IntentResult
from shopassist.services.agent_tools import ToolDispatcher, tool_definitions
from shopassist.services.chat.conversation_store import ConversationStore
from shopassist.services.chat.intent_classifier import IntentClassifier
from shopassist.services.chat.prompt_builder import PromptBuilder
from shopassist.services.chat.streaming import ToolCall, ToolCallAccumulator, format_sse, iter_with_idle_timeout
from shopassist.services.llm_service import LLMService, StreamDelta
from shopassist.services.retrieval.hybrid_search import HybridRetriever
from shopassist.services.retrieval.policy import IntentPolicy, RetrievalPolicy
from shopassist.services.usage_service import UsageService
from shopassist.utils.debug_log import debug_log

logger = get_logger(__name__)

DisconnectProbe = Callable[[], Awaitable[bool]]


class TurnPhase(str, enum.Enum):
    IDLE = "idle"
    STREAMING_1 = "streaming_1"
    TOOL_EXEC = "tool_exec"
    STREAMING_2 = "streaming_2"
    DONE = "done"
    ERROR = "error"


_TERMINAL = {TurnPhase.DONE, TurnPhase.ERROR}


@dataclass
class TurnContext:
    run_id: str
    store: Store
    session: ChatSession
    message: str
    intent: IntentResult
    policy: IntentPolicy
    messages: List[Dict[str, Any]]
    phase: TurnPhase = TurnPhase.IDLE
    content_parts: List[str] = field(default_factory=list)
    tool_calls: List[ToolCall] = field(default_factory=list)
    dispatcher: Optional[ToolDispatcher] = None
    persisted: bool = False
    cancelled: bool = False

    @property
    def text(self) -> str:
        return "".join(self.content_parts)


class ChatOrchestrator:
    def __init__(
        self,
        *,
        conversations: ConversationStore,
        usage: UsageService,
        classifier: IntentClassifier,
        prompt_builder: PromptBuilder,
        llm: LLMService,
        retriever: HybridRetriever,
        config: Optional[Settings] = None,
    ):
        self.conversations = conversations
        self.usage = usage
        self.classifier = classifier
        self.prompt_builder = prompt_builder
        self.llm = llm
        self.retriever = retriever
        self.settings = config or default_settings

    def _upgrade_url(self) -> str:
        return f"{self.settings.PUBLIC_APP_URL.rstrip('/')}/dashboard/billing"

    async def admit(self, request: ChatRequest) -> Store:
        """Reject before any LLM call: unknown store, disabled widget, or exhausted quota."""
        store = await self.conversations.get_store(request.tenant_id)
        if store is None:
            raise StoreNotFoundError()
        if not store.is_chatbot_active:
            raise ChatbotDisabledError()
        allowed, usage = await self.usage.can_send_message(store.id)
        if not allowed:
            logger.warning(
                f"[CHAT] quota exceeded for store {store.id}: {usage.message_count}/{usage.plan.limit}",
                extra={"event": "quota_exceeded", "store_id": str(store.id)},
            )
            raise QuotaExceededError(usage.rejection_payload(), upgrade_url=self._upgrade_url())
        return store

    async def prepare_turn(self, request: ChatRequest) -> TurnContext:
        store = await self.admit(request)
        session = await self.conversations.get_or_create_session(store.id, request.session_id)
        history = await self.conversations.get_recent_history(session.id, limit=self.settings.CHAT_HISTORY_LIMIT)

        intent = await self.classifier.classify(request.message, history)
        await self.conversations.add_message(
            session.id,
            MessageRole.USER,
            request.message,
            {"intent": intent.intent.value, "confidence": intent.confidence},
        )

        product_count, faq_count = await self.conversations.count_items(store.id)
        system_prompt = self.prompt_builder.build(store, product_count, faq_count, intent)
        messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        messages.extend(history)
        messages.append({"role": "user", "content": request.message})

        ctx = TurnContext(
            run_id=uuid.uuid4().hex,
            store=store,
            session=session,
            message=request.message,
            intent=intent,
            policy=RetrievalPolicy.for_intent(intent.intent, self.settings),
            messages=messages,
        )
        logger.info(
            f"[CHAT] turn {ctx.run_id} store={store.id} session={session.id} "
            f"intent={intent.intent.value} history={len(history)}"
        )
        return ctx

    def _advance(self, ctx: TurnContext, phase: TurnPhase) -> None:
        debug_log({"event": "turn_phase", "run_id": ctx.run_id, "from": ctx.phase.value, "to": phase.value})
        ctx.phase = phase

    async def _stream_round(
        self,
        ctx: TurnContext,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
    ) -> AsyncIterator[StreamDelta]:
        try:
            stream = self.llm.stream_chat(messages, tools=tools or None)
            async for delta in iter_with_idle_timeout(stream, self.settings.LLM_STREAM_IDLE_TIMEOUT_SECONDS):
                yield delta
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as exc:
            raise ProviderStreamError(f"stream idle for {self.settings.LLM_STREAM_IDLE_TIMEOUT_SECONDS}s") from exc
        except ProviderStreamError:
            raise
        except Exception as exc:
            raise ProviderStreamError(f"{type(exc).__name__}: {exc}") from exc

    async def _client_gone(self, is_disconnected: Optional[DisconnectProbe]) -> bool:
        if is_disconnected is None:
            return False
        try:
            return bool(await is_disconnected())
        except Exception:
            return False

    async def _persist(self, ctx: TurnContext, *, partial: bool = False) -> None:
        """Assistant message, then usage increment, then missing demand."""
        ctx.persisted = True
        dispatcher = ctx.dispatcher
        products = dispatcher.products if dispatcher else []
        metadata: Dict[str, Any] = {
            "intent": ctx.intent.intent.value,
            "confidence": ctx.intent.confidence,
            "products": [card.model_dump(mode="json", by_alias=True) for card in products],
        }
        if dispatcher and dispatcher.tools_called:
            metadata["toolsCalled"] = list(dispatcher.tools_called)
        if partial:
            metadata["partial"] = True

        try:
            await self.conversations.add_message(ctx.session.id, MessageRole.ASSISTANT, ctx.text, metadata)
            await self.usage.increment_usage(ctx.store.id)
        except Exception as exc:
            raise PersistenceError(f"could not close turn {ctx.run_id}") from exc

        demand_type = dispatcher.missing_demand_type() if dispatcher else None
        if demand_type is None:
            return
        try:
            await self.conversations.record_missing_demand(
                store_id=ctx.store.id,
                session_id=ctx.session.id,
                query=ctx.message,
                query_type=demand_type,
                tools_called=dispatcher.tools_called,
                results_count=dispatcher.results_count,
                intent=ctx.intent.intent.value,
            )
        except Exception as exc:
            # Missing demand is telemetry; the reply is already stored.
            logger.error(f"[CHAT] missing demand write failed for turn {ctx.run_id}: {exc}")

    async def _persist_partial(self, ctx: TurnContext) -> None:
        try:
            await self._persist(ctx, partial=True)
            logger.info(f"[CHAT] turn {ctx.run_id} stopped in {ctx.phase.value}; stored {len(ctx.text)} chars as partial")
        except PersistenceError as exc:
            logger.error(f"[CHAT] partial persist failed for turn {ctx.run_id}: {exc.__cause__!r}")

    async def stream_turn(
        self,
        ctx: TurnContext,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> AsyncIterator[str]:
        """Yield SSE frames for one prepared turn."""
        started = time.monotonic()
        ctx.dispatcher = ToolDispatcher(
            store_id=ctx.store.id,
            retriever=self.retriever,
            policy=ctx.policy,
            config=self.settings,
            run_id=ctx.run_id,
        )
        try:
            # Round 1
            self._advance(ctx, TurnPhase.STREAMING_1)
            accumulator = ToolCallAccumulator()
            finish_reason: Optional[str] = None
            async for delta in self._stream_round(ctx, ctx.messages, tool_definitions(ctx.policy.allowed_tools)):
                if delta.content:
                    ctx.content_parts.append(delta.content)
                    yield format_sse(ContentFrame(content=delta.content))
                for fragment in delta.tool_calls:
                    accumulator.add(fragment)
                if delta.finish_reason:
                    finish_reason = delta.finish_reason
                if await self._client_gone(is_disconnected):
                    ctx.cancelled = True
                    return

            # Tool phase
            if finish_reason == "tool_calls" and accumulator:
                self._advance(ctx, TurnPhase.TOOL_EXEC)
                ctx.tool_calls = accumulator.finalize()
                results = await ctx.dispatcher.execute_all(ctx.tool_calls)
                if await self._client_gone(is_disconnected):
                    ctx.cancelled = True
                    return

                round_two = list(ctx.messages)
                round_two.append(
                    {
                        "role": "assistant",
                        "content": ctx.text or None,
                        "tool_calls": [call.as_openai() for call in ctx.tool_calls],
                    }
                )
                round_two.extend(result.as_message() for result in results)

                # Round 2
                self._advance(ctx, TurnPhase.STREAMING_2)
                async for delta in self._stream_round(ctx, round_two, None):
                    if delta.content:
                        ctx.content_parts.append(delta.content)
                        yield format_sse(ContentFrame(content=delta.content))
                    if await self._client_gone(is_disconnected):
                        ctx.cancelled = True
                        return

            # Finalize
            products = ctx.dispatcher.products
            if products:
                yield format_sse(ProductsFrame(products=products))
            try:
                await self._persist(ctx)
            except PersistenceError as exc:
                logger.error(f"[CHAT] persistence failed for turn {ctx.run_id}: {exc.__cause__!r}")
                self._advance(ctx, TurnPhase.ERROR)
                yield format_sse(ErrorFrame(error="persistence_failed"))
                return

            self._advance(ctx, TurnPhase.DONE)
            logger.info(
                f"[CHAT] turn {ctx.run_id} done: tools={ctx.dispatcher.tools_called} "
                f"products={len(products)} chars={len(ctx.text)} "
                f"elapsed_ms={int((time.monotonic() - started) * 1000)}"
            )
            yield format_sse(DoneFrame())
        except ProviderStreamError as exc:
            logger.error(f"[CHAT] provider error in {ctx.phase.value} for turn {ctx.run_id}: {exc}")
            self._advance(ctx, TurnPhase.ERROR)
            yield format_sse(ErrorFrame(error="provider_error"))
        except (asyncio.CancelledError, GeneratorExit):
            ctx.cancelled = True
            raise
        except Exception:
            logger.exception(f"[CHAT] unexpected failure in {ctx.phase.value} for turn {ctx.run_id}")
            self._advance(ctx, TurnPhase.ERROR)
            yield format_sse(ErrorFrame(error="internal_error"))
        finally:
            if ctx.text and not ctx.persisted:
                await asyncio.shield(self._persist_partial(ctx))
            if ctx.phase not in _TERMINAL:
                ctx.phase = TurnPhase.ERROR
