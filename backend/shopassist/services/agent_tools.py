from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from shopassist.core.config import Settings, settings as default_settings
from shopassist.core.exceptions import RetrievalError, ToolArgumentError
from shopassist.core.logging import get_logger
from shopassist.models.missing_demand import MissingDemandType
from shopassist.schemas.chat import ProductCard
from shopassist.services.chat.streaming import ToolCall
from shopassist.services.retrieval.hybrid_search import HybridRetriever, SearchFilters, SearchHit
from shopassist.services.retrieval.policy import (
    CORPUS_FAQ,
    CORPUS_PRODUCT,
    TOOL_CREATE_HANDOFF_TICKET,
    TOOL_ORDER_STATUS,
    TOOL_SEARCH_FAQ,
    TOOL_SEARCH_PRODUCTS,
    IntentPolicy,
)
from shopassist.utils.debug_log import debug_log

logger = get_logger(__name__)

SUPPORTED_TOOLS = (
    TOOL_SEARCH_PRODUCTS,
    TOOL_SEARCH_FAQ,
    TOOL_ORDER_STATUS,
    TOOL_CREATE_HANDOFF_TICKET,
)

FAQ_NO_RESULTS = "[KNOWLEDGE BASE SEARCH - NO RESULTS]"
FAQ_VERIFIED = "[KNOWLEDGE BASE SEARCH - VERIFIED DATA]"


def _strip_required(value: str, label: str) -> str:
    clean = value.strip()
    if not clean:
        raise ValueError(f"{label} cannot be empty")
    return clean


class SearchProductsArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str = Field(min_length=1, max_length=200)
    limit: Optional[int] = Field(default=None, ge=1, le=10)

    @field_validator("query")
    @classmethod
    def validate_query(cls, value: str) -> str:
        return _strip_required(value, "query")


class SearchFaqArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str = Field(min_length=1, max_length=200)
    limit: Optional[int] = Field(default=None, ge=1, le=10)

    @field_validator("query")
    @classmethod
    def validate_query(cls, value: str) -> str:
        return _strip_required(value, "query")


class OrderStatusArgs(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    order_id: str = Field(alias="orderId", min_length=1, max_length=64)

    @field_validator("order_id", mode="before")
    @classmethod
    def validate_order_id(cls, value: Any) -> str:
        # models send 12345 as well as "#12345"
        return _strip_required(str(value), "orderId").lstrip("#").strip()


class CreateHandoffTicketArgs(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    reason: str = Field(min_length=1, max_length=500)
    customer_email: Optional[str] = Field(default=None, alias="customerEmail", max_length=254)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, value: str) -> str:
        return _strip_required(value, "reason")

    @field_validator("customer_email")
    @classmethod
    def validate_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        clean = value.strip()
        return clean if "@" in clean else None


TOOL_ARGUMENT_MODELS = {
    TOOL_SEARCH_PRODUCTS: SearchProductsArgs,
    TOOL_SEARCH_FAQ: SearchFaqArgs,
    TOOL_ORDER_STATUS: OrderStatusArgs,
    TOOL_CREATE_HANDOFF_TICKET: CreateHandoffTicketArgs,
}


TOOL_DEFINITIONS: Dict[str, Dict[str, Any]] = {
    TOOL_SEARCH_PRODUCTS: {
        "type": "function",
        "function": {
            "name": TOOL_SEARCH_PRODUCTS,
            "description": "Search for products in the store catalog based on the customer's query.",
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "The search query for products", "maxLength": 200},
                    "limit": {
                        "type": "integer",
                        "description": "Maximum number of results to return (default: 5)",
                        "minimum": 1,
                        "maximum": 10,
                    },
                },
                "required": ["query"],
                "additionalProperties": False,
            },
        },
    },
    TOOL_SEARCH_FAQ: {
        "type": "function",
        "function": {
            "name": TOOL_SEARCH_FAQ,
            "description": "Search the store's knowledge base for shipping, returns, payment and policy answers.",
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "The question or topic to search for", "maxLength": 200},
                    "limit": {
                        "type": "integer",
                        "description": "Maximum number of results to return (default: 3)",
                        "minimum": 1,
                        "maximum": 10,
                    },
                },
                "required": ["query"],
                "additionalProperties": False,
            },
        },
    },
    TOOL_ORDER_STATUS: {
        "type": "function",
        "function": {
            "name": TOOL_ORDER_STATUS,
            "description": "Get the status of a customer order by its order number.",
            "parameters": {
                "type": "object",
                "properties": {
                    "orderId": {"type": "string", "description": "The order ID to check", "maxLength": 64},
                },
                "required": ["orderId"],
                "additionalProperties": False,
            },
        },
    },
    TOOL_CREATE_HANDOFF_TICKET: {
        "type": "function",
        "function": {
            "name": TOOL_CREATE_HANDOFF_TICKET,
            "description": "Create a handoff ticket so a human support agent contacts the customer.",
            "parameters": {
                "type": "object",
                "properties": {
                    "reason": {"type": "string", "description": "Reason for handoff to human support", "maxLength": 500},
                    "customerEmail": {"type": "string", "description": "Customer email address", "maxLength": 254},
                },
                "required": ["reason"],
                "additionalProperties": False,
            },
        },
    },
}


def tool_definitions(allowed: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
    """OpenAI tool schemas in a stable order, restricted to `allowed` when given."""
    allowed_set = set(SUPPORTED_TOOLS if allowed is None else allowed)
    return [TOOL_DEFINITIONS[name] for name in SUPPORTED_TOOLS if name in allowed_set]


@dataclass
class ToolResult:
    tool_call_id: str
    name: str
    content: str
    ok: bool = True
    products: List[ProductCard] = field(default_factory=list)
    results_count: int = 0

    def as_message(self) -> Dict[str, Any]:
        return {"role": "tool", "tool_call_id": self.tool_call_id, "content": self.content}


def product_card(product: Any) -> ProductCard:
    price = getattr(product, "price", None)
    return ProductCard(
        id=product.id,
        name=product.name,
        price=None if price is None else str(price),
        currency=getattr(product, "currency", None),
        url=getattr(product, "url", None),
        image_url=getattr(product, "image_url", None),
    )


def _product_line(product: Any) -> str:
    price = getattr(product, "price", None)
    currency = getattr(product, "currency", None) or ""
    price_label = f" ({currency}{price})" if price is not None else ""
    description = (getattr(product, "description", None) or "").strip()
    if len(description) > 100:
        description = description[:100] + "..."
    return f"- {product.name}{price_label}: {description}" if description else f"- {product.name}{price_label}"


def format_faq_results(hits: List[SearchHit]) -> str:
    if not hits:
        return (
            f"{FAQ_NO_RESULTS}\n"
            "No FAQ entries found matching this question. If the customer is asking about policies, "
            "shipping, or returns, tell them you don't have that specific information and offer to "
            "connect them with support."
        )
    entries = []
    for i, hit in enumerate(hits, start=1):
        faq = hit.item
        category = f" - Category: {faq.category}" if getattr(faq, "category", None) else ""
        entries.append(f"[FAQ Entry {i}{category}]\nQ: {faq.question}\nA: {faq.answer}")
    body = "\n\n".join(entries)
    return (
        f"{FAQ_VERIFIED}\n"
        f"Found {len(hits)} relevant FAQ entries:\n\n{body}\n\n"
        "IMPORTANT: The information above is from the store's official knowledge base. "
        "Only share policies/shipping info that appears above."
    )


def _inert_error(call: ToolCall, message: str) -> ToolResult:
    return ToolResult(tool_call_id=call.id, name=call.name, content=f"[TOOL ERROR] {message}", ok=False)


class ToolDispatcher:
    """Executes the tool calls of one turn for one store.

    Holds per-turn state: surfaced product cards (deduplicated by id), the tool
    names invoked, and which search corpora came back empty.
    """

    def __init__(
        self,
        *,
        store_id: UUID,
        retriever: HybridRetriever,
        policy: IntentPolicy,
        config: Optional[Settings] = None,
        run_id: Optional[str] = None,
    ):
        self.store_id = store_id
        self.retriever = retriever
        self.policy = policy
        self.settings = config or default_settings
        self.run_id = run_id

        self.tools_called: List[str] = []
        self.results_count = 0
        self._products: Dict[UUID, ProductCard] = {}
        self._empty_corpora: Set[str] = set()

    @property
    def products(self) -> List[ProductCard]:
        return list(self._products.values())

    def missing_demand_type(self) -> Optional[MissingDemandType]:
        if {CORPUS_PRODUCT, CORPUS_FAQ} <= self._empty_corpora:
            return MissingDemandType.BOTH
        if CORPUS_PRODUCT in self._empty_corpora:
            return MissingDemandType.PRODUCT
        if CORPUS_FAQ in self._empty_corpora:
            return MissingDemandType.FAQ
        return None

    def _filters(self) -> SearchFilters:
        return SearchFilters.from_constraints(self.policy.constraints)

    async def _search(self, corpus: str, query: str, limit: Optional[int]) -> List[SearchHit]:
        try:
            hits = await self.retriever.search(
                store_id=self.store_id,
                corpus=corpus,
                query_text=query,
                limit=limit,
                filters=self._filters(),
            )
        except RetrievalError as exc:
            logger.error(f"[TOOLS] {corpus} search failed for store {self.store_id}: {exc}")
            hits = []
        if not hits:
            self._empty_corpora.add(corpus)
        self.results_count += len(hits)
        return hits

    async def search_products(self, call: ToolCall, args: SearchProductsArgs) -> ToolResult:
        hits = await self._search(CORPUS_PRODUCT, args.query, args.limit)
        if not hits:
            return ToolResult(
                tool_call_id=call.id,
                name=call.name,
                content="No products found matching your search.",
            )
        cards = [product_card(hit.item) for hit in hits]
        for card in cards:
            self._products.setdefault(card.id, card)
        lines = "\n".join(_product_line(hit.item) for hit in hits)
        return ToolResult(
            tool_call_id=call.id,
            name=call.name,
            content=f"Found {len(hits)} products:\n{lines}",
            products=cards,
            results_count=len(hits),
        )

    async def search_faq(self, call: ToolCall, args: SearchFaqArgs) -> ToolResult:
        hits = await self._search(CORPUS_FAQ, args.query, args.limit)
        return ToolResult(
            tool_call_id=call.id,
            name=call.name,
            content=format_faq_results(hits),
            results_count=len(hits),
        )

    async def order_status(self, call: ToolCall, args: OrderStatusArgs) -> ToolResult:
        # Order lookup is not wired to the commerce backend yet; point the customer to support.
        return ToolResult(
            tool_call_id=call.id,
            name=call.name,
            content=(
                f"To check your order status for order #{args.order_id}, please contact our "
                f"support team at {self.settings.SUPPORT_CONTACT_EMAIL}."
            ),
        )

    async def create_handoff_ticket(self, call: ToolCall, args: CreateHandoffTicketArgs) -> ToolResult:
        reference = uuid.uuid4().hex[:8].upper()
        logger.info(
            f"[TOOLS] handoff requested for store {self.store_id}: ref={reference}",
            extra={"event": "handoff_requested", "store_id": str(self.store_id), "reference": reference},
        )
        contact = f" at {args.customer_email}" if args.customer_email else ""
        return ToolResult(
            tool_call_id=call.id,
            name=call.name,
            content=(
                "I've created a support ticket for you. Our team will reach out to you "
                f"shortly{contact}. Reference: {reference}"
            ),
        )

    def _validate(self, call: ToolCall) -> BaseModel:
        if call.argument_error or call.arguments is None:
            raise ToolArgumentError(call.argument_error or "arguments are missing")
        model = TOOL_ARGUMENT_MODELS[call.name]
        try:
            return model.model_validate(call.arguments)
        except ValidationError as exc:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) or "arguments" for err in exc.errors())
            raise ToolArgumentError(f"invalid arguments ({fields})") from exc

    async def _run(self, call: ToolCall, args: BaseModel) -> ToolResult:
        if call.name == TOOL_SEARCH_PRODUCTS:
            return await self.search_products(call, args)
        if call.name == TOOL_SEARCH_FAQ:
            return await self.search_faq(call, args)
        if call.name == TOOL_ORDER_STATUS:
            return await self.order_status(call, args)
        return await self.create_handoff_ticket(call, args)

    async def execute(self, call: ToolCall) -> ToolResult:
        """Run one tool call. Never raises; every failure becomes an inert error result for the model."""
        started = time.monotonic()
        if call.name not in TOOL_ARGUMENT_MODELS:
            result = _inert_error(call, f"Unknown tool: {call.name or '(missing name)'}")
        elif call.name not in self.policy.allowed_tools:
            logger.warning(f"[TOOLS] blocked {call.name} for store {self.store_id}: not allowed for this intent")
            result = _inert_error(call, f"The tool {call.name} is not available for this request.")
        else:
            self.tools_called.append(call.name)
            try:
                args = self._validate(call)
                result = await asyncio.wait_for(self._run(call, args), timeout=self.settings.TOOL_TIMEOUT_SECONDS)
            except ToolArgumentError as exc:
                result = _inert_error(call, f"{call.name}: {exc}")
            except asyncio.TimeoutError:
                logger.error(f"[TOOLS] {call.name} timed out for store {self.store_id}")
                if call.name == TOOL_SEARCH_PRODUCTS:
                    self._empty_corpora.add(CORPUS_PRODUCT)
                elif call.name == TOOL_SEARCH_FAQ:
                    self._empty_corpora.add(CORPUS_FAQ)
                result = _inert_error(call, f"{call.name} timed out. Tell the customer you could not look this up.")
            except Exception as exc:
                logger.exception(f"[TOOLS] {call.name} failed for store {self.store_id}: {exc}")
                result = _inert_error(call, f"{call.name} failed. Tell the customer you could not look this up.")

        debug_log(
            {
                "event": "tool_call",
                "run_id": self.run_id,
                "store_id": str(self.store_id),
                "tool": call.name,
                "ok": result.ok,
                "results": result.results_count,
                "elapsed_ms": int((time.monotonic() - started) * 1000),
            }
        )
        return result

    async def execute_all(self, calls: Iterable[ToolCall]) -> List[ToolResult]:
        results = []
        for call in calls:
            results.append(await self.execute(call))
        return results
