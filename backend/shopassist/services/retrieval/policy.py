from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Tuple

from shopassist.core.config import Settings, settings as default_settings
from shopassist.schemas.intent import Intent

CORPUS_PRODUCT = "product"
CORPUS_FAQ = "faq"

TOOL_SEARCH_PRODUCTS = "search_products"
TOOL_SEARCH_FAQ = "search_faq"
TOOL_ORDER_STATUS = "order_status"
TOOL_CREATE_HANDOFF_TICKET = "create_handoff_ticket"


@dataclass(frozen=True)
class RetrievalConstraints:
    source_types: FrozenSet[str]
    min_similarity: float
    categories: Optional[Tuple[str, ...]] = None

    def allows(self, corpus: str) -> bool:
        return corpus in self.source_types


@dataclass(frozen=True)
class IntentPolicy:
    constraints: RetrievalConstraints
    allowed_tools: FrozenSet[str]


# floor keys resolve against settings: default | medium | strict
_TABLE: Dict[Intent, Tuple[FrozenSet[str], Optional[Tuple[str, ...]], str, FrozenSet[str]]] = {
    Intent.PRODUCT_DISCOVERY: (
        frozenset({CORPUS_PRODUCT}), None, "default",
        frozenset({TOOL_SEARCH_PRODUCTS, TOOL_CREATE_HANDOFF_TICKET}),
    ),
    Intent.PRODUCT_DETAILS: (
        frozenset({CORPUS_PRODUCT}), None, "medium",
        frozenset({TOOL_SEARCH_PRODUCTS, TOOL_CREATE_HANDOFF_TICKET}),
    ),
    Intent.PRODUCT_COMPARE: (
        frozenset({CORPUS_PRODUCT}), None, "medium",
        frozenset({TOOL_SEARCH_PRODUCTS, TOOL_CREATE_HANDOFF_TICKET}),
    ),
    Intent.SHIPPING_RETURNS: (
        frozenset({CORPUS_FAQ}), ("shipping", "returns"), "medium",
        frozenset({TOOL_SEARCH_FAQ, TOOL_CREATE_HANDOFF_TICKET}),
    ),
    Intent.PAYMENT: (
        frozenset({CORPUS_FAQ}), ("payment",), "medium",
        frozenset({TOOL_SEARCH_FAQ, TOOL_CREATE_HANDOFF_TICKET}),
    ),
    Intent.POLICY: (
        frozenset({CORPUS_FAQ}), ("policy", "returns"), "strict",
        frozenset({TOOL_SEARCH_FAQ, TOOL_CREATE_HANDOFF_TICKET}),
    ),
    Intent.ORDER_STATUS: (
        frozenset(), None, "default",
        frozenset({TOOL_ORDER_STATUS}),
    ),
    Intent.SMALLTALK: (
        frozenset(), None, "default",
        frozenset(),
    ),
    Intent.GENERAL_SUPPORT: (
        frozenset({CORPUS_PRODUCT, CORPUS_FAQ}), None, "default",
        frozenset({TOOL_SEARCH_PRODUCTS, TOOL_SEARCH_FAQ, TOOL_CREATE_HANDOFF_TICKET}),
    ),
}


def _floor(level: str, config: Settings) -> float:
    if level == "strict":
        return config.RETRIEVAL_MIN_SIMILARITY_STRICT
    if level == "medium":
        return config.RETRIEVAL_MIN_SIMILARITY_MEDIUM
    return config.RETRIEVAL_MIN_SIMILARITY_DEFAULT


class RetrievalPolicy:
    """Pure lookup: intent -> which corpora may be searched, how strictly, and with which tools."""

    @staticmethod
    def for_intent(intent: Optional[Intent], config: Optional[Settings] = None) -> IntentPolicy:
        config = config or default_settings
        sources, categories, level, tools = _TABLE.get(intent or Intent.GENERAL_SUPPORT, _TABLE[Intent.GENERAL_SUPPORT])
        return IntentPolicy(
            constraints=RetrievalConstraints(
                source_types=sources,
                min_similarity=_floor(level, config),
                categories=categories,
            ),
            allowed_tools=tools,
        )

    @staticmethod
    def constraints(intent: Optional[Intent], config: Optional[Settings] = None) -> RetrievalConstraints:
        return RetrievalPolicy.for_intent(intent, config).constraints
