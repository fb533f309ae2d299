from __future__ import annotations

import enum
from typing import List

from pydantic import BaseModel, Field


class Intent(str, enum.Enum):
    PRODUCT_DISCOVERY = "product_discovery"
    PRODUCT_DETAILS = "product_details"
    PRODUCT_COMPARE = "product_compare"
    SHIPPING_RETURNS = "shipping_returns"
    ORDER_STATUS = "order_status"
    PAYMENT = "payment"
    POLICY = "policy"
    GENERAL_SUPPORT = "general_support"
    SMALLTALK = "smalltalk"

    @classmethod
    def parse(cls, value: object) -> "Intent":
        """Accept PRODUCT_DISCOVERY, product-discovery, "product discovery"; unknown -> GENERAL_SUPPORT."""
        raw = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
        try:
            return cls(raw)
        except ValueError:
            return cls.GENERAL_SUPPORT


class IntentResult(BaseModel):
    intent: Intent
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    suggested_tools: List[str] = Field(default_factory=list)
