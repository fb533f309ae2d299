from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from shopassist.db.base import Base

class PricingPlan(Base):
    __tablename__ = "pricing_plans"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(64), unique=True, nullable=False)  # free, starter, pro, enterprise
    display_name = Column(String(128), nullable=False)
    monthly_message_limit = Column(Integer, nullable=False)  # -1 = unlimited
    price_cents = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

class Store(Base):
    """A tenant storefront. Managed by the dashboard; read-only to the chat core."""

    __tablename__ = "stores"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    woo_domain = Column(String(512), nullable=True)
    api_key = Column(Text, unique=True, nullable=False, index=True)
    plan_id = Column(UUID(as_uuid=True), ForeignKey("pricing_plans.id"), nullable=True)  # null = free tier

    # {"customInstructions": str}
    chatbot_config = Column(JSONB, default=dict)
    # {"name", "role", "language", "description"}
    bot_persona = Column(JSONB, default=dict)
    # {"isActive": bool, "greeting", "theme", ...}
    widget_config = Column(JSONB, default=lambda: {"isActive": True})

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    # Relationships
    plan = relationship("PricingPlan")
    chat_sessions = relationship("ChatSession", back_populates="store")

    @property
    def custom_instructions(self) -> str:
        return str((self.chatbot_config or {}).get("customInstructions") or "").strip()

    @property
    def is_chatbot_active(self) -> bool:
        return bool((self.widget_config or {}).get("isActive", True))
