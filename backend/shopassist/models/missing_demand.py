from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.sql import func
import uuid
import enum

from shopassist.db.base import Base

class MissingDemandType(str, enum.Enum):
    PRODUCT = "product"
    FAQ = "faq"
    BOTH = "both"

class MissingDemand(Base):
    """A customer query that no product or FAQ could answer. Additive telemetry."""

    __tablename__ = "missing_demand"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    session_id = Column(UUID(as_uuid=True), ForeignKey("chat_sessions.id", ondelete="SET NULL"), nullable=True)

    query = Column(Text, nullable=False)
    query_type = Column(String(16), nullable=False, default=MissingDemandType.BOTH.value, index=True)
    # {"toolsCalled": [...], "resultsCount": int, "intent": str}
    demand_metadata = Column("metadata", JSONB, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
