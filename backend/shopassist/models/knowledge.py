from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Index, Numeric, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB, TSVECTOR
from sqlalchemy.sql import func
from pgvector.sqlalchemy import Vector
import uuid
import enum

from shopassist.db.base import Base
from shopassist.core.config import settings

class FaqCategory(str, enum.Enum):
    SHIPPING = "shipping"
    RETURNS = "returns"
    PAYMENT = "payment"
    POLICY = "policy"
    PRODUCT_INFO = "product_info"
    GENERAL = "general"

class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("store_id", "woo_product_id", name="products_store_woo_id_unique"),
        Index("products_search_vector_idx", "search_vector", postgresql_using="gin"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    woo_product_id = Column(String, nullable=False)

    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(8), nullable=True)
    url = Column(Text, nullable=True)
    image_url = Column(Text, nullable=True)
    product_metadata = Column("metadata", JSONB, default=dict)

    embedding = Column(Vector(settings.VECTOR_DIMENSIONS), nullable=True)
    # Maintained by the products_search_vector_update trigger
    search_vector = Column(TSVECTOR, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

class FaqEntry(Base):
    __tablename__ = "faqs"
    __table_args__ = (
        Index("faqs_search_vector_idx", "search_vector", postgresql_using="gin"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)

    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=False)
    category = Column(String(32), nullable=True, default=FaqCategory.GENERAL.value, index=True)

    embedding = Column(Vector(settings.VECTOR_DIMENSIONS), nullable=True)
    search_vector = Column(TSVECTOR, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
