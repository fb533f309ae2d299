from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Literal, Optional, List
import uuid


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: uuid.UUID = Field(..., alias="tenantId", description="Store the widget belongs to")
    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=255)
    message: str = Field(..., min_length=1, max_length=4000)

    @field_validator("message")
    @classmethod
    def validate_message(cls, value: str) -> str:
        clean = value.strip()
        if not clean:
            raise ValueError("message cannot be empty")
        return clean


class ProductCard(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: uuid.UUID
    name: str
    price: Optional[str] = None
    currency: Optional[str] = None
    url: Optional[str] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl")


class ContentFrame(BaseModel):
    type: Literal["content"] = "content"
    content: str


class ProductsFrame(BaseModel):
    type: Literal["products"] = "products"
    products: List[ProductCard]


class DoneFrame(BaseModel):
    type: Literal["done"] = "done"


class ErrorFrame(BaseModel):
    type: Literal["error"] = "error"
    error: str
    message: str = "Sorry, something went wrong. Please try again."

