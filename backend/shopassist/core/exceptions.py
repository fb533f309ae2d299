from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class AdmissionError(HTTPException):
    """Raised before any LLM call when a turn must not start. Never retried automatically."""


class QuotaExceededError(AdmissionError):
    def __init__(self, usage: Dict[str, Any], upgrade_url: Optional[str] = None):
        detail: Dict[str, Any] = {
            "error": "limit_exceeded",
            "message": "This store has reached its monthly chat limit.",
            "usage": usage,
        }
        if upgrade_url:
            detail["upgradeUrl"] = upgrade_url
        super().__init__(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=detail)
        self.usage = usage


class StoreNotFoundError(AdmissionError):
    def __init__(self, detail: str = "Store not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail={"error": "store_not_found", "message": detail})


class ChatbotDisabledError(AdmissionError):
    def __init__(self, detail: str = "The assistant is disabled for this store"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail={"error": "chatbot_disabled", "message": detail})


class RetrievalError(Exception):
    """Embedding or store failure during a knowledge search."""


class ToolArgumentError(ValueError):
    """Tool arguments produced by the model are not valid JSON or fail validation."""


class ProviderStreamError(Exception):
    """The LLM provider failed or timed out mid-turn."""


class PersistenceError(Exception):
    """The store rejected a write needed to close the turn."""
