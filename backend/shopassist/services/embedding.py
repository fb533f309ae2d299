import asyncio
import hashlib
import time
from collections import OrderedDict
from typing import List, Optional

from openai import AsyncOpenAI

from shopassist.core.config import Settings, settings as default_settings
from shopassist.core.logging import get_logger

logger = get_logger(__name__)


class _EmbeddingCache:
    def __init__(self, *, max_items: int, ttl_seconds: float):
        self.max_items = max(0, int(max_items))
        self.ttl_seconds = float(ttl_seconds)
        self._data: OrderedDict[str, tuple[float, List[float]]] = OrderedDict()

    def get(self, key: str) -> Optional[List[float]]:
        if not key or self.max_items <= 0:
            return None
        item = self._data.get(key)
        if not item:
            return None
        expires_at, value = item
        if expires_at and expires_at < time.time():
            self._data.pop(key, None)
            return None
        self._data.move_to_end(key)
        return value

    def set(self, key: str, value: List[float]) -> None:
        if not key or self.max_items <= 0:
            return
        expires_at = 0.0
        if self.ttl_seconds > 0:
            expires_at = time.time() + self.ttl_seconds
        self._data[key] = (expires_at, value)
        self._data.move_to_end(key)
        while len(self._data) > self.max_items:
            self._data.popitem(last=False)


class EmbeddingService:
    """Turns text into a fixed-dimension vector via the embeddings API."""

    def __init__(self, client: AsyncOpenAI, config: Optional[Settings] = None):
        self.client = client
        self.settings = config or default_settings
        self.model = self.settings.EMBEDDING_MODEL
        self.dimensions = self.settings.VECTOR_DIMENSIONS
        self._cache = _EmbeddingCache(
            max_items=self.settings.EMBEDDING_CACHE_MAX_ITEMS,
            ttl_seconds=self.settings.EMBEDDING_CACHE_TTL_SECONDS,
        )

    def _cache_key(self, text: str) -> str:
        payload = f"{self.model}:{text}"
        digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
        return f"{self.model}:{digest}"

    async def embed(self, text: str) -> List[float]:
        text = (text or "").replace("\n", " ").strip()
        cache_key = self._cache_key(text)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached
        try:
            response = await asyncio.wait_for(
                self.client.embeddings.create(
                    model=self.model,
                    input=[text],
                    encoding_format="float",
                ),
                timeout=self.settings.EMBEDDING_TIMEOUT_SECONDS,
            )
        except Exception as e:
            logger.error(f"Error generating embedding: {e}")
            raise
        embedding = list(response.data[0].embedding)
        if len(embedding) != self.dimensions:
            raise ValueError(f"Embedding has {len(embedding)} dimensions, expected {self.dimensions}")
        self._cache.set(cache_key, embedding)
        return embedding
