from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence

from shopassist.core.config import Settings, settings as default_settings
from shopassist.core.logging import get_logger
from shopassist.prompts.system_prompts import intent_classifier_prompt
from shopassist.schemas.intent import Intent, IntentResult
from shopassist.services.llm_service import LLMService
from shopassist.services.retrieval.policy import TOOL_SEARCH_FAQ, TOOL_SEARCH_PRODUCTS

logger = get_logger(__name__)

FALLBACK_CONFIDENCE = 0.3
DEFAULT_CONFIDENCE = 0.5


def _clamp(value: Any, default: float = DEFAULT_CONFIDENCE) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return max(0.0, min(1.0, number))


def fallback_intent(reason: str) -> IntentResult:
    return IntentResult(
        intent=Intent.GENERAL_SUPPORT,
        confidence=FALLBACK_CONFIDENCE,
        reasoning=f"Classification failed ({reason}), defaulting to general support",
        suggested_tools=[TOOL_SEARCH_PRODUCTS, TOOL_SEARCH_FAQ],
    )


class IntentClassifier:
    """Maps a customer message (plus a short history window) to one of nine intents."""

    def __init__(self, llm: LLMService, config: Optional[Settings] = None):
        self.llm = llm
        self.settings = config or default_settings

    def _build_messages(self, message: str, recent_history: Sequence[Dict[str, Any]]) -> List[dict]:
        window = list(recent_history or [])[-self.settings.CLASSIFIER_HISTORY_LIMIT:]
        context_hint = ""
        if window:
            lines = [f"{entry.get('role')}: {entry.get('content')}" for entry in window]
            context_hint = "RECENT CONVERSATION:\n" + "\n".join(lines) + "\n\n"
        user_prompt = f'{context_hint}USER MESSAGE: "{message}"\n\nClassify this message. Return JSON only.'
        return [
            {"role": "system", "content": intent_classifier_prompt()},
            {"role": "user", "content": user_prompt},
        ]

    @staticmethod
    def parse_result(data: Any) -> IntentResult:
        if not isinstance(data, dict):
            raise ValueError("classifier output is not a JSON object")
        tools = data.get("suggestedTools") or data.get("suggested_tools") or []
        if not isinstance(tools, list):
            tools = []
        return IntentResult(
            intent=Intent.parse(data.get("intent")),
            confidence=_clamp(data.get("confidence")),
            reasoning=str(data.get("reasoning") or "No reasoning provided"),
            suggested_tools=[str(tool) for tool in tools if tool],
        )

    async def classify(
        self,
        message: str,
        recent_history: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> IntentResult:
        """Never raises: provider errors, timeouts and malformed output fall back to general support."""
        try:
            data = await asyncio.wait_for(
                self.llm.generate_chat_json(
                    messages=self._build_messages(message, recent_history or []),
                    model=self.settings.INTENT_CLASSIFIER_MODEL,
                    temperature=self.settings.INTENT_CLASSIFIER_TEMPERATURE,
                    max_tokens=self.settings.INTENT_CLASSIFIER_MAX_TOKENS,
                ),
                timeout=self.settings.CLASSIFIER_TIMEOUT_SECONDS,
            )
            result = self.parse_result(data)
        except asyncio.TimeoutError:
            logger.warning("Intent classification timed out")
            return fallback_intent("timeout")
        except Exception as e:
            logger.error(f"Intent classification failed: {e}")
            return fallback_intent(type(e).__name__)

        logger.info(f"[INTENT] intent={result.intent.value} confidence={result.confidence:.2f}")
        return result
