"""
System prompt assembly for the storefront assistant.

Layers, in order:
1. Tenant custom instructions or the default persona (all tenant text sanitized)
2. Technical context the tenant cannot edit (store, counts, tool inventory)
3. Intent-specific directive, when an intent was classified
4. Language mirroring rules
5. Accuracy (anti-hallucination) rules
6. Security boundary block, always last and never sanitized or overridden
"""

from __future__ import annotations

import re
from typing import Optional

from shopassist.core.config import Settings, settings as default_settings
from shopassist.models.tenant import Store
from shopassist.prompts.system_prompts import (
    ANTI_HALLUCINATION_RULES,
    SECURITY_BOUNDARY,
    default_persona,
    intent_directive,
    language_rules,
    technical_context,
)
from shopassist.schemas.intent import IntentResult

PLACEHOLDER = "[removed]"
TENANT_FIELD_MAX_CHARS = 120
TENANT_DESCRIPTION_MAX_CHARS = 1000

_INJECTION_PATTERNS = (
    # [SYSTEM], [/INST], [ admin ] ...
    re.compile(r"\[\s*/?\s*(?:system|inst|assistant|user|admin|developer|sys)\s*\]", re.IGNORECASE),
    # <|im_start|>, <|endoftext|>
    re.compile(r"<\|[^|<>]{0,40}\|>"),
    # <<SYS>>, <</SYS>>
    re.compile(r"<<\s*/?\s*sys\s*>>", re.IGNORECASE),
    # "system:" / "assistant:" role prefixes at the start of a line
    re.compile(r"^[ \t]*(?:system|assistant|developer)[ \t]*:", re.IGNORECASE | re.MULTILINE),
    # raw control characters (tab and newline are allowed)
    re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]+"),
)


def sanitize_custom_instructions(text: str, max_chars: Optional[int] = None) -> str:
    clean = text or ""
    for pattern in _INJECTION_PATTERNS:
        clean = pattern.sub(PLACEHOLDER, clean)
    clean = clean.strip()
    if max_chars and len(clean) > max_chars:
        clean = clean[:max_chars].rstrip()
    return clean


def sanitize_tenant_field(value: Optional[str], max_chars: int = TENANT_FIELD_MAX_CHARS) -> Optional[str]:
    """Single-line tenant setting (store name, persona fields) made safe for the prompt."""
    if not value:
        return None
    clean = " ".join(sanitize_custom_instructions(str(value)).split())
    return clean[:max_chars].rstrip() or None


class PromptBuilder:
    def __init__(self, config: Optional[Settings] = None):
        self.settings = config or default_settings

    def build(
        self,
        store: Store,
        product_count: int,
        faq_count: int,
        intent_result: Optional[IntentResult] = None,
    ) -> str:
        persona = dict(store.bot_persona or {})
        store_name = sanitize_tenant_field(store.name) or "this store"
        store_domain = sanitize_tenant_field(store.woo_domain)
        sections = []

        custom = sanitize_custom_instructions(
            store.custom_instructions,
            max_chars=self.settings.CUSTOM_INSTRUCTIONS_MAX_CHARS,
        )
        if custom:
            sections.append(f"CUSTOM INSTRUCTIONS:\n{custom}")
        else:
            sections.append(
                default_persona(
                    store_name,
                    bot_name=sanitize_tenant_field(persona.get("name")),
                    bot_role=sanitize_tenant_field(persona.get("role")),
                    description=sanitize_tenant_field(
                        persona.get("description"), max_chars=TENANT_DESCRIPTION_MAX_CHARS
                    ),
                )
            )
        sections.append(technical_context(store_name, store_domain, product_count, faq_count))

        if intent_result is not None:
            sections.append(intent_directive(intent_result.intent))

        sections.append(language_rules(sanitize_tenant_field(persona.get("language"))))
        sections.append(ANTI_HALLUCINATION_RULES)
        sections.append(SECURITY_BOUNDARY)
        return "\n\n".join(sections)
