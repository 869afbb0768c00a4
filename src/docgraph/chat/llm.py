from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from ..errors import DocGraphError, TransientError
from ..graph.extract import ENTITY_SYSTEM_PROMPT, ExtractedEntity, parse_entities_json
from ..logging import get_logger
from ..resilience import CircuitBreaker, RetryPolicy, call_with_resilience

logger = get_logger(__name__)

# Ollama answers these statuses when overloaded or restarting.
_RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


class LLMError(DocGraphError):
    pass


class ModelTier(str, Enum):
    FAST = "fast"  # routing and extraction
    DEFAULT = "default"  # synthesis
    ADVANCED = "advanced"  # low-confidence or budget-exhausted synthesis


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str


def post_ollama(base_url: str, path: str, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
    """POST to Ollama and return the decoded body.

    Timeouts, connection errors and 408/429/5xx become ``TransientError`` so
    callers can retry; any other failure is an ``LLMError``.
    """
    url = f"{base_url.rstrip('/')}{path}"
    try:
        with httpx.Client(timeout=timeout_s) as client:
            r = client.post(url, json=payload)
    except (httpx.TimeoutException, httpx.TransportError) as e:
        raise TransientError(f"Failed to reach Ollama at {base_url}. Is it running? ({e})") from e

    if r.status_code in _RETRYABLE_STATUS:
        raise TransientError(f"Ollama error {r.status_code}: {r.text[:200]}")
    if r.status_code != 200:
        raise LLMError(f"Ollama error {r.status_code}: {r.text[:500]}")

    try:
        data = r.json()
    except ValueError as e:
        raise LLMError(f"Ollama returned invalid JSON: {r.text[:200]}") from e
    if not isinstance(data, dict):
        raise LLMError(f"Unexpected Ollama response: {data}")
    return data


class OllamaChatClient:
    """Tiered chat client. Each tier maps to one Ollama model."""

    def __init__(
        self,
        *,
        base_url: str,
        models: dict[ModelTier, str],
        timeout_s: float = 120.0,
        options: dict[str, Any] | None = None,
        breaker: CircuitBreaker | None = None,
        retry: RetryPolicy | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.models = dict(models)
        self.timeout_s = float(timeout_s)
        self.options = dict(options or {})
        self.breaker = breaker or CircuitBreaker("llm")
        self.retry = retry or RetryPolicy()

    def model_for(self, tier: ModelTier) -> str:
        try:
            return self.models[tier]
        except KeyError:
            raise LLMError(f"No model configured for tier {tier.value!r}") from None

    def generate(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        tier: ModelTier = ModelTier.DEFAULT,
        cancel: threading.Event | None = None,
    ) -> str:
        payload: dict[str, Any] = {
            "model": self.model_for(tier),
            "stream": False,
            "messages": [{"role": "system", "content": system_prompt}]
            + [{"role": m.role, "content": m.content} for m in messages],
        }
        if self.options:
            payload["options"] = self.options

        data = call_with_resilience(
            lambda: post_ollama(self.base_url, "/api/chat", payload, timeout_s=self.timeout_s),
            breaker=self.breaker,
            retry=self.retry,
            cancel=cancel,
        )
        msg = data.get("message") or {}
        content = msg.get("content")
        if not isinstance(content, str):
            raise LLMError(f"Unexpected Ollama response: {data}")
        logger.debug("llm_generated", tier=tier.value, chars=len(content))
        return content

    def extract_entities(self, text: str, cancel: threading.Event | None = None) -> list[ExtractedEntity]:
        response = self.generate(
            ENTITY_SYSTEM_PROMPT,
            [ChatMessage(role="user", content=text)],
            ModelTier.FAST,
            cancel=cancel,
        )
        return parse_entities_json(response)
