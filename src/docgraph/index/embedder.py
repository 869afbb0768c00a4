from __future__ import annotations

import threading
from typing import Protocol

import numpy as np

from ..chat.llm import LLMError, post_ollama
from ..resilience import CircuitBreaker, RetryPolicy, call_with_resilience, raise_if_cancelled


class EmbeddingService(Protocol):
    def generate_embedding(self, text: str, cancel: threading.Event | None = None) -> np.ndarray: ...


class FastEmbedEmbedder:
    """Local embeddings via fastembed. Vectors are float32 and L2-normalized."""

    def __init__(self, model_name: str, *, breaker: CircuitBreaker | None = None, retry: RetryPolicy | None = None):
        # Import here so the CLI still runs without the optional embedding deps.
        from fastembed import TextEmbedding  # type: ignore

        self.model_name = model_name
        self._model = TextEmbedding(model_name=model_name)
        self.breaker = breaker or CircuitBreaker("embedding")
        self.retry = retry or RetryPolicy()

    def embed_texts(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, 0), dtype=np.float32)
        vectors = np.array(list(self._model.embed(texts)), dtype=np.float32)
        return _l2_normalize(vectors)

    def generate_embedding(self, text: str, cancel: threading.Event | None = None) -> np.ndarray:
        raise_if_cancelled(cancel)
        return call_with_resilience(
            lambda: self.embed_texts([text])[0],
            breaker=self.breaker,
            retry=self.retry,
            cancel=cancel,
        )


class OllamaEmbedder:
    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        timeout_s: float = 60.0,
        breaker: CircuitBreaker | None = None,
        retry: RetryPolicy | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_s = float(timeout_s)
        self.breaker = breaker or CircuitBreaker("embedding")
        self.retry = retry or RetryPolicy()

    def _embed(self, text: str) -> np.ndarray:
        data = post_ollama(
            self.base_url,
            "/api/embed",
            {"model": self.model, "input": [text]},
            timeout_s=self.timeout_s,
        )
        vectors = data.get("embeddings")
        if not isinstance(vectors, list) or not vectors:
            raise LLMError(f"Unexpected Ollama embedding response: {str(data)[:200]}")
        vec = np.array(vectors[0], dtype=np.float32).reshape(1, -1)
        return _l2_normalize(vec)[0]

    def generate_embedding(self, text: str, cancel: threading.Event | None = None) -> np.ndarray:
        return call_with_resilience(
            lambda: self._embed(text),
            breaker=self.breaker,
            retry=self.retry,
            cancel=cancel,
        )


def _l2_normalize(x: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    norm = np.linalg.norm(x, axis=1, keepdims=True)
    return x / np.maximum(norm, eps)
