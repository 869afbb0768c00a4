"""Test doubles for the embedding service and the chat client."""

from __future__ import annotations

import re
import threading

import numpy as np

from docgraph.chat.llm import ModelTier
from docgraph.errors import TransientError
from docgraph.graph.sqlite_graph import SqliteGraphRepository
from docgraph.index.vector_store import VectorStore

_WORD_RE = re.compile(r"[a-z0-9]+")


class FakeEmbedder:
    """Bag-of-words vectors over a vocabulary that grows as words are seen.

    Texts sharing no words are orthogonal, so similarity is predictable.
    """

    def __init__(self, dim: int = 512, *, fail: bool = False, fail_on: str | None = None):
        self.dim = dim
        self.fail = fail
        self.fail_on = fail_on
        self.calls: list[str] = []
        self._vocab: dict[str, int] = {}
        self._lock = threading.Lock()

    def generate_embedding(self, text, cancel=None):
        with self._lock:
            self.calls.append(text)
            if self.fail or (self.fail_on is not None and self.fail_on in text):
                raise TransientError("embedding backend down")
            vec = np.zeros(self.dim, dtype=np.float32)
            for word in _WORD_RE.findall(text.lower()):
                idx = self._vocab.setdefault(word, len(self._vocab))
                vec[idx] += 1.0
        norm = float(np.linalg.norm(vec))
        return vec / norm if norm else vec


class FakeLLM:
    """Replays scripted replies in order and records each call's prompt and tier."""

    default_reply = "Answer from context.\nCONFIDENCE: high"

    def __init__(self, replies: list[str] | None = None, *, error: Exception | None = None):
        self.replies = list(replies or [])
        self.error = error
        self.calls: list[tuple[str, ModelTier, str]] = []

    @property
    def tiers(self) -> list[ModelTier]:
        return [tier for _, tier, _ in self.calls]

    def generate(self, system_prompt, messages, tier=ModelTier.DEFAULT, cancel=None):
        self.calls.append((system_prompt, tier, messages[-1].content if messages else ""))
        if self.error is not None:
            raise self.error
        if self.replies:
            return self.replies.pop(0)
        return self.default_reply


class CallLog:
    """Shared ordered record of calls made to the recording stores."""

    def __init__(self):
        self.entries: list[str] = []


class RecordingVectorStore(VectorStore):
    """Records index calls; chunk ids in ``fail_index`` raise instead of indexing."""

    def __init__(self, log: CallLog, *, fail_index: tuple[str, ...] = ()):
        super().__init__()
        self.log = log
        self.fail_index = set(fail_index)
        self.indexed: list[str] = []

    def index(self, chunk_id, vector, metadata):
        if chunk_id in self.fail_index:
            raise ValueError(f"cannot index {chunk_id}")
        self.indexed.append(chunk_id)
        super().index(chunk_id, vector, metadata)

    def delete_by_document(self, document_id):
        self.log.entries.append("vectors.delete_by_document")
        return super().delete_by_document(document_id)


class RecordingGraph(SqliteGraphRepository):
    def __init__(self, conn, log: CallLog):
        super().__init__(conn)
        self.log = log

    def delete_document_cascade(self, document_id):
        self.log.entries.append("graph.delete_document_cascade")
        return super().delete_document_cascade(document_id)

    def prune_document(self, document_id, keep_ids):
        self.log.entries.append("graph.prune_document")
        return super().prune_document(document_id, keep_ids)


class DictEmbedder:
    """Returns fixed vectors per text; unknown texts fail."""

    def __init__(self, vectors: dict[str, list[float]]):
        self.vectors = {k: np.asarray(v, dtype=np.float32) for k, v in vectors.items()}

    def generate_embedding(self, text, cancel=None):
        try:
            return self.vectors[text]
        except KeyError:
            raise TransientError(f"no vector for {text!r}") from None
