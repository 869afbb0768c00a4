from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np

from ..logging import get_logger

logger = get_logger(__name__)

# Every indexed chunk carries exactly these metadata keys.
METADATA_KEYS = ("document_id", "section_id", "chunk_id", "file_path", "repository", "header_path")


@dataclass(frozen=True)
class VectorSearchResult:
    chunk_id: str
    score: float
    metadata: dict[str, str]


def paths_for_db(db_path: str | os.PathLike[str]) -> tuple[Path, Path, Path]:
    db = Path(db_path)
    return (
        Path(str(db) + ".chunk_ids.json"),
        Path(str(db) + ".embeddings.npy"),
        Path(str(db) + ".vector_meta.json"),
    )


def topk_cosine(embeddings: np.ndarray, query_vec: np.ndarray, k: int = 10) -> list[tuple[int, float]]:
    """Return [(row, cosine_sim)] sorted best-first. Rows must be L2-normalized."""
    if embeddings.size == 0:
        return []

    q = query_vec.astype(np.float32)
    sims = embeddings @ q  # [n]

    k = int(max(1, min(k, sims.shape[0])))
    # argpartition is O(n)
    top_idx = np.argpartition(-sims, k - 1)[:k]
    top_sorted = top_idx[np.argsort(-sims[top_idx], kind="stable")]
    return [(int(i), float(sims[i])) for i in top_sorted]


def l2_normalize(vec: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    v = np.asarray(vec, dtype=np.float32).reshape(-1)
    return v / max(float(np.linalg.norm(v)), eps)


class VectorStore:
    """Chunk embeddings keyed by chunk id, searched by brute-force cosine.

    Persisted next to the graph database (``<db>.embeddings.npy`` plus JSON
    ids and metadata). All access goes through one lock.
    """

    def __init__(self, db_path: str | os.PathLike[str] | None = None):
        self.db_path = db_path
        self._vectors: dict[str, np.ndarray] = {}
        self._metadata: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()

    @classmethod
    def open(cls, db_path: str | os.PathLike[str]) -> "VectorStore":
        store = cls(db_path)
        ids_path, emb_path, meta_path = paths_for_db(db_path)
        if not (ids_path.exists() and emb_path.exists() and meta_path.exists()):
            return store

        chunk_ids = json.loads(ids_path.read_text(encoding="utf-8"))
        embeddings = np.load(emb_path, allow_pickle=False)
        if embeddings.dtype != np.float32:
            embeddings = embeddings.astype(np.float32)
        metadata = json.loads(meta_path.read_text(encoding="utf-8"))
        for i, cid in enumerate(chunk_ids):
            store._vectors[cid] = embeddings[i]
            store._metadata[cid] = dict(metadata.get(cid, {}))
        logger.debug("vector_store_loaded", vectors=len(chunk_ids), path=str(emb_path))
        return store

    def save(self) -> None:
        if self.db_path is None:
            return
        ids_path, emb_path, meta_path = paths_for_db(self.db_path)
        ids_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            chunk_ids = list(self._vectors)
            if chunk_ids:
                embeddings = np.stack([self._vectors[c] for c in chunk_ids]).astype(np.float32)
            else:
                embeddings = np.zeros((0, 0), dtype=np.float32)
            metadata = {c: self._metadata[c] for c in chunk_ids}

        ids_path.write_text(json.dumps(chunk_ids), encoding="utf-8")
        np.save(emb_path, embeddings, allow_pickle=False)
        meta_path.write_text(json.dumps(metadata, ensure_ascii=True), encoding="utf-8")

    def __len__(self) -> int:
        with self._lock:
            return len(self._vectors)

    def index(self, chunk_id: str, vector: np.ndarray, metadata: dict[str, Any]) -> None:
        if set(metadata) != set(METADATA_KEYS):
            raise ValueError(f"Vector metadata must have exactly the keys {METADATA_KEYS}, got {sorted(metadata)}")
        vec = l2_normalize(vector)
        with self._lock:
            dim = self._dimension()
            if dim is not None and vec.shape[0] != dim:
                raise ValueError(f"Embedding dimension {vec.shape[0]} does not match index dimension {dim}")
            self._vectors[chunk_id] = vec
            self._metadata[chunk_id] = {k: str(metadata[k]) for k in METADATA_KEYS}

    def delete(self, chunk_ids: list[str]) -> int:
        removed = 0
        with self._lock:
            for cid in chunk_ids:
                if self._vectors.pop(cid, None) is not None:
                    self._metadata.pop(cid, None)
                    removed += 1
        return removed

    def delete_by_document(self, document_id: str) -> int:
        with self._lock:
            ids = [c for c, m in self._metadata.items() if m.get("document_id") == document_id]
            for cid in ids:
                self._vectors.pop(cid, None)
                self._metadata.pop(cid, None)
        if ids:
            logger.debug("vectors_deleted", document_id=document_id, count=len(ids))
        return len(ids)

    def get_vector(self, chunk_id: str) -> np.ndarray | None:
        with self._lock:
            return self._vectors.get(chunk_id)

    def vectors_for_document(self, document_id: str) -> np.ndarray:
        with self._lock:
            rows = [v for c, v in self._vectors.items() if self._metadata[c].get("document_id") == document_id]
        if not rows:
            return np.zeros((0, 0), dtype=np.float32)
        return np.stack(rows)

    def search(
        self,
        vector: np.ndarray,
        top_k: int = 10,
        filters: dict[str, str] | None = None,
    ) -> list[VectorSearchResult]:
        """Top-k cosine matches; ``filters`` must all equal the entry's metadata."""
        wanted = {k: v for k, v in (filters or {}).items() if v is not None}
        with self._lock:
            ids = [
                c
                for c, m in self._metadata.items()
                if all(m.get(k) == str(v) for k, v in wanted.items())
            ]
            if not ids:
                return []
            matrix = np.stack([self._vectors[c] for c in ids])
            metadata = [dict(self._metadata[c]) for c in ids]

        q = l2_normalize(vector)
        if q.shape[0] != matrix.shape[1]:
            raise ValueError(f"Query dimension {q.shape[0]} does not match index dimension {matrix.shape[1]}")
        return [
            VectorSearchResult(chunk_id=ids[row], score=score, metadata=metadata[row])
            for row, score in topk_cosine(matrix, q, k=top_k)
        ]

    def _dimension(self) -> int | None:
        for v in self._vectors.values():
            return int(v.shape[0])
        return None
