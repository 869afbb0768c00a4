from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

import numpy as np

from ..errors import OperationCancelled
from ..index.embedder import EmbeddingService
from ..logging import get_logger
from ..resilience import raise_if_cancelled
from .models import ConceptNode
from .sqlite_graph import SqliteGraphRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class MergeReport:
    concepts: int
    embedded: int
    groups: int
    # (duplicate_id, survivor_id)
    merged: list[tuple[str, str]] = field(default_factory=list)


def concept_text(concept: ConceptNode) -> str:
    return f"{concept.name}: {concept.description}" if concept.description else concept.name


class ConceptMerger:
    """Collapse near-duplicate concepts by embedding similarity.

    Pairs at or above the threshold are unioned (single-linkage), so A~B and
    B~C merge all three even when A and C are not similar. The survivor of a
    group is the concept with the most MENTIONS, then the smallest id.
    """

    def __init__(
        self,
        graph: SqliteGraphRepository,
        embedder: EmbeddingService,
        *,
        threshold: float = 0.92,
        max_workers: int = 4,
    ):
        self.graph = graph
        self.embedder = embedder
        self.threshold = float(threshold)
        self.max_workers = max(1, int(max_workers))

    def merge(self, threshold: float | None = None, cancel: threading.Event | None = None) -> MergeReport:
        threshold = self.threshold if threshold is None else float(threshold)
        concepts = self.graph.list_concepts()
        if len(concepts) < 2:
            return MergeReport(concepts=len(concepts), embedded=len(concepts), groups=0)

        ids, matrix = self._embed(concepts, cancel)
        groups = similarity_groups(ids, matrix, threshold)

        by_id = {c.id: c for c in concepts}
        mentions = self.graph.mention_counts()
        merged: list[tuple[str, str]] = []
        for group in groups:
            raise_if_cancelled(cancel)
            survivor = min(group, key=lambda cid: (-mentions.get(cid, 0), cid))
            for dup in sorted(group):
                if dup == survivor:
                    continue
                self._fold(by_id[survivor], by_id[dup])
                merged.append((dup, survivor))

        logger.info(
            "concepts_merged",
            concepts=len(concepts),
            groups=len(groups),
            merged=len(merged),
            threshold=threshold,
        )
        return MergeReport(concepts=len(concepts), embedded=len(ids), groups=len(groups), merged=merged)

    def _embed(
        self, concepts: list[ConceptNode], cancel: threading.Event | None
    ) -> tuple[list[str], np.ndarray]:
        vectors: dict[str, np.ndarray] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(self.embedder.generate_embedding, concept_text(c), cancel): c.id
                for c in concepts
            }
            for future in as_completed(futures):
                cid = futures[future]
                try:
                    vectors[cid] = np.asarray(future.result(), dtype=np.float32)
                except OperationCancelled:
                    raise
                except Exception as e:
                    logger.warning("concept_embedding_failed", concept_id=cid, error=str(e))

        ids = sorted(vectors)
        if not ids:
            return [], np.zeros((0, 0), dtype=np.float32)
        matrix = np.stack([vectors[i] for i in ids])
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        return ids, matrix / np.maximum(norms, 1e-12)

    def _fold(self, survivor: ConceptNode, dup: ConceptNode) -> None:
        self.graph.redirect_edges(dup.id, survivor.id)
        current = self.graph.get_concept(survivor.id) or survivor
        aliases = set(current.aliases) | set(dup.aliases) | {dup.name}
        aliases.discard(current.name)
        self.graph.upsert_concept(
            ConceptNode(
                id=current.id,
                name=current.name,
                type=current.type or dup.type,
                description=current.description or dup.description,
                aliases=tuple(sorted(aliases)),
            )
        )
        self.graph.delete_node(dup.id)


def similarity_groups(ids: list[str], matrix: np.ndarray, threshold: float) -> list[list[str]]:
    """Connected components of the ``similarity >= threshold`` graph (size > 1 only)."""
    parent = {cid: cid for cid in ids}

    def find(x: str) -> str:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    def union(x: str, y: str) -> None:
        px, py = find(x), find(y)
        if px != py:
            parent[max(px, py)] = min(px, py)

    if len(ids) > 1:
        sims = matrix @ matrix.T
        rows, cols = np.nonzero(np.triu(sims >= threshold, k=1))
        for i, j in zip(rows.tolist(), cols.tolist()):
            union(ids[i], ids[j])

    members: dict[str, list[str]] = {}
    for cid in ids:
        members.setdefault(find(cid), []).append(cid)
    return [sorted(g) for g in members.values() if len(g) > 1]
