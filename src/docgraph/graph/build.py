from __future__ import annotations

from collections import defaultdict
from itertools import combinations
from typing import Any

from ..logging import get_logger
from .models import RELATED_TO, GraphRelationship
from .sqlite_graph import SqliteGraphRepository

logger = get_logger(__name__)


def build_concept_relations(
    repo: SqliteGraphRepository,
    *,
    clear: bool = True,
    min_weight: int = 1,
) -> dict[str, Any]:
    """Rebuild weighted RELATED_TO edges from concept co-mentions within chunks.

    Each unordered pair is stored once (smaller id as source) and traversed
    in both directions. ``weight`` is the number of chunks mentioning both.
    """
    if clear:
        repo.clear_relationships(RELATED_TO)

    by_chunk: dict[str, set[str]] = defaultdict(set)
    for chunk_id, concept in repo.mention_pairs():
        by_chunk[chunk_id].add(concept)

    edge_counts: dict[tuple[str, str], int] = defaultdict(int)
    chunks_with_pairs = 0
    for concepts in by_chunk.values():
        # Add co-occurrence edges within the chunk.
        uniq = sorted(concepts)
        if len(uniq) > 1:
            chunks_with_pairs += 1
        for a, b in combinations(uniq, 2):
            edge_counts[(a, b)] += 1

    edges_upserted = 0
    for (a, b), w in sorted(edge_counts.items()):
        if w < min_weight:
            continue
        if repo.create_relationship(GraphRelationship(a, b, RELATED_TO, {"weight": w})):
            edges_upserted += 1

    logger.info(
        "concept_relations_built",
        chunks=len(by_chunk),
        chunks_with_pairs=chunks_with_pairs,
        edges=edges_upserted,
    )
    return {
        "chunks_seen": len(by_chunk),
        "chunks_with_pairs": chunks_with_pairs,
        "edges_upserted": edges_upserted,
    }
