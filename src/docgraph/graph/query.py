from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..ingest.links import split_document_id
from ..logging import get_logger
from .extract import extract_query_terms, normalize_concept_name, scan_entities
from .models import ChunkNode
from .sqlite_graph import SqliteGraphRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class ResolvedConcept:
    concept_id: str
    name: str
    repository: str
    repositories: list[str] = field(default_factory=list)
    related_concept_ids: list[str] = field(default_factory=list)
    related_concept_names: list[str] = field(default_factory=list)


def derive_repository(chunks: list[ChunkNode]) -> str:
    if not chunks:
        return ""
    return split_document_id(chunks[0].document_id)[0]


def resolve_concept(repo: SqliteGraphRepository, name: str) -> ResolvedConcept | None:
    """Look a concept up by name across repositories. None if unknown."""
    term = normalize_concept_name(name)
    if not term:
        return None
    matches = repo.find_concepts_by_name(term, limit=1)
    if not matches:
        logger.debug("concept_not_found", name=name)
        return None

    concept = matches[0]
    related = repo.get_related_concepts(concept.id, hops=1)
    chunks = repo.get_chunks_by_concept(concept.id)
    repositories = sorted({split_document_id(c.document_id)[0] for c in chunks})

    resolved = ResolvedConcept(
        concept_id=concept.id,
        name=concept.name,
        repository=derive_repository(chunks),
        repositories=repositories,
        related_concept_ids=[c.id for c in related],
        related_concept_names=[c.name for c in related],
    )
    logger.debug("concept_resolved", name=name, repository=resolved.repository, related=len(related))
    return resolved


def query_concepts(
    repo: SqliteGraphRepository,
    query: str,
    *,
    concept_limit: int = 5,
    neighbor_limit: int = 8,
    chunk_limit: int = 5,
) -> dict[str, Any]:
    """Explore the concept graph around the terms of a free-text query."""
    terms = [normalize_concept_name(n) for n in scan_entities(query, max_per_chunk=concept_limit)]
    if not terms:
        terms = extract_query_terms(query, max_terms=concept_limit)

    # Dedup by concept id, keep the best-mentioned ones.
    counts = repo.mention_counts()
    by_id = {}
    for t in terms:
        if not t:
            continue
        for c in repo.find_concepts_by_name(t, limit=concept_limit):
            by_id[c.id] = c

    top = sorted(by_id.values(), key=lambda c: (-counts.get(c.id, 0), c.id))[:concept_limit]
    out = []
    for concept in top:
        neighbors = repo.get_related_concepts(concept.id, hops=1)[:neighbor_limit]
        chunks = [
            {
                "chunk_id": ch.id,
                "header_path": ch.header_path,
                "preview": " ".join(ch.content.split())[:220],
            }
            for ch in repo.get_chunks_by_concept(concept.id, limit=chunk_limit)
        ]
        out.append(
            {
                "concept": {"id": concept.id, "name": concept.name, "type": concept.type, "mentions": counts.get(concept.id, 0)},
                "neighbors": [{"id": n.id, "name": n.name} for n in neighbors],
                "chunks": chunks,
            }
        )

    return {"terms": terms, "concepts": out}
