from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from ..index.embedder import EmbeddingService
from ..index.vector_store import VectorStore
from ..logging import get_logger
from ..resilience import raise_if_cancelled
from .models import LINKS_TO, DocumentNode
from .sqlite_graph import SqliteGraphRepository

logger = get_logger(__name__)

DIRECT_SCORE = 0.9
BIDIRECTIONAL_SCORE = 1.0
INCOMING_SCORE = 0.85
TRANSITIVE_DECAY = 0.7
SEMANTIC_WEIGHT = 0.8
SEMANTIC_MIN_SIMILARITY = 0.5

MAX_DEPTH = 3
MAX_LIMIT = 50


class LinkType(str, Enum):
    ALL = "all"
    OUTGOING = "outgoing"
    INCOMING = "incoming"
    BIDIRECTIONAL = "bidirectional"


class RelationshipType(str, Enum):
    DIRECT_LINK = "direct_link"
    INCOMING_LINK = "incoming_link"
    BIDIRECTIONAL = "bidirectional"
    TRANSITIVE_LINK = "transitive_link"
    SEMANTIC = "semantic"


@dataclass(frozen=True)
class RelatedRequest:
    document_id: str | None = None
    query: str | None = None
    depth: int = 2
    limit: int = 10
    link_types: LinkType = LinkType.ALL
    include_semantic: bool = False
    doc_types: tuple[str, ...] | None = None


@dataclass(frozen=True)
class RelatedDocument:
    document_id: str
    file_path: str
    title: str
    doc_type: str | None
    relationship: RelationshipType
    distance: int  # 0 for semantic matches
    relevance_score: float
    via_document: str | None = None


@dataclass(frozen=True)
class LinkSummary:
    total_related: int = 0
    direct_links: int = 0
    incoming_links: int = 0
    transitive_links: int = 0
    semantic_matches: int = 0


@dataclass(frozen=True)
class RelatedDocumentsResult:
    source_document: DocumentNode | None
    related_documents: list[RelatedDocument] = field(default_factory=list)
    link_summary: LinkSummary = field(default_factory=LinkSummary)


class RelatedDocumentResolver:
    """Find documents related to a source through links and embeddings.

    Relationship kinds are visited in priority order (direct, incoming,
    transitive, semantic) and a shared visited set keeps a document at its
    first, highest-priority classification.
    """

    def __init__(
        self,
        graph: SqliteGraphRepository,
        vectors: VectorStore,
        embedder: EmbeddingService | None = None,
    ):
        self.graph = graph
        self.vectors = vectors
        self.embedder = embedder

    def find_related(
        self, request: RelatedRequest, cancel: threading.Event | None = None
    ) -> RelatedDocumentsResult:
        depth = min(max(int(request.depth), 1), MAX_DEPTH)
        limit = min(max(int(request.limit), 1), MAX_LIMIT)
        kinds = request.link_types

        source = self._source_document(request, cancel)
        if source is None:
            logger.info("related_source_not_found", document_id=request.document_id, query=request.query)
            return RelatedDocumentsResult(source_document=None)

        visited = {source.id}
        related: list[RelatedDocument] = []
        direct = incoming = transitive = semantic = 0
        frontier: list[str] = []

        if kinds in {LinkType.ALL, LinkType.OUTGOING, LinkType.BIDIRECTIONAL}:
            for _, target in self.graph.get_linked_documents(source.id, (LINKS_TO,)):
                if target.id in visited:
                    continue
                visited.add(target.id)
                mutual = source.id in target.links
                if kinds == LinkType.BIDIRECTIONAL and not mutual:
                    continue
                related.append(
                    _related(
                        target,
                        RelationshipType.BIDIRECTIONAL if mutual else RelationshipType.DIRECT_LINK,
                        distance=1,
                        score=BIDIRECTIONAL_SCORE if mutual else DIRECT_SCORE,
                    )
                )
                # Mutual links are still outgoing links: transitive hops expand
                # from every direct target, not only the one-way ones.
                frontier.append(target.id)
                direct += 1

        if kinds in {LinkType.ALL, LinkType.INCOMING}:
            for doc in self.graph.documents_declaring_link(source.id):
                if doc.id in visited:
                    continue
                visited.add(doc.id)
                related.append(_related(doc, RelationshipType.INCOMING_LINK, distance=1, score=INCOMING_SCORE))
                incoming += 1

        if depth > 1 and kinds in {LinkType.ALL, LinkType.OUTGOING}:
            for hop in range(2, depth + 1):
                raise_if_cancelled(cancel)
                next_frontier: list[str] = []
                for via in frontier:
                    for _, target in self.graph.get_linked_documents(via, (LINKS_TO,)):
                        if target.id in visited:
                            continue
                        visited.add(target.id)
                        next_frontier.append(target.id)
                        related.append(
                            _related(
                                target,
                                RelationshipType.TRANSITIVE_LINK,
                                distance=hop,
                                score=TRANSITIVE_DECAY ** (hop - 1),
                                via=via,
                            )
                        )
                        transitive += 1
                frontier = next_frontier

        if request.include_semantic:
            for doc, similarity in self._semantic_matches(source, limit, cancel):
                if doc.id in visited:
                    continue
                visited.add(doc.id)
                related.append(
                    _related(doc, RelationshipType.SEMANTIC, distance=0, score=similarity * SEMANTIC_WEIGHT)
                )
                semantic += 1

        if request.doc_types:
            allowed = {t.lower() for t in request.doc_types}
            related = [r for r in related if (r.doc_type or "").lower() in allowed]

        related.sort(key=lambda r: (-r.relevance_score, r.document_id))
        related = related[:limit]

        logger.info(
            "related_completed",
            source=source.id,
            count=len(related),
            direct=direct,
            incoming=incoming,
            transitive=transitive,
            semantic=semantic,
        )
        return RelatedDocumentsResult(
            source_document=source,
            related_documents=related,
            link_summary=LinkSummary(
                total_related=len(related),
                direct_links=direct,
                incoming_links=incoming,
                transitive_links=transitive,
                semantic_matches=semantic,
            ),
        )

    def _source_document(self, request: RelatedRequest, cancel: threading.Event | None) -> DocumentNode | None:
        if request.document_id:
            return self.graph.get_document(request.document_id)
        if not request.query or not request.query.strip() or self.embedder is None:
            return None
        vec = self.embedder.generate_embedding(request.query, cancel)
        hits = self.vectors.search(vec, top_k=1)
        if not hits:
            return None
        return self.graph.get_document(hits[0].metadata["document_id"])

    def _source_embedding(self, source: DocumentNode, cancel: threading.Event | None) -> np.ndarray | None:
        stored = self.vectors.vectors_for_document(source.id)
        if stored.size:
            return stored.mean(axis=0)
        if self.embedder is None:
            return None
        text = "\n\n".join(c.content for c in self.graph.get_chunks_by_document(source.id)) or source.title
        return self.embedder.generate_embedding(text, cancel)

    def _semantic_matches(
        self, source: DocumentNode, limit: int, cancel: threading.Event | None
    ) -> list[tuple[DocumentNode, float]]:
        vec = self._source_embedding(source, cancel)
        if vec is None:
            return []

        # Chunk hits collapse to the best score per document.
        best: dict[str, float] = {}
        for hit in self.vectors.search(vec, top_k=limit * 5):
            doc_id = hit.metadata["document_id"]
            if doc_id == source.id or hit.score < SEMANTIC_MIN_SIMILARITY:
                continue
            best[doc_id] = max(best.get(doc_id, 0.0), hit.score)

        out: list[tuple[DocumentNode, float]] = []
        for doc_id, score in sorted(best.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]:
            doc = self.graph.get_document(doc_id)
            if doc is not None:
                out.append((doc, score))
        return out


def _related(
    doc: DocumentNode,
    kind: RelationshipType,
    *,
    distance: int,
    score: float,
    via: str | None = None,
) -> RelatedDocument:
    return RelatedDocument(
        document_id=doc.id,
        file_path=doc.file_path,
        title=doc.title,
        doc_type=doc.doc_type,
        relationship=kind,
        distance=distance,
        relevance_score=float(score),
        via_document=via,
    )
