from __future__ import annotations

import hashlib
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from typing import Any, Callable

from ..errors import InvalidMetadataError, OperationCancelled
from ..graph.extract import EntityExtractor, concept_id, normalize_concept_name
from ..graph.models import (
    DECLARED_DOCUMENT_EDGES,
    HAS_SUBSECTION,
    LINKS_TO,
    MENTIONS,
    ChunkNode,
    CodeExampleNode,
    ConceptNode,
    DocumentNode,
    GraphRelationship,
    SectionNode,
)
from ..graph.sqlite_graph import SqliteGraphRepository
from ..index.embedder import EmbeddingService
from ..index.vector_store import VectorStore
from ..logging import get_logger
from ..resilience import raise_if_cancelled
from .chunker import Chunk, chunk_markdown
from .links import is_external, make_document_id, resolve_relative_link, split_document_id
from .markdown import CodeBlock, get_string_list, parse_markdown

logger = get_logger(__name__)

REQUIRED_FIELDS = ("document_id", "repository", "file_path", "title")


@dataclass(frozen=True)
class IngestionMetadata:
    document_id: str
    repository: str
    file_path: str
    title: str
    doc_type: str | None = None
    promotion_level: str = "draft"
    commit_hash: str | None = None

    def validate(self) -> None:
        missing = [f for f in REQUIRED_FIELDS if not str(getattr(self, f) or "").strip()]
        if missing:
            raise InvalidMetadataError(f"Missing required ingestion metadata: {', '.join(missing)}")


@dataclass(frozen=True)
class IngestionResult:
    document_id: str
    sections: int
    chunks: int
    vectors_indexed: int
    concepts_linked: int
    links_created: int
    code_examples: int = 0
    embedding_failures: int = 0
    extraction_failures: int = 0
    links_skipped: int = 0

    @property
    def ok(self) -> bool:
        return self.embedding_failures == 0 and self.extraction_failures == 0


class DocumentIngestionService:
    """Turns one markdown document into graph nodes, edges and chunk vectors.

    Per-chunk embedding and extraction run on a bounded thread pool; all
    writes happen on the calling thread as results arrive. A failed
    embedding or extraction only loses that chunk's vector or concepts.
    """

    def __init__(
        self,
        graph: SqliteGraphRepository,
        vectors: VectorStore,
        embedder: EmbeddingService,
        extractor: EntityExtractor | None = None,
        *,
        chunk_threshold_lines: int = 500,
        concurrency: int = 4,
    ):
        self.graph = graph
        self.vectors = vectors
        self.embedder = embedder
        self.extractor = extractor
        self.chunk_threshold_lines = int(chunk_threshold_lines)
        self.concurrency = max(1, int(concurrency))

    def ingest_document(
        self,
        content: str,
        metadata: IngestionMetadata,
        cancel: threading.Event | None = None,
    ) -> IngestionResult:
        metadata.validate()
        raise_if_cancelled(cancel)

        doc_id = metadata.document_id
        log = logger.bind(document_id=doc_id)

        parsed = parse_markdown(content)
        plan = chunk_markdown(parsed.body, parsed.outline, threshold_lines=self.chunk_threshold_lines)

        link_targets = self._resolve_links(metadata, [link.url for link in parsed.links])
        declared = {
            rel_type: self._resolve_links(metadata, get_string_list(parsed.frontmatter, key), allow_ids=True)
            for key, rel_type in DECLARED_DOCUMENT_EDGES.items()
        }

        section_ids = {s.key: f"{doc_id}:{s.key}" for s in plan.sections}
        chunk_nodes = [self._chunk_node(doc_id, section_ids[c.section_key], c) for c in plan.chunks]
        code_examples = self._code_examples(plan.chunks, chunk_nodes, parsed.code_blocks)

        if self.graph.get_document(doc_id) is not None:
            self._clear_previous(doc_id, section_ids.values(), chunk_nodes, code_examples)

        # The content hash is only stored once every chunk made it in, so an
        # unchanged file with missing vectors is picked up again by the runner.
        document = DocumentNode(
            id=doc_id,
            file_path=metadata.file_path,
            title=metadata.title,
            repository=metadata.repository,
            doc_type=metadata.doc_type,
            promotion_level=metadata.promotion_level or "draft",
            commit_hash=metadata.commit_hash,
            links=tuple(link_targets),
        )
        self.graph.upsert_document(document)
        for s in plan.sections:
            self.graph.upsert_section(
                SectionNode(id=section_ids[s.key], document_id=doc_id, title=s.title, order=s.order, level=s.level)
            )
        for node in chunk_nodes:
            self.graph.upsert_chunk(node)
        for parent_id, child_id in _subsection_pairs(plan.chunks, chunk_nodes):
            self.graph.create_relationship(GraphRelationship(parent_id, child_id, HAS_SUBSECTION))
        for example in code_examples:
            self.graph.upsert_code_example(example, document_id=doc_id)

        vectors_indexed, concepts, embed_failures, extract_failures = self._embed_and_extract(
            metadata, chunk_nodes, cancel, log
        )

        raise_if_cancelled(cancel)
        links_created, links_skipped = self._link_document(doc_id, link_targets, declared)

        result = IngestionResult(
            document_id=doc_id,
            sections=len(plan.sections),
            chunks=len(chunk_nodes),
            vectors_indexed=vectors_indexed,
            concepts_linked=len(concepts),
            links_created=links_created,
            code_examples=len(code_examples),
            embedding_failures=embed_failures,
            extraction_failures=extract_failures,
            links_skipped=links_skipped,
        )
        if result.ok:
            self.graph.upsert_document(
                replace(document, content_hash=hashlib.sha256(content.encode("utf-8")).hexdigest())
            )
        log.info(
            "document_ingested",
            sections=result.sections,
            chunks=result.chunks,
            vectors=result.vectors_indexed,
            concepts=result.concepts_linked,
            links=result.links_created,
            embedding_failures=embed_failures,
            extraction_failures=extract_failures,
        )
        return result

    def delete_document(self, document_id: str, *, persist: Callable[[], None] | None = None) -> bool:
        """Remove vectors first, then the graph cascade. Unknown ids return False.

        ``persist`` runs between the two steps, e.g. to flush the vector store
        to disk before the graph commit.
        """
        removed = self.vectors.delete_by_document(document_id)
        if persist is not None:
            persist()
        existed = self.graph.delete_document_cascade(document_id)
        logger.info("document_deleted", document_id=document_id, vectors=removed, existed=existed)
        return existed

    # -- steps -----------------------------------------------------------

    def _resolve_links(self, metadata: IngestionMetadata, urls: list[str], *, allow_ids: bool = False) -> list[str]:
        out: list[str] = []
        for url in urls:
            target = _resolve_target(metadata, url, allow_ids=allow_ids)
            if target is None:
                logger.debug("link_skipped", document_id=metadata.document_id, url=url)
                continue
            if target != metadata.document_id and target not in out:
                out.append(target)
        return out

    @staticmethod
    def _chunk_node(doc_id: str, section_id: str, chunk: Chunk) -> ChunkNode:
        return ChunkNode(
            id=f"{doc_id}:chunk-{chunk.order}",
            section_id=section_id,
            document_id=doc_id,
            order=chunk.order,
            header_path=chunk.header_path,
            content=chunk.content,
            token_count=chunk.token_count,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
        )

    @staticmethod
    def _code_examples(
        chunks: list[Chunk], nodes: list[ChunkNode], blocks: list[CodeBlock]
    ) -> list[CodeExampleNode]:
        out: list[CodeExampleNode] = []
        for chunk, node in zip(chunks, nodes):
            inside = [b for b in blocks if chunk.start_line <= b.start_line <= chunk.end_line]
            for n, block in enumerate(inside):
                out.append(
                    CodeExampleNode(
                        id=f"{node.id}:code-{n}",
                        chunk_id=node.id,
                        language=block.language,
                        code=block.code,
                    )
                )
        return out

    def _clear_previous(
        self,
        doc_id: str,
        section_ids: Any,
        chunk_nodes: list[ChunkNode],
        code_examples: list[CodeExampleNode],
    ) -> None:
        keep = {*section_ids, *(c.id for c in chunk_nodes), *(e.id for e in code_examples)}
        self.vectors.delete_by_document(doc_id)
        removed = self.graph.prune_document(doc_id, keep)
        self.graph.clear_outgoing([doc_id], [LINKS_TO, *DECLARED_DOCUMENT_EDGES.values()])
        self.graph.clear_outgoing([c.id for c in chunk_nodes], [MENTIONS])
        self.graph.clear_outgoing(section_ids, [HAS_SUBSECTION])
        logger.debug("document_reingest_cleared", document_id=doc_id, stale_chunks=len(removed))

    def _embed_and_extract(
        self,
        metadata: IngestionMetadata,
        chunk_nodes: list[ChunkNode],
        cancel: threading.Event | None,
        log: Any,
    ) -> tuple[int, set[str], int, int]:
        vectors_indexed = 0
        concepts: set[str] = set()
        embed_failures = 0
        extract_failures = 0
        if not chunk_nodes:
            return vectors_indexed, concepts, embed_failures, extract_failures

        pool = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="ingest")
        pending: dict[Future[Any], tuple[str, ChunkNode]] = {}
        try:
            for node in chunk_nodes:
                pending[pool.submit(self.embedder.generate_embedding, node.content, cancel)] = ("embed", node)
                if self.extractor is not None:
                    pending[pool.submit(self.extractor.extract_entities, node.content, cancel)] = ("extract", node)

            while pending:
                done, _ = wait(list(pending), timeout=0.25, return_when=FIRST_COMPLETED)
                raise_if_cancelled(cancel)
                for fut in done:
                    kind, node = pending.pop(fut)
                    try:
                        value = fut.result()
                    except OperationCancelled:
                        raise
                    except Exception as e:
                        if kind == "embed":
                            embed_failures += 1
                            log.warning("embedding_failed", chunk_id=node.id, error=str(e))
                        else:
                            extract_failures += 1
                            log.warning("extraction_failed", chunk_id=node.id, error=str(e))
                        continue

                    if kind == "embed":
                        try:
                            self.vectors.index(node.id, value, _vector_metadata(metadata, node))
                        except Exception as e:
                            embed_failures += 1
                            log.warning("vector_index_failed", chunk_id=node.id, error=str(e))
                            continue
                        vectors_indexed += 1
                    else:
                        try:
                            concepts.update(self._link_concepts(node, value))
                        except Exception as e:
                            extract_failures += 1
                            log.warning("concept_link_failed", chunk_id=node.id, error=str(e))
        finally:
            pool.shutdown(wait=True, cancel_futures=True)

        return vectors_indexed, concepts, embed_failures, extract_failures

    def _link_concepts(self, node: ChunkNode, entities: list[Any]) -> set[str]:
        linked: set[str] = set()
        for entity in entities:
            if not normalize_concept_name(entity.name):
                continue
            cid = concept_id(entity.name)
            self.graph.upsert_concept(
                ConceptNode(
                    id=cid,
                    name=entity.name,
                    type=entity.type,
                    description=entity.description,
                    aliases=tuple(entity.aliases),
                )
            )
            if self.graph.create_relationship(GraphRelationship(node.id, cid, MENTIONS)):
                linked.add(cid)
        return linked

    def _link_document(self, doc_id: str, link_targets: list[str], declared: dict[str, list[str]]) -> tuple[int, int]:
        created = 0
        skipped = 0
        for target in link_targets:
            if self.graph.create_relationship(GraphRelationship(doc_id, target, LINKS_TO)):
                created += 1
            else:
                skipped += 1

        # Earlier documents may already link here; their edges can exist now.
        for source in self.graph.documents_declaring_link(doc_id):
            if self.graph.create_relationship(GraphRelationship(source.id, doc_id, LINKS_TO)):
                created += 1

        for rel_type, targets in declared.items():
            for target in targets:
                if self.graph.create_relationship(GraphRelationship(doc_id, target, rel_type)):
                    created += 1
                else:
                    skipped += 1
        return created, skipped


def _subsection_pairs(chunks: list[Chunk], nodes: list[ChunkNode]) -> list[tuple[str, str]]:
    """(section id, chunk id) for every chunk split out at an H3 heading."""
    return [
        (node.section_id, node.id)
        for chunk, node in zip(chunks, nodes)
        if chunk.header_path.rsplit(" > ", 1)[-1].startswith("### ")
    ]


def _resolve_target(metadata: IngestionMetadata, url: str, *, allow_ids: bool = False) -> str | None:
    # Frontmatter may name another document by its full "<repository>:<path>" id.
    if allow_ids and ":" in url and "://" not in url:
        repo, path = split_document_id(url.strip())
        resolved = resolve_relative_link("", path)
        return make_document_id(repo, resolved) if repo and resolved else None
    if is_external(url):
        return None
    resolved = resolve_relative_link(metadata.file_path, url)
    if resolved is None:
        return None
    return make_document_id(metadata.repository, resolved)


def _vector_metadata(metadata: IngestionMetadata, node: ChunkNode) -> dict[str, str]:
    return {
        "document_id": node.document_id,
        "section_id": node.section_id,
        "chunk_id": node.id,
        "file_path": metadata.file_path,
        "repository": metadata.repository,
        "header_path": node.header_path,
    }
