from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from ..logging import get_logger
from .links import make_document_id
from .markdown import first_heading_title, parse_outline, split_frontmatter
from .service import DocumentIngestionService, IngestionMetadata

logger = get_logger(__name__)

SUPPORTED_TEXT_EXTS = {".md", ".markdown"}


@dataclass(frozen=True)
class IngestOptions:
    input_dir: Path
    repository: str
    commit_hash: str | None = None
    force: bool = False


def iter_files(root: Path) -> Iterable[Path]:
    for p in sorted(root.rglob("*")):
        if not p.is_file():
            continue
        rel_parts = p.relative_to(root).parts
        if any(part.startswith(".") for part in rel_parts):
            continue
        if p.suffix.lower() not in SUPPORTED_TEXT_EXTS:
            continue
        yield p


def metadata_for(path: Path, text: str, options: IngestOptions) -> IngestionMetadata:
    rel = path.relative_to(options.input_dir).as_posix()
    frontmatter, body = split_frontmatter(text)

    title = frontmatter.get("title")
    if not isinstance(title, str) or not title.strip():
        title = first_heading_title(parse_outline(body)) or path.stem

    doc_type = frontmatter.get("doc_type") or frontmatter.get("type")
    return IngestionMetadata(
        document_id=make_document_id(options.repository, rel),
        repository=options.repository,
        file_path=rel,
        title=str(title).strip(),
        doc_type=str(doc_type) if doc_type else None,
        promotion_level=str(frontmatter.get("promotion_level") or "draft"),
        commit_hash=options.commit_hash,
    )


def ingest_directory(
    service: DocumentIngestionService,
    options: IngestOptions,
    *,
    cancel: threading.Event | None = None,
) -> dict[str, Any]:
    """Ingest every markdown file under ``options.input_dir``.

    Files whose content hash matches the stored document are skipped unless
    ``force`` is set.
    """
    docs_seen = 0
    docs_changed = 0
    chunks = 0
    vectors = 0
    failures = 0

    for path in iter_files(options.input_dir):
        docs_seen += 1
        text = path.read_text(encoding="utf-8", errors="replace")
        meta = metadata_for(path, text, options)

        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        existing = service.graph.get_document(meta.document_id)
        if not options.force and existing is not None and existing.content_hash == digest:
            logger.debug("document_unchanged", document_id=meta.document_id)
            continue

        result = service.ingest_document(text, meta, cancel=cancel)
        docs_changed += 1
        chunks += result.chunks
        vectors += result.vectors_indexed
        failures += result.embedding_failures + result.extraction_failures

    return {
        "documents_seen": docs_seen,
        "documents_changed": docs_changed,
        "chunks_written": chunks,
        "vectors_indexed": vectors,
        "chunk_failures": failures,
    }
