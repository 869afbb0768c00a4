from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


# Relationship types
HAS_SECTION = "HAS_SECTION"
HAS_SUBSECTION = "HAS_SUBSECTION"
HAS_CHUNK = "HAS_CHUNK"
HAS_CODE_EXAMPLE = "HAS_CODE_EXAMPLE"
MENTIONS = "MENTIONS"
LINKS_TO = "LINKS_TO"
DEPENDS_ON = "DEPENDS_ON"
SUPERSEDES = "SUPERSEDES"
RELATED_TO = "RELATED_TO"

RELATIONSHIP_TYPES = frozenset(
    {
        HAS_SECTION,
        HAS_SUBSECTION,
        HAS_CHUNK,
        HAS_CODE_EXAMPLE,
        MENTIONS,
        LINKS_TO,
        DEPENDS_ON,
        SUPERSEDES,
        RELATED_TO,
    }
)

# Author-declared document edges, keyed by their frontmatter field.
DECLARED_DOCUMENT_EDGES = {"depends_on": DEPENDS_ON, "supersedes": SUPERSEDES}


@dataclass(frozen=True)
class DocumentNode:
    id: str  # "<repository>:<path>"
    file_path: str
    title: str
    repository: str = ""
    doc_type: str | None = None
    promotion_level: str = "draft"
    commit_hash: str | None = None
    content_hash: str | None = None
    # Resolved ids this document links to, whether or not they exist yet.
    links: tuple[str, ...] = ()


@dataclass(frozen=True)
class SectionNode:
    id: str  # "<document_id>:<slug>"
    document_id: str
    title: str
    order: int
    level: int = 2


@dataclass(frozen=True)
class ChunkNode:
    id: str  # "<document_id>:chunk-<order>"
    section_id: str
    document_id: str
    order: int
    header_path: str
    content: str
    token_count: int
    start_line: int
    end_line: int


@dataclass(frozen=True)
class ConceptNode:
    id: str  # "concept:<normalized name>"
    name: str
    # Open vocabulary discovered by extraction; never a closed enum.
    type: str = ""
    description: str = ""
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class CodeExampleNode:
    id: str  # "<chunk_id>:code-<n>"
    chunk_id: str
    language: str
    code: str


@dataclass(frozen=True)
class GraphRelationship:
    source_id: str
    target_id: str
    type: str
    properties: dict[str, Any] = field(default_factory=dict)
