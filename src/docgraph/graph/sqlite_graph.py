from __future__ import annotations

import json
import os
import sqlite3
import threading
from collections import deque
from dataclasses import asdict
from pathlib import Path
from typing import Any, Iterable

from ..logging import get_logger
from .models import (
    HAS_CHUNK,
    HAS_CODE_EXAMPLE,
    HAS_SECTION,
    LINKS_TO,
    MENTIONS,
    RELATED_TO,
    RELATIONSHIP_TYPES,
    ChunkNode,
    CodeExampleNode,
    ConceptNode,
    DocumentNode,
    GraphRelationship,
    SectionNode,
)

logger = get_logger(__name__)

DOCUMENT = "Document"
SECTION = "Section"
CHUNK = "Chunk"
CONCEPT = "Concept"
CODE_EXAMPLE = "CodeExample"


def connect(db_path: str | os.PathLike[str]) -> sqlite3.Connection:
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    # Ingestion fans out to worker threads; access is serialized by the repository lock.
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def init_graph(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS nodes (
          id TEXT PRIMARY KEY,
          label TEXT NOT NULL,
          document_id TEXT,
          props_json TEXT NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_nodes_label ON nodes(label);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_nodes_document ON nodes(document_id);")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS edges (
          source_id TEXT NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
          target_id TEXT NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
          type TEXT NOT NULL,
          props_json TEXT NOT NULL,
          PRIMARY KEY (source_id, target_id, type)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_edges_target ON edges(target_id);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_edges_type ON edges(type);")
    conn.commit()


class SqliteGraphRepository:
    """Property graph (Document/Section/Chunk/Concept/CodeExample) in SQLite.

    Nodes are keyed by their string id and carry JSON properties; edges are
    unique per ``(source, target, type)``. Upserts overwrite, so re-ingesting
    a document never duplicates nodes. Relationships are only created when
    both endpoints exist.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._lock = threading.RLock()
        init_graph(conn)

    @classmethod
    def open(cls, db_path: str | os.PathLike[str]) -> "SqliteGraphRepository":
        return cls(connect(db_path))

    def close(self) -> None:
        self.conn.close()

    # -- upserts ---------------------------------------------------------

    def upsert_document(self, document: DocumentNode) -> None:
        props = asdict(document)
        props["links"] = list(document.links)
        with self._lock:
            self._put_node(document.id, DOCUMENT, document.id, props)
            self.conn.commit()
        logger.debug("document_upserted", document_id=document.id)

    def upsert_section(self, section: SectionNode) -> None:
        with self._lock:
            self._put_node(section.id, SECTION, section.document_id, asdict(section))
            self._put_edge(section.document_id, section.id, HAS_SECTION, {"order": section.order})
            self.conn.commit()

    def upsert_chunk(self, chunk: ChunkNode) -> None:
        with self._lock:
            self._put_node(chunk.id, CHUNK, chunk.document_id, asdict(chunk))
            self._put_edge(chunk.section_id, chunk.id, HAS_CHUNK, {"order": chunk.order})
            self.conn.commit()

    def upsert_code_example(self, example: CodeExampleNode, *, document_id: str) -> None:
        with self._lock:
            self._put_node(example.id, CODE_EXAMPLE, document_id, asdict(example))
            self._put_edge(example.chunk_id, example.id, HAS_CODE_EXAMPLE, {})
            self.conn.commit()

    def upsert_concept(self, concept: ConceptNode) -> None:
        with self._lock:
            existing = self._get_props(concept.id)
            if existing is not None:
                # Keep an earlier description when the new mention has none.
                description = concept.description or existing.get("description", "")
                aliases = sorted(set(existing.get("aliases", [])) | set(concept.aliases))
                concept = ConceptNode(
                    id=concept.id,
                    name=concept.name or existing.get("name", ""),
                    type=concept.type or existing.get("type", ""),
                    description=description,
                    aliases=tuple(aliases),
                )
            props = asdict(concept)
            props["aliases"] = list(concept.aliases)
            self._put_node(concept.id, CONCEPT, None, props)
            self.conn.commit()

    def create_relationship(self, rel: GraphRelationship) -> bool:
        """MERGE an edge. Returns False (and stores nothing) if an endpoint is missing."""
        if rel.type not in RELATIONSHIP_TYPES:
            raise ValueError(f"Unknown relationship type: {rel.type}")
        with self._lock:
            if not (self._exists(rel.source_id) and self._exists(rel.target_id)):
                return False
            self._put_edge(rel.source_id, rel.target_id, rel.type, rel.properties)
            self.conn.commit()
        return True

    # -- deletes ---------------------------------------------------------

    def delete_document_cascade(self, document_id: str) -> bool:
        """Delete a document with its sections, chunks, code examples and their edges.

        Concept nodes are shared across documents and are left in place.
        """
        with self._lock:
            if not self._exists(document_id):
                return False
            ids = [document_id] + [
                str(r["id"])
                for r in self.conn.execute("SELECT id FROM nodes WHERE document_id = ?", (document_id,))
            ]
            self._delete_nodes(ids)
            self.conn.commit()
        logger.info("document_cascade_deleted", document_id=document_id, nodes=len(ids))
        return True

    def prune_document(self, document_id: str, keep_ids: Iterable[str]) -> list[str]:
        """Remove the document's child nodes not in ``keep_ids``. Returns removed chunk ids."""
        keep = set(keep_ids)
        with self._lock:
            rows = self.conn.execute(
                "SELECT id, label FROM nodes WHERE document_id = ? AND id != ?",
                (document_id, document_id),
            ).fetchall()
            stale = [r for r in rows if str(r["id"]) not in keep]
            self._delete_nodes([str(r["id"]) for r in stale])
            self.conn.commit()
        return [str(r["id"]) for r in stale if r["label"] == CHUNK]

    def clear_outgoing(self, source_ids: Iterable[str], types: Iterable[str]) -> None:
        sources = list(source_ids)
        kinds = list(types)
        if not sources or not kinds:
            return
        with self._lock:
            self.conn.execute(
                f"DELETE FROM edges WHERE source_id IN ({_marks(sources)}) AND type IN ({_marks(kinds)})",
                [*sources, *kinds],
            )
            self.conn.commit()

    def clear_relationships(self, rel_type: str) -> int:
        with self._lock:
            cur = self.conn.execute("DELETE FROM edges WHERE type = ?", (rel_type,))
            self.conn.commit()
            return int(cur.rowcount)

    def delete_node(self, node_id: str) -> None:
        with self._lock:
            self._delete_nodes([node_id])
            self.conn.commit()

    # -- reads -----------------------------------------------------------

    def get_document(self, document_id: str) -> DocumentNode | None:
        props = self._get_props(document_id, label=DOCUMENT)
        return _document(props) if props is not None else None

    def list_documents(self, *, repository: str | None = None) -> list[DocumentNode]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT props_json FROM nodes WHERE label = ? ORDER BY id", (DOCUMENT,)
            ).fetchall()
        docs = [_document(json.loads(r["props_json"])) for r in rows]
        if repository is not None:
            docs = [d for d in docs if d.repository == repository]
        return docs

    def get_sections(self, document_id: str) -> list[SectionNode]:
        rows = self._children(document_id, SECTION)
        return sorted((SectionNode(**p) for p in rows), key=lambda s: s.order)

    def get_chunks_by_document(self, document_id: str) -> list[ChunkNode]:
        rows = self._children(document_id, CHUNK)
        return sorted((ChunkNode(**p) for p in rows), key=lambda c: c.order)

    def get_code_examples(self, chunk_id: str) -> list[CodeExampleNode]:
        ids = [t for t, _ in self._edges_from(chunk_id, (HAS_CODE_EXAMPLE,))]
        return [CodeExampleNode(**p) for p in self._props_for(ids)]

    def get_chunks_by_ids(self, chunk_ids: list[str]) -> list[ChunkNode]:
        by_id = {p["id"]: ChunkNode(**p) for p in self._props_for(chunk_ids, label=CHUNK)}
        return [by_id[cid] for cid in chunk_ids if cid in by_id]

    def get_concept(self, concept_id: str) -> ConceptNode | None:
        props = self._get_props(concept_id, label=CONCEPT)
        return _concept(props) if props is not None else None

    def list_concepts(self) -> list[ConceptNode]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT props_json FROM nodes WHERE label = ? ORDER BY id", (CONCEPT,)
            ).fetchall()
        return [_concept(json.loads(r["props_json"])) for r in rows]

    def find_concepts_by_name(self, term_norm: str, *, limit: int = 10) -> list[ConceptNode]:
        """Exact id match first, then a substring match on the concept id."""
        like = f"%{term_norm}%"
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT props_json FROM nodes
                WHERE label = ? AND id LIKE ?
                ORDER BY (id = ?) DESC, LENGTH(id) ASC
                LIMIT ?
                """,
                (CONCEPT, like, f"concept:{term_norm}", int(limit)),
            ).fetchall()
        return [_concept(json.loads(r["props_json"])) for r in rows]

    def get_concepts_by_chunk_ids(self, chunk_ids: list[str]) -> list[ConceptNode]:
        if not chunk_ids:
            return []
        with self._lock:
            rows = self.conn.execute(
                f"""
                SELECT DISTINCT n.props_json
                FROM edges e JOIN nodes n ON n.id = e.target_id
                WHERE e.type = ? AND e.source_id IN ({_marks(chunk_ids)})
                ORDER BY n.id
                """,
                [MENTIONS, *chunk_ids],
            ).fetchall()
        return [_concept(json.loads(r["props_json"])) for r in rows]

    def get_chunks_by_concept(self, concept_id: str, *, limit: int | None = None) -> list[ChunkNode]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT n.props_json
                FROM edges e JOIN nodes n ON n.id = e.source_id
                WHERE e.type = ? AND e.target_id = ?
                ORDER BY n.id
                """,
                (MENTIONS, concept_id),
            ).fetchall()
        chunks = [ChunkNode(**json.loads(r["props_json"])) for r in rows]
        return chunks[:limit] if limit is not None else chunks

    def get_related_concepts(self, concept_id: str, *, hops: int = 1) -> list[ConceptNode]:
        reached = self.traverse(concept_id, (RELATED_TO,), hops=hops, direction="both")
        ordered = sorted(reached.items(), key=lambda kv: (kv[1], kv[0]))
        return [_concept(p) for p in self._props_for([nid for nid, _ in ordered], label=CONCEPT)]

    def traverse(
        self,
        start_id: str,
        rel_types: Iterable[str],
        *,
        hops: int = 1,
        direction: str = "out",
    ) -> dict[str, int]:
        """Breadth-first N-hop traversal. Returns {node_id: distance}, excluding the start."""
        types = tuple(rel_types)
        seen = {start_id: 0}
        queue = deque([(start_id, 0)])
        while queue:
            node, dist = queue.popleft()
            if dist >= hops:
                continue
            neighbors: list[str] = []
            if direction in {"out", "both"}:
                neighbors.extend(t for t, _ in self._edges_from(node, types))
            if direction in {"in", "both"}:
                neighbors.extend(s for s, _ in self._edges_to(node, types))
            for n in neighbors:
                if n not in seen:
                    seen[n] = dist + 1
                    queue.append((n, dist + 1))
        seen.pop(start_id)
        return seen

    def get_linked_documents(
        self, document_id: str, rel_types: Iterable[str] = (LINKS_TO,)
    ) -> list[tuple[str, DocumentNode]]:
        """Outgoing document edges as ``(relationship_type, target)`` pairs."""
        edges = self._edges_from(document_id, tuple(rel_types))
        docs = {p["id"]: _document(p) for p in self._props_for([t for t, _ in edges], label=DOCUMENT)}
        return [(kind, docs[t]) for t, kind in edges if t in docs]

    def get_incoming_documents(
        self, document_id: str, rel_types: Iterable[str] = (LINKS_TO,)
    ) -> list[tuple[str, DocumentNode]]:
        edges = self._edges_to(document_id, tuple(rel_types))
        docs = {p["id"]: _document(p) for p in self._props_for([s for s, _ in edges], label=DOCUMENT)}
        return [(kind, docs[s]) for s, kind in edges if s in docs]

    def documents_declaring_link(self, target_id: str) -> list[DocumentNode]:
        """Reverse scan: documents whose recorded links name ``target_id``."""
        return [d for d in self.list_documents() if target_id in d.links and d.id != target_id]

    def mention_counts(self) -> dict[str, int]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT target_id, COUNT(*) AS n FROM edges WHERE type = ? GROUP BY target_id",
                (MENTIONS,),
            ).fetchall()
        return {str(r["target_id"]): int(r["n"]) for r in rows}

    def mention_pairs(self) -> list[tuple[str, str]]:
        """All ``(chunk_id, concept_id)`` MENTIONS edges."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT source_id, target_id FROM edges WHERE type = ? ORDER BY source_id, target_id",
                (MENTIONS,),
            ).fetchall()
        return [(str(r["source_id"]), str(r["target_id"])) for r in rows]

    def redirect_edges(self, from_id: str, to_id: str) -> int:
        """Re-point every edge touching ``from_id`` to ``to_id``; self-loops are dropped.

        Colliding ``RELATED_TO`` edges sum their weights; other collisions keep
        the survivor's edge.
        """
        moved = 0
        with self._lock:
            rows = self.conn.execute(
                "SELECT source_id, target_id, type, props_json FROM edges WHERE source_id = ? OR target_id = ?",
                (from_id, from_id),
            ).fetchall()
            for r in rows:
                src = to_id if r["source_id"] == from_id else str(r["source_id"])
                tgt = to_id if r["target_id"] == from_id else str(r["target_id"])
                if src == tgt:
                    continue
                props = json.loads(r["props_json"])
                current = self.conn.execute(
                    "SELECT props_json FROM edges WHERE source_id = ? AND target_id = ? AND type = ?",
                    (src, tgt, r["type"]),
                ).fetchone()
                if current is not None:
                    if r["type"] != RELATED_TO:
                        continue
                    merged = json.loads(current["props_json"])
                    props["weight"] = int(merged.get("weight", 0)) + int(props.get("weight", 0))
                self._put_edge(src, tgt, str(r["type"]), props)
                moved += 1
            self.conn.execute(
                "DELETE FROM edges WHERE source_id = ? OR target_id = ?", (from_id, from_id)
            )
            self.conn.commit()
        return moved

    def stats(self) -> dict[str, Any]:
        with self._lock:
            nodes = self.conn.execute("SELECT label, COUNT(*) AS n FROM nodes GROUP BY label").fetchall()
            edges = self.conn.execute("SELECT type, COUNT(*) AS n FROM edges GROUP BY type").fetchall()
        return {
            "nodes": {str(r["label"]): int(r["n"]) for r in nodes},
            "edges": {str(r["type"]): int(r["n"]) for r in edges},
        }

    # -- internals -------------------------------------------------------

    def _put_node(self, node_id: str, label: str, document_id: str | None, props: dict[str, Any]) -> None:
        self.conn.execute(
            """
            INSERT INTO nodes(id, label, document_id, props_json) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              label = excluded.label,
              document_id = excluded.document_id,
              props_json = excluded.props_json
            """,
            (node_id, label, document_id, json.dumps(props, ensure_ascii=True)),
        )

    def _put_edge(self, source_id: str, target_id: str, rel_type: str, props: dict[str, Any]) -> None:
        self.conn.execute(
            """
            INSERT INTO edges(source_id, target_id, type, props_json) VALUES (?, ?, ?, ?)
            ON CONFLICT(source_id, target_id, type) DO UPDATE SET props_json = excluded.props_json
            """,
            (source_id, target_id, rel_type, json.dumps(props, ensure_ascii=True)),
        )

    def _delete_nodes(self, ids: list[str]) -> None:
        if not ids:
            return
        marks = _marks(ids)
        self.conn.execute(
            f"DELETE FROM edges WHERE source_id IN ({marks}) OR target_id IN ({marks})",
            [*ids, *ids],
        )
        self.conn.execute(f"DELETE FROM nodes WHERE id IN ({marks})", ids)

    def _exists(self, node_id: str) -> bool:
        with self._lock:
            return self.conn.execute("SELECT 1 FROM nodes WHERE id = ?", (node_id,)).fetchone() is not None

    def _get_props(self, node_id: str, *, label: str | None = None) -> dict[str, Any] | None:
        with self._lock:
            row = self.conn.execute("SELECT label, props_json FROM nodes WHERE id = ?", (node_id,)).fetchone()
        if row is None or (label is not None and row["label"] != label):
            return None
        return json.loads(row["props_json"])

    def _props_for(self, ids: list[str], *, label: str | None = None) -> list[dict[str, Any]]:
        if not ids:
            return []
        with self._lock:
            rows = self.conn.execute(
                f"SELECT id, label, props_json FROM nodes WHERE id IN ({_marks(ids)})", ids
            ).fetchall()
        by_id = {
            str(r["id"]): json.loads(r["props_json"])
            for r in rows
            if label is None or r["label"] == label
        }
        return [by_id[i] for i in ids if i in by_id]

    def _children(self, document_id: str, label: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT props_json FROM nodes WHERE document_id = ? AND label = ?",
                (document_id, label),
            ).fetchall()
        return [json.loads(r["props_json"]) for r in rows]

    def _edges_from(self, node_id: str, types: tuple[str, ...]) -> list[tuple[str, str]]:
        with self._lock:
            rows = self.conn.execute(
                f"SELECT target_id, type FROM edges WHERE source_id = ? AND type IN ({_marks(types)}) ORDER BY target_id",
                [node_id, *types],
            ).fetchall()
        return [(str(r["target_id"]), str(r["type"])) for r in rows]

    def _edges_to(self, node_id: str, types: tuple[str, ...]) -> list[tuple[str, str]]:
        with self._lock:
            rows = self.conn.execute(
                f"SELECT source_id, type FROM edges WHERE target_id = ? AND type IN ({_marks(types)}) ORDER BY source_id",
                [node_id, *types],
            ).fetchall()
        return [(str(r["source_id"]), str(r["type"])) for r in rows]


def _marks(values: Iterable[Any]) -> str:
    return ",".join(["?"] * len(list(values)))


def _document(props: dict[str, Any]) -> DocumentNode:
    props = dict(props)
    props["links"] = tuple(props.get("links") or ())
    return DocumentNode(**props)


def _concept(props: dict[str, Any]) -> ConceptNode:
    props = dict(props)
    props["aliases"] = tuple(props.get("aliases") or ())
    return ConceptNode(**props)
