import unittest

from docgraph.graph.models import (
    DEPENDS_ON,
    LINKS_TO,
    MENTIONS,
    RELATED_TO,
    ChunkNode,
    CodeExampleNode,
    ConceptNode,
    DocumentNode,
    GraphRelationship,
    SectionNode,
)
from docgraph.graph.sqlite_graph import SqliteGraphRepository, connect


def _doc(doc_id, links=()):
    repo, path = doc_id.split(":", 1)
    return DocumentNode(id=doc_id, file_path=path, title=path, repository=repo, links=tuple(links))


def _chunk(doc_id, order, content="text"):
    return ChunkNode(
        id=f"{doc_id}:chunk-{order}",
        section_id=f"{doc_id}:main",
        document_id=doc_id,
        order=order,
        header_path="## Main",
        content=content,
        token_count=1,
        start_line=0,
        end_line=0,
    )


class TestSqliteGraph(unittest.TestCase):
    def setUp(self):
        self.repo = SqliteGraphRepository(connect(":memory:"))

    def tearDown(self):
        self.repo.close()

    def _add_document(self, doc_id, chunks=1, links=()):
        self.repo.upsert_document(_doc(doc_id, links))
        self.repo.upsert_section(SectionNode(id=f"{doc_id}:main", document_id=doc_id, title="Main", order=0))
        for i in range(chunks):
            self.repo.upsert_chunk(_chunk(doc_id, i))

    def test_upsert_is_idempotent(self):
        self._add_document("r:a.md", chunks=2)
        self._add_document("r:a.md", chunks=2)
        stats = self.repo.stats()
        self.assertEqual(stats["nodes"], {"Document": 1, "Section": 1, "Chunk": 2})
        self.assertEqual(stats["edges"], {"HAS_SECTION": 1, "HAS_CHUNK": 2})
        self.assertEqual([c.order for c in self.repo.get_chunks_by_document("r:a.md")], [0, 1])

    def test_document_round_trip_keeps_links(self):
        self.repo.upsert_document(_doc("r:a.md", links=["r:b.md"]))
        doc = self.repo.get_document("r:a.md")
        self.assertEqual(doc.links, ("r:b.md",))
        self.assertIsNone(self.repo.get_document("r:missing.md"))

    def test_relationship_requires_both_endpoints(self):
        self._add_document("r:a.md")
        self.assertFalse(self.repo.create_relationship(GraphRelationship("r:a.md", "r:b.md", LINKS_TO)))
        self._add_document("r:b.md")
        self.assertTrue(self.repo.create_relationship(GraphRelationship("r:a.md", "r:b.md", LINKS_TO)))
        linked = self.repo.get_linked_documents("r:a.md")
        self.assertEqual([(kind, d.id) for kind, d in linked], [(LINKS_TO, "r:b.md")])
        incoming = self.repo.get_incoming_documents("r:b.md")
        self.assertEqual([d.id for _, d in incoming], ["r:a.md"])

    def test_unknown_relationship_type(self):
        with self.assertRaises(ValueError):
            self.repo.create_relationship(GraphRelationship("x", "y", "FRIENDS_WITH"))

    def test_cascade_delete_keeps_concepts(self):
        self._add_document("r:a.md", chunks=2)
        self._add_document("r:b.md")
        self.repo.upsert_code_example(
            CodeExampleNode(id="r:a.md:chunk-0:code-0", chunk_id="r:a.md:chunk-0", language="py", code="x = 1"),
            document_id="r:a.md",
        )
        self.repo.upsert_concept(ConceptNode(id="concept:sqlite", name="SQLite"))
        self.repo.create_relationship(GraphRelationship("r:a.md:chunk-0", "concept:sqlite", MENTIONS))
        self.repo.create_relationship(GraphRelationship("r:b.md", "r:a.md", DEPENDS_ON))

        self.assertTrue(self.repo.delete_document_cascade("r:a.md"))
        self.assertFalse(self.repo.delete_document_cascade("r:a.md"))

        stats = self.repo.stats()
        self.assertEqual(stats["nodes"], {"Document": 1, "Section": 1, "Chunk": 1, "Concept": 1})
        self.assertNotIn(MENTIONS, stats["edges"])
        self.assertNotIn(DEPENDS_ON, stats["edges"])

    def test_prune_document_returns_removed_chunks(self):
        self._add_document("r:a.md", chunks=3)
        removed = self.repo.prune_document("r:a.md", {"r:a.md:main", "r:a.md:chunk-0"})
        self.assertEqual(sorted(removed), ["r:a.md:chunk-1", "r:a.md:chunk-2"])
        self.assertEqual([c.id for c in self.repo.get_chunks_by_document("r:a.md")], ["r:a.md:chunk-0"])

    def test_concept_upsert_merges_aliases(self):
        self.repo.upsert_concept(ConceptNode(id="concept:rag", name="RAG", description="retrieval", aliases=("rag",)))
        self.repo.upsert_concept(ConceptNode(id="concept:rag", name="RAG", aliases=("GraphRAG",)))
        concept = self.repo.get_concept("concept:rag")
        self.assertEqual(concept.description, "retrieval")
        self.assertEqual(set(concept.aliases), {"rag", "GraphRAG"})

    def test_concept_lookups(self):
        self._add_document("r:a.md", chunks=2)
        for name in ("Graph Store", "Graph", "Vector Store"):
            self.repo.upsert_concept(ConceptNode(id="concept:" + name.lower().replace(" ", "-"), name=name))
        self.repo.create_relationship(GraphRelationship("r:a.md:chunk-0", "concept:graph", MENTIONS))
        self.repo.create_relationship(GraphRelationship("r:a.md:chunk-1", "concept:graph", MENTIONS))
        self.repo.create_relationship(GraphRelationship("r:a.md:chunk-1", "concept:vector-store", MENTIONS))

        found = self.repo.find_concepts_by_name("graph")
        self.assertEqual(found[0].id, "concept:graph")
        self.assertEqual({c.id for c in found}, {"concept:graph", "concept:graph-store"})

        self.assertEqual(
            [c.id for c in self.repo.get_concepts_by_chunk_ids(["r:a.md:chunk-1"])],
            ["concept:graph", "concept:vector-store"],
        )
        self.assertEqual(len(self.repo.get_chunks_by_concept("concept:graph")), 2)
        self.assertEqual(len(self.repo.get_chunks_by_concept("concept:graph", limit=1)), 1)
        self.assertEqual(self.repo.mention_counts(), {"concept:graph": 2, "concept:vector-store": 1})

    def test_traverse_hops_and_direction(self):
        for d in ("r:a.md", "r:b.md", "r:c.md", "r:d.md"):
            self._add_document(d)
        self.repo.create_relationship(GraphRelationship("r:a.md", "r:b.md", LINKS_TO))
        self.repo.create_relationship(GraphRelationship("r:b.md", "r:c.md", LINKS_TO))
        self.repo.create_relationship(GraphRelationship("r:c.md", "r:d.md", LINKS_TO))

        self.assertEqual(self.repo.traverse("r:a.md", (LINKS_TO,), hops=2), {"r:b.md": 1, "r:c.md": 2})
        self.assertEqual(self.repo.traverse("r:c.md", (LINKS_TO,), hops=1, direction="in"), {"r:b.md": 1})
        self.assertEqual(
            self.repo.traverse("r:b.md", (LINKS_TO,), hops=1, direction="both"), {"r:a.md": 1, "r:c.md": 1}
        )

    def test_redirect_edges_sums_related_weights(self):
        for cid in ("concept:a", "concept:b", "concept:c"):
            self.repo.upsert_concept(ConceptNode(id=cid, name=cid))
        self.repo.create_relationship(GraphRelationship("concept:a", "concept:c", RELATED_TO, {"weight": 2}))
        self.repo.create_relationship(GraphRelationship("concept:b", "concept:c", RELATED_TO, {"weight": 3}))
        self.repo.create_relationship(GraphRelationship("concept:a", "concept:b", RELATED_TO, {"weight": 1}))

        self.repo.redirect_edges("concept:b", "concept:a")

        row = self.repo.conn.execute(
            "SELECT props_json FROM edges WHERE source_id = 'concept:a' AND target_id = 'concept:c'"
        ).fetchone()
        self.assertIn('"weight": 5', row["props_json"])
        # The a-b edge would become a self-loop and is dropped.
        self.assertEqual(self.repo.stats()["edges"], {RELATED_TO: 1})

    def test_documents_declaring_link(self):
        self.repo.upsert_document(_doc("r:a.md", links=["r:b.md"]))
        self.repo.upsert_document(_doc("r:c.md", links=["r:b.md", "r:a.md"]))
        self.assertEqual([d.id for d in self.repo.documents_declaring_link("r:b.md")], ["r:a.md", "r:c.md"])


if __name__ == "__main__":
    unittest.main()
