import tempfile
import threading
import unittest
from pathlib import Path

from docgraph.errors import InvalidMetadataError, OperationCancelled
from docgraph.graph.extract import HeuristicEntityExtractor
from docgraph.graph.models import DEPENDS_ON, HAS_SUBSECTION, LINKS_TO, MENTIONS, SUPERSEDES
from docgraph.graph.sqlite_graph import SqliteGraphRepository, connect
from docgraph.index.vector_store import METADATA_KEYS, VectorStore
from docgraph.ingest.runner import IngestOptions, ingest_directory, iter_files, metadata_for
from docgraph.ingest.service import DocumentIngestionService, IngestionMetadata

from fakes import CallLog, FakeEmbedder, RecordingGraph, RecordingVectorStore


def _meta(path, repository="core", **kw):
    return IngestionMetadata(
        document_id=f"{repository}:{path}",
        repository=repository,
        file_path=path,
        title=kw.pop("title", path),
        **kw,
    )


class TestDocumentIngestion(unittest.TestCase):
    def setUp(self):
        self.log = CallLog()
        self.graph = RecordingGraph(connect(":memory:"), self.log)
        self.vectors = RecordingVectorStore(self.log)
        self.embedder = FakeEmbedder()
        self.service = DocumentIngestionService(
            self.graph, self.vectors, self.embedder, HeuristicEntityExtractor(), concurrency=2
        )

    def tearDown(self):
        self.graph.close()

    def test_two_sections(self):
        res = self.service.ingest_document("## Alpha\n\nFirst.\n\n## Beta\n\nSecond.", _meta("docs/a.md"))
        self.assertEqual((res.sections, res.chunks, res.vectors_indexed), (2, 2, 2))
        self.assertTrue(res.ok)
        self.assertEqual(sorted(self.vectors.indexed), ["core:docs/a.md:chunk-0", "core:docs/a.md:chunk-1"])

        sections = self.graph.get_sections("core:docs/a.md")
        self.assertEqual([s.title for s in sections], ["Alpha", "Beta"])
        chunks = self.graph.get_chunks_by_document("core:docs/a.md")
        self.assertEqual([c.header_path for c in chunks], ["## Alpha", "## Beta"])

        hit = self.vectors.search(self.embedder.generate_embedding("Second"), top_k=1)[0]
        self.assertEqual(set(hit.metadata), set(METADATA_KEYS))
        self.assertEqual(hit.metadata["header_path"], "## Beta")
        self.assertEqual(hit.metadata["file_path"], "docs/a.md")

    def test_reingest_is_idempotent(self):
        text = "## Alpha\n\nUses SQLite Storage.\n\n## Beta\n\nSecond.\n\n[b](b.md)"
        self.service.ingest_document(text, _meta("docs/a.md"))
        first = self.graph.stats()
        self.service.ingest_document(text, _meta("docs/a.md"))
        self.assertEqual(self.graph.stats(), first)
        self.assertEqual(len(self.vectors), 2)

    def test_reingest_prunes_removed_chunks(self):
        self.service.ingest_document("## A\n\none\n\n## B\n\ntwo\n\n## C\n\nthree", _meta("a.md"))
        self.service.ingest_document("## A\n\none", _meta("a.md"))
        self.assertEqual(len(self.graph.get_chunks_by_document("core:a.md")), 1)
        self.assertEqual(len(self.graph.get_sections("core:a.md")), 1)
        self.assertEqual(len(self.vectors), 1)

    def test_embedding_failures_keep_the_graph(self):
        service = DocumentIngestionService(self.graph, self.vectors, FakeEmbedder(fail=True))
        res = service.ingest_document("## Alpha\n\nFirst.\n\n## Beta\n\nSecond.", _meta("a.md"))
        self.assertEqual(res.chunks, 2)
        self.assertEqual(res.vectors_indexed, 0)
        self.assertEqual(res.embedding_failures, 2)
        self.assertFalse(res.ok)
        self.assertEqual(len(self.graph.get_chunks_by_document("core:a.md")), 2)
        self.assertEqual(len(self.vectors), 0)

    def test_single_chunk_failure(self):
        service = DocumentIngestionService(self.graph, self.vectors, FakeEmbedder(fail_on="Second"))
        res = service.ingest_document("## Alpha\n\nFirst.\n\n## Beta\n\nSecond.", _meta("a.md"))
        self.assertEqual((res.vectors_indexed, res.embedding_failures), (1, 1))

    def test_vector_index_failure_only_loses_that_chunk(self):
        self.service.ingest_document("## B\n\nbody", _meta("b.md"))
        vectors = RecordingVectorStore(self.log, fail_index=("core:a.md:chunk-0",))
        service = DocumentIngestionService(self.graph, vectors, self.embedder, concurrency=2)
        res = service.ingest_document("## Alpha\n\nFirst.\n\n## Beta\n\nSecond.\n\n[b](b.md)", _meta("a.md"))
        self.assertEqual((res.chunks, res.vectors_indexed, res.embedding_failures), (2, 1, 1))
        self.assertEqual(res.links_created, 1)
        self.assertEqual(vectors.indexed, ["core:a.md:chunk-1"])
        linked = self.graph.get_linked_documents("core:a.md", (LINKS_TO,))
        self.assertEqual([d.id for _, d in linked], ["core:b.md"])

    def test_concept_link_failure_only_loses_that_chunk(self):
        class BrokenExtractor:
            def extract_entities(self, text, cancel=None):
                return [object()]

        service = DocumentIngestionService(self.graph, self.vectors, self.embedder, BrokenExtractor())
        res = service.ingest_document("## Alpha\n\nFirst.\n\n## Beta\n\nSecond.", _meta("a.md"))
        self.assertEqual((res.vectors_indexed, res.extraction_failures), (2, 2))
        self.assertFalse(res.ok)

    def test_content_hash_only_recorded_for_clean_ingest(self):
        self.service.ingest_document("## A\n\none", _meta("a.md"))
        self.assertIsNotNone(self.graph.get_document("core:a.md").content_hash)

        service = DocumentIngestionService(self.graph, self.vectors, FakeEmbedder(fail=True))
        service.ingest_document("## A\n\nchanged", _meta("a.md"))
        self.assertIsNone(self.graph.get_document("core:a.md").content_hash)

    def test_reingest_clears_vectors_before_pruning_graph(self):
        self.service.ingest_document("## A\n\none\n\n## B\n\ntwo", _meta("a.md"))
        self.log.entries.clear()
        self.service.ingest_document("## A\n\none", _meta("a.md"))
        self.assertEqual(self.log.entries, ["vectors.delete_by_document", "graph.prune_document"])

    def test_h3_chunks_hang_off_their_section(self):
        service = DocumentIngestionService(self.graph, self.vectors, self.embedder, chunk_threshold_lines=3)
        text = "## Guide\n\nIntro.\n\n### Setup\n\nSteps.\n\n### Usage\n\nRun."
        res = service.ingest_document(text, _meta("a.md"))
        self.assertEqual(res.chunks, 3)
        self.assertEqual(self.graph.stats()["edges"].get(HAS_SUBSECTION), 2)

        service.ingest_document("## Guide\n\nIntro.", _meta("a.md"))
        self.assertNotIn(HAS_SUBSECTION, self.graph.stats()["edges"])

    def test_concepts_are_linked(self):
        res = self.service.ingest_document("## Storage\n\nWe keep vectors in Amazon Neptune.", _meta("a.md"))
        self.assertGreaterEqual(res.concepts_linked, 1)
        self.assertIsNotNone(self.graph.get_concept("concept:amazon-neptune"))
        self.assertIn(MENTIONS, self.graph.stats()["edges"])

    def test_code_examples(self):
        res = self.service.ingest_document("## Run\n\n```bash\nmake test\n```\n", _meta("a.md"))
        self.assertEqual(res.code_examples, 1)
        examples = self.graph.get_code_examples("core:a.md:chunk-0")
        self.assertEqual([(e.language, e.code) for e in examples], [("bash", "make test")])

    def test_delete_removes_vectors_then_graph(self):
        self.service.ingest_document("## A\n\none", _meta("a.md"))
        self.assertTrue(self.service.delete_document("core:a.md"))
        self.assertEqual(self.log.entries, ["vectors.delete_by_document", "graph.delete_document_cascade"])
        self.assertIsNone(self.graph.get_document("core:a.md"))
        self.assertEqual(len(self.vectors), 0)

        self.log.entries.clear()
        self.assertFalse(self.service.delete_document("core:missing.md"))
        self.assertEqual(self.log.entries, ["vectors.delete_by_document", "graph.delete_document_cascade"])

    def test_invalid_metadata(self):
        bad = IngestionMetadata(document_id="core:a.md", repository="", file_path="a.md", title="A")
        with self.assertRaises(InvalidMetadataError):
            self.service.ingest_document("## A\n\none", bad)
        self.assertEqual(self.graph.stats()["nodes"], {})

    def test_cancelled_before_start(self):
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(OperationCancelled):
            self.service.ingest_document("## A\n\none", _meta("a.md"), cancel=cancel)
        self.assertIsNone(self.graph.get_document("core:a.md"))

    def test_links_resolve_when_target_arrives_later(self):
        res = self.service.ingest_document("## A\n\nSee [b](sub/b.md#part).", _meta("docs/a.md"))
        self.assertEqual(res.links_created, 0)
        self.assertEqual(res.links_skipped, 1)

        self.service.ingest_document("## B\n\nbody", _meta("docs/sub/b.md"))
        linked = self.graph.get_linked_documents("core:docs/a.md", (LINKS_TO,))
        self.assertEqual([d.id for _, d in linked], ["core:docs/sub/b.md"])

    def test_external_and_self_links_are_ignored(self):
        text = "## A\n\n[x](https://example.com) [me](a.md) [top](#a)"
        res = self.service.ingest_document(text, _meta("a.md"))
        self.assertEqual((res.links_created, res.links_skipped), (0, 0))
        self.assertEqual(self.graph.get_document("core:a.md").links, ())

    def test_declared_document_edges(self):
        self.service.ingest_document("## Old\n\nold", _meta("old.md"))
        self.service.ingest_document("## Base\n\nbase", _meta("base.md", repository="shared"))
        text = "---\nsupersedes: old.md\ndepends_on:\n  - shared:base.md\n---\n## New\n\nnew"
        res = self.service.ingest_document(text, _meta("new.md"))
        self.assertEqual(res.links_created, 2)
        edges = self.graph.get_linked_documents("core:new.md", (DEPENDS_ON, SUPERSEDES))
        self.assertEqual(
            sorted((kind, d.id) for kind, d in edges),
            [(DEPENDS_ON, "shared:base.md"), (SUPERSEDES, "core:old.md")],
        )


class TestIngestDirectory(unittest.TestCase):
    def test_ingest_directory_skips_unchanged(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp) / "docs"
            (root / "guide").mkdir(parents=True)
            (root / ".hidden").mkdir()
            (root / "index.md").write_text("# Home\n\n## Start\n\nSee [setup](guide/setup.md).", encoding="utf-8")
            (root / "guide" / "setup.md").write_text("---\ntitle: Setup Guide\ntype: guide\n---\n## Install\n\nRun it.", encoding="utf-8")
            (root / ".hidden" / "skip.md").write_text("## Skip\n\nno", encoding="utf-8")
            (root / "notes.txt").write_text("not markdown", encoding="utf-8")

            graph = SqliteGraphRepository(connect(":memory:"))
            service = DocumentIngestionService(graph, VectorStore(), FakeEmbedder())
            options = IngestOptions(input_dir=root, repository="core")

            self.assertEqual([p.name for p in iter_files(root)], ["setup.md", "index.md"])

            res = ingest_directory(service, options)
            self.assertEqual(res["documents_seen"], 2)
            self.assertEqual(res["documents_changed"], 2)
            self.assertEqual(res["vectors_indexed"], 2)

            again = ingest_directory(service, options)
            self.assertEqual(again["documents_changed"], 0)

            forced = ingest_directory(service, IngestOptions(input_dir=root, repository="core", force=True))
            self.assertEqual(forced["documents_changed"], 2)

            setup = graph.get_document("core:guide/setup.md")
            self.assertEqual((setup.title, setup.doc_type), ("Setup Guide", "guide"))
            self.assertEqual(graph.get_document("core:index.md").title, "Home")
            linked = graph.get_linked_documents("core:index.md")
            self.assertEqual([d.id for _, d in linked], ["core:guide/setup.md"])
            graph.close()

    def test_failed_embeddings_are_retried_on_next_run(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "a.md").write_text("## A\n\nSome text.", encoding="utf-8")
            graph = SqliteGraphRepository(connect(":memory:"))
            vectors = VectorStore()
            options = IngestOptions(input_dir=root, repository="core")

            broken = ingest_directory(DocumentIngestionService(graph, vectors, FakeEmbedder(fail=True)), options)
            self.assertEqual((broken["documents_changed"], broken["chunk_failures"]), (1, 1))
            self.assertEqual(len(vectors), 0)

            healthy = DocumentIngestionService(graph, vectors, FakeEmbedder())
            healed = ingest_directory(healthy, options)
            self.assertEqual((healed["documents_changed"], healed["vectors_indexed"]), (1, 1))
            self.assertEqual(len(vectors), 1)

            self.assertEqual(ingest_directory(healthy, options)["documents_changed"], 0)
            graph.close()

    def test_metadata_falls_back_to_file_stem(self):
        root = Path("/repo")
        meta = metadata_for(root / "docs" / "Plain.md", "no headings here", IngestOptions(input_dir=root, repository="r"))
        self.assertEqual(meta.title, "Plain")
        self.assertEqual(meta.document_id, "r:docs/plain.md")
        self.assertEqual(meta.file_path, "docs/Plain.md")


if __name__ == "__main__":
    unittest.main()
