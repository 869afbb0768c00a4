import tempfile
import unittest
from pathlib import Path
from unittest import mock

from typer.testing import CliRunner

from docgraph.cli import app
from docgraph.graph.sqlite_graph import SqliteGraphRepository
from docgraph.index.vector_store import VectorStore
from docgraph.ingest.service import DocumentIngestionService, IngestionMetadata

from fakes import FakeEmbedder


class TestCli(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db = Path(self.tmp.name) / "graph.db"
        graph = SqliteGraphRepository.open(self.db)
        vectors = VectorStore(self.db)
        service = DocumentIngestionService(graph, vectors, FakeEmbedder())
        for path, text in (("a.md", "## A\n\nSee [b](b.md)."), ("b.md", "## B\n\nLeaf.")):
            service.ingest_document(
                text, IngestionMetadata(document_id=f"core:{path}", repository="core", file_path=path, title=path)
            )
        vectors.save()
        graph.close()
        self.runner = CliRunner()
        # Keep the runner's captured streams out of the global logging config.
        patcher = mock.patch("docgraph.cli.setup_logging")
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        self.tmp.cleanup()

    def test_stats(self):
        result = self.runner.invoke(app, ["stats", "--db", str(self.db)])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Document nodes", result.output)
        self.assertIn("LINKS_TO edges", result.output)

    def test_related(self):
        result = self.runner.invoke(app, ["related", "--document-id", "core:a.md", "--db", str(self.db)])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("core:b.md", result.output)

    def test_delete(self):
        result = self.runner.invoke(app, ["delete", "core:a.md", "--db", str(self.db)])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(len(VectorStore.open(self.db)), 1)

        missing = self.runner.invoke(app, ["delete", "core:a.md", "--db", str(self.db)])
        self.assertEqual(missing.exit_code, 2)

    def test_delete_keeps_graph_when_vector_save_fails(self):
        with mock.patch.object(VectorStore, "save", side_effect=OSError("disk full")):
            result = self.runner.invoke(app, ["delete", "core:a.md", "--db", str(self.db)])
        self.assertNotEqual(result.exit_code, 0)
        self.assertIsInstance(result.exception, OSError)

        graph = SqliteGraphRepository.open(self.db)
        self.addCleanup(graph.close)
        self.assertIsNotNone(graph.get_document("core:a.md"))

    def test_graph_build_relations(self):
        result = self.runner.invoke(app, ["graph", "build-relations", "--db", str(self.db)])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("edges_upserted: 0", result.output)


if __name__ == "__main__":
    unittest.main()
