import unittest

from docgraph.ingest.links import (
    is_external,
    make_document_id,
    normalize_path,
    resolve_relative_link,
    slugify,
    split_document_id,
)


class TestResolveRelativeLink(unittest.TestCase):
    def test_parent_directory(self):
        self.assertEqual(resolve_relative_link("docs/sub/page.md", "../other.md"), "docs/other.md")

    def test_sibling_with_fragment_and_case(self):
        self.assertEqual(resolve_relative_link("docs/a.md", "./Guide/B.md#setup"), "docs/guide/b.md")

    def test_repository_root_link(self):
        self.assertEqual(resolve_relative_link("docs/a.md", "/README.md"), "readme.md")

    def test_rejected_links(self):
        self.assertIsNone(resolve_relative_link("docs/a.md", ""))
        self.assertIsNone(resolve_relative_link("docs/a.md", "#local"))
        self.assertIsNone(resolve_relative_link("docs/a.md", "https://example.com/x.md"))
        self.assertIsNone(resolve_relative_link("docs/a.md", "mailto:someone@example.com"))
        self.assertIsNone(resolve_relative_link("a.md", "../../outside.md"))

    def test_is_external(self):
        self.assertTrue(is_external("http://x"))
        self.assertTrue(is_external("//cdn.example.com/x.js"))
        self.assertFalse(is_external("docs/a.md"))


class TestDocumentIds(unittest.TestCase):
    def test_make_and_split(self):
        doc_id = make_document_id("core", "./Docs/Setup.md")
        self.assertEqual(doc_id, "core:docs/setup.md")
        self.assertEqual(split_document_id(doc_id), ("core", "docs/setup.md"))

    def test_split_without_repository(self):
        self.assertEqual(split_document_id("plain.md"), ("", "plain.md"))

    def test_normalize_path(self):
        self.assertEqual(normalize_path("./docs/A.md"), "docs/a.md")
        self.assertEqual(normalize_path("/docs/a.md"), "docs/a.md")

    def test_slugify(self):
        self.assertEqual(slugify("Getting Started!"), "getting-started")
        self.assertEqual(slugify("Café  Setup"), "cafe-setup")
        self.assertEqual(slugify("???"), "section")


if __name__ == "__main__":
    unittest.main()
