import unittest

from docgraph.ingest.chunker import INTRODUCTION_KEY, chunk_markdown, estimate_tokens


class TestChunker(unittest.TestCase):
    def test_splits_at_h2(self):
        plan = chunk_markdown("## Alpha\n\nFirst.\n\n## Beta\n\nSecond.")
        self.assertEqual([s.key for s in plan.sections], ["alpha", "beta"])
        self.assertEqual([c.header_path for c in plan.chunks], ["## Alpha", "## Beta"])
        self.assertEqual(plan.chunks[1].content, "## Beta\n\nSecond.")
        self.assertEqual([c.order for c in plan.chunks], [0, 1])

    def test_preamble_becomes_introduction(self):
        plan = chunk_markdown("Preface text.\n\n## A\n\nbody")
        self.assertEqual([s.key for s in plan.sections], [INTRODUCTION_KEY, "a"])
        self.assertEqual(plan.chunks[0].header_path, "")
        self.assertEqual(plan.chunks[0].content, "Preface text.")

    def test_h1_alone_is_not_an_introduction(self):
        plan = chunk_markdown("# Title\n\n## A\n\nbody")
        self.assertEqual([s.key for s in plan.sections], ["a"])
        self.assertEqual(plan.chunks[0].header_path, "# Title > ## A")

    def test_document_without_headings(self):
        plan = chunk_markdown("just text\nmore text")
        self.assertEqual([s.key for s in plan.sections], [INTRODUCTION_KEY])
        self.assertEqual(len(plan.chunks), 1)

    def test_empty_body(self):
        plan = chunk_markdown("")
        self.assertEqual([s.key for s in plan.sections], [INTRODUCTION_KEY])
        self.assertEqual(plan.chunks, [])

    def test_h3_split_only_above_threshold(self):
        body = "## A\n\nintro\n\n### B\n\nmore"
        short = chunk_markdown(body)
        self.assertEqual(len(short.chunks), 1)
        self.assertIn("### B", short.chunks[0].content)

        long = chunk_markdown(body, threshold_lines=3)
        self.assertEqual([c.header_path for c in long.chunks], ["## A", "## A > ### B"])
        self.assertEqual({c.section_key for c in long.chunks}, {"a"})
        self.assertEqual([s.key for s in long.sections], ["a"])

    def test_duplicate_titles_share_a_section(self):
        plan = chunk_markdown("## Notes\n\na\n\n## Notes\n\nb")
        self.assertEqual(len(plan.sections), 1)
        self.assertEqual([c.section_key for c in plan.chunks], ["notes", "notes"])

    def test_heading_without_body_has_no_chunk(self):
        plan = chunk_markdown("## Empty\n\n## Full\n\ntext")
        self.assertEqual([s.key for s in plan.sections], ["empty", "full"])
        self.assertEqual([c.header_path for c in plan.chunks], ["## Full"])

    def test_fenced_heading_does_not_split(self):
        plan = chunk_markdown("## Code\n\n```\n## not a heading\n```")
        self.assertEqual(len(plan.chunks), 1)

    def test_line_ranges(self):
        plan = chunk_markdown("## A\n\none\n\n\n## B\n\ntwo\n")
        self.assertEqual((plan.chunks[0].start_line, plan.chunks[0].end_line), (0, 2))
        self.assertEqual((plan.chunks[1].start_line, plan.chunks[1].end_line), (5, 7))

    def test_token_estimate(self):
        self.assertEqual(estimate_tokens(""), 0)
        self.assertEqual(estimate_tokens("abcd"), 1)
        self.assertEqual(estimate_tokens("abcde"), 2)
        plan = chunk_markdown("## A\n\nbody")
        self.assertEqual(plan.chunks[0].token_count, estimate_tokens("## A\n\nbody"))


if __name__ == "__main__":
    unittest.main()
