"""Property graph over ingested markdown.

Documents, sections, chunks, concepts and code examples live in SQLite
(``sqlite_graph``); concepts come from the fast LLM tier or, offline, from
the heuristic extractor in ``extract``. ``related`` and ``query`` read the
graph, ``build`` and ``merge`` are maintenance passes run after ingestion.
"""
