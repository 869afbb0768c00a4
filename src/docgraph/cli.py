from __future__ import annotations

from pathlib import Path

import httpx
import typer
from rich.console import Console
from rich.table import Table
from rich.text import Text

from .chat.llm import ModelTier, OllamaChatClient
from .chat.pipeline import GraphRagOptions, GraphRagPipeline, GraphRagResult
from .chat.session import ContextMode, SessionStore, recall as recall_turn
from .config import Settings
from .errors import DocGraphError, ServiceUnavailableError
from .graph.build import build_concept_relations
from .graph.extract import EntityExtractor, HeuristicEntityExtractor
from .graph.merge import ConceptMerger
from .graph.query import query_concepts, resolve_concept
from .graph.related import LinkType, RelatedDocumentResolver, RelatedRequest
from .graph.sqlite_graph import SqliteGraphRepository
from .index import vector_store
from .index.embedder import EmbeddingService, FastEmbedEmbedder, OllamaEmbedder
from .index.vector_store import VectorStore
from .ingest.runner import IngestOptions, ingest_directory
from .ingest.service import DocumentIngestionService
from .logging import setup_logging
from .resilience import CircuitBreaker, RetryPolicy


app = typer.Typer(add_completion=False, help="docgraph: markdown knowledge graph + GraphRAG over your docs.")
console = Console()

graph_app = typer.Typer(add_completion=False, help="Concept graph maintenance and exploration.")
app.add_typer(graph_app, name="graph")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    settings = Settings()
    setup_logging("DEBUG" if verbose else settings.log_level, json_logs=settings.log_json)


@app.command()
def ingest(
    input: Path = typer.Option(..., "--input", exists=True, file_okay=False, dir_okay=True),
    repository: str = typer.Option(..., "--repository", help="Repository name used to qualify document ids"),
    db: Path | None = typer.Option(None, "--db", help="SQLite DB path to create/update"),
    commit_hash: str | None = typer.Option(None, "--commit", help="Commit hash recorded on each document"),
    force: bool = typer.Option(False, "--force", help="Re-ingest documents whose content is unchanged"),
):
    """Ingest a directory of markdown into the graph and vector index."""
    settings = Settings()
    graph, vectors = _open_stores(db, settings)
    try:
        service = DocumentIngestionService(
            graph,
            vectors,
            _embedder(settings),
            _extractor(settings),
            chunk_threshold_lines=settings.chunk_threshold_lines,
            concurrency=settings.ingest_concurrency,
        )
        res = ingest_directory(
            service,
            IngestOptions(input_dir=input, repository=repository, commit_hash=commit_hash, force=force),
        )
        vectors.save()
    finally:
        graph.close()

    console.print(f"Documents seen: {res['documents_seen']}")
    console.print(f"Documents changed: {res['documents_changed']}")
    console.print(f"Chunks written: {res['chunks_written']}")
    console.print(f"Vectors indexed: {res['vectors_indexed']}")
    if res["chunk_failures"]:
        console.print(f"Chunk failures (see log): {res['chunk_failures']}", style="yellow")
    console.print("Next: run `docgraph graph build-relations` to link co-mentioned concepts.")


@app.command()
def query(
    text: str = typer.Argument(...),
    db: Path | None = typer.Option(None, "--db"),
    max_chunks: int | None = typer.Option(None, help="Top-k chunks from vector search"),
    max_steps: int | None = typer.Option(None, "--max-steps", help="Graph traversal step budget"),
    min_relevance: float | None = typer.Option(None, help="Minimum vector similarity"),
    repository: str | None = typer.Option(None, "--repository", help="Only search this repository"),
    doc_type: str | None = typer.Option(None, "--doc-type", help="Only search documents of this type"),
    cross_repo: bool = typer.Option(True, "--cross-repo/--no-cross-repo", help="Follow links across repositories"),
    traverse: bool = typer.Option(True, "--traverse/--no-traverse", help="Follow DEPENDS_ON/SUPERSEDES edges"),
    show_log: bool = typer.Option(False, "--show-log", help="Print the traversal log"),
):
    """Answer a question with GraphRAG."""
    settings = Settings()
    options = _options(settings, max_chunks, max_steps, min_relevance, repository, doc_type, cross_repo, traverse)
    graph, vectors = _open_stores(db, settings)
    try:
        pipeline = _pipeline(graph, vectors, settings)
        result = _run(lambda: pipeline.query(text, options))
    finally:
        graph.close()

    _print_result(result, show_log=show_log)


@app.command()
def recall(
    text: str = typer.Argument(...),
    session: str | None = typer.Option(None, "--session", help="Session id to continue"),
    new: bool = typer.Option(False, "--new", help="Start a fresh conversation for this session id"),
    no_history: bool = typer.Option(False, "--no-history", help="Do not fold previous turns into the query"),
    db: Path | None = typer.Option(None, "--db"),
):
    """Ask a follow-up question within a conversation session."""
    settings = Settings()
    db_path = db or Path(settings.db_path)
    store = SessionStore(Path(str(db_path) + ".sessions.json"))
    graph, vectors = _open_stores(db_path, settings)
    try:
        pipeline = _pipeline(graph, vectors, settings)
        turn = _run(
            lambda: recall_turn(
                pipeline,
                store,
                text,
                session_id=session,
                mode=ContextMode.NEW if new else ContextMode.CONTINUE,
                include_history=not no_history,
            )
        )
        store.save()
    finally:
        graph.close()

    console.print(f"session: {turn.session_id} (turn {turn.turn_number})", markup=False, style="dim")
    if turn.is_follow_up and turn.expanded_query != turn.query:
        console.print(f"expanded query: {turn.expanded_query}", markup=False, style="dim")
    _print_result(turn.result, show_log=False)


@app.command()
def related(
    document_id: str | None = typer.Option(None, "--document-id", help="Source document id (repo:path)"),
    query: str | None = typer.Option(None, "--query", help="Find the source document by search"),
    depth: int = typer.Option(2, help="Link hops to follow (1-3)"),
    limit: int = typer.Option(10, help="Max related documents (1-50)"),
    link_types: LinkType = typer.Option(LinkType.ALL, "--link-types", case_sensitive=False),
    semantic: bool = typer.Option(False, "--semantic", help="Include embedding-similar documents"),
    doc_type: list[str] = typer.Option([], "--doc-type", help="Only keep these document types"),
    db: Path | None = typer.Option(None, "--db"),
):
    """List documents related to a source document."""
    if document_id is None and query is None:
        raise typer.BadParameter("Provide --document-id or --query")

    settings = Settings()
    graph, vectors = _open_stores(db, settings)
    try:
        needs_embedder = semantic or document_id is None
        resolver = RelatedDocumentResolver(graph, vectors, _embedder(settings) if needs_embedder else None)
        request = RelatedRequest(
            document_id=document_id,
            query=query,
            depth=depth,
            limit=limit,
            link_types=link_types,
            include_semantic=semantic,
            doc_types=tuple(doc_type) or None,
        )
        res = _run(lambda: resolver.find_related(request))
    finally:
        graph.close()

    if res.source_document is None:
        console.print("Source document not found.", style="yellow")
        raise typer.Exit(code=2)

    table = Table(title=f"Related to {res.source_document.id}")
    table.add_column("score", justify="right", width=6)
    table.add_column("relationship")
    table.add_column("hop", justify="right", width=4)
    table.add_column("document")
    table.add_column("via")
    for r in res.related_documents:
        table.add_row(
            Text(f"{r.relevance_score:.2f}"),
            Text(r.relationship.value),
            Text(str(r.distance)),
            Text(f"{r.title} ({r.document_id})"),
            Text(r.via_document or ""),
        )
    console.print(table)
    s = res.link_summary
    console.print(
        f"direct={s.direct_links} incoming={s.incoming_links} transitive={s.transitive_links} semantic={s.semantic_matches}",
        markup=False,
    )


@app.command()
def delete(
    document_id: str = typer.Argument(...),
    db: Path | None = typer.Option(None, "--db"),
):
    """Delete a document, its chunks and their vectors."""
    settings = Settings()
    graph, vectors = _open_stores(db, settings)
    try:
        # Deletion never calls out to the embedder.
        service = DocumentIngestionService(graph, vectors, embedder=_NoEmbedder())
        existed = service.delete_document(document_id, persist=vectors.save)
    finally:
        graph.close()

    if not existed:
        console.print(f"No such document: {document_id}", style="yellow")
        raise typer.Exit(code=2)
    console.print(f"Deleted {document_id}")


@app.command()
def stats(
    db: Path | None = typer.Option(None, "--db"),
):
    """Show graph and vector index counts."""
    settings = Settings()
    graph, vectors = _open_stores(db, settings)
    try:
        res = graph.stats()
        n_vectors = len(vectors)
    finally:
        graph.close()

    table = Table(title="docgraph stats")
    table.add_column("Metric")
    table.add_column("Value")
    for label, n in sorted(res["nodes"].items()):
        table.add_row(f"{label} nodes", str(n))
    for rel, n in sorted(res["edges"].items()):
        table.add_row(f"{rel} edges", str(n))
    table.add_row("Vectors", str(n_vectors))
    console.print(table)


@app.command()
def doctor(
    db: Path | None = typer.Option(None, "--db", help="Optional DB path to check"),
    base_url: str | None = typer.Option(None, "--base-url", help="Ollama base URL"),
):
    """Check Ollama, the configured models and the DB/index, and print fixes."""
    settings = Settings()
    ollama_url = (base_url or settings.ollama_base_url).rstrip("/")
    wanted = {tier.value: model for tier, model in _models(settings).items()}
    if settings.embed_provider == "ollama":
        wanted["embedding"] = settings.embed_model

    ok = True

    console.print("Ollama:")
    try:
        r = httpx.get(f"{ollama_url}/api/tags", timeout=5.0)
        r.raise_for_status()
        data = r.json()
        installed = {m.get("name") for m in (data.get("models") or []) if isinstance(m, dict)}
        console.print(f"- Server reachable at {ollama_url} ({len(installed)} model(s) installed).", style="green")
        for role, model in wanted.items():
            if model in installed or f"{model}:latest" in installed:
                console.print(f"- {role}: {model}", style="green")
            else:
                console.print(f"- Missing {role} model: {model}", style="yellow")
                console.print(f"  Fix: `ollama pull {model}`", style="yellow")
                ok = False
    except (httpx.HTTPError, ValueError) as e:
        console.print(f"- Not reachable at {ollama_url}: {e}", style="red")
        console.print("  Fix: start Ollama (`ollama serve`) then retry.", style="yellow")
        ok = False

    if settings.embed_provider == "fastembed":
        try:
            import fastembed  # type: ignore  # noqa: F401

            console.print("- fastembed installed.", style="green")
        except ImportError:
            console.print("- fastembed is not installed.", style="red")
            console.print("  Fix: `pip install -e '.[local]'` or set DOCGRAPH_EMBED_PROVIDER=ollama", style="yellow")
            ok = False

    db_path = db or Path(settings.db_path)
    console.print("\nDB/Index:")
    if not db_path.exists():
        console.print(f"- Missing DB: {db_path}", style="red")
        console.print("  Fix: run `docgraph ingest --input ... --repository ...`", style="yellow")
        ok = False
    else:
        graph = SqliteGraphRepository.open(db_path)
        try:
            res = graph.stats()
        finally:
            graph.close()
        docs = res["nodes"].get("Document", 0)
        chunks = res["nodes"].get("Chunk", 0)
        console.print(f"- Documents: {docs}", style="green" if docs > 0 else "yellow")
        console.print(f"- Chunks: {chunks}", style="green" if chunks > 0 else "yellow")
        if chunks == 0:
            console.print("  Fix: re-run ingest; no chunks were written.", style="yellow")
            ok = False

        ids_path, emb_path, _ = vector_store.paths_for_db(db_path)
        if not ids_path.exists() or not emb_path.exists():
            console.print("- Vector index missing.", style="yellow")
            console.print("  Fix: re-run ingest with a working embedding provider.", style="yellow")
            ok = False
        else:
            console.print(f"- Vector index OK: {emb_path.name}", style="green")

    if not ok:
        raise typer.Exit(code=1)


@graph_app.command("merge-concepts")
def graph_merge_concepts(
    db: Path | None = typer.Option(None, "--db"),
    threshold: float | None = typer.Option(None, help="Cosine similarity at which concepts merge"),
):
    """Merge near-duplicate concepts by embedding similarity."""
    settings = Settings()
    graph, _ = _open_stores(db, settings)
    try:
        merger = ConceptMerger(
            graph,
            _embedder(settings),
            threshold=settings.merge_threshold,
            max_workers=settings.ingest_concurrency,
        )
        report = _run(lambda: merger.merge(threshold))
    finally:
        graph.close()

    console.print(f"Concepts: {report.concepts} (embedded {report.embedded})")
    console.print(f"Groups merged: {report.groups}")
    for dup, survivor in report.merged:
        console.print(f"- {dup} -> {survivor}", markup=False)


@graph_app.command("build-relations")
def graph_build_relations(
    db: Path | None = typer.Option(None, "--db"),
    clear: bool = typer.Option(True, "--clear/--no-clear", help="Drop existing RELATED_TO edges first"),
    min_weight: int = typer.Option(1, help="Minimum co-mention count for an edge"),
):
    """Rebuild RELATED_TO edges from concept co-mentions."""
    settings = Settings()
    graph, _ = _open_stores(db, settings)
    try:
        res = build_concept_relations(graph, clear=bool(clear), min_weight=int(min_weight))
    finally:
        graph.close()

    for k, v in res.items():
        console.print(f"{k}: {v}", markup=False)


@graph_app.command("concept")
def graph_concept(
    name: str = typer.Argument(...),
    db: Path | None = typer.Option(None, "--db"),
    explore: bool = typer.Option(False, "--explore", help="Treat NAME as free text and explore matching concepts"),
):
    """Resolve a concept across repositories, or explore the concept graph."""
    settings = Settings()
    graph, _ = _open_stores(db, settings)
    try:
        if explore:
            res = query_concepts(graph, name)
            resolved = None
        else:
            resolved = resolve_concept(graph, name)
    finally:
        graph.close()

    if explore:
        console.print(f"terms: {', '.join(res['terms'])}", markup=False)
        for item in res["concepts"]:
            c = item["concept"]
            console.print("\n" + "=" * 80, markup=False)
            console.print(f"{c['name']} ({c['id']}, mentions={c['mentions']})", markup=False, style="bold")
            if item["neighbors"]:
                console.print("related: " + ", ".join(n["name"] for n in item["neighbors"]), markup=False)
            for ch in item["chunks"]:
                console.print(f"- {ch['chunk_id']} :: {ch['preview']}", markup=False)
        return

    if resolved is None:
        console.print(f"No concept found for {name!r}.", style="yellow")
        raise typer.Exit(code=2)
    console.print(f"{resolved.name} ({resolved.concept_id})", markup=False, style="bold")
    console.print(f"repository: {resolved.repository or '-'}", markup=False)
    if len(resolved.repositories) > 1:
        console.print(f"also in: {', '.join(resolved.repositories)}", markup=False)
    if resolved.related_concept_names:
        console.print("related: " + ", ".join(resolved.related_concept_names), markup=False)


class _NoEmbedder:
    def generate_embedding(self, text, cancel=None):
        raise DocGraphError("embedding is not available for this command")


def _open_stores(db: Path | None, settings: Settings) -> tuple[SqliteGraphRepository, VectorStore]:
    db_path = db or Path(settings.db_path)
    return SqliteGraphRepository.open(db_path), VectorStore.open(db_path)


def _retry(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        attempts=settings.retry_attempts,
        base_delay_s=settings.retry_base_delay_s,
        max_delay_s=settings.retry_max_delay_s,
    )


def _breaker(name: str, settings: Settings) -> CircuitBreaker:
    return CircuitBreaker(
        name,
        failure_ratio=settings.breaker_failure_ratio,
        window_s=settings.breaker_window_s,
        min_samples=settings.breaker_min_samples,
        cooldown_s=settings.breaker_cooldown_s,
    )


def _models(settings: Settings) -> dict[ModelTier, str]:
    return {
        ModelTier.FAST: settings.model_fast,
        ModelTier.DEFAULT: settings.model_default,
        ModelTier.ADVANCED: settings.model_advanced,
    }


def _embedder(settings: Settings) -> EmbeddingService:
    if settings.embed_provider == "ollama":
        return OllamaEmbedder(
            base_url=settings.ollama_base_url,
            model=settings.embed_model,
            breaker=_breaker("embedding", settings),
            retry=_retry(settings),
        )
    try:
        return FastEmbedEmbedder(settings.embed_model, breaker=_breaker("embedding", settings), retry=_retry(settings))
    except ImportError:
        console.print("Missing embedding dependencies. Install: `pip install -e '.[local]'`", style="red")
        raise typer.Exit(code=2)


def _llm(settings: Settings) -> OllamaChatClient:
    return OllamaChatClient(
        base_url=settings.ollama_base_url,
        models=_models(settings),
        timeout_s=settings.ollama_timeout_s,
        options={"temperature": settings.ollama_temperature},
        breaker=_breaker("llm", settings),
        retry=_retry(settings),
    )


def _extractor(settings: Settings) -> EntityExtractor:
    if settings.extractor == "heuristic":
        return HeuristicEntityExtractor()
    return _llm(settings)


def _pipeline(graph: SqliteGraphRepository, vectors: VectorStore, settings: Settings) -> GraphRagPipeline:
    if len(vectors) == 0:
        console.print("Vector index is empty.", style="red")
        console.print("Run: `docgraph ingest --input ... --repository ...`", style="yellow")
        raise typer.Exit(code=2)
    return GraphRagPipeline(
        graph=graph,
        vectors=vectors,
        embedder=_embedder(settings),
        llm=_llm(settings),
        defaults=_options(settings),
    )


def _options(
    settings: Settings,
    max_chunks: int | None = None,
    max_steps: int | None = None,
    min_relevance: float | None = None,
    repository: str | None = None,
    doc_type: str | None = None,
    cross_repo: bool = True,
    traverse: bool = True,
) -> GraphRagOptions:
    return GraphRagOptions(
        max_chunks=max_chunks if max_chunks is not None else settings.max_chunks,
        max_traversal_steps=max_steps if max_steps is not None else settings.max_traversal_steps,
        min_relevance_score=min_relevance if min_relevance is not None else settings.min_relevance,
        use_cross_repo_links=cross_repo,
        enable_document_traversal=traverse,
        repository_filter=repository,
        doc_type_filter=doc_type,
    )


def _run(fn):
    try:
        return fn()
    except ServiceUnavailableError as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=3)
    except DocGraphError as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=1)


def _print_result(result: GraphRagResult, *, show_log: bool) -> None:
    # Rich treats [..] as markup by default; answers may contain brackets.
    console.print(result.answer, markup=False)
    tier = result.model_tier.value if result.model_tier is not None else "-"
    console.print(f"\nconfidence: {result.confidence:.2f}  model tier: {tier}", markup=False, style="dim")
    if result.sources:
        console.print("\nSources:", markup=False)
        for s in result.sources:
            where = f"{s.file_path} > {s.header_path}" if s.header_path else s.file_path
            score = f"{s.relevance_score:.2f}" if s.origin == "vector" else s.origin
            console.print(f"- {s.repository}:{where} ({score})", markup=False)
    if result.related_concepts:
        console.print("\nRelated concepts: " + ", ".join(result.related_concepts), markup=False)
    if show_log and result.traversal_log:
        console.print("\nTraversal:", markup=False)
        for entry in result.traversal_log:
            console.print(f"- {entry}", markup=False)


if __name__ == "__main__":
    app()
