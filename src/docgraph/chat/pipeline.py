from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import OperationCancelled, QueryFailedError, ServiceUnavailableError
from ..graph.extract import normalize_concept_name
from ..graph.models import DEPENDS_ON, SUPERSEDES, ChunkNode, ConceptNode
from ..graph.sqlite_graph import SqliteGraphRepository
from ..index.embedder import EmbeddingService
from ..index.vector_store import VectorSearchResult, VectorStore
from ..ingest.links import split_document_id
from ..logging import get_logger
from ..resilience import raise_if_cancelled
from .llm import ChatMessage, ModelTier, OllamaChatClient

logger = get_logger(__name__)

NO_RESULTS_ANSWER = "No relevant documents found for your query."

# Concept expansion walks at most this many hops: the selected concepts, then their neighbours.
MAX_CONCEPT_HOPS = 2
LOW_CONFIDENCE = 0.5

SYSTEM_PROMPT = (
    "You are a knowledgeable documentation assistant. Answer the user's question based on the provided context chunks.\n"
    "\n"
    "Guidelines:\n"
    "- Base your answer ONLY on the provided context. Do not make up information.\n"
    "- If the context doesn't contain enough information, say so clearly.\n"
    "- Reference specific sources by file path when possible.\n"
    "- Be concise but thorough.\n"
    "- Use code examples from the context when relevant.\n"
    "- End with a final line of the form 'CONFIDENCE: high', 'CONFIDENCE: medium' or 'CONFIDENCE: low'."
)

CONCEPT_ROUTING_PROMPT = (
    "You decide whether more context is needed to answer a documentation question.\n"
    "You are given the question, the chunks retrieved so far, and the concepts they mention.\n"
    'Reply with JSON only: {"expand": ["concept name", ...]} listing concepts whose other mentions would help.\n'
    'Reply {"expand": []} if the retrieved chunks are sufficient.'
)

DOCUMENT_ROUTING_PROMPT = (
    "You decide which document relationships are worth following to answer a documentation question.\n"
    "You are given the question and a numbered list of DEPENDS_ON / SUPERSEDES edges.\n"
    'Reply with JSON only: {"follow": [1, 3]} using the edge numbers, or {"follow": []} to follow none.'
)

_CONFIDENCE_RE = re.compile(r"^\s*\**confidence\**\s*[:=]\s*(.+?)\s*$", re.IGNORECASE)
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_CONFIDENCE_WORDS = {"high": 1.0, "medium": 0.75, "moderate": 0.75, "low": 0.4, "none": 0.0}


class Stage(str, Enum):
    INITIAL_RETRIEVAL = "initial_retrieval"
    CONCEPT_EXPANSION = "concept_expansion"
    DOCUMENT_TRAVERSAL = "document_traversal"
    SYNTHESIS = "synthesis"


@dataclass(frozen=True)
class GraphRagOptions:
    max_chunks: int = 10
    max_traversal_steps: int = 5
    min_relevance_score: float = 0.7
    use_cross_repo_links: bool = True
    enable_document_traversal: bool = True
    repository_filter: str | None = None
    doc_type_filter: str | None = None


@dataclass(frozen=True)
class GraphRagSource:
    document_id: str
    chunk_id: str
    repository: str
    file_path: str
    header_path: str
    relevance_score: float
    # How the chunk was reached: "vector", "concept" or "document".
    origin: str = "vector"


@dataclass(frozen=True)
class GraphRagResult:
    answer: str
    sources: list[GraphRagSource] = field(default_factory=list)
    related_concepts: list[str] = field(default_factory=list)
    confidence: float = 0.0
    traversal_log: list[str] = field(default_factory=list)
    model_tier: ModelTier | None = None
    budget_exhausted: bool = False


@dataclass(frozen=True)
class StageContext:
    """What the transition function needs to know after a stage ran."""

    steps_taken: int
    max_steps: int
    has_hits: bool = True
    expansion_refused: bool = False
    traversal_enabled: bool = True


@dataclass(frozen=True)
class Transition:
    stage: Stage
    budget_exhausted: bool = False


def next_stage(stage: Stage, ctx: StageContext) -> Transition:
    """Pure transition function of the query state machine.

    Every stage either advances to a later stage or falls through to
    SYNTHESIS, so no stage runs twice. Wanting more work with no steps left
    marks the budget exhausted.
    """
    if stage == Stage.SYNTHESIS:
        return Transition(Stage.SYNTHESIS)

    if stage == Stage.INITIAL_RETRIEVAL:
        if not ctx.has_hits:
            return Transition(Stage.SYNTHESIS)
        wanted = Stage.CONCEPT_EXPANSION
    elif stage == Stage.CONCEPT_EXPANSION:
        if ctx.expansion_refused or not ctx.traversal_enabled:
            return Transition(Stage.SYNTHESIS)
        wanted = Stage.DOCUMENT_TRAVERSAL
    else:
        return Transition(Stage.SYNTHESIS)

    if ctx.steps_taken >= ctx.max_steps:
        return Transition(Stage.SYNTHESIS, budget_exhausted=True)
    return Transition(wanted)


def compute_confidence(scores: list[float], requested: int) -> float:
    if not scores:
        return 0.0
    average = sum(scores) / len(scores)
    coverage = min(1.0, len(scores) / max(1, requested))
    return average * coverage


def parse_confidence(text: str) -> tuple[str, float | None]:
    """Split a trailing ``CONFIDENCE:`` line off an answer.

    Returns ``(answer, confidence)``; confidence is None when the model did
    not report one or it could not be read.
    """
    lines = text.rstrip().splitlines()
    while lines and not lines[-1].strip():
        lines.pop()
    if not lines:
        return text.strip(), None
    m = _CONFIDENCE_RE.match(lines[-1])
    if not m:
        return text.strip(), None

    answer = "\n".join(lines[:-1]).strip()
    raw = m.group(1).strip().strip("*").strip().lower()
    if raw in _CONFIDENCE_WORDS:
        return answer, _CONFIDENCE_WORDS[raw]
    try:
        value = float(raw[:-1]) / 100.0 if raw.endswith("%") else float(raw)
    except ValueError:
        return answer, None
    if value > 1.0:
        value = value / 100.0
    return answer, min(max(value, 0.0), 1.0)


@dataclass
class _QueryState:
    query: str
    options: GraphRagOptions
    hits: list[VectorSearchResult] = field(default_factory=list)
    chunks: dict[str, ChunkNode] = field(default_factory=dict)
    origins: dict[str, str] = field(default_factory=dict)
    concepts: dict[str, ConceptNode] = field(default_factory=dict)
    expanded: set[str] = field(default_factory=set)
    repositories: set[str] = field(default_factory=set)
    steps: int = 0
    budget_exhausted: bool = False
    expansion_refused: bool = False
    log: list[str] = field(default_factory=list)

    def add_chunk(self, chunk: ChunkNode, origin: str) -> bool:
        if chunk.id in self.chunks:
            return False
        self.chunks[chunk.id] = chunk
        self.origins[chunk.id] = origin
        return True


class GraphRagPipeline:
    """Vector retrieval widened through the concept and document graph, then synthesized.

    Stages: INITIAL_RETRIEVAL -> CONCEPT_EXPANSION -> DOCUMENT_TRAVERSAL ->
    SYNTHESIS. Routing decisions use the fast model tier; synthesis uses the
    default tier and escalates to the advanced tier on low confidence or when
    the traversal budget ran out.
    """

    def __init__(
        self,
        *,
        graph: SqliteGraphRepository,
        vectors: VectorStore,
        embedder: EmbeddingService,
        llm: OllamaChatClient,
        defaults: GraphRagOptions | None = None,
    ):
        self.graph = graph
        self.vectors = vectors
        self.embedder = embedder
        self.llm = llm
        self.defaults = defaults or GraphRagOptions()

    def query(
        self,
        text: str,
        options: GraphRagOptions | None = None,
        cancel: threading.Event | None = None,
    ) -> GraphRagResult:
        options = options or self.defaults
        state = _QueryState(query=text, options=options)
        logger.info(
            "pipeline_started",
            max_chunks=options.max_chunks,
            min_score=options.min_relevance_score,
            max_steps=options.max_traversal_steps,
        )

        try:
            stage = Stage.INITIAL_RETRIEVAL
            while stage != Stage.SYNTHESIS:
                raise_if_cancelled(cancel)
                if stage == Stage.INITIAL_RETRIEVAL:
                    self._initial_retrieval(state, cancel)
                    if not state.hits:
                        logger.info("pipeline_no_results", query=text)
                        return GraphRagResult(
                            answer=NO_RESULTS_ANSWER,
                            confidence=0.0,
                            traversal_log=state.log,
                        )
                elif stage == Stage.CONCEPT_EXPANSION:
                    self._concept_expansion(state, cancel)
                elif stage == Stage.DOCUMENT_TRAVERSAL:
                    self._document_traversal(state, cancel)

                transition = next_stage(
                    stage,
                    StageContext(
                        steps_taken=state.steps,
                        max_steps=options.max_traversal_steps,
                        has_hits=bool(state.hits),
                        expansion_refused=state.expansion_refused,
                        traversal_enabled=options.enable_document_traversal,
                    ),
                )
                if transition.budget_exhausted:
                    state.budget_exhausted = True
                    state.log.append(f"budget exhausted after {state.steps} step(s)")
                stage = transition.stage

            raise_if_cancelled(cancel)
            return self._synthesize(state, cancel)
        except (OperationCancelled, ServiceUnavailableError, QueryFailedError):
            raise
        except Exception as e:
            logger.warning("pipeline_failed", error=str(e))
            raise QueryFailedError(f"Query failed: {e}") from e

    # -- stages ----------------------------------------------------------

    def _initial_retrieval(self, state: _QueryState, cancel: threading.Event | None) -> None:
        opts = state.options
        vec = self.embedder.generate_embedding(state.query, cancel)

        filters = {"repository": opts.repository_filter} if opts.repository_filter else None
        # The doc type lives on the Document node, so over-fetch and filter through the graph.
        top_k = opts.max_chunks * 4 if opts.doc_type_filter else opts.max_chunks
        results = self.vectors.search(vec, top_k=top_k, filters=filters)

        hits = [r for r in results if r.score >= opts.min_relevance_score]
        if opts.doc_type_filter:
            hits = [r for r in hits if self._doc_type_matches(r.metadata["document_id"], opts.doc_type_filter)]
        state.hits = hits[: opts.max_chunks]
        logger.info("vector_search_results", count=len(results), filtered=len(state.hits))

        for chunk in self.graph.get_chunks_by_ids([h.chunk_id for h in state.hits]):
            state.add_chunk(chunk, "vector")
        state.repositories = {h.metadata["repository"] for h in state.hits}

        for concept in self.graph.get_concepts_by_chunk_ids(list(state.chunks)):
            state.concepts[concept.id] = concept
        for cid in list(state.concepts):
            for neighbour in self.graph.get_related_concepts(cid, hops=1):
                state.concepts.setdefault(neighbour.id, neighbour)

        state.log.append(
            f"{Stage.INITIAL_RETRIEVAL.value}: {len(state.hits)} chunk(s) above {opts.min_relevance_score:.2f}, "
            f"{len(state.concepts)} concept(s) in neighbourhood"
        )

    def _concept_expansion(self, state: _QueryState, cancel: threading.Event | None) -> None:
        opts = state.options
        if not state.concepts:
            state.expansion_refused = True
            state.log.append(f"{Stage.CONCEPT_EXPANSION.value}: no concepts to expand")
            return

        selected = self._route_concepts(state, cancel)
        if not selected:
            state.expansion_refused = True
            state.log.append(f"{Stage.CONCEPT_EXPANSION.value}: routing declined to expand")
            return

        frontier = selected
        for hop in range(1, MAX_CONCEPT_HOPS + 1):
            if not frontier:
                break
            if state.steps >= opts.max_traversal_steps:
                state.budget_exhausted = True
                state.log.append(f"{Stage.CONCEPT_EXPANSION.value} hop {hop}: budget exhausted")
                break
            raise_if_cancelled(cancel)
            state.steps += 1
            state.expanded.update(frontier)

            added = 0
            for cid in frontier:
                for chunk in self.graph.get_chunks_by_concept(cid):
                    if added >= opts.max_chunks:
                        break
                    if not self._repository_allowed(state, chunk.document_id):
                        continue
                    if state.add_chunk(chunk, "concept"):
                        added += 1
            names = ", ".join(state.concepts[c].name if c in state.concepts else c for c in frontier)
            state.log.append(f"{Stage.CONCEPT_EXPANSION.value} hop {hop}: [{names}] -> +{added} chunk(s)")

            next_frontier: list[str] = []
            for cid in frontier:
                for neighbour in self.graph.get_related_concepts(cid, hops=1):
                    state.concepts.setdefault(neighbour.id, neighbour)
                    if neighbour.id not in state.expanded and neighbour.id not in next_frontier:
                        next_frontier.append(neighbour.id)
            frontier = next_frontier

    def _document_traversal(self, state: _QueryState, cancel: threading.Event | None) -> None:
        opts = state.options
        doc_ids = sorted({c.document_id for c in state.chunks.values()})
        edges: list[tuple[str, str, str]] = []
        for doc_id in doc_ids:
            for rel_type, target in self.graph.get_linked_documents(doc_id, (DEPENDS_ON, SUPERSEDES)):
                if target.id in doc_ids:
                    continue
                if not opts.use_cross_repo_links and not self._repository_allowed(state, target.id):
                    continue
                edge = (doc_id, rel_type, target.id)
                if edge not in edges:
                    edges.append(edge)

        if not edges:
            state.log.append(f"{Stage.DOCUMENT_TRAVERSAL.value}: no DEPENDS_ON/SUPERSEDES edges")
            return

        listing = "\n".join(f"{i}. [{rel}] {src} -> {tgt}" for i, (src, rel, tgt) in enumerate(edges, start=1))
        response = self.llm.generate(
            DOCUMENT_ROUTING_PROMPT,
            [ChatMessage(role="user", content=f"Question:\n{state.query}\n\nEdges:\n{listing}")],
            ModelTier.FAST,
            cancel=cancel,
        )
        picks = _parse_json_list(response, "follow")
        chosen = []
        for p in picks or []:
            try:
                idx = int(p)
            except (TypeError, ValueError):
                continue
            if 1 <= idx <= len(edges) and edges[idx - 1] not in chosen:
                chosen.append(edges[idx - 1])
        if not chosen:
            state.log.append(f"{Stage.DOCUMENT_TRAVERSAL.value}: routing declined to follow edges")
            return

        state.steps += 1
        added = 0
        for src, rel, tgt in chosen:
            for chunk in self.graph.get_chunks_by_document(tgt):
                if added >= opts.max_chunks:
                    break
                if state.add_chunk(chunk, "document"):
                    added += 1
            state.log.append(f"{Stage.DOCUMENT_TRAVERSAL.value}: followed {rel} {src} -> {tgt}")
        state.log.append(f"{Stage.DOCUMENT_TRAVERSAL.value}: +{added} chunk(s)")

    def _synthesize(self, state: _QueryState, cancel: threading.Event | None) -> GraphRagResult:
        opts = state.options
        retrieval_confidence = compute_confidence([h.score for h in state.hits], opts.max_chunks)

        messages = [ChatMessage(role="user", content=self._synthesis_message(state))]
        tier = ModelTier.ADVANCED if state.budget_exhausted else ModelTier.DEFAULT
        answer, reported = parse_confidence(self.llm.generate(SYSTEM_PROMPT, messages, tier, cancel=cancel))

        if tier == ModelTier.DEFAULT and reported is not None and reported < LOW_CONFIDENCE:
            state.log.append(f"{Stage.SYNTHESIS.value}: low confidence ({reported:.2f}), escalating")
            raise_if_cancelled(cancel)
            tier = ModelTier.ADVANCED
            answer, reported = parse_confidence(self.llm.generate(SYSTEM_PROMPT, messages, tier, cancel=cancel))
        state.log.append(f"{Stage.SYNTHESIS.value}: tier={tier.value}")

        confidence = retrieval_confidence * (reported if reported is not None else 1.0)
        scores = {h.chunk_id: h.score for h in state.hits}
        sources = [
            GraphRagSource(
                document_id=chunk.document_id,
                chunk_id=chunk.id,
                repository=split_document_id(chunk.document_id)[0],
                file_path=self._file_path(state, chunk),
                header_path=chunk.header_path,
                relevance_score=scores.get(chunk.id, 0.0),
                origin=state.origins[chunk.id],
            )
            for chunk in state.chunks.values()
        ]
        related = sorted({c.name for c in state.concepts.values()})

        logger.info(
            "pipeline_complete",
            sources=len(sources),
            concepts=len(related),
            confidence=round(confidence, 3),
            tier=tier.value,
            steps=state.steps,
        )
        return GraphRagResult(
            answer=_strip_sources_section(answer),
            sources=sources,
            related_concepts=related,
            confidence=confidence,
            traversal_log=state.log,
            model_tier=tier,
            budget_exhausted=state.budget_exhausted,
        )

    # -- helpers ---------------------------------------------------------

    def _route_concepts(self, state: _QueryState, cancel: threading.Event | None) -> list[str]:
        excerpts = "\n\n".join(
            f"[{c.header_path or c.document_id}]\n{_preview(c.content)}" for c in list(state.chunks.values())[:5]
        )
        concepts = "\n".join(
            f"- {c.name}" + (f" ({c.type})" if c.type else "") + (f": {c.description}" if c.description else "")
            for c in sorted(state.concepts.values(), key=lambda c: c.id)
        )
        response = self.llm.generate(
            CONCEPT_ROUTING_PROMPT,
            [
                ChatMessage(
                    role="user",
                    content=f"Question:\n{state.query}\n\nRetrieved chunks:\n{excerpts}\n\nConcepts:\n{concepts}",
                )
            ],
            ModelTier.FAST,
            cancel=cancel,
        )
        names = _parse_json_list(response, "expand")
        if names is None:
            logger.warning("routing_response_unparseable", stage=Stage.CONCEPT_EXPANSION.value, preview=response[:120])
            return []

        by_norm = {normalize_concept_name(c.name): c.id for c in state.concepts.values()}
        by_norm.update({cid.split(":", 1)[1]: cid for cid in state.concepts})
        selected: list[str] = []
        for name in names:
            cid = by_norm.get(normalize_concept_name(str(name)))
            if cid is not None and cid not in selected:
                selected.append(cid)
        return selected

    def _synthesis_message(self, state: _QueryState) -> str:
        scores = {h.chunk_id: h.score for h in state.hits}
        lines = ["## Context"]
        for chunk in state.chunks.values():
            location = self._file_path(state, chunk)
            if chunk.header_path:
                location = f"{location} > {chunk.header_path}"
            score = scores.get(chunk.id)
            tag = f"relevance: {score:.2f}" if score is not None else f"via {state.origins[chunk.id]}"
            lines.append(f"### Source: {location} ({tag})")
            lines.append(chunk.content)
            lines.append("")
        if state.log:
            lines.append("## Traversal")
            lines.extend(f"- {entry}" for entry in state.log)
        return f"{state.query.strip()}\n\n" + "\n".join(lines)

    def _file_path(self, state: _QueryState, chunk: ChunkNode) -> str:
        for h in state.hits:
            if h.chunk_id == chunk.id:
                return h.metadata["file_path"]
        doc = self.graph.get_document(chunk.document_id)
        return doc.file_path if doc is not None else split_document_id(chunk.document_id)[1]

    def _doc_type_matches(self, document_id: str, doc_type: str) -> bool:
        doc = self.graph.get_document(document_id)
        return doc is not None and (doc.doc_type or "").lower() == doc_type.lower()

    def _repository_allowed(self, state: _QueryState, document_id: str) -> bool:
        if state.options.use_cross_repo_links or not state.repositories:
            return True
        return split_document_id(document_id)[0] in state.repositories


def _parse_json_list(response: str, key: str) -> list[Any] | None:
    """Pull ``{key: [...]}`` out of a routing response. None if unreadable."""
    text = response.strip()
    if text.upper().startswith("NONE"):
        return []
    m = _JSON_OBJECT_RE.search(text)
    if not m:
        return None
    try:
        data = json.loads(m.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or not isinstance(data.get(key), list):
        return None
    return list(data[key])


def _preview(text: str, limit: int = 400) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else flat[:limit].rstrip() + "..."


def _strip_sources_section(text: str) -> str:
    """Remove a model-added trailing 'Sources:' block.

    Sources are returned separately, so a trailing bibliography-style list
    is redundant.
    """
    lines = text.splitlines()
    if not lines:
        return text

    # Find the last occurrence of a "Sources:" heading and drop it + following bullets.
    last_idx = -1
    for i, line in enumerate(lines):
        if line.strip().lower().lstrip("#").strip() in {"sources:", "source:", "citations:", "references:"}:
            last_idx = i
    if last_idx == -1:
        return text

    tail = [ln.strip() for ln in lines[last_idx + 1 :]]
    # Only strip if the tail looks like a list of sources.
    for ln in tail:
        if not ln:
            continue
        if ln.startswith(("- ", "* ")):
            continue
        if ".md" in ln.lower():
            continue
        return text

    return "\n".join(lines[:last_idx]).rstrip()
