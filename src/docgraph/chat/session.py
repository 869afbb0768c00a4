from __future__ import annotations

import json
import os
import threading
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path

from ..logging import get_logger
from .pipeline import GraphRagOptions, GraphRagPipeline, GraphRagResult

logger = get_logger(__name__)

HISTORY_QUERIES = 2
HISTORY_DOCUMENTS = 3


class ContextMode(str, Enum):
    NEW = "new"  # always start a fresh conversation
    CONTINUE = "continue"  # reuse the session's conversation, creating it if needed


@dataclass
class ConversationContext:
    session_id: str
    turn_number: int = 0
    previous_queries: list[str] = field(default_factory=list)
    previous_answers: list[str] = field(default_factory=list)
    referenced_documents: list[str] = field(default_factory=list)

    @property
    def is_follow_up(self) -> bool:
        return self.turn_number > 0


@dataclass(frozen=True)
class RecallResult:
    session_id: str
    turn_number: int
    is_follow_up: bool
    query: str
    expanded_query: str
    result: GraphRagResult
    previous_documents: list[str] = field(default_factory=list)


class SessionStore:
    """Caller-owned map of session id -> conversation.

    With a ``path`` the conversations are kept in a JSON file so that
    separate CLI invocations can continue a session.
    """

    def __init__(self, path: str | os.PathLike[str] | None = None):
        self.path = Path(path) if path is not None else None
        self._sessions: dict[str, ConversationContext] = {}
        self._lock = threading.Lock()
        if self.path is not None and self.path.exists():
            data = json.loads(self.path.read_text(encoding="utf-8"))
            for sid, ctx in data.items():
                self._sessions[sid] = ConversationContext(**ctx)

    def get(self, session_id: str) -> ConversationContext | None:
        with self._lock:
            return self._sessions.get(session_id)

    def get_or_create(self, session_id: str | None, mode: ContextMode) -> ConversationContext:
        sid = session_id or uuid.uuid4().hex
        with self._lock:
            if mode == ContextMode.NEW or sid not in self._sessions:
                self._sessions[sid] = ConversationContext(session_id=sid)
            return self._sessions[sid]

    def save(self) -> None:
        if self.path is None:
            return
        with self._lock:
            data = {sid: asdict(ctx) for sid, ctx in self._sessions.items()}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


def expand_query(query: str, context: ConversationContext) -> str:
    if not context.previous_queries:
        return query
    recent = "; ".join(context.previous_queries[-HISTORY_QUERIES:])
    expanded = f"{query} (in context of: {recent}"
    if context.referenced_documents:
        expanded += f"; related documents: {', '.join(context.referenced_documents[-HISTORY_DOCUMENTS:])}"
    return expanded + ")"


def recall(
    pipeline: GraphRagPipeline,
    store: SessionStore,
    text: str,
    *,
    session_id: str | None = None,
    mode: ContextMode = ContextMode.CONTINUE,
    include_history: bool = True,
    options: GraphRagOptions | None = None,
    cancel: threading.Event | None = None,
) -> RecallResult:
    """Answer ``text`` as one turn of a conversation.

    Follow-up turns fold the previous queries into the retrieval query. The
    conversation is only advanced when the pipeline returns.
    """
    context = store.get_or_create(session_id, mode)
    follow_up = context.is_follow_up
    expanded = expand_query(text, context) if follow_up and include_history else text
    logger.info("recall_started", session_id=context.session_id, turn=context.turn_number + 1, follow_up=follow_up)

    result = pipeline.query(expanded, options, cancel=cancel)

    previous_documents = list(context.referenced_documents)
    context.turn_number += 1
    context.previous_queries.append(text)
    context.previous_answers.append(result.answer)
    for source in result.sources:
        if source.file_path and source.file_path not in context.referenced_documents:
            context.referenced_documents.append(source.file_path)

    return RecallResult(
        session_id=context.session_id,
        turn_number=context.turn_number,
        is_follow_up=follow_up,
        query=text,
        expanded_query=expanded,
        result=result,
        previous_documents=previous_documents,
    )
