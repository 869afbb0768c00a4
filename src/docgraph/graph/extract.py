from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass
from typing import Any, Protocol

from ..logging import get_logger

logger = get_logger(__name__)

# Very small, local-first entity extraction:
# - Captures multi-word Capitalized sequences on one line: "Amazon Neptune", "Graph Store"
# - Captures all-caps acronyms: "RAG", "HTTP"
_ENTITY_RE = re.compile(
    r"\b(?:[A-Z]{2,}(?:-[A-Z]{2,})*|[A-Z][a-z]+(?:[ \t]+[A-Z][a-z]+){0,4})\b"
)
_ACRONYM_RE = re.compile(r"^[A-Z]{2,}(?:-[A-Z]{2,})*$")

# Filter out common titlecase words that are rarely meaningful entities alone.
_STOP = {
    "A", "An", "And", "Are", "As", "At", "Be", "But", "By", "Can", "Do", "For",
    "From", "He", "Her", "His", "I", "If", "In", "Into", "Is", "It", "Its", "Me",
    "My", "No", "Not", "Of", "On", "Or", "Our", "She", "So", "That", "The",
    "Their", "There", "These", "They", "This", "Those", "To", "We", "Were",
    "What", "When", "Where", "Who", "Why", "With", "You", "Your",
}
_STOP_LOWER = {s.lower() for s in _STOP}

_SPACE_RE = re.compile(r"[\s_]+")
_NON_ID_RE = re.compile(r"[^a-z0-9-]")
_HYPHENS_RE = re.compile(r"-{2,}")
_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)

ENTITY_SYSTEM_PROMPT = """\
You are an entity extraction system. Extract named entities from the provided text.
Return a JSON array of objects with the following structure:
[{"name": "entity name", "type": "entity type", "description": "brief description", "aliases": ["alias1"]}]
Suggested types: Concept, Technology, Pattern, API, Library, Framework, Service, Protocol
Return ONLY the JSON array, no other text.
"""


@dataclass(frozen=True)
class ExtractedEntity:
    name: str
    type: str = ""
    description: str = ""
    aliases: tuple[str, ...] = ()


class EntityExtractor(Protocol):
    def extract_entities(
        self, text: str, cancel: threading.Event | None = None
    ) -> list[ExtractedEntity]: ...


def normalize_concept_name(name: str) -> str:
    # "Amazon Neptune" and "amazon-neptune" both become "amazon-neptune".
    s = _SPACE_RE.sub("-", name.strip().lower())
    s = _NON_ID_RE.sub("", s)
    return _HYPHENS_RE.sub("-", s).strip("-")


def concept_id(name: str) -> str:
    return f"concept:{normalize_concept_name(name)}"


def norm_entity(name: str) -> str:
    # Normalize for stable matching.
    return re.sub(r"\s+", " ", name.strip()).lower()


def scan_entities(
    text: str,
    *,
    min_chars: int = 3,
    max_per_chunk: int = 25,
) -> dict[str, tuple[str, int]]:
    """Return {name_norm: (display_name, count_in_text)}."""
    counts: dict[str, tuple[str, int]] = {}
    for m in _ENTITY_RE.finditer(text):
        raw = m.group(0).strip()
        if len(raw) < min_chars:
            continue
        if raw in _STOP:
            continue

        n = norm_entity(raw)
        if n in _STOP_LOWER:
            continue

        prev = counts.get(n)
        if prev is None:
            if len(counts) >= max_per_chunk:
                continue
            counts[n] = (raw, 1)
        else:
            # Keep first seen as display form; increment count.
            counts[n] = (prev[0], prev[1] + 1)

    return counts


class HeuristicEntityExtractor:
    """Offline extractor: capitalized phrases and acronyms become concepts.

    Good enough to build a concept graph without an LLM; the type is a
    coarse guess ("Acronym" or "Term").
    """

    def __init__(self, *, min_chars: int = 3, max_per_chunk: int = 25):
        self.min_chars = min_chars
        self.max_per_chunk = max_per_chunk

    def extract_entities(
        self, text: str, cancel: threading.Event | None = None
    ) -> list[ExtractedEntity]:
        found = scan_entities(text, min_chars=self.min_chars, max_per_chunk=self.max_per_chunk)
        out = []
        for display, _count in found.values():
            kind = "Acronym" if _ACRONYM_RE.match(display) else "Term"
            out.append(ExtractedEntity(name=display, type=kind))
        return out


def extract_query_terms(text: str, *, max_terms: int = 8) -> list[str]:
    """Fallback term extraction when no entities are present."""
    toks = re.findall(r"[A-Za-z0-9_]+", text.lower())
    out: list[str] = []
    for t in toks:
        if len(t) < 3:
            continue
        if t in _STOP_LOWER:
            continue
        if t not in out:
            out.append(t)
        if len(out) >= max_terms:
            break
    return out


def parse_entities_json(response: str) -> list[ExtractedEntity]:
    """Parse an extraction response; tolerates code fences and prose around the array.

    Unparseable output yields an empty list.
    """
    text = response.strip()
    m = _FENCED_JSON_RE.search(text)
    if m:
        text = m.group(1).strip()
    if not text.startswith("["):
        start, end = text.find("["), text.rfind("]")
        if start == -1 or end <= start:
            logger.warning("entity_response_unparseable", preview=response[:120])
            return []
        text = text[start : end + 1]

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning("entity_response_unparseable", error=str(e), preview=response[:120])
        return []
    if not isinstance(data, list):
        return []

    out: list[ExtractedEntity] = []
    for item in data:
        entity = _entity_from(item)
        if entity is not None:
            out.append(entity)
    return out


def _entity_from(item: Any) -> ExtractedEntity | None:
    if not isinstance(item, dict):
        return None
    fields = {str(k).lower(): v for k, v in item.items()}
    name = str(fields.get("name") or "").strip()
    if not name or not normalize_concept_name(name):
        return None
    aliases = fields.get("aliases") or []
    if isinstance(aliases, str):
        aliases = [aliases]
    return ExtractedEntity(
        name=name,
        type=str(fields.get("type") or "").strip(),
        description=str(fields.get("description") or "").strip(),
        aliases=tuple(str(a).strip() for a in aliases if str(a).strip()),
    )
