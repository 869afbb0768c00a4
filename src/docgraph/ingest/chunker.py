from __future__ import annotations

import math
from dataclasses import dataclass

from .links import slugify
from .markdown import Heading, parse_outline, split_lines

INTRODUCTION = "Introduction"
INTRODUCTION_KEY = "introduction"


@dataclass(frozen=True)
class PlannedSection:
    key: str  # slug, unique within the document
    title: str
    order: int
    level: int = 2


@dataclass(frozen=True)
class Chunk:
    order: int
    section_key: str
    header_path: str
    content: str
    start_line: int  # 0-based, inclusive, relative to the body
    end_line: int

    @property
    def token_count(self) -> int:
        return estimate_tokens(self.content)


@dataclass(frozen=True)
class ChunkPlan:
    sections: list[PlannedSection]
    chunks: list[Chunk]


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def chunk_markdown(
    body: str,
    outline: list[Heading] | None = None,
    *,
    threshold_lines: int = 500,
) -> ChunkPlan:
    """Split a frontmatter-stripped body at H2 (and, for long documents, H3) headings.

    Each H2 title becomes one section; repeated titles share the section of
    their first occurrence. Content before the first boundary goes to a
    synthetic "Introduction" section with an empty header path.
    """
    lines = split_lines(body)
    if outline is None:
        outline = parse_outline(body)

    split_levels = {2, 3} if len(lines) > threshold_lines else {2}
    boundaries = [h for h in outline if h.level in split_levels]

    sections: dict[str, PlannedSection] = {}
    chunks: list[Chunk] = []

    def section_for(title: str) -> str:
        key = INTRODUCTION_KEY if title == INTRODUCTION else slugify(title)
        if key not in sections:
            sections[key] = PlannedSection(key=key, title=title, order=len(sections))
        return key

    def add_chunk(section_key: str, header_path: str, start: int, end: int) -> None:
        while end > start and not lines[end].strip():
            end -= 1
        content = "\n".join(lines[start : end + 1]).strip()
        if not content:
            return
        chunks.append(
            Chunk(
                order=len(chunks),
                section_key=section_key,
                header_path=header_path,
                content=content,
                start_line=start,
                end_line=end,
            )
        )

    first = boundaries[0].line if boundaries else len(lines)
    h1_lines = {h.line for h in outline if h.level == 1}
    has_intro = any(lines[i].strip() and i not in h1_lines for i in range(first))
    if has_intro:
        add_chunk(section_for(INTRODUCTION), "", 0, first - 1)

    current_h2: str | None = None
    for pos, heading in enumerate(boundaries):
        end = boundaries[pos + 1].line - 1 if pos + 1 < len(boundaries) else len(lines) - 1
        if heading.level == 2:
            current_h2 = section_for(heading.title)
            key = current_h2
        else:
            key = current_h2 if current_h2 is not None else section_for(INTRODUCTION)

        # A heading with nothing under it produces no chunk.
        if any(lines[i].strip() for i in range(heading.line + 1, end + 1)):
            add_chunk(key, heading.header_path, heading.line, end)

    if not outline and INTRODUCTION_KEY not in sections:
        section_for(INTRODUCTION)

    ordered = sorted(sections.values(), key=lambda s: s.order)
    return ChunkPlan(sections=ordered, chunks=chunks)
