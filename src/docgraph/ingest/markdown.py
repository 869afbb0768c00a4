from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import yaml

from ..logging import get_logger

logger = get_logger(__name__)

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*?)(?:\s+#+)?\s*$")
_FENCE_RE = re.compile(r"^\s{0,3}(`{3,}|~{3,})\s*([\w+#.\-]*)")
_LINK_RE = re.compile(r"(?<!!)\[([^\]]*)\]\(\s*<?([^)\s>]+)>?(?:\s+[\"'][^\"']*[\"'])?\s*\)")
_INLINE_CODE_RE = re.compile(r"`[^`]*`")


@dataclass(frozen=True)
class Heading:
    level: int
    title: str
    header_path: str  # "## Title > ### Subtitle"
    line: int  # 0-based, relative to the body
    end_line: int  # last line before the next heading


@dataclass(frozen=True)
class Link:
    url: str
    text: str
    line: int


@dataclass(frozen=True)
class CodeBlock:
    language: str
    code: str
    start_line: int
    end_line: int


@dataclass(frozen=True)
class ParsedMarkdown:
    frontmatter: dict[str, Any]
    body: str
    outline: list[Heading]
    links: list[Link]
    code_blocks: list[CodeBlock]


def split_lines(text: str) -> list[str]:
    return text.replace("\r\n", "\n").replace("\r", "\n").split("\n")


def split_frontmatter(raw: str) -> tuple[dict[str, Any], str]:
    """Return ``(frontmatter, body)``.

    Malformed YAML is logged and the document is treated as having no
    frontmatter.
    """
    text = raw.replace("\r\n", "\n").replace("\r", "\n")
    if not text.startswith("---\n"):
        return {}, text

    end = text.find("\n---", 3)
    if end == -1:
        return {}, text

    yaml_text = text[4:end]
    body_start = text.find("\n", end + 1)
    body = "" if body_start == -1 else text[body_start + 1 :].lstrip("\n")

    try:
        data = yaml.safe_load(yaml_text)
    except yaml.YAMLError as e:
        logger.warning("frontmatter_parse_failed", error=str(e))
        return {}, text

    if data is None:
        return {}, body
    if not isinstance(data, dict):
        logger.warning("frontmatter_not_a_mapping", kind=type(data).__name__)
        return {}, text
    return {str(k).lower(): v for k, v in data.items()}, body


def get_string_list(frontmatter: dict[str, Any], key: str) -> list[str]:
    value = frontmatter.get(key)
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None]
    return []


def fenced_lines(lines: list[str]) -> set[int]:
    """Indexes of lines that belong to fenced code blocks, fences included."""
    inside: set[int] = set()
    fence: str | None = None
    for idx, line in enumerate(lines):
        m = _FENCE_RE.match(line)
        if fence is None:
            if m:
                fence = m.group(1)
                inside.add(idx)
            continue
        inside.add(idx)
        if m and m.group(1)[0] == fence[0] and len(m.group(1)) >= len(fence) and not m.group(2):
            fence = None
    return inside


def parse_outline(body: str) -> list[Heading]:
    lines = split_lines(body)
    fenced = fenced_lines(lines)

    found: list[tuple[int, int, str]] = []
    for idx, line in enumerate(lines):
        if idx in fenced:
            continue
        m = _HEADING_RE.match(line)
        if not m:
            continue
        title = m.group(2).strip()
        if not title:
            continue
        found.append((idx, len(m.group(1)), title))

    out: list[Heading] = []
    stack: list[tuple[int, str]] = []
    for pos, (idx, level, title) in enumerate(found):
        while stack and stack[-1][0] >= level:
            stack.pop()
        stack.append((level, title))

        header_path = " > ".join(f"{'#' * lvl} {t}" for lvl, t in stack)
        end_line = found[pos + 1][0] - 1 if pos + 1 < len(found) else len(lines) - 1
        out.append(Heading(level=level, title=title, header_path=header_path, line=idx, end_line=end_line))
    return out


def extract_links(body: str) -> list[Link]:
    lines = split_lines(body)
    fenced = fenced_lines(lines)
    out: list[Link] = []
    for idx, line in enumerate(lines):
        if idx in fenced:
            continue
        visible = _INLINE_CODE_RE.sub("", line)
        for m in _LINK_RE.finditer(visible):
            out.append(Link(url=m.group(2).strip(), text=m.group(1).strip(), line=idx))
    return out


def extract_code_blocks(text: str) -> list[CodeBlock]:
    lines = split_lines(text)
    out: list[CodeBlock] = []
    fence: str | None = None
    language = ""
    start = 0
    buf: list[str] = []

    for idx, line in enumerate(lines):
        m = _FENCE_RE.match(line)
        if fence is None:
            if m:
                fence, language, start, buf = m.group(1), m.group(2), idx, []
            continue
        if m and m.group(1)[0] == fence[0] and len(m.group(1)) >= len(fence) and not m.group(2):
            out.append(CodeBlock(language=language, code="\n".join(buf), start_line=start, end_line=idx))
            fence = None
            continue
        buf.append(line)

    # An unterminated fence runs to the end of the text.
    if fence is not None:
        out.append(CodeBlock(language=language, code="\n".join(buf), start_line=start, end_line=len(lines) - 1))
    return out


def parse_markdown(raw: str) -> ParsedMarkdown:
    frontmatter, body = split_frontmatter(raw)
    return ParsedMarkdown(
        frontmatter=frontmatter,
        body=body,
        outline=parse_outline(body),
        links=extract_links(body),
        code_blocks=extract_code_blocks(body),
    )


def first_heading_title(outline: list[Heading]) -> str | None:
    for h in outline:
        if h.level == 1:
            return h.title
    return outline[0].title if outline else None
