from __future__ import annotations

import posixpath
import re
import unicodedata

_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*:")
_SLUG_DROP_RE = re.compile(r"[^a-z0-9\s-]")
_SLUG_SPACE_RE = re.compile(r"[\s_]+")
_HYPHENS_RE = re.compile(r"-{2,}")


def is_external(url: str) -> bool:
    # http(s)://, mailto:, ftp:, ... and protocol-relative //host links
    return bool(_SCHEME_RE.match(url)) or url.startswith("//")


def resolve_relative_link(source_path: str, link: str) -> str | None:
    """Resolve ``link`` against the directory of ``source_path``.

    Returns a normalized, lower-cased repository path, or None for empty,
    fragment-only, external, or links that climb above the repository root.

    >>> resolve_relative_link("docs/sub/page.md", "../other.md")
    'docs/other.md'
    """
    url = (link or "").strip()
    if not url or url.startswith("#") or is_external(url):
        return None

    url = url.split("#", 1)[0].split("?", 1)[0].strip()
    if not url:
        return None

    source = source_path.replace("\\", "/").lstrip("/")
    if url.startswith("/"):
        joined = url.lstrip("/")
    else:
        joined = posixpath.join(posixpath.dirname(source), url)

    parts: list[str] = []
    for part in joined.split("/"):
        if part in {"", "."}:
            continue
        if part == "..":
            if not parts:
                return None
            parts.pop()
            continue
        parts.append(part)

    if not parts:
        return None
    return "/".join(parts).lower()


def normalize_path(path: str) -> str:
    p = path.replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p.lstrip("/").lower()


def make_document_id(repository: str, path: str) -> str:
    return f"{repository}:{normalize_path(path)}"


def split_document_id(document_id: str) -> tuple[str, str]:
    """``"repo:docs/a.md"`` -> ``("repo", "docs/a.md")``."""
    repo, sep, path = document_id.partition(":")
    if not sep:
        return "", document_id
    return repo, path


def slugify(title: str) -> str:
    s = unicodedata.normalize("NFKD", title).encode("ascii", "ignore").decode("ascii")
    s = _SLUG_DROP_RE.sub("", s.lower())
    s = _SLUG_SPACE_RE.sub("-", s.strip())
    s = _HYPHENS_RE.sub("-", s).strip("-")
    return s or "section"
