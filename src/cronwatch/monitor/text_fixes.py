"""Text predicates and repairs shared by the health checks and the fixers."""

from __future__ import annotations

import re
from urllib.parse import unquote

from bs4 import BeautifulSoup

MARKDOWN_LINK_RE = re.compile(r"\[[^\]]+\]\(https?://[^)]+\)")
_LINK_TARGET_RE = re.compile(r"(\]\([^)]*\)|https?://\S+)")
_ESCAPE_RUN_RE = re.compile(r"(?:%[0-9A-Fa-f]{2})+")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")

ARTIFACT_TAGS = [
    "div", "span", "p", "br", "a", "h1", "h2", "h3", "h4", "h5", "h6",
    "img", "ul", "ol", "li", "table", "tr", "td", "strong", "em", "b", "i",
]
SERIALIZED_LEAK_RE = re.compile(r"\{['\"](?:title|url|snippet)['\"]:")

FALLBACK_SOURCES = [
    {"source_name": "X (Twitter)", "source_type": "platform"},
    {"source_name": "Google News", "source_type": "platform"},
]


def has_markdown_link(text: str | None) -> bool:
    return bool(text) and MARKDOWN_LINK_RE.search(text) is not None


def count_paragraphs(text: str | None) -> int:
    if not text:
        return 0
    return len([part for part in _PARAGRAPH_SPLIT_RE.split(text) if part.strip()])


def find_markup_artifacts(text: str | None) -> list[str]:
    """Names of raw tags and serialized-data leaks found in published prose."""
    if not text:
        return []
    found: list[str] = []
    if "<" in text:
        soup = BeautifulSoup(text, "html.parser")
        found.extend(sorted({tag.name for tag in soup.find_all(ARTIFACT_TAGS)}))
    if SERIALIZED_LEAK_RE.search(text):
        found.append("serialized_data")
    return found


def _decode_run(run: str) -> str | None:
    try:
        decoded = unquote(run, errors="strict")
    except UnicodeDecodeError:
        return None
    if decoded == run or "%" in decoded:
        return None
    return decoded


def _split_protected(text: str) -> list[tuple[str, bool]]:
    parts: list[tuple[str, bool]] = []
    position = 0
    for match in _LINK_TARGET_RE.finditer(text):
        if match.start() > position:
            parts.append((text[position:match.start()], False))
        parts.append((match.group(0), True))
        position = match.end()
    if position < len(text):
        parts.append((text[position:], False))
    return parts


def has_url_encoded_text(text: str | None) -> bool:
    if not text or "%" not in text:
        return False
    for chunk, protected in _split_protected(text):
        if protected:
            continue
        for match in _ESCAPE_RUN_RE.finditer(chunk):
            if _decode_run(match.group(0)) is not None:
                return True
    return False


def decode_url_encoded_text(text: str | None) -> str | None:
    """Decode percent-escapes in prose; link targets and bare URLs stay as-is.

    Applying it twice gives the same result as applying it once.
    """
    if not text or "%" not in text:
        return text
    out: list[str] = []
    for chunk, protected in _split_protected(text):
        if protected:
            out.append(chunk)
            continue
        out.append(
            _ESCAPE_RUN_RE.sub(lambda match: _decode_run(match.group(0)) or match.group(0), chunk)
        )
    return "".join(out)


def _source_type(name: str, url: str | None) -> str:
    if name.startswith("@"):
        return "x_user"
    if url and ("x.com" in url or "twitter.com" in url):
        return "x_user"
    return "publication"


def _usable_url(url: object) -> str | None:
    if not isinstance(url, str):
        return None
    if not url.startswith("http") or "google.com/search" in url:
        return None
    return url


def extract_sources_from_categories(categories: list[dict[str, object]] | None) -> list[dict[str, object]]:
    """Attribution records for the stories a brief was enriched from.

    Primary and secondary sources are collected in order, de-duplicated by
    lower-cased name. With nothing usable the two platform fallbacks are used.
    """
    if not categories:
        return [dict(item) for item in FALLBACK_SOURCES]
    sources: list[dict[str, object]] = []
    seen: set[str] = set()
    for category in categories:
        if not isinstance(category, dict):
            continue
        for story in category.get("stories") or []:
            if not isinstance(story, dict):
                continue
            for key in ("source", "secondarySource"):
                source = story.get(key)
                if not isinstance(source, dict):
                    continue
                name = source.get("name")
                if not isinstance(name, str) or not name.strip():
                    continue
                lowered = name.lower()
                if lowered in seen:
                    continue
                seen.add(lowered)
                raw_url = source.get("url") if isinstance(source.get("url"), str) else None
                sources.append(
                    {
                        "source_name": name,
                        "source_type": _source_type(name, raw_url),
                        "source_url": _usable_url(raw_url),
                    }
                )
    if not sources:
        return [dict(item) for item in FALLBACK_SOURCES]
    return sources
