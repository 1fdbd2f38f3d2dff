"""Text utilities: whitespace normalization and best-effort markup stripping.

Stripping is pattern based, not a parser: nested or irregular markup may leave
fragments behind. That is acceptable because the stripped body is only an
excerpt fallback when the post has no hand-written excerpt.
"""

import html
import re

EXCERPT_MAX_LENGTH = 380
EXCERPT_MIN_LENGTH = 300
ELLIPSIS = "…"

_WS_RE = re.compile(r"\s+")
_NBSP_ENTITY_RE = re.compile(r"&nbsp;", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")
_MD_CODE_RE = re.compile(r"`{1,3}[^`]*`{1,3}")
_MD_IMAGE_RE = re.compile(r"!\[[^\]]*\]\([^)]*\)")
_MD_LINK_RE = re.compile(r"\[([^\]]*)\]\([^)]*\)")
_MD_MARKERS_RE = re.compile(r"[*_~>#-]")
_TRAILING_WORD_RE = re.compile(r"\s+\S*$")


def normalize_whitespace(text: str | None) -> str:
    """Collapse whitespace runs (including non-breaking spaces) to one space and trim."""
    if not text:
        return ""
    s = str(text).replace("\u00a0", " ")
    s = _NBSP_ENTITY_RE.sub(" ", s)
    return _WS_RE.sub(" ", s).strip()


def strip_html(text: str | None) -> str:
    """Drop all tags, decode entities, normalize whitespace."""
    if not text:
        return ""
    s = _TAG_RE.sub(" ", str(text))
    return normalize_whitespace(html.unescape(s))


def strip_markdown(text: str | None) -> str:
    """
    Drop code spans, images, link targets (link text is kept) and
    emphasis/heading/quote markers, then normalize whitespace.
    """
    if not text:
        return ""
    s = _MD_CODE_RE.sub(" ", str(text))
    s = _MD_IMAGE_RE.sub(" ", s)
    s = _MD_LINK_RE.sub(r" \1 ", s)
    s = _MD_MARKERS_RE.sub(" ", s)
    return normalize_whitespace(s)


def truncate_excerpt(
    text: str,
    max_length: int = EXCERPT_MAX_LENGTH,
    min_length: int = EXCERPT_MIN_LENGTH,
) -> str:
    """
    Cut text to max_length, dropping the trailing partial word when what is left is
    still at least min_length; otherwise keep the hard cut. Truncated text gets an ellipsis.
    """
    if len(text) <= max_length:
        return text
    cut = text[:max_length]
    trimmed = _TRAILING_WORD_RE.sub("", cut).strip()
    base = trimmed if len(trimmed) >= min_length else cut.strip()
    return f"{base}{ELLIPSIS}"
