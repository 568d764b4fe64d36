"""Text normalization shared by adapters and the extraction engine.

Mail content is untrusted, so every pattern here runs through the `regex`
library with a timeout. A timed-out substitution returns the input unchanged
and a timed-out search counts as "no match".

Usage:
    from inbox_actions.core.text import html_to_text, make_snippet

    text = html_to_text("<p>Hello&nbsp;there</p>")
    snippet = make_snippet(text)
"""

from __future__ import annotations

import html

import regex

from inbox_actions.core.logging import get_logger

logger = get_logger(__name__)

# Regex timeout in seconds (all operations on mail content use this)
REGEX_TIMEOUT = 1.0

# Snippets are capped at ingestion
MAX_SNIPPET_LENGTH = 200

# One-to-one character replacements, so offsets survive normalization
TYPOGRAPHY_TABLE = str.maketrans(
    {
        "\u2019": "'",  # right single quotation mark
        "\u2018": "'",  # left single quotation mark
        "\u201a": "'",  # single low-9 quotation mark
        "\u02bc": "'",  # modifier letter apostrophe
        "`": "'",
        "\u201c": '"',
        "\u201d": '"',
        "\u201e": '"',
        "\u00ab": '"',
        "\u00bb": '"',
        "\u00a0": " ",  # no-break space
        "\u202f": " ",  # narrow no-break space
    }
)

SCRIPT_STYLE_PATTERN = regex.compile(
    r"<(script|style|head)\b[^>]*>.*?</\1\s*>", regex.IGNORECASE | regex.DOTALL
)
BLOCK_BREAK_PATTERN = regex.compile(
    r"<\s*(?:br\s*/?|/\s*(?:p|div|li|tr|h[1-6]|blockquote|table))\s*>", regex.IGNORECASE
)
HTML_TAG_PATTERN = regex.compile(r"<[^>]+>")
HORIZONTAL_SPACE = regex.compile(r"[ \t\f\v]+")
EXCESSIVE_NEWLINES = regex.compile(r"\n{3,}")
ANY_WHITESPACE = regex.compile(r"\s+")


def safe_sub(pattern: regex.Pattern, repl: str, text: str) -> str:
    """Regex substitution with timeout; returns text unchanged on timeout."""
    try:
        return pattern.sub(repl, text, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("Regex timeout during substitution", pattern=pattern.pattern[:50])
        return text


def safe_search(pattern: regex.Pattern, text: str) -> regex.Match | None:
    """Regex search with timeout; a timeout is treated as no match."""
    try:
        return pattern.search(text, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("Regex timeout during search", pattern=pattern.pattern[:50])
        return None


def normalize_typography(text: str) -> str:
    """Unify typographic quotes, apostrophes and no-break spaces.

    The output has exactly the same length as the input.
    """
    return text.translate(TYPOGRAPHY_TABLE)


def html_to_text(markup: str | None) -> str:
    """Convert an HTML body to plain text.

    Drops script/style/head blocks, turns block-level closings into line
    breaks, strips the remaining tags and decodes entities.
    """
    if not markup:
        return ""
    text = safe_sub(SCRIPT_STYLE_PATTERN, " ", markup)
    text = safe_sub(BLOCK_BREAK_PATTERN, "\n", text)
    text = safe_sub(HTML_TAG_PATTERN, " ", text)
    text = html.unescape(text)
    text = normalize_typography(text)
    lines = [safe_sub(HORIZONTAL_SPACE, " ", line).strip() for line in text.splitlines()]
    return safe_sub(EXCESSIVE_NEWLINES, "\n\n", "\n".join(lines)).strip()


def truncate(text: str, limit: int) -> str:
    """Truncate to limit characters, ending with '...' when shortened."""
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def make_snippet(text: str | None, limit: int = MAX_SNIPPET_LENGTH) -> str | None:
    """Single-line preview of at most limit characters."""
    if not text:
        return None
    flattened = safe_sub(ANY_WHITESPACE, " ", html.unescape(text)).strip()
    flattened = normalize_typography(flattened)
    if not flattened:
        return None
    return flattened[:limit]


def safe_finditer(pattern: regex.Pattern, text: str) -> list[regex.Match]:
    """All matches of pattern; an empty list on timeout."""
    try:
        return list(pattern.finditer(text, timeout=REGEX_TIMEOUT))
    except TimeoutError:
        logger.warning("Regex timeout during scan", pattern=pattern.pattern[:50])
        return []
