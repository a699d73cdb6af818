"""
Find the bracketed merge fields in a template.

Templates may arrive as rich-text markup. Tags are stripped before scanning
so a field split across formatting spans is still found, but the literal kept
for each token is the text as it appears in the plain rendering.
"""

from __future__ import annotations

import html
import re

from merge_doctor.models import PlaceholderToken

TAG_RE = re.compile(r"<[^>]+>")
TOKEN_RE = re.compile(r"\[+[^\[\]]+\]+")
CANONICAL_STRIP_RE = re.compile(r"[\s_\-]+")
BLOCK_BREAK_RE = re.compile(r"<\s*(?:br|/p|/div|/li|/h[1-6])\b[^>]*>", re.IGNORECASE)


def strip_markup(markup: str) -> str:
    """Replace every tag with a single space."""
    return TAG_RE.sub(" ", markup or "")


def to_plain_text(markup: str) -> str:
    """Render markup as plain text: block tags become newlines, entities decoded."""
    text = BLOCK_BREAK_RE.sub("\n", markup or "")
    text = TAG_RE.sub("", text)
    text = html.unescape(text)
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in text.splitlines()]
    return "\n".join(lines).strip()


def canonical_text(value: str) -> str:
    """Matching key: brackets, whitespace, underscores and hyphens removed, casefolded."""
    inner = (value or "").strip().strip("[]")
    return CANONICAL_STRIP_RE.sub("", inner).casefold()


def make_token(literal: str) -> PlaceholderToken:
    return PlaceholderToken(literal=literal, canonical=canonical_text(literal))


def extract(markup: str) -> list[PlaceholderToken]:
    """Distinct tokens in first-appearance order."""
    seen: set[str] = set()
    tokens: list[PlaceholderToken] = []
    for match in TOKEN_RE.finditer(strip_markup(markup)):
        literal = match.group(0)
        # whitespace-only brackets have an empty key
        if literal in seen or not literal.strip("[]").strip():
            continue
        seen.add(literal)
        tokens.append(make_token(literal))
    return tokens


def extract_all(*markups: str) -> list[PlaceholderToken]:
    """Union of tokens across several templates (e.g. subject and body)."""
    seen: set[str] = set()
    tokens: list[PlaceholderToken] = []
    for markup in markups:
        for token in extract(markup):
            if token.literal not in seen:
                seen.add(token.literal)
                tokens.append(token)
    return tokens
