"""
reconciler.py — guess which column feeds each placeholder.

Strategies run in priority order and the first one that names a column wins:

    exact      canonical forms are equal
    substring  one canonical form contains the other
    category   token and header share a semantic category keyword

A token no strategy can place stays unmapped. The draft never falls back to a
default column; a reviewer resolves gaps through ``FieldMapping.override``.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional, Sequence

from merge_doctor.config import DEFAULT_CONFIG, MergeConfig
from merge_doctor.models import (
    FieldAssignment,
    FieldMapping,
    MatchReason,
    PlaceholderToken,
    SemanticCategory,
)
from merge_doctor.placeholders import canonical_text

logger = logging.getLogger(__name__)

# Tie-break order when two categories hit at the same position.
CATEGORY_PRIORITY = (
    SemanticCategory.EMAIL,
    SemanticCategory.PHONE,
    SemanticCategory.DATE,
    SemanticCategory.NAME,
)

EMAIL_COLUMN_HINTS = ("email",)
PHONE_COLUMN_HINTS = ("phone", "mobile", "cell")

Strategy = Callable[[PlaceholderToken, Sequence[str], MergeConfig], Optional[str]]


def classify(text: str, config: MergeConfig = DEFAULT_CONFIG) -> SemanticCategory:
    """Semantic category of a token or header; the right-most keyword hit decides."""
    lowered = (text or "").lower()
    best = SemanticCategory.GENERIC
    best_pos = -1
    for category in CATEGORY_PRIORITY:
        for keyword in config.keywords_for(category):
            pos = lowered.rfind(keyword)
            if pos > best_pos:
                best, best_pos = category, pos
    return best


def match_exact(token: PlaceholderToken, headers: Sequence[str], config: MergeConfig) -> Optional[str]:
    for header in headers:
        if canonical_text(header) == token.canonical:
            return header
    return None


def match_substring(token: PlaceholderToken, headers: Sequence[str], config: MergeConfig) -> Optional[str]:
    if not token.canonical:
        return None
    for header in headers:
        key = canonical_text(header)
        if key and (key in token.canonical or token.canonical in key):
            return header
    return None


def match_category(token: PlaceholderToken, headers: Sequence[str], config: MergeConfig) -> Optional[str]:
    category = classify(token.name, config)
    if category is SemanticCategory.GENERIC:
        return None
    keywords = config.keywords_for(category)
    for header in headers:
        key = canonical_text(header)
        if any(keyword.replace("-", "") in key for keyword in keywords):
            return header
    return None


MATCH_STRATEGIES: tuple[tuple[MatchReason, Strategy], ...] = (
    (MatchReason.EXACT, match_exact),
    (MatchReason.SUBSTRING, match_substring),
    (MatchReason.CATEGORY, match_category),
)


def guess_column(
    token: PlaceholderToken,
    headers: Sequence[str],
    config: MergeConfig = DEFAULT_CONFIG,
) -> FieldAssignment:
    for reason, strategy in MATCH_STRATEGIES:
        column = strategy(token, headers, config)
        if column is not None:
            return FieldAssignment(token, column, reason)
    return FieldAssignment(token, None, MatchReason.NONE)


def reconcile(
    tokens: Iterable[PlaceholderToken],
    headers: Sequence[str],
    config: MergeConfig = DEFAULT_CONFIG,
) -> FieldMapping:
    """Draft mapping for ``tokens`` against ``headers``."""
    headers = tuple(headers)
    assignments = [guess_column(token, headers, config) for token in tokens]
    for item in assignments:
        if item.column is None:
            logger.warning("No column guess for %s", item.token.literal)
        else:
            logger.debug("%s -> %s (%s)", item.token.literal, item.column, item.reason.value)
    return FieldMapping(headers, assignments)


def classify_headers(headers: Iterable[str], config: MergeConfig = DEFAULT_CONFIG) -> dict[str, SemanticCategory]:
    return {header: classify(header, config) for header in headers}


def resolve_category(
    token: PlaceholderToken,
    column: Optional[str],
    config: MergeConfig = DEFAULT_CONFIG,
) -> SemanticCategory:
    """Token category when it has one, otherwise the column's."""
    category = classify(token.name, config)
    if category is not SemanticCategory.GENERIC or column is None:
        return category
    return classify(column, config)


def _first_header_with(headers: Iterable[str], hints: Sequence[str]) -> Optional[str]:
    for header in headers:
        lowered = header.lower()
        if any(hint in lowered for hint in hints):
            return header
    return None


def suggest_contact_columns(headers: Iterable[str]) -> dict[str, Optional[str]]:
    """Pre-selected email and phone columns; ``None`` where nothing looks right."""
    headers = list(headers)
    return {
        "email": _first_header_with(headers, EMAIL_COLUMN_HINTS),
        "phone": _first_header_with(headers, PHONE_COLUMN_HINTS),
    }
