"""
substitution.py — render one record into a template.

Every distinct token in the template is resolved once and all of its
occurrences are replaced in a single regex pass, so a value that happens to
contain another token's literal is never substituted twice.

Gaps are rendered in-band instead of raised:

    [UNMAPPED: Field]  the mapping has no column for the token
    [MISSING: Field]   the column cannot be found in the record
    [EMPTY: Field]     the column is present but blank
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Any, Callable, Mapping, Optional

import pandas as pd

from merge_doctor.config import DEFAULT_CONFIG, MergeConfig
from merge_doctor.models import (
    FieldMapping,
    OutcomeStatus,
    SemanticCategory,
    SubstitutionResult,
    TokenOutcome,
)
from merge_doctor.placeholders import extract, make_token
from merge_doctor.reconciler import resolve_category

logger = logging.getLogger(__name__)

NOT_FOUND = object()
TAG_RUN = r"(?:\s*<[^>]+>\s*)+"

NUMERIC_TEXT_RE = re.compile(r"^-?\d+(?:\.\d+)?$")
NON_DIGIT_RE = re.compile(r"\D")
NAME_PART_RE = re.compile(r"[^\s-]+")

DATE_FORMAT_PATTERNS = [
    ("%m/%d/%Y", re.compile(r"^\d{1,2}/\d{1,2}/\d{4}$")),
    ("%Y-%m-%d", re.compile(r"^\d{4}-\d{1,2}-\d{1,2}$")),
    ("%m-%d-%Y", re.compile(r"^\d{1,2}-\d{1,2}-\d{4}$")),
    ("%Y/%m/%d", re.compile(r"^\d{4}/\d{1,2}/\d{1,2}$")),
    ("%m/%d/%y", re.compile(r"^\d{1,2}/\d{1,2}/\d{2}$")),
    ("%B %d, %Y", re.compile(r"^[A-Za-z]+\s+\d{1,2},\s*\d{4}$")),
    ("%b %d, %Y", re.compile(r"^[A-Za-z]{3}\s+\d{1,2},\s*\d{4}$")),
    ("%B %d %Y", re.compile(r"^[A-Za-z]+\s+\d{1,2}\s+\d{4}$")),
    ("%d %B %Y", re.compile(r"^\d{1,2}\s+[A-Za-z]+\s+\d{4}$")),
]


# ══════════════════════════════════════════════════════════════════════════════
# KEY LOOKUP
# ══════════════════════════════════════════════════════════════════════════════

def _squash(text: str) -> str:
    return re.sub(r"\s+", "", text).lower()


def key_exact(record: Mapping[str, Any], column: str) -> Optional[str]:
    return column if column in record else None


def key_casefold(record: Mapping[str, Any], column: str) -> Optional[str]:
    wanted = column.lower()
    for key in record:
        if key.lower() == wanted:
            return key
    return None


def key_substring(record: Mapping[str, Any], column: str) -> Optional[str]:
    wanted = _squash(column)
    if not wanted:
        return None
    for key in record:
        squashed = _squash(key)
        if squashed and (wanted in squashed or squashed in wanted):
            return key
    return None


KEY_LOOKUP_STRATEGIES: tuple[Callable[[Mapping[str, Any], str], Optional[str]], ...] = (
    key_exact,
    key_casefold,
    key_substring,
)


def lookup_value(record: Mapping[str, Any], column: Optional[str]) -> Any:
    """Value for ``column``; ``NOT_FOUND`` when no lookup strategy finds a key."""
    if not column:
        return NOT_FOUND
    for strategy in KEY_LOOKUP_STRATEGIES:
        key = strategy(record, column)
        if key is not None:
            if strategy is not key_exact:
                logger.debug("Column %r resolved to record key %r via %s", column, key, strategy.__name__)
            return record[key]
    return NOT_FOUND


# ══════════════════════════════════════════════════════════════════════════════
# VALUE FORMATTERS
# ══════════════════════════════════════════════════════════════════════════════

def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if value.is_integer():
            return str(int(value))
    return str(value).strip()


def is_empty(value: Any) -> bool:
    return stringify(value) == ""


def serial_to_date(number: float, config: MergeConfig = DEFAULT_CONFIG) -> Optional[date]:
    """Spreadsheet day count -> date, or ``None`` outside the plausible serial range."""
    if not (config.serial_min < number < config.serial_max):
        return None
    return config.serial_epoch + timedelta(days=int(number))


def parse_date(value: Any, config: MergeConfig = DEFAULT_CONFIG) -> Optional[date]:
    """Date from a display string, a date object, or a spreadsheet serial number."""
    if isinstance(value, pd.Timestamp):
        return value.date()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = stringify(value)
    if not text:
        return None

    if not NUMERIC_TEXT_RE.match(text):
        for fmt, pattern in DATE_FORMAT_PATTERNS:
            if not pattern.match(text):
                continue
            try:
                return datetime.strptime(text, fmt).date()
            except ValueError:
                continue
        parsed = pd.to_datetime(text, errors="coerce")
        if isinstance(parsed, pd.Timestamp) and not pd.isna(parsed):
            return parsed.date()
        return None

    return serial_to_date(float(text), config)


def format_long_date(value: date, config: MergeConfig = DEFAULT_CONFIG) -> str:
    return config.long_date_format.format(
        month_name=value.strftime("%B"),
        month=value.month,
        day=value.day,
        year=value.year,
    )


def format_date(value: Any, config: MergeConfig = DEFAULT_CONFIG) -> str:
    parsed = parse_date(value, config)
    if parsed is None:
        return stringify(value)
    return format_long_date(parsed, config)


def _title_part(part: str) -> str:
    if "'" in part:
        head, tail = part.split("'", 1)
        if tail in ("", "s"):
            return head.capitalize() + "'" + tail
        return head.capitalize() + "'" + tail.capitalize()
    if part.startswith("mc") and len(part) > 2:
        return "Mc" + part[2:].capitalize()
    return part.capitalize()


def format_name(value: Any) -> str:
    """Title-case a person's name: ``mcdonald`` -> McDonald, ``o'brien`` -> O'Brien."""
    return NAME_PART_RE.sub(lambda m: _title_part(m.group(0)), stringify(value).lower())


def format_email(value: Any) -> str:
    return stringify(value).lower()


def phone_digits(value: Any) -> str:
    return NON_DIGIT_RE.sub("", stringify(value))


def format_phone(value: Any) -> str:
    """``(AAA) BBB-CCCC`` for 10 digits, ``+1 (AAA) BBB-CCCC`` for 1 + 10; else unchanged."""
    digits = phone_digits(value)
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+1 ({digits[1:4]}) {digits[4:7]}-{digits[7:]}"
    return stringify(value)


FORMATTERS: dict[SemanticCategory, Callable[..., str]] = {
    SemanticCategory.DATE: format_date,
    SemanticCategory.NAME: format_name,
    SemanticCategory.EMAIL: format_email,
    SemanticCategory.PHONE: format_phone,
    SemanticCategory.GENERIC: stringify,
}


def format_value(value: Any, category: SemanticCategory, config: MergeConfig = DEFAULT_CONFIG) -> str:
    if category is SemanticCategory.DATE:
        return format_date(value, config)
    return FORMATTERS[category](value)


# ══════════════════════════════════════════════════════════════════════════════
# SUBSTITUTION
# ══════════════════════════════════════════════════════════════════════════════

def _resolve_token(
    literal: str,
    record: Mapping[str, Any],
    mapping: FieldMapping,
    config: MergeConfig,
) -> TokenOutcome:
    if literal in mapping:
        assignment = mapping.assignment(literal)
        token, column = assignment.token, assignment.column
    else:
        token, column = make_token(literal), None

    name = token.name
    category = resolve_category(token, column, config)

    if column is None:
        return TokenOutcome(
            field=literal,
            column=None,
            status=OutcomeStatus.UNMAPPED,
            category=category,
            original_value=literal,
            replaced_value=config.unmapped_marker.format(name=name),
        )

    value = lookup_value(record, column)
    if value is NOT_FOUND:
        return TokenOutcome(literal, column, OutcomeStatus.MISSING, category, None,
                            config.missing_marker.format(name=name))
    if is_empty(value):
        return TokenOutcome(literal, column, OutcomeStatus.MISSING, category, value,
                            config.empty_marker.format(name=name))
    return TokenOutcome(literal, column, OutcomeStatus.REPLACED, category, value,
                        format_value(value, category, config))


def literal_pattern(literal: str) -> str:
    """
    Regex for ``literal`` as it may appear in raw markup.

    Extraction replaces each tag with a space, so a whitespace run in the
    literal matches either itself or a run of tags in the raw template.
    """
    parts = []
    for part in re.split(r"(\s+)", literal):
        if not part:
            continue
        if part.isspace():
            parts.append(f"(?:{re.escape(part)}|{TAG_RUN})")
        else:
            parts.append(re.escape(part))
    return "".join(parts)


def substitute(
    template: str,
    record: Mapping[str, Any],
    mapping: FieldMapping,
    config: MergeConfig = DEFAULT_CONFIG,
) -> SubstitutionResult:
    """
    Render ``record`` into ``template``.

    Tokens are the ones ``placeholders.extract`` finds in the template. A token
    interrupted by markup (``[<b>Name</b>]``) is replaced along with the tags
    inside it. Tokens the mapping does not know are treated as unmapped.
    """
    literals = [token.literal for token in extract(template)]
    if not literals:
        return SubstitutionResult(message=template, template=template, outcomes=())

    ordered = sorted(literals, key=len, reverse=True)
    pattern = re.compile("|".join(f"({literal_pattern(lit)})" for lit in ordered))
    counts = {literal: 0 for literal in literals}
    for match in pattern.finditer(template):
        counts[ordered[match.lastindex - 1]] += 1

    outcomes = []
    replacements: dict[str, str] = {}
    for literal in literals:
        outcome = _resolve_token(literal, record, mapping, config)
        if counts[literal] == 0:
            logger.warning("Field %s could not be located in the template", literal)
            outcome = replace(
                outcome,
                column=None,
                status=OutcomeStatus.UNMAPPED,
                replaced_value=config.unmapped_marker.format(name=make_token(literal).name),
            )
        outcome = replace(outcome, occurrences=counts[literal])
        outcomes.append(outcome)
        replacements[literal] = outcome.replaced_value

    message = pattern.sub(lambda m: replacements[ordered[m.lastindex - 1]], template)
    return SubstitutionResult(message=message, template=template, outcomes=tuple(outcomes))
