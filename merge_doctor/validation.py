"""
Advisory checks on a rendered message.

Nothing here changes the message. A report is invalid only when a token
could not be resolved (unmapped or missing); every other finding is a warning.
"""

from __future__ import annotations

import math
import re
from typing import Any, Iterable, Mapping, Optional, Sequence

from merge_doctor.config import DEFAULT_CONFIG, MergeConfig
from merge_doctor.models import (
    Record,
    SemanticCategory,
    SubstitutionResult,
    ValidationReport,
    ValidationWarning,
)
from merge_doctor.substitution import NOT_FOUND, is_empty, lookup_value, phone_digits, stringify

EMAIL_RE = re.compile(r"^[^\s]+@[^\s]+\.[^\s]+$")

SMS_SINGLE_LIMIT = 160
SMS_SEGMENT_LIMIT = 153


def sms_segments(text: str) -> int:
    length = len(text or "")
    if length == 0:
        return 0
    if length <= SMS_SINGLE_LIMIT:
        return 1
    return math.ceil(length / SMS_SEGMENT_LIMIT)


def _column_for(result: SubstitutionResult, category: SemanticCategory) -> Optional[str]:
    for outcome in result.outcomes:
        if outcome.category is category and outcome.column:
            return outcome.column
    return None


def _value(record: Mapping[str, Any], column: Optional[str]) -> Optional[str]:
    value = lookup_value(record, column)
    if value is NOT_FOUND or is_empty(value):
        return None
    return stringify(value)


def validate(
    result: SubstitutionResult,
    record: Mapping[str, Any],
    *,
    email_column: Optional[str] = None,
    phone_column: Optional[str] = None,
    sms: bool = False,
    config: MergeConfig = DEFAULT_CONFIG,
) -> ValidationReport:
    """
    Check ``result`` (rendered from ``record``).

    The email and phone checks use the given columns, or else the column of
    the first token classified as email/phone.
    """
    warnings: list[ValidationWarning] = []
    unmapped = len(result.unmapped)
    missing = len(result.missing)
    length = len(result.message)

    if unmapped:
        names = ", ".join(item.field for item in result.unmapped)
        warnings.append(ValidationWarning("unmapped_fields", f"{unmapped} field(s) are not mapped: {names}"))
    if missing:
        names = ", ".join(item.field for item in result.missing)
        warnings.append(ValidationWarning("missing_data", f"{missing} field(s) have no data: {names}"))

    if length < config.min_message_length:
        warnings.append(ValidationWarning(
            "message_too_short",
            f"Message is very short ({length} characters, minimum {config.min_message_length})",
        ))
    if length > config.max_message_length:
        warnings.append(ValidationWarning(
            "message_too_long",
            f"Message is very long ({length} characters, maximum {config.max_message_length})",
        ))

    email = _value(record, email_column or _column_for(result, SemanticCategory.EMAIL))
    if email is not None and not EMAIL_RE.match(email):
        warnings.append(ValidationWarning("invalid_email", f"Email address looks malformed: {email}"))

    phone = _value(record, phone_column or _column_for(result, SemanticCategory.PHONE))
    if phone is not None:
        digits = len(phone_digits(phone))
        if not (config.phone_min_digits <= digits <= config.phone_max_digits):
            warnings.append(ValidationWarning(
                "invalid_phone",
                f"Phone number has {digits} digits (expected {config.phone_min_digits}-{config.phone_max_digits}): {phone}",
            ))

    segments = sms_segments(result.message)
    if sms and segments > 1:
        warnings.append(ValidationWarning("sms_segments", f"Text message will be sent as {segments} segments"))

    return ValidationReport(
        is_valid=not (unmapped or missing),
        warnings=tuple(warnings),
        stats={
            "length": length,
            "replaced": len(result.replaced),
            "missing": missing,
            "unmapped": unmapped,
            "sms_segments": segments,
        },
    )


def completeness(records: Sequence[Record], columns: Iterable[Optional[str]]) -> dict[str, Any]:
    """Per-row list of mapped columns that are blank, plus the share of complete rows."""
    columns = [column for column in dict.fromkeys(columns) if column]
    rows = []
    for record in records:
        empty = [column for column in columns if is_empty(record.get(column))]
        if empty:
            rows.append({"row_number": record.row_number, "empty_columns": empty})
    total = len(records)
    complete = total - len(rows)
    return {
        "total_rows": total,
        "complete_rows": complete,
        "completeness_rate": round(complete / total, 4) if total else 1.0,
        "incomplete": rows,
    }
