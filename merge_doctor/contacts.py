"""Destination fields for one record: email, display/dial phone, recipient string.

A blank or absent source value stays ``None``; nothing here substitutes a
default address or number.
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Optional

from merge_doctor.models import ContactFields, FieldMapping
from merge_doctor.substitution import (
    NOT_FOUND,
    format_email,
    format_name,
    format_phone,
    is_empty,
    lookup_value,
    phone_digits,
    stringify,
)

EXTENSION_RE = re.compile(r"\s*(?:x|ext\.?|extension)\s*\d+$", re.IGNORECASE)


def format_phone_for_dial(value: Any) -> Optional[str]:
    """E.164-style number for a dialer; extensions are dropped."""
    text = EXTENSION_RE.sub("", stringify(value))
    digits = phone_digits(text)
    if not digits:
        return None
    if len(digits) == 10:
        return "+1" + digits
    if len(digits) == 11 and digits.startswith("1"):
        return "+" + digits
    return digits


def _present(record: Mapping[str, Any], column: Optional[str]) -> Optional[Any]:
    value = lookup_value(record, column)
    if value is NOT_FOUND or is_empty(value):
        return None
    return value


def name_column_for(mapping: FieldMapping) -> Optional[str]:
    """Column mapped to the first field whose literal mentions "name", if any."""
    for literal in mapping:
        if "name" in literal.casefold():
            return mapping.column_for(literal)
    return None


def resolve_contacts(
    record: Mapping[str, Any],
    email_column: Optional[str] = None,
    phone_column: Optional[str] = None,
    name_column: Optional[str] = None,
) -> ContactFields:
    """Contact fields for ``record``; a column left as None yields None."""
    raw_email = _present(record, email_column)
    raw_phone = _present(record, phone_column)
    raw_name = _present(record, name_column)

    email = format_email(raw_email) if raw_email is not None else None
    name = format_name(raw_name) if raw_name is not None else None

    recipient = None
    if email:
        recipient = f"{name} <{email}>" if name else email

    return ContactFields(
        email=email,
        phone_display=format_phone(raw_phone) if raw_phone is not None else None,
        phone_dial=format_phone_for_dial(raw_phone) if raw_phone is not None else None,
        name=name,
        recipient=recipient,
    )
