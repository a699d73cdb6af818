"""Render a template for every record, synchronously or from an event loop.

Rows are independent; a cancelled run keeps every row finished before the
cancel request and nothing after it.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Optional

from merge_doctor.config import DEFAULT_CONFIG, MergeConfig
from merge_doctor.contacts import name_column_for, resolve_contacts
from merge_doctor.models import (
    ContactFields,
    FieldMapping,
    Record,
    SubstitutionResult,
    ValidationReport,
)
from merge_doctor.substitution import substitute
from merge_doctor.validation import validate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RowOutcome:
    row_number: int
    result: SubstitutionResult
    report: ValidationReport
    contacts: ContactFields

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_number": self.row_number,
            **self.result.to_dict(),
            "validation": self.report.to_dict(),
            "contacts": self.contacts.to_dict(),
        }


@dataclass
class BatchResult:
    outcomes: list[RowOutcome] = field(default_factory=list)
    cancelled: bool = False

    def summary(self) -> dict[str, Any]:
        return {**summarize(self.outcomes), "cancelled": self.cancelled}


def render_row(
    template: str,
    record: Record,
    mapping: FieldMapping,
    *,
    email_column: Optional[str] = None,
    phone_column: Optional[str] = None,
    name_column: Optional[str] = None,
    sms: bool = False,
    config: MergeConfig = DEFAULT_CONFIG,
) -> RowOutcome:
    """Render, validate and resolve contacts for one record.

    The recipient name comes from ``name_column``, else from the column mapped
    to the first field mentioning "name".
    """
    result = substitute(template, record, mapping, config)
    report = validate(
        result, record,
        email_column=email_column, phone_column=phone_column, sms=sms, config=config,
    )
    contacts = resolve_contacts(record, email_column, phone_column, name_column or name_column_for(mapping))
    return RowOutcome(record.row_number, result, report, contacts)


def iter_render(
    template: str,
    records: Iterable[Record],
    mapping: FieldMapping,
    **options: Any,
) -> Iterator[RowOutcome]:
    for record in records:
        yield render_row(template, record, mapping, **options)


def render_batch(
    template: str,
    records: Iterable[Record],
    mapping: FieldMapping,
    *,
    progress: Optional[Callable[[RowOutcome], None]] = None,
    should_cancel: Optional[Callable[[], bool]] = None,
    **options: Any,
) -> BatchResult:
    batch = BatchResult()
    for record in records:
        if should_cancel is not None and should_cancel():
            batch.cancelled = True
            logger.warning("Batch cancelled after %d row(s)", len(batch.outcomes))
            break
        outcome = render_row(template, record, mapping, **options)
        batch.outcomes.append(outcome)
        if progress is not None:
            progress(outcome)
    return batch


async def render_batch_async(
    template: str,
    records: Iterable[Record],
    mapping: FieldMapping,
    *,
    progress: Optional[Callable[[RowOutcome], None]] = None,
    should_cancel: Optional[Callable[[], bool]] = None,
    config: MergeConfig = DEFAULT_CONFIG,
    **options: Any,
) -> BatchResult:
    """Same as ``render_batch`` but hands control back to the loop every ``config.yield_every`` rows."""
    batch = BatchResult()
    for index, record in enumerate(records, start=1):
        if should_cancel is not None and should_cancel():
            batch.cancelled = True
            logger.warning("Batch cancelled after %d row(s)", len(batch.outcomes))
            break
        outcome = render_row(template, record, mapping, config=config, **options)
        batch.outcomes.append(outcome)
        if progress is not None:
            progress(outcome)
        if index % config.yield_every == 0:
            await asyncio.sleep(0)
    return batch


def summarize(outcomes: Iterable[RowOutcome]) -> dict[str, Any]:
    outcomes = list(outcomes)
    fields: dict[str, Counter] = {}
    replaced_total = 0
    for outcome in outcomes:
        replaced_total += len(outcome.result.replaced)
        for item in outcome.result.outcomes:
            fields.setdefault(item.field, Counter())[item.status.value] += 1

    processed = len(outcomes)
    return {
        "processed": processed,
        "valid": sum(1 for item in outcomes if item.report.is_valid),
        "needs_attention": sum(1 for item in outcomes if not item.report.is_valid),
        "with_warnings": sum(1 for item in outcomes if item.report.warnings),
        "average_replacements": round(replaced_total / processed, 2) if processed else 0.0,
        "fields": {
            name: {status: counts.get(status, 0) for status in ("replaced", "missing", "unmapped")}
            for name, counts in fields.items()
        },
    }
