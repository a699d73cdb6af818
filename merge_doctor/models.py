"""Value objects shared by the import, reconciliation, substitution and validation stages.

Nothing here holds cross-call state. Records are immutable once built and are
shared read-only by every later stage.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import asdict, dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any


class SemanticCategory(Enum):
    NAME = "name"
    EMAIL = "email"
    PHONE = "phone"
    DATE = "date"
    GENERIC = "generic"


class MatchReason(Enum):
    """How a draft mapping entry was chosen."""

    EXACT = "exact"
    SUBSTRING = "substring"
    CATEGORY = "category"
    MANUAL = "manual"
    NONE = "none"


class OutcomeStatus(Enum):
    REPLACED = "replaced"
    MISSING = "missing"
    UNMAPPED = "unmapped"


class Record(Mapping):
    """One retained data row keyed by the import's header set.

    The key set is closed: it always equals the headers the record was built
    with, and asking for any other key raises ``KeyError``. Loose key matching
    lives in ``substitution.lookup_value`` and nowhere else.
    """

    __slots__ = ("_values", "row_number")

    def __init__(self, headers: Iterable[str], values: Mapping[str, Any], row_number: int) -> None:
        headers = tuple(headers)
        extra = set(values) - set(headers)
        if extra:
            raise ValueError(f"values for unknown columns: {sorted(extra)}")
        frozen = MappingProxyType({header: values.get(header, "") for header in headers})
        object.__setattr__(self, "_values", frozen)
        object.__setattr__(self, "row_number", row_number)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("Record is immutable")

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Record(row_number={self.row_number}, values={dict(self._values)!r})"

    @property
    def headers(self) -> tuple[str, ...]:
        return tuple(self._values)

    def to_dict(self) -> dict[str, Any]:
        return dict(self._values)


@dataclass(frozen=True)
class ImportResult:
    headers: tuple[str, ...]
    records: tuple[Record, ...]
    detected_format: str
    detected_encoding: str | None = None
    delimiter: str | None = None
    sheet_name: str | None = None
    sheet_names: tuple[str, ...] | None = None
    header_row_index: int = 0
    total_rows: int = 0
    warnings: tuple[str, ...] = ()

    @property
    def dropped_rows(self) -> int:
        return max(0, self.total_rows - len(self.records))

    def to_dict(self) -> dict[str, Any]:
        return {
            "headers": list(self.headers),
            "detected_format": self.detected_format,
            "detected_encoding": self.detected_encoding,
            "delimiter": self.delimiter,
            "sheet_name": self.sheet_name,
            "sheet_names": list(self.sheet_names) if self.sheet_names is not None else None,
            "header_row_index": self.header_row_index,
            "total_rows": self.total_rows,
            "retained_rows": len(self.records),
            "dropped_rows": self.dropped_rows,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class PlaceholderToken:
    """A bracketed placeholder exactly as written, plus its matching key."""

    literal: str
    canonical: str

    @property
    def name(self) -> str:
        return self.literal.strip("[]").strip()


@dataclass(frozen=True)
class FieldAssignment:
    token: PlaceholderToken
    column: str | None
    reason: MatchReason


class FieldMapping:
    """Placeholder literal -> column (or ``None`` for unmapped).

    Starts life as a reconciler draft, takes reviewer overrides, and is
    finalized before substitution. Every change returns a new mapping.
    """

    def __init__(
        self,
        headers: Iterable[str],
        assignments: Iterable[FieldAssignment],
        *,
        finalized: bool = False,
    ) -> None:
        self._headers = tuple(headers)
        self._assignments = {item.token.literal: item for item in assignments}
        self._finalized = finalized

    @classmethod
    def from_columns(
        cls,
        headers: Iterable[str],
        tokens: Iterable[PlaceholderToken],
        columns: Mapping[str, str | None],
    ) -> FieldMapping:
        headers = tuple(headers)
        assignments = []
        for token in tokens:
            column = columns.get(token.literal)
            if column is not None and column not in headers:
                raise ValueError(f"Column {column!r} for {token.literal} is not in the header set")
            reason = MatchReason.MANUAL if column else MatchReason.NONE
            assignments.append(FieldAssignment(token, column or None, reason))
        return cls(headers, assignments)

    def __iter__(self) -> Iterator[str]:
        return iter(self._assignments)

    def __len__(self) -> int:
        return len(self._assignments)

    def __contains__(self, literal: object) -> bool:
        return literal in self._assignments

    def __repr__(self) -> str:
        state = "final" if self._finalized else "draft"
        return f"FieldMapping({state}, {self.as_dict()!r})"

    @property
    def headers(self) -> tuple[str, ...]:
        return self._headers

    @property
    def tokens(self) -> tuple[PlaceholderToken, ...]:
        return tuple(item.token for item in self._assignments.values())

    @property
    def is_final(self) -> bool:
        return self._finalized

    def assignment(self, literal: str) -> FieldAssignment:
        return self._assignments[literal]

    def column_for(self, literal: str) -> str | None:
        item = self._assignments.get(literal)
        return item.column if item else None

    def unresolved(self) -> list[str]:
        return [literal for literal, item in self._assignments.items() if item.column is None]

    def override(self, literal: str, column: str | None) -> FieldMapping:
        if self._finalized:
            raise ValueError("Mapping is finalized; overrides are no longer accepted")
        if literal not in self._assignments:
            raise KeyError(literal)
        if column is not None and column not in self._headers:
            raise ValueError(f"Column {column!r} is not in the header set")
        current = self._assignments[literal]
        reason = MatchReason.MANUAL if column else MatchReason.NONE
        updated = dict(self._assignments)
        updated[literal] = FieldAssignment(current.token, column, reason)
        return FieldMapping(self._headers, updated.values())

    def finalize(self) -> FieldMapping:
        return FieldMapping(self._headers, self._assignments.values(), finalized=True)

    def as_dict(self) -> dict[str, str | None]:
        return {literal: item.column for literal, item in self._assignments.items()}

    def to_report(self) -> list[dict[str, Any]]:
        return [
            {"field": literal, "column": item.column, "match": item.reason.value}
            for literal, item in self._assignments.items()
        ]


@dataclass(frozen=True)
class TokenOutcome:
    field: str
    column: str | None
    status: OutcomeStatus
    category: SemanticCategory
    original_value: Any
    replaced_value: str
    occurrences: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "column": self.column,
            "status": self.status.value,
            "category": self.category.value,
            "original_value": self.original_value,
            "replaced_value": self.replaced_value,
            "occurrences": self.occurrences,
        }


@dataclass(frozen=True)
class SubstitutionResult:
    message: str
    template: str
    outcomes: tuple[TokenOutcome, ...]

    def _with_status(self, status: OutcomeStatus) -> list[TokenOutcome]:
        return [item for item in self.outcomes if item.status is status]

    @property
    def replaced(self) -> list[TokenOutcome]:
        return self._with_status(OutcomeStatus.REPLACED)

    @property
    def missing(self) -> list[TokenOutcome]:
        return self._with_status(OutcomeStatus.MISSING)

    @property
    def unmapped(self) -> list[TokenOutcome]:
        return self._with_status(OutcomeStatus.UNMAPPED)

    @property
    def needs_attention(self) -> bool:
        return bool(self.missing or self.unmapped)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "replacements": [item.to_dict() for item in self.outcomes],
        }


@dataclass(frozen=True)
class ValidationWarning:
    code: str
    message: str


@dataclass(frozen=True)
class ValidationReport:
    is_valid: bool
    warnings: tuple[ValidationWarning, ...] = ()
    stats: dict[str, int] = field(default_factory=dict)

    @property
    def messages(self) -> list[str]:
        return [item.message for item in self.warnings]

    def codes(self) -> set[str]:
        return {item.code for item in self.warnings}

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "warnings": [asdict(item) for item in self.warnings],
            "stats": dict(self.stats),
        }


@dataclass(frozen=True)
class ContactFields:
    email: str | None = None
    phone_display: str | None = None
    phone_dial: str | None = None
    name: str | None = None
    recipient: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
