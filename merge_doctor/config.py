"""Tunable heuristics for merge-doctor and the YAML file that overrides them.

Keyword tables, thresholds and sentinel formats live here rather than inline in
the pipeline so they can be audited and extended without touching the logic.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import date
from pathlib import Path
from typing import Any, Mapping

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from merge_doctor.errors import ConfigError
from merge_doctor.models import SemanticCategory

DEFAULT_CATEGORY_KEYWORDS: dict[SemanticCategory, tuple[str, ...]] = {
    SemanticCategory.EMAIL: ("email", "e-mail", "mail"),
    SemanticCategory.PHONE: ("phone", "tel", "mobile", "cell", "contact"),
    SemanticCategory.DATE: ("date", "expir", "due", "renew", "birth", "created", "updated"),
    SemanticCategory.NAME: ("name", "first", "last", "full", "customer", "client"),
}

# Excel's 1900 date system: serial 1 is 1900-01-01 and serial 60 is the
# fictitious 1900-02-29, so day zero for every serial above 60 is 1899-12-30.
DEFAULT_SERIAL_EPOCH = date(1899, 12, 30)

CONFIG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "import": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "delimiters": {"type": "array", "items": {"type": "string", "minLength": 1, "maxLength": 1}, "minItems": 1},
                "header_scan_rows": {"type": "integer", "minimum": 1},
                "header_min_cells": {"type": "integer", "minimum": 1},
                "row_min_cells": {"type": "integer", "minimum": 1},
                "date_display_format": {"type": "string"},
                "numeric_cells": {"type": "boolean"},
            },
        },
        "categories": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                category.value: {"type": "array", "items": {"type": "string", "minLength": 1}}
                for category in DEFAULT_CATEGORY_KEYWORDS
            },
        },
        "dates": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "serial_epoch": {"type": "string", "pattern": r"^\d{4}-\d{2}-\d{2}$"},
                "serial_min": {"type": "number"},
                "serial_max": {"type": "number"},
                "long_format": {"type": "string"},
            },
        },
        "markers": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "unmapped": {"type": "string"},
                "missing": {"type": "string"},
                "empty": {"type": "string"},
            },
        },
        "validation": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "min_message_length": {"type": "integer", "minimum": 0},
                "max_message_length": {"type": "integer", "minimum": 1},
                "phone_min_digits": {"type": "integer", "minimum": 1},
                "phone_max_digits": {"type": "integer", "minimum": 1},
            },
        },
        "batch": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "yield_every": {"type": "integer", "minimum": 1},
            },
        },
    },
}


@dataclass(frozen=True)
class MergeConfig:
    delimiters: tuple[str, ...] = (",", "\t", "|", ";")
    header_scan_rows: int = 25
    header_min_cells: int = 3
    row_min_cells: int = 2
    date_display_format: str = "{month}/{day}/{year}"
    numeric_cells: bool = True

    category_keywords: Mapping[SemanticCategory, tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_CATEGORY_KEYWORDS)
    )

    serial_epoch: date = DEFAULT_SERIAL_EPOCH
    serial_min: float = 1
    serial_max: float = 100_000
    long_date_format: str = "{month_name} {day}, {year}"

    unmapped_marker: str = "[UNMAPPED: {name}]"
    missing_marker: str = "[MISSING: {name}]"
    empty_marker: str = "[EMPTY: {name}]"

    min_message_length: int = 50
    max_message_length: int = 5000
    phone_min_digits: int = 10
    phone_max_digits: int = 15

    yield_every: int = 50

    def keywords_for(self, category: SemanticCategory) -> tuple[str, ...]:
        return tuple(self.category_keywords.get(category, ()))


DEFAULT_CONFIG = MergeConfig()


def _overlay(data: dict[str, Any]) -> MergeConfig:
    updates: dict[str, Any] = {}

    section = data.get("import", {})
    if "delimiters" in section:
        updates["delimiters"] = tuple(section["delimiters"])
    for key in ("header_scan_rows", "header_min_cells", "row_min_cells", "date_display_format", "numeric_cells"):
        if key in section:
            updates[key] = section[key]

    categories = data.get("categories")
    if categories:
        keywords = dict(DEFAULT_CATEGORY_KEYWORDS)
        for name, words in categories.items():
            keywords[SemanticCategory(name)] = tuple(word.lower() for word in words)
        updates["category_keywords"] = keywords

    dates = data.get("dates", {})
    if "serial_epoch" in dates:
        try:
            updates["serial_epoch"] = date.fromisoformat(dates["serial_epoch"])
        except ValueError as exc:
            raise ConfigError(f"invalid dates.serial_epoch: {exc}") from exc
    for source, target in (("serial_min", "serial_min"), ("serial_max", "serial_max"), ("long_format", "long_date_format")):
        if source in dates:
            updates[target] = dates[source]

    markers = data.get("markers", {})
    for name in ("unmapped", "missing", "empty"):
        if name in markers:
            if "{name}" not in markers[name]:
                raise ConfigError(f"markers.{name} must contain '{{name}}'")
            updates[f"{name}_marker"] = markers[name]

    validation = data.get("validation", {})
    for key in ("min_message_length", "max_message_length", "phone_min_digits", "phone_max_digits"):
        if key in validation:
            updates[key] = validation[key]

    batch = data.get("batch", {})
    if "yield_every" in batch:
        updates["yield_every"] = batch["yield_every"]

    return replace(DEFAULT_CONFIG, **updates)


def load_config(path: Path | None) -> MergeConfig:
    if path is None:
        return DEFAULT_CONFIG
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid yaml: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")
    try:
        jsonschema.validate(data, CONFIG_SCHEMA)
    except ValidationError as exc:
        raise ConfigError(f"config validation failed: {exc.message}") from exc
    return _overlay(data)


def default_config_yaml() -> str:
    config = DEFAULT_CONFIG
    payload = {
        "import": {
            "delimiters": list(config.delimiters),
            "header_scan_rows": config.header_scan_rows,
            "header_min_cells": config.header_min_cells,
            "row_min_cells": config.row_min_cells,
            "date_display_format": config.date_display_format,
            "numeric_cells": config.numeric_cells,
        },
        "categories": {
            category.value: list(words) for category, words in config.category_keywords.items()
        },
        "dates": {
            "serial_epoch": config.serial_epoch.isoformat(),
            "serial_min": config.serial_min,
            "serial_max": config.serial_max,
            "long_format": config.long_date_format,
        },
        "markers": {
            "unmapped": config.unmapped_marker,
            "missing": config.missing_marker,
            "empty": config.empty_marker,
        },
        "validation": {
            "min_message_length": config.min_message_length,
            "max_message_length": config.max_message_length,
            "phone_min_digits": config.phone_min_digits,
            "phone_max_digits": config.phone_max_digits,
        },
        "batch": {"yield_every": config.yield_every},
    }
    return yaml.safe_dump(payload, sort_keys=False, allow_unicode=True)


def load_mapping_overrides(path: Path) -> dict[str, str | None]:
    """Read a reviewer's ``{"[Token]": "Column" | null}`` JSON file."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"mapping file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"invalid mapping json: {exc}") from exc
    if isinstance(payload, dict) and isinstance(payload.get("mapping"), list):
        payload = {item.get("field"): item.get("column") for item in payload["mapping"]}
    if not isinstance(payload, dict):
        raise ConfigError("mapping root must be a JSON object")
    overrides: dict[str, str | None] = {}
    for key, value in payload.items():
        if not isinstance(key, str) or (value is not None and not isinstance(value, str)):
            raise ConfigError(f"mapping entries must map a field to a column name or null: {key!r}")
        overrides[key] = value or None
    return overrides
