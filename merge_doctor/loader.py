"""
loader.py — turn raw delimited or spreadsheet bytes into cleaned records.

Supports: .csv .tsv .txt .xlsx .xlsm .xls .ods

Public API:
    result  = import_table(raw_bytes, ".xlsx")
    result  = load_file("path/to/customers.csv")
    headers = result.headers
    records = result.records

Delimited text always uses its first row as the header row. Spreadsheets use
the sheet with the most rows and the first of its leading rows that looks like
a header (see ``discover_header_row``), because exports often carry a title
or logo block above the real table.
"""

from __future__ import annotations

import csv
import io
import logging
import math
import re
from collections import Counter
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Iterable, Optional

import chardet
import pandas as pd

from merge_doctor.config import DEFAULT_CONFIG, MergeConfig
from merge_doctor.errors import (
    EmptyInputError,
    NoValidRowsError,
    NoWorksheetsError,
    UnreadableInputError,
    UnsupportedFormatError,
)
from merge_doctor.models import ImportResult, Record

logger = logging.getLogger(__name__)

# ── Format groups ──────────────────────────────────────────────────────────────
TEXT_FORMATS  = {".csv", ".tsv", ".txt"}
EXCEL_FORMATS = {".xlsx", ".xlsm", ".xls"}
ODS_FORMATS   = {".ods"}
ALL_FORMATS   = TEXT_FORMATS | EXCEL_FORMATS | ODS_FORMATS

MIME_FORMATS = {
    "text/csv": ".csv",
    "text/tab-separated-values": ".tsv",
    "text/plain": ".txt",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "application/vnd.ms-excel.sheet.macroenabled.12": ".xlsm",
    "application/vnd.ms-excel": ".xls",
    "application/vnd.oasis.opendocument.spreadsheet": ".ods",
}

ZIP_MAGIC = b"PK\x03\x04"
OLE2_MAGIC = b"\xd0\xcf\x11\xe0"

HEADER_ALLOWED_RE = re.compile(r"[^A-Za-z0-9 _-]")
WHITESPACE_RUN_RE = re.compile(r"\s+")
PLAIN_NUMBER_RE = re.compile(r"^-?(?:0|[1-9]\d*)(?:\.\d+)?$")


# ══════════════════════════════════════════════════════════════════════════════
# FORMAT RESOLUTION
# ══════════════════════════════════════════════════════════════════════════════

def sniff_format(raw: bytes) -> str:
    """Guess a container format from magic bytes; anything else is delimited text."""
    if raw.startswith(ZIP_MAGIC):
        return ".xlsx"
    if raw.startswith(OLE2_MAGIC):
        return ".xls"
    return ".csv"


def resolve_format(raw: bytes, declared_format: Optional[str]) -> str:
    if not declared_format:
        return sniff_format(raw)
    declared = declared_format.strip().lower()
    if declared in MIME_FORMATS:
        return MIME_FORMATS[declared]
    suffix = Path(declared).suffix if "." in declared.lstrip(".") else ""
    suffix = suffix or ("." + declared.lstrip("."))
    if suffix not in ALL_FORMATS:
        supported = ", ".join(sorted(ALL_FORMATS))
        raise UnsupportedFormatError(
            f"Unsupported format '{declared_format}'. Supported: {supported}"
        )
    return suffix


# ══════════════════════════════════════════════════════════════════════════════
# ENCODING DETECTION
# ══════════════════════════════════════════════════════════════════════════════

def _detect_encoding_info(raw: bytes) -> dict:
    """Detect encoding from raw bytes with chardet."""
    result     = chardet.detect(raw)
    detected   = result.get("encoding") or "unknown"
    confidence = round(result.get("confidence") or 0.0, 2)
    is_utf8    = detected.upper().replace("-", "") in ("UTF8", "UTF8SIG", "ASCII")
    return {
        "detected":   detected,
        "confidence": confidence,
        "is_utf8":    is_utf8,
    }


def _read_text_safely(raw: bytes, preferred_encoding: str) -> str:
    """
    Decode raw bytes line-by-line.

    Strategy per line:
      1. Try UTF-8
      2. Try preferred_encoding (chardet result)
      3. Try latin-1
      4. CP1252 with replace (never crashes)

    Also strips a leading BOM and embedded null bytes.
    """
    decoded_lines: list[str] = []
    for raw_line in raw.split(b"\n"):
        decoded: str | None = None
        for enc in ("utf-8", preferred_encoding, "latin-1"):
            if not enc or enc == "unknown":
                continue
            try:
                decoded = raw_line.decode(enc)
                break
            except (LookupError, UnicodeDecodeError):
                continue
        if decoded is None:
            decoded = raw_line.decode("cp1252", errors="replace")
        decoded_lines.append(decoded.replace("\x00", ""))
    return "\n".join(decoded_lines).lstrip("\ufeff")


# ══════════════════════════════════════════════════════════════════════════════
# DELIMITER DETECTION
# ══════════════════════════════════════════════════════════════════════════════

def detect_delimiter(text: str, candidates: Iterable[str] = DEFAULT_CONFIG.delimiters) -> str:
    """
    Infer the delimiter from sample lines.

    Uses csv.Sniffer first; falls back to scoring each candidate delimiter by
    column-count consistency and column width.
    """
    candidates   = list(candidates)
    sample_lines = [l for l in text.splitlines() if l.strip()][:50]
    sample       = "\n".join(sample_lines[:25])

    if sample:
        try:
            sniffed = csv.Sniffer().sniff(sample, delimiters="".join(candidates))
            return sniffed.delimiter
        except csv.Error:
            pass

    best_delim  = candidates[0]
    best_score  = float("-inf")
    best_width  = 0
    sample_text = "\n".join(sample_lines[:120])

    for delim in candidates:
        rows = [
            row
            for row in csv.reader(io.StringIO(sample_text), delimiter=delim)
            if any(cell.strip() for cell in row)
        ]
        if not rows:
            continue

        widths       = [len(row) for row in rows]
        width_counts = Counter(widths)
        mode_width, mode_count = width_counts.most_common(1)[0]
        consistency  = mode_count / len(widths)
        header_width = len(rows[0])

        score = (mode_width * 2.0) + (consistency * mode_width)
        if header_width == mode_width:
            score += 1.0
        if mode_width == 1:
            score -= 10.0

        if score > best_score or (score == best_score and mode_width > best_width):
            best_score = score
            best_width = mode_width
            best_delim = delim

    return best_delim


def _validate_txt_table(text: str, delimiter: str) -> None:
    """Reject .txt files that are prose rather than delimited rows."""
    sample_lines = [line for line in text.splitlines() if line.strip()][:50]
    rows = [
        row
        for row in csv.reader(io.StringIO("\n".join(sample_lines)), delimiter=delimiter)
        if any(cell.strip() for cell in row)
    ]
    if sum(1 for row in rows if len(row) > 1) < 2:
        raise UnreadableInputError(
            ".txt file does not appear to contain delimited/tabular data "
            f"(detected delimiter {delimiter!r} but fewer than 2 rows contain multiple fields)"
        )


# ══════════════════════════════════════════════════════════════════════════════
# CELL / HEADER CLEANING
# ══════════════════════════════════════════════════════════════════════════════

def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if value is pd.NaT:
        return True
    return isinstance(value, str) and not value.strip()


def format_display_date(value: date, config: MergeConfig = DEFAULT_CONFIG) -> str:
    return config.date_display_format.format(
        month=value.month,
        day=value.day,
        year=value.year,
        month_name=value.strftime("%B"),
    )


def _coerce_number(text: str) -> Any:
    if not PLAIN_NUMBER_RE.match(text):
        return text
    if "." in text:
        return float(text)
    return int(text)


def clean_value(value: Any, config: MergeConfig = DEFAULT_CONFIG, *, coerce_numbers: bool = False) -> Any:
    """Trim strings, keep numbers, turn date cells into display strings."""
    if is_blank(value):
        return ""
    if isinstance(value, str):
        text = value.strip()
        if coerce_numbers and config.numeric_cells:
            return _coerce_number(text)
        return text
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, pd.Timestamp):
        value = value.to_pydatetime()
    if isinstance(value, (datetime, date)):
        return format_display_date(value, config)
    if isinstance(value, time):
        return value.strftime("%H:%M:%S")
    if isinstance(value, (int, float)):
        return value
    return str(value).strip()


def _header_text(value: Any) -> str:
    if is_blank(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date, pd.Timestamp)):
        return format_display_date(value)
    return str(value)


def clean_header(value: Any, index: int) -> str:
    text = WHITESPACE_RUN_RE.sub(" ", _header_text(value).strip())
    text = HEADER_ALLOWED_RE.sub("", text)
    text = WHITESPACE_RUN_RE.sub(" ", text).strip()
    return text or f"Unknown_{index}"


def _header_key(name: str) -> str:
    return WHITESPACE_RUN_RE.sub("", name).casefold()


def build_header_set(raw_headers: list[Any]) -> tuple[str, ...]:
    """Clean every header cell and make the names unique ignoring case/whitespace."""
    headers: list[str] = []
    seen: set[str] = set()
    for index, value in enumerate(raw_headers):
        name = clean_header(value, index)
        candidate, suffix = name, 2
        while _header_key(candidate) in seen:
            candidate = f"{name}_{suffix}"
            suffix += 1
        seen.add(_header_key(candidate))
        headers.append(candidate)
    return tuple(headers)


def count_non_empty(row: Iterable[Any]) -> int:
    return sum(1 for cell in row if not is_blank(cell))


def discover_header_row(
    rows: list[list[Any]],
    scan_rows: int = DEFAULT_CONFIG.header_scan_rows,
    min_cells: int = DEFAULT_CONFIG.header_min_cells,
) -> Optional[int]:
    """Index of the first of the leading ``scan_rows`` rows with ``min_cells`` non-empty cells."""
    for idx, row in enumerate(rows[:scan_rows]):
        if count_non_empty(row) >= min_cells:
            return idx
    return None


# ══════════════════════════════════════════════════════════════════════════════
# FORMAT LOADERS
# ══════════════════════════════════════════════════════════════════════════════

def _frame_rows(df: pd.DataFrame) -> list[list[Any]]:
    rows = []
    for raw in df.itertuples(index=False, name=None):
        row = [None if is_blank(cell) else cell for cell in raw]
        if any(cell is not None for cell in row):
            rows.append(row)
    return rows


def _load_text_rows(raw: bytes, suffix: str, config: MergeConfig) -> tuple[list[list[Any]], dict]:
    enc_info = _detect_encoding_info(raw)
    enc      = enc_info["detected"] if enc_info["detected"] != "unknown" else "utf-8"
    text     = _read_text_safely(raw, enc)
    warnings: list[str] = []

    if not text.strip():
        raise EmptyInputError("The file is empty.")

    if suffix == ".tsv":
        delimiter = "\t"
    else:
        delimiter = detect_delimiter(text, config.delimiters)

    if suffix == ".txt":
        _validate_txt_table(text, delimiter)

    skipped: list[list[str]] = []

    def _skip_bad_line(fields: list[str]) -> None:
        skipped.append(fields)
        return None

    sep = r"\|" if delimiter == "|" else delimiter
    try:
        df = pd.read_csv(
            io.StringIO(text),
            header=None,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            on_bad_lines=_skip_bad_line,
            sep=sep,
            engine="python",
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError, csv.Error) as exc:
        raise UnreadableInputError(f"Could not parse {suffix} file: {exc}") from exc

    if skipped:
        warnings.append(f"Skipped {len(skipped)} malformed line(s) with more fields than the header row")
    if not enc_info["is_utf8"] and enc_info["detected"] != "unknown":
        warnings.append(f"Decoded non-UTF-8 input as {enc}")

    meta = {
        "detected_encoding": enc,
        "delimiter": delimiter,
        "warnings": warnings,
    }
    return _frame_rows(df), meta


def _load_workbook_sheets(raw: bytes, suffix: str) -> dict[str, pd.DataFrame]:
    engine: Optional[str] = None
    if suffix == ".xls":
        try:
            import xlrd  # noqa: F401
        except ImportError:
            raise ImportError(".xls files require xlrd — run: pip install xlrd")
        engine = "xlrd"
    elif suffix in ODS_FORMATS:
        try:
            import odf  # noqa: F401
        except ImportError:
            raise ImportError(".ods files require odfpy — run: pip install odfpy")
        engine = "odf"
    else:
        engine = "openpyxl"

    try:
        return pd.read_excel(io.BytesIO(raw), sheet_name=None, header=None, dtype=object, engine=engine)
    except Exception as exc:
        raise UnreadableInputError(
            "The file could not be parsed. It might be corrupt or in an unsupported format. "
            f"({exc})"
        ) from exc


def _load_spreadsheet_rows(raw: bytes, suffix: str, config: MergeConfig) -> tuple[list[list[Any]], dict]:
    sheets = _load_workbook_sheets(raw, suffix)
    if not sheets:
        raise NoWorksheetsError("Workbook contains no worksheets.")

    warnings: list[str] = []
    best_name: Optional[str] = None
    best_rows: list[list[Any]] = []
    for name, df in sheets.items():
        rows = _frame_rows(df)
        if best_name is None or len(rows) > len(best_rows):
            best_name, best_rows = str(name), rows

    if not best_rows:
        raise EmptyInputError("No data found in any worksheet.")

    sheet_names = tuple(str(name) for name in sheets)
    if len(sheet_names) > 1:
        others = [name for name in sheet_names if name != best_name]
        warnings.append(
            f"Multiple sheets found ({len(sheet_names)} total); "
            f"used '{best_name}' ({len(best_rows)} rows). Ignored: {others}"
        )
        logger.info("Using worksheet '%s' (%d rows) out of %d sheets", best_name, len(best_rows), len(sheet_names))

    meta = {
        "sheet_name": best_name,
        "sheet_names": sheet_names,
        "warnings": warnings,
    }
    return best_rows, meta


# ══════════════════════════════════════════════════════════════════════════════
# PUBLIC API
# ══════════════════════════════════════════════════════════════════════════════

def build_records(
    data_rows: list[list[Any]],
    headers: tuple[str, ...],
    config: MergeConfig = DEFAULT_CONFIG,
    *,
    coerce_numbers: bool = False,
    first_row_number: int = 1,
) -> tuple[Record, ...]:
    """Clean every row and keep those with at least ``config.row_min_cells`` values."""
    records: list[Record] = []
    width = len(headers)
    for offset, row in enumerate(data_rows):
        padded = list(row[:width]) + [None] * max(0, width - len(row))
        values = [clean_value(cell, config, coerce_numbers=coerce_numbers) for cell in padded]
        if count_non_empty(values) < config.row_min_cells:
            continue
        records.append(Record(headers, dict(zip(headers, values)), first_row_number + offset))
    return tuple(records)


def import_table(
    raw: bytes,
    declared_format: Optional[str] = None,
    *,
    config: MergeConfig = DEFAULT_CONFIG,
) -> ImportResult:
    """
    Parse raw bytes into a header set and cleaned records.

    Args:
        raw:             File contents.
        declared_format: Extension (".csv", "xlsx"), file name, or MIME type.
                         None = sniff from the bytes.
        config:          Heuristic settings.

    Raises:
        EmptyInputError         the input or every worksheet is empty.
        UnsupportedFormatError  the declared format is not supported.
        UnreadableInputError    the bytes could not be parsed.
        NoWorksheetsError       a workbook without worksheets.
        NoValidRowsError        nothing survived row filtering.
        ImportError             a required optional engine (xlrd, odfpy) is missing.
    """
    if not raw or not raw.strip():
        raise EmptyInputError("The file is empty.")

    suffix = resolve_format(raw, declared_format)
    is_text = suffix in TEXT_FORMATS

    if is_text:
        rows, meta = _load_text_rows(raw, suffix, config)
        header_idx = 0
    else:
        rows, meta = _load_spreadsheet_rows(raw, suffix, config)
        found = discover_header_row(rows, config.header_scan_rows, config.header_min_cells)
        if found is None:
            header_idx = 0
            message = (
                f"Could not detect a header row with {config.header_min_cells}+ filled cells "
                f"in the first {config.header_scan_rows} rows; using the first row."
            )
            meta["warnings"].append(message)
            logger.warning(message)
        else:
            header_idx = found
            logger.debug("Header row found at index %d", header_idx)

    if not rows:
        raise EmptyInputError("The file is empty.")

    headers = build_header_set(rows[header_idx])
    data_rows = rows[header_idx + 1:]
    records = build_records(
        data_rows,
        headers,
        config,
        coerce_numbers=is_text,
        first_row_number=header_idx + 2,
    )

    dropped = len(data_rows) - len(records)
    if dropped:
        logger.debug("Dropped %d row(s) with fewer than %d filled cells", dropped, config.row_min_cells)

    if not records:
        kind = "CSV" if is_text else "spreadsheet"
        raise NoValidRowsError(f"No valid data rows found in {kind} file.")

    logger.info("Imported %d rows, %d columns", len(records), len(headers))
    return ImportResult(
        headers=headers,
        records=records,
        detected_format=suffix.lstrip("."),
        detected_encoding=meta.get("detected_encoding"),
        delimiter=meta.get("delimiter"),
        sheet_name=meta.get("sheet_name"),
        sheet_names=meta.get("sheet_names"),
        header_row_index=header_idx,
        total_rows=len(data_rows),
        warnings=tuple(meta["warnings"]),
    )


def load_file(path: "str | Path", *, config: MergeConfig = DEFAULT_CONFIG) -> ImportResult:
    """Read ``path`` and import it, using the file extension as the declared format."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    return import_table(path.read_bytes(), path.suffix.lower() or None, config=config)
