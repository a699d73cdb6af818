from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from tqdm import tqdm

from merge_doctor import __version__ as TOOL_VERSION
from merge_doctor.batch import render_batch
from merge_doctor.config import (
    MergeConfig,
    default_config_yaml,
    load_config,
    load_mapping_overrides,
)
from merge_doctor.contacts import name_column_for
from merge_doctor.contracts import build_contract, build_run_summary
from merge_doctor.errors import ConfigError, DataImportError
from merge_doctor.loader import ALL_FORMATS, load_file
from merge_doctor.log import get_logger, log_summary, setup_logging
from merge_doctor.models import FieldMapping, ImportResult
from merge_doctor.placeholders import extract_all, to_plain_text
from merge_doctor.reconciler import classify_headers, reconcile, suggest_contact_columns
from merge_doctor.validation import completeness

EXIT_SUCCESS = 0
EXIT_COMMAND_ERROR = 1
EXIT_PARSE_FAILED = 2
EXIT_NEEDS_ATTENTION = 3
EXIT_UNRESOLVED_MAPPING = 5


class CliError(Exception):
    def __init__(self, message: str, code: int = EXIT_COMMAND_ERROR) -> None:
        super().__init__(message)
        self.code = code


class MergeDoctorArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        raise CliError(message, EXIT_COMMAND_ERROR)


def eprint(message: str) -> None:
    print(message, file=sys.stderr)


def emit_human(message: str, *, quiet: bool = False) -> None:
    if not quiet:
        eprint(message)


def json_dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True, default=str)


def timestamp_token() -> str:
    override = os.environ.get("MERGE_DOCTOR_OUTPUT_STAMP")
    if override:
        return override
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def default_output_dir(input_path: Path) -> Path:
    return Path.cwd() / "merge-doctor-output" / f"{input_path.stem}-{timestamp_token()}"


def determine_output_dir(args: argparse.Namespace, input_path: Path) -> Path:
    if getattr(args, "out_dir", None):
        return Path(args.out_dir)
    return default_output_dir(input_path)


def write_text(path: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(payload, encoding="utf-8")


def write_json(path: Path, payload: Any) -> None:
    write_text(path, json_dumps(payload))


def maybe_emit_json_stdout(payload: Any, enabled: bool) -> None:
    if enabled:
        print(json_dumps(payload))


def classify_backend_exception(exc: Exception) -> int:
    if isinstance(exc, CliError):
        return exc.code
    if isinstance(exc, ConfigError):
        return EXIT_COMMAND_ERROR
    if isinstance(exc, (ImportError, UnicodeDecodeError, DataImportError)):
        return EXIT_PARSE_FAILED
    if isinstance(exc, FileNotFoundError):
        return EXIT_COMMAND_ERROR
    if isinstance(exc, ValueError):
        return EXIT_PARSE_FAILED
    return EXIT_COMMAND_ERROR


# ── Shared steps ───────────────────────────────────────────────────────────────

def existing_path(raw: str) -> Path:
    path = Path(raw)
    if not path.exists():
        raise CliError(f"File not found: {path}", EXIT_COMMAND_ERROR)
    return path


def read_template(raw: str) -> str:
    return existing_path(raw).read_text(encoding="utf-8")


def load_data(raw: str, config: MergeConfig) -> ImportResult:
    path = existing_path(raw)
    if path.suffix.lower() not in ALL_FORMATS:
        raise CliError(
            f"Unsupported file type '{path.suffix or '[missing extension]'}'. "
            f"Supported: {', '.join(sorted(ALL_FORMATS))}",
            EXIT_COMMAND_ERROR,
        )
    try:
        return load_file(path, config=config)
    except (DataImportError, ImportError) as exc:
        raise CliError(f"Import failed: {exc}", EXIT_PARSE_FAILED) from exc


def load_cli_config(args: argparse.Namespace) -> MergeConfig:
    try:
        return load_config(Path(args.config) if getattr(args, "config", None) else None)
    except ConfigError as exc:
        raise CliError(f"Config error: {exc}", EXIT_COMMAND_ERROR) from exc


def apply_overrides(mapping: FieldMapping, path: str) -> FieldMapping:
    try:
        overrides = load_mapping_overrides(Path(path))
    except ConfigError as exc:
        raise CliError(f"Mapping error: {exc}", EXIT_COMMAND_ERROR) from exc
    logger = get_logger()
    for literal, column in overrides.items():
        if literal not in mapping:
            logger.warning("Mapping file names %s, which the template does not use", literal)
            continue
        try:
            mapping = mapping.override(literal, column)
        except ValueError as exc:
            raise CliError(f"Mapping error for {literal}: {exc}", EXIT_COMMAND_ERROR) from exc
    return mapping


def render_import_text(path: Path, result: ImportResult, categories: dict[str, Any]) -> str:
    lines = [
        "merge-doctor inspect",
        f"File: {path}",
        f"Format: {result.detected_format}",
    ]
    if result.detected_encoding:
        lines.append(f"Encoding: {result.detected_encoding}")
    if result.delimiter:
        lines.append(f"Delimiter: {result.delimiter!r}")
    if result.sheet_name:
        lines.append(f"Sheet: {result.sheet_name}")
    lines.append(f"Header row: {result.header_row_index + 1}")
    lines.append(f"Rows: {len(result.records)} kept, {result.dropped_rows} dropped")
    lines.append("Columns:")
    lines.extend(f"  {header} ({categories[header].value})" for header in result.headers)
    for warning in result.warnings:
        lines.append(f"Warning: {warning}")
    return "\n".join(lines) + "\n"


def render_mapping_text(mapping: FieldMapping, contacts: dict[str, Any]) -> str:
    lines = ["merge-doctor map"]
    for item in mapping.to_report():
        column = item["column"] or "[unmapped]"
        lines.append(f"  {item['field']} -> {column} ({item['match']})")
    lines.append(f"Email column: {contacts['email'] or '[none]'}")
    lines.append(f"Phone column: {contacts['phone'] or '[none]'}")
    return "\n".join(lines) + "\n"


# ── Commands ───────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = MergeDoctorArgumentParser(prog="merge-doctor", description="Personalise a message template for every row of a spreadsheet.")
    subparsers = parser.add_subparsers(dest="command", required=True, parser_class=MergeDoctorArgumentParser)

    def common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--config", help="YAML config path")
        sub.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
        sub.add_argument("-q", "--quiet", action="store_true", help="Minimal human logs")
        sub.add_argument("-v", "--verbose", action="store_true", help="More human logs")

    inspect = subparsers.add_parser("inspect", help="Show how a data file is imported.")
    inspect.add_argument("data", help="Data file path")
    common(inspect)

    fields = subparsers.add_parser("fields", help="List the placeholders in one or more templates.")
    fields.add_argument("templates", nargs="+", help="Template file path(s)")
    common(fields)

    mapping = subparsers.add_parser("map", help="Draft a placeholder-to-column mapping.")
    mapping.add_argument("template", help="Template file path")
    mapping.add_argument("data", help="Data file path")
    mapping.add_argument("--output", help="Write the draft mapping as editable JSON")
    common(mapping)

    render = subparsers.add_parser("render", help="Render the template for every row.")
    render.add_argument("template", help="Template file path")
    render.add_argument("data", help="Data file path")
    render.add_argument("--mapping", help="JSON mapping overrides")
    render.add_argument("--email-column", help="Column holding the recipient email")
    render.add_argument("--phone-column", help="Column holding the recipient phone")
    render.add_argument("--name-column", help="Column holding the recipient name")
    render.add_argument("--row", type=int, help="Render only this data row (1-based)")
    render.add_argument("--sms", action="store_true", help="Render as plain text and check SMS length")
    render.add_argument("--strict", action="store_true", help="Fail with exit code 5 when a placeholder is unmapped")
    render.add_argument("-o", "--out", dest="out_dir", help="Output directory")
    common(render)

    config = subparsers.add_parser("config", help="Generate configuration.")
    config_subparsers = config.add_subparsers(dest="config_command", required=True, parser_class=MergeDoctorArgumentParser)
    config_init = config_subparsers.add_parser("init", help="Write a starter config file.")
    config_init.add_argument("path", nargs="?", default="merge-doctor.yml", help="Config output path")

    subparsers.add_parser("version", help="Print version")
    return parser


def run_inspect(args: argparse.Namespace) -> int:
    config = load_cli_config(args)
    result = load_data(args.data, config)
    categories = classify_headers(result.headers, config)
    payload = {
        "contract": build_contract("merge_doctor.inspect"),
        "import": result.to_dict(),
        "categories": {header: category.value for header, category in categories.items()},
        "suggested_contacts": suggest_contact_columns(result.headers),
        "run_summary": build_run_summary(
            command="inspect",
            input_paths=[Path(args.data)],
            metrics={"rows": len(result.records), "columns": len(result.headers)},
            warnings=list(result.warnings),
        ),
    }
    if args.json:
        maybe_emit_json_stdout(payload, True)
    else:
        emit_human(render_import_text(Path(args.data), result, categories), quiet=args.quiet)
    return EXIT_SUCCESS


def run_fields(args: argparse.Namespace) -> int:
    tokens = extract_all(*(read_template(path) for path in args.templates))
    payload = {
        "contract": build_contract("merge_doctor.fields"),
        "fields": [{"field": token.literal, "name": token.name} for token in tokens],
        "run_summary": build_run_summary(
            command="fields",
            input_paths=[Path(path) for path in args.templates],
            metrics={"fields": len(tokens)},
        ),
    }
    if args.json:
        maybe_emit_json_stdout(payload, True)
    else:
        for token in tokens:
            print(token.literal)
        emit_human(f"{len(tokens)} field(s)", quiet=args.quiet)
    return EXIT_SUCCESS


def run_map(args: argparse.Namespace) -> int:
    config = load_cli_config(args)
    template = read_template(args.template)
    result = load_data(args.data, config)
    mapping = reconcile(extract_all(template), result.headers, config)
    contacts = suggest_contact_columns(result.headers)
    unresolved = mapping.unresolved()
    payload = {
        "contract": build_contract("merge_doctor.mapping"),
        "headers": list(result.headers),
        "mapping": mapping.to_report(),
        "unresolved": unresolved,
        "suggested_contacts": contacts,
        "run_summary": build_run_summary(
            command="map",
            input_paths=[Path(args.template), Path(args.data)],
            output_path=Path(args.output) if args.output else None,
            metrics={"fields": len(mapping), "unresolved": len(unresolved)},
        ),
    }
    if args.output:
        write_json(Path(args.output), payload)
        emit_human(f"Mapping written: {args.output}", quiet=args.quiet)
    if args.json:
        maybe_emit_json_stdout(payload, True)
    else:
        emit_human(render_mapping_text(mapping, contacts), quiet=args.quiet)
    return EXIT_SUCCESS


def run_render(args: argparse.Namespace) -> int:
    config = load_cli_config(args)
    template = read_template(args.template)
    if args.sms:
        template = to_plain_text(template)
    result = load_data(args.data, config)

    mapping = reconcile(extract_all(template), result.headers, config)
    if args.mapping:
        mapping = apply_overrides(mapping, args.mapping)
    unresolved = mapping.unresolved()
    if unresolved and args.strict:
        raise CliError(f"Unmapped field(s): {', '.join(unresolved)}", EXIT_UNRESOLVED_MAPPING)
    mapping = mapping.finalize()

    suggested = suggest_contact_columns(result.headers)
    email_column = args.email_column or suggested["email"]
    phone_column = args.phone_column or suggested["phone"]
    name_column = args.name_column or name_column_for(mapping)
    for column in (email_column, phone_column, name_column):
        if column and column not in result.headers:
            raise CliError(f"Unknown column: {column}", EXIT_COMMAND_ERROR)

    records = list(result.records)
    if args.row is not None:
        if not 1 <= args.row <= len(records):
            raise CliError(f"--row must be between 1 and {len(records)}", EXIT_COMMAND_ERROR)
        records = [records[args.row - 1]]

    with tqdm(total=len(records), unit="row", disable=not sys.stderr.isatty() or args.quiet) as bar:
        batch = render_batch(
            template,
            records,
            mapping,
            progress=lambda _outcome: bar.update(1),
            email_column=email_column,
            phone_column=phone_column,
            name_column=name_column,
            sms=args.sms,
            config=config,
        )

    summary = batch.summary()
    out_dir = determine_output_dir(args, Path(args.data))
    output_path = out_dir / "messages.json"
    payload = {
        "contract": build_contract("merge_doctor.render"),
        "import": result.to_dict(),
        "mapping": mapping.to_report(),
        "contacts": {"email_column": email_column, "phone_column": phone_column, "name_column": name_column},
        "summary": summary,
        "completeness": completeness(records, mapping.as_dict().values()),
        "rows": [outcome.to_dict() for outcome in batch.outcomes],
        "run_summary": build_run_summary(
            command="render",
            input_paths=[Path(args.template), Path(args.data)],
            status="ok" if summary["needs_attention"] == 0 else "needs_attention",
            output_path=output_path,
            metrics={key: summary[key] for key in ("processed", "valid", "needs_attention", "with_warnings")},
            warnings=list(result.warnings),
        ),
    }
    write_json(output_path, payload)
    maybe_emit_json_stdout(payload, args.json)

    log_summary(
        f"{summary['processed']} row(s) rendered, {summary['valid']} ready, "
        f"{summary['needs_attention']} need attention -> {output_path}"
    )
    return EXIT_NEEDS_ATTENTION if summary["needs_attention"] else EXIT_SUCCESS


def run_config_init(args: argparse.Namespace) -> int:
    config_path = Path(args.path)
    if config_path.exists():
        eprint(f"Refusing to overwrite existing config: {config_path}")
        return EXIT_COMMAND_ERROR
    write_text(config_path, default_config_yaml())
    emit_human(f"Config written: {config_path}")
    return EXIT_SUCCESS


def run_version() -> int:
    print(TOOL_VERSION)
    return EXIT_SUCCESS


COMMANDS = {
    "inspect": run_inspect,
    "fields": run_fields,
    "map": run_map,
    "render": run_render,
}


def main(argv: list[str] | None = None) -> int:
    try:
        parser = build_parser()
        args = parser.parse_args(argv)
        setup_logging(verbose=getattr(args, "verbose", False), quiet=getattr(args, "quiet", False))
        if args.command in COMMANDS:
            try:
                return COMMANDS[args.command](args)
            except CliError:
                raise
            except (OSError, ValueError, ImportError) as exc:
                raise CliError(str(exc), classify_backend_exception(exc)) from exc
        if args.command == "config":
            if args.config_command == "init":
                return run_config_init(args)
        if args.command == "version":
            return run_version()
        raise CliError(f"Unknown command: {args.command}", EXIT_COMMAND_ERROR)
    except CliError as exc:
        eprint(str(exc))
        return exc.code


if __name__ == "__main__":
    raise SystemExit(main())
