#!/usr/bin/env python3
"""Turn downloaded export_<day>.json.gz files into one semicolon-separated CSV."""

from __future__ import annotations

import gzip
import json
import math
import re
import zlib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from export_errors import ParseError
from run_logging import format_exception_message, log_event

EXPORT_FILE_RE = re.compile(r"^export_(\d{4}-\d{2}-\d{2})\.json\.gz$")
DELIMITER = ";"
FORMULA_COLUMNS = ("to", "from")
DECIMAL_COMMA_COLUMNS = ("price",)
MAX_PARSE_ERRORS_PER_FILE = 10
REPORT_FILENAME = "export.csv"
FILES_DIRNAME = "files"
LINE_BREAK_RE = re.compile(r"\r\n|\n|\r")
JS_SAFE_INTEGER = 2 ** 53


@dataclass
class ParsedRecord:
    day: str
    fields: Dict[str, Any]


@dataclass
class ParsedFile:
    path: Path
    day: str
    records: List[ParsedRecord] = field(default_factory=list)
    line_count: int = 0
    parse_errors: List[ParseError] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class ReportResult:
    path: Optional[Path]
    record_count: int = 0
    column_count: int = 0
    files_processed: int = 0
    parse_errors: int = 0
    failed_files: List[str] = field(default_factory=list)

    @property
    def has_data(self) -> bool:
        return self.path is not None


def day_from_filename(name: str) -> Optional[str]:
    match = EXPORT_FILE_RE.match(name)
    return match.group(1) if match else None


def list_export_files(files_dir: Path) -> List[Path]:
    files = []
    for path in sorted(files_dir.iterdir()):
        if not path.is_file() or not path.name.endswith(".json.gz"):
            continue
        if day_from_filename(path.name) is None:
            log_event("REPORT_FILE_SKIPPED", file=path.name, reason="name_has_no_day")
            continue
        files.append(path)
    return files


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not valid JSON")


def parse_export_file(path: Path, max_parse_errors: int = MAX_PARSE_ERRORS_PER_FILE) -> ParsedFile:
    """Stream-decompress one artifact and parse its newline-delimited JSON objects.

    Malformed lines are logged and skipped; after ``max_parse_errors`` of them
    the rest of the file is ignored. A broken archive drops the whole file.
    """
    day = day_from_filename(path.name) or ""
    parsed = ParsedFile(path=path, day=day)
    records: List[ParsedRecord] = []
    try:
        with gzip.open(path, "rb") as handle:
            for raw_line in handle:
                parsed.line_count += 1
                # Undecodable bytes become U+FFFD; they never cost the rest of the file.
                line = raw_line.decode("utf-8", errors="replace")
                if not line.strip():
                    continue
                try:
                    value = json.loads(line, parse_constant=_reject_constant)
                    if not isinstance(value, dict):
                        raise ValueError(f"expected a JSON object, got {type(value).__name__}")
                except ValueError as exc:
                    error = ParseError(str(exc), path=str(path), line_number=parsed.line_count)
                    parsed.parse_errors.append(error)
                    log_event(
                        "REPORT_PARSE_ERROR",
                        file=path.name,
                        line=parsed.line_count,
                        error=format_exception_message(exc),
                    )
                    if len(parsed.parse_errors) >= max_parse_errors:
                        log_event("REPORT_PARSE_ABORTED", file=path.name, errors=len(parsed.parse_errors))
                        break
                    continue
                records.append(ParsedRecord(day=day, fields=value))
    except (OSError, EOFError, zlib.error) as exc:
        parsed.error = format_exception_message(exc)
        log_event("REPORT_FILE_ERROR", file=path.name, error=parsed.error)
        return parsed

    parsed.records = records
    log_event("REPORT_FILE_PARSED", file=path.name, day=day, records=len(records), lines=parsed.line_count)
    return parsed


def collect_records(files: Sequence[Path], max_workers: int = 4) -> List[ParsedFile]:
    # Each worker owns its file's record list; merging happens after all of them finish.
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        return list(executor.map(parse_export_file, files))


def merge_records(parsed_files: Sequence[ParsedFile]) -> List[ParsedRecord]:
    merged = [record for parsed in parsed_files for record in parsed.records]
    # Stable: records from the same day keep their file order.
    merged.sort(key=lambda record: record.day)
    return merged


def report_columns(records: Sequence[ParsedRecord]) -> List[str]:
    columns: Dict[str, None] = {}
    for record in records:
        for key in record.fields:
            columns.setdefault(key, None)
    return list(columns)


def number_text(value: float) -> str:
    """Render a number the way JavaScript's ``String(n)`` does (``1e+21``, ``1.5e-7``, ``0.000001``)."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    # repr gives the shortest round-tripping digits, the same digits JavaScript picks.
    _, digit_tuple, exponent = Decimal(repr(abs(value))).normalize().as_tuple()
    digits = "".join(str(digit) for digit in digit_tuple)
    k = len(digits)
    n = k + exponent
    if k <= n <= 21:
        text = digits + "0" * (n - k)
    elif 0 < n <= 21:
        text = f"{digits[:n]}.{digits[n:]}"
    elif -6 < n <= 0:
        text = "0." + "0" * -n + digits
    else:
        power = n - 1
        mantissa = digits if k == 1 else f"{digits[0]}.{digits[1:]}"
        text = f"{mantissa}e{'+' if power > 0 else '-'}{abs(power)}"
    return sign + text


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int) and abs(value) < JS_SAFE_INTEGER:
        return str(value)
    if isinstance(value, (int, float)):
        return number_text(float(value))
    return str(value)


def format_cell(column: str, value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        value = json.dumps(value, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
    if not isinstance(value, str):
        return _scalar_text(value)

    cell = LINE_BREAK_RE.sub(" ", value)
    cell = cell.replace('"', '""')
    if column in FORMULA_COLUMNS:
        # ="..." stops spreadsheets from reading phone numbers as numbers.
        cell = f'="{cell}"'
    elif DELIMITER in cell or '"' in cell:
        cell = f'"{cell}"'
    if column in DECIMAL_COMMA_COLUMNS:
        cell = cell.replace(".", ",", 1)
    return cell


def format_row(columns: Sequence[str], record: ParsedRecord, index: int) -> str:
    try:
        return DELIMITER.join(format_cell(column, record.fields.get(column)) for column in columns)
    except (TypeError, ValueError, OverflowError) as exc:
        log_event("REPORT_ROW_ERROR", index=index, day=record.day, error=format_exception_message(exc))
        return f'"ERROR_FORMATTING_RECORD_{index}"'


def render_report(records: Sequence[ParsedRecord]) -> str:
    columns = report_columns(records)
    lines = [DELIMITER.join(columns)]
    lines.extend(format_row(columns, record, index) for index, record in enumerate(records))
    return "\n".join(lines)


def write_report(path: Path, content: str) -> None:
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(content, encoding="utf-8", newline="")
    tmp_path.replace(path)


def build_report(job_folder: Path, max_workers: int = 4) -> ReportResult:
    job_folder = Path(job_folder)
    if not job_folder.is_dir():
        raise FileNotFoundError(f"Job folder {job_folder} does not exist")
    files_dir = job_folder / FILES_DIRNAME
    if not files_dir.is_dir():
        raise FileNotFoundError(f"Files folder {files_dir} does not exist")

    files = list_export_files(files_dir)
    if not files:
        log_event("REPORT_NO_FILES", files_dir=files_dir)
        return ReportResult(path=None)
    log_event("REPORT_START", files=len(files), files_dir=files_dir)

    parsed_files = collect_records(files, max_workers=max_workers)
    records = merge_records(parsed_files)
    result = ReportResult(
        path=None,
        files_processed=len(parsed_files),
        parse_errors=sum(len(parsed.parse_errors) for parsed in parsed_files),
        failed_files=[parsed.path.name for parsed in parsed_files if parsed.error],
    )
    if not records:
        log_event("REPORT_NO_RECORDS", files=len(files))
        return result

    content = render_report(records)
    output_path = job_folder / REPORT_FILENAME
    write_report(output_path, content)
    result.path = output_path
    result.record_count = len(records)
    result.column_count = len(report_columns(records))
    log_event(
        "REPORT_WRITTEN",
        path=output_path,
        records=result.record_count,
        columns=result.column_count,
        size_kb=round(len(content.encode("utf-8")) / 1024),
    )
    return result
