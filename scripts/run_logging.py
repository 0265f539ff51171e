#!/usr/bin/env python3
"""Run log helpers: key=value event lines, teed stdout and per-run artifacts."""

from __future__ import annotations

import csv
import json
import re
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import IO, Dict, Optional

from tqdm import tqdm

FAILURE_FIELDS = ("timestamp", "stage", "job_sid", "day", "error")
BARE_VALUE_RE = re.compile(r"[A-Za-z0-9._:/+,\-]+")
WHITESPACE_RE = re.compile(r"\s+")

# Fields appended to every event until cleared, e.g. the job a run is working on.
_log_context: Dict[str, object] = {}


class TeeStream:
    """Mirror console output into the run log; the console decides tty behaviour."""

    def __init__(self, console: IO[str], log_file: IO[str]) -> None:
        self.console = console
        self.log_file = log_file

    def write(self, text: str) -> int:
        self.console.write(text)
        self.log_file.write(text)
        return len(text)

    def flush(self) -> None:
        self.console.flush()
        self.log_file.flush()

    def isatty(self) -> bool:
        return bool(getattr(self.console, "isatty", lambda: False)())


def now_iso() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


def _log_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float):
        return f"{value:.3f}".rstrip("0").rstrip(".")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, Path):
        value = value.as_posix()
    elif isinstance(value, (list, tuple)):
        value = ",".join(str(item) for item in value)
    text = str(value)
    if BARE_VALUE_RE.fullmatch(text):
        return text
    return json.dumps(text, ensure_ascii=True)


def set_log_context(**fields: object) -> None:
    _log_context.update(fields)


def clear_log_context() -> None:
    _log_context.clear()


def log_event(event: str, **fields: object) -> None:
    merged = dict(fields)
    for key, value in _log_context.items():
        merged.setdefault(key, value)
    parts = [event] + [f"{key}={_log_value(value)}" for key, value in merged.items()]
    # tqdm.write keeps active progress bars intact.
    tqdm.write(" ".join(parts))


def format_exception_message(exc: BaseException) -> str:
    """One-line error text for log fields and failures.csv."""
    text = WHITESPACE_RE.sub(" ", str(exc)).strip()
    return text or type(exc).__name__


@dataclass
class RunArtifacts:
    run_dir: Path
    run_log_path: Path
    failures_csv_path: Path
    summary_json_path: Path
    run_log_handle: IO[str]
    failures_handle: IO[str]
    failure_writer: "csv.DictWriter[str]"
    original_stdout: IO[str]
    original_stderr: IO[str]

    def record_failure(self, *, stage: str, error: str, job_sid: str = "", day: str = "") -> None:
        self.failure_writer.writerow(
            {
                "timestamp": now_iso(),
                "stage": stage,
                "job_sid": job_sid,
                "day": day,
                "error": error,
            }
        )
        self.failures_handle.flush()

    def write_summary(self, payload: Dict[str, object]) -> None:
        self.summary_json_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")

    def close(self) -> None:
        sys.stdout = self.original_stdout
        sys.stderr = self.original_stderr
        clear_log_context()
        self.failures_handle.close()
        self.run_log_handle.close()


def open_run_artifacts(logs_dir: Path, now: Optional[datetime] = None) -> RunArtifacts:
    """Create ``<logs_dir>/<timestamp>/`` and tee stdout/stderr into its run.log."""
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    run_dir = Path(logs_dir) / stamp
    run_dir.mkdir(parents=True, exist_ok=True)
    run_log_path = run_dir / "run.log"
    failures_csv_path = run_dir / "failures.csv"

    original_stdout = sys.stdout
    original_stderr = sys.stderr
    run_log_handle = open(run_log_path, "a", encoding="utf-8")
    failures_handle = open(failures_csv_path, "w", encoding="utf-8", newline="")
    failure_writer = csv.DictWriter(failures_handle, fieldnames=FAILURE_FIELDS)
    failure_writer.writeheader()
    failures_handle.flush()
    sys.stdout = TeeStream(original_stdout, run_log_handle)  # type: ignore[assignment]
    sys.stderr = TeeStream(original_stderr, run_log_handle)  # type: ignore[assignment]

    return RunArtifacts(
        run_dir=run_dir,
        run_log_path=run_log_path,
        failures_csv_path=failures_csv_path,
        summary_json_path=run_dir / "summary.json",
        run_log_handle=run_log_handle,
        failures_handle=failures_handle,
        failure_writer=failure_writer,
        original_stdout=original_stdout,
        original_stderr=original_stderr,
    )
