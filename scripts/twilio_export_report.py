#!/usr/bin/env python3
"""Create or reuse a Twilio bulk-export job, download its day files and build export.csv.

Usage:
    twilio_export_report.py                      # previous week (default)
    twilio_export_report.py --week
    twilio_export_report.py --month              # previous month
    twilio_export_report.py JS0123abc            # existing job by SID or name
    twilio_export_report.py 2025-04-01 2025-04-07
    twilio_export_report.py --name quarterly 2025-04-01 2025-06-30
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from dataclasses import asdict, dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import yaml

from bulk_export_client import API_BASE_URL, DEFAULT_RESOURCE_TYPE, BulkExportsClient
from day_downloader import DayDownloader, DownloadSummary, log_download_summary
from day_sets import (
    DayReconciliation,
    previous_month_dates,
    previous_week_dates,
    reconcile_days,
    sanitize_folder_name,
    validate_date,
    validate_date_range,
)
from export_errors import ExportError, ValidationError
from export_jobs import CompletionPoller, JobResolver, build_friendly_name
from export_models import ExportJob
from report_builder import FILES_DIRNAME, build_report
from run_logging import (
    clear_log_context,
    format_exception_message,
    log_event,
    now_iso,
    open_run_artifacts,
    set_log_context,
)

DEFAULT_DOWNLOADS_DIR = "downloads"
DEFAULT_LOGS_DIR = "logs"
DEFAULT_TIMEOUT_SECONDS = 45.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_SECONDS = 1.0
DEFAULT_MAX_WORKERS = 8
DEFAULT_POLL_INTERVAL_SECONDS = 30.0
DEFAULT_INITIAL_WAIT_SECONDS = 60.0
DEFAULT_MAX_WAIT_MINUTES = 60.0

FailureRecorder = Callable[..., None]


@dataclass
class ExportRequest:
    mode: str
    start_day: Optional[str] = None
    end_day: Optional[str] = None
    job_identifier: Optional[str] = None
    custom_name: Optional[str] = None


@dataclass
class Settings:
    downloads_dir: Path = Path(DEFAULT_DOWNLOADS_DIR)
    resource_type: str = DEFAULT_RESOURCE_TYPE
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS
    max_workers: int = DEFAULT_MAX_WORKERS
    download_deadline_seconds: Optional[float] = None
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    initial_wait_seconds: float = DEFAULT_INITIAL_WAIT_SECONDS
    max_wait_minutes: float = DEFAULT_MAX_WAIT_MINUTES
    show_progress: bool = True


@dataclass
class RunResult:
    success: bool
    job_folder: Optional[str] = None
    record_count: Optional[int] = None
    csv_path: Optional[str] = None
    error: Optional[str] = None
    job_sid: Optional[str] = None
    failed_days: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------- config


CONFIG_BOOL_WORDS = {
    "1": True,
    "true": True,
    "yes": True,
    "on": True,
    "0": False,
    "false": False,
    "no": False,
    "off": False,
}


def _config_flag(key: str, value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    word = str(value).strip().lower()
    if word not in CONFIG_BOOL_WORDS:
        raise SystemExit(f"Config key '{key}' expects true/false, got '{value}'.")
    return CONFIG_BOOL_WORDS[word]


def load_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise SystemExit(f"Config file not found: {path}")
    suffix = path.suffix.lower()
    raw = path.read_text(encoding="utf-8")
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(raw)
    elif suffix == ".json":
        data = json.loads(raw)
    else:
        raise SystemExit("Unsupported config file extension. Use .yaml/.yml or .json.")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SystemExit("Config root must be a mapping/object.")
    return data


def flatten_config(data: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Join nested section keys with ``_`` (``polling.interval_seconds`` -> ``polling_interval_seconds``)."""
    flattened: Dict[str, Any] = {}
    for key, value in data.items():
        name = f"{prefix}{str(key).replace('-', '_')}"
        if isinstance(value, dict):
            flattened.update(flatten_config(value, prefix=f"{name}_"))
        else:
            flattened[name] = value
    return flattened


def config_to_parser_defaults(config_data: Dict[str, Any]) -> Dict[str, Any]:
    cfg = flatten_config(config_data)
    defaults: Dict[str, Any] = {}
    scalar_map = {
        "account_sid": "account_sid",
        "credentials_account_sid": "account_sid",
        "auth_token": "auth_token",
        "credentials_auth_token": "auth_token",
        "base_url": "base_url",
        "api_base_url": "base_url",
        "resource_type": "resource_type",
        "api_resource_type": "resource_type",
        "timeout_seconds": "timeout_seconds",
        "api_timeout_seconds": "timeout_seconds",
        "network_timeout_seconds": "timeout_seconds",
        "max_retries": "max_retries",
        "download_max_retries": "max_retries",
        "network_max_retries": "max_retries",
        "retry_base_seconds": "retry_base_seconds",
        "download_retry_base_seconds": "retry_base_seconds",
        "max_workers": "max_workers",
        "download_max_workers": "max_workers",
        "download_deadline_seconds": "download_deadline_seconds",
        "download_download_deadline_seconds": "download_deadline_seconds",
        "poll_interval_seconds": "poll_interval_seconds",
        "polling_poll_interval_seconds": "poll_interval_seconds",
        "polling_interval_seconds": "poll_interval_seconds",
        "initial_wait_seconds": "initial_wait_seconds",
        "polling_initial_wait_seconds": "initial_wait_seconds",
        "max_wait_minutes": "max_wait_minutes",
        "polling_max_wait_minutes": "max_wait_minutes",
        "downloads_dir": "downloads_dir",
        "download_downloads_dir": "downloads_dir",
        "logs_dir": "logs_dir",
        "logging_logs_dir": "logs_dir",
    }
    bool_map = {
        "no_progress": "no_progress",
        "download_no_progress": "no_progress",
    }
    for source_key, target_key in scalar_map.items():
        if source_key in cfg:
            defaults[target_key] = cfg[source_key]
    for source_key, target_key in bool_map.items():
        if source_key in cfg:
            defaults[target_key] = _config_flag(source_key, cfg[source_key])
    return defaults


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("--config", help="Path to YAML/JSON config file.")
    pre_args, _ = pre_parser.parse_known_args(argv)
    config_defaults: Dict[str, Any] = {}
    if pre_args.config:
        config_defaults = config_to_parser_defaults(load_config_file(Path(pre_args.config)))

    parser = argparse.ArgumentParser(
        description=__doc__.split("\n", 1)[0],
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("\n", 1)[1],
    )
    parser.add_argument("positional", nargs="*", metavar="JOB_OR_DATES", help="Job SID/name, or START END dates.")
    parser.add_argument("--config", help="Path to YAML/JSON config file.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--week", action="store_true", help="Export the previous ISO week (default).")
    mode.add_argument("--month", action="store_true", help="Export the previous calendar month.")
    parser.add_argument("--name", help="Custom job label used with an explicit START END range.")
    parser.add_argument("--account-sid", help="Twilio account SID. Falls back to TWILIO_ACCOUNT_SID.")
    parser.add_argument("--auth-token", help="Twilio auth token. Falls back to TWILIO_AUTH_TOKEN.")
    parser.add_argument("--base-url", default=API_BASE_URL, help="Bulk Exports API base URL.")
    parser.add_argument("--resource-type", default=DEFAULT_RESOURCE_TYPE, help="Exported resource type.")
    parser.add_argument("--downloads-dir", default=DEFAULT_DOWNLOADS_DIR, help="Root folder for job downloads.")
    parser.add_argument("--logs-dir", default=DEFAULT_LOGS_DIR, help="Root folder for per-run logs.")
    parser.add_argument("--timeout-seconds", type=float, default=DEFAULT_TIMEOUT_SECONDS, help="HTTP timeout.")
    parser.add_argument("--max-retries", type=int, default=DEFAULT_MAX_RETRIES, help="Retries per day file.")
    parser.add_argument(
        "--retry-base-seconds",
        type=float,
        default=DEFAULT_RETRY_BASE_SECONDS,
        help="Backoff base; retry N waits base * 2^(N-1) seconds.",
    )
    parser.add_argument("--max-workers", type=int, default=DEFAULT_MAX_WORKERS, help="Parallel day downloads.")
    parser.add_argument(
        "--download-deadline-seconds",
        type=float,
        default=None,
        help="Stop starting new download attempts after this many seconds.",
    )
    parser.add_argument(
        "--poll-interval-seconds",
        type=float,
        default=DEFAULT_POLL_INTERVAL_SECONDS,
        help="Seconds between job status checks.",
    )
    parser.add_argument(
        "--initial-wait-seconds",
        type=float,
        default=DEFAULT_INITIAL_WAIT_SECONDS,
        help="Delay before the first job status check.",
    )
    parser.add_argument(
        "--max-wait-minutes",
        type=float,
        default=DEFAULT_MAX_WAIT_MINUTES,
        help="Give up waiting for the job after this many minutes.",
    )
    parser.add_argument("--no-progress", action="store_true", help="Disable the download progress bar.")
    if config_defaults:
        parser.set_defaults(**config_defaults)
    return parser.parse_args(argv)


def resolve_request(args: argparse.Namespace, today: date) -> ExportRequest:
    positional: List[str] = list(args.positional or [])
    if args.name:
        if len(positional) != 2:
            raise ValidationError("--name requires START and END dates.")
    if args.month:
        if positional:
            raise ValidationError("--month does not take positional arguments.")
        start_day, end_day = previous_month_dates(today)
        return ExportRequest(mode="month", start_day=start_day, end_day=end_day)
    if args.week or not positional:
        if positional:
            raise ValidationError("--week does not take positional arguments.")
        start_day, end_day = previous_week_dates(today)
        return ExportRequest(mode="week", start_day=start_day, end_day=end_day)
    if len(positional) == 1:
        return ExportRequest(mode="job", job_identifier=positional[0])
    if len(positional) == 2:
        start_day, end_day = positional
        validate_date(start_day)
        validate_date(end_day)
        validate_date_range(start_day, end_day)
        return ExportRequest(mode="range", start_day=start_day, end_day=end_day, custom_name=args.name)
    raise ValidationError("Invalid number of arguments.")


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        downloads_dir=Path(args.downloads_dir),
        resource_type=str(args.resource_type),
        max_retries=int(args.max_retries),
        retry_base_seconds=float(args.retry_base_seconds),
        max_workers=int(args.max_workers),
        download_deadline_seconds=(
            float(args.download_deadline_seconds) if args.download_deadline_seconds else None
        ),
        poll_interval_seconds=float(args.poll_interval_seconds),
        initial_wait_seconds=float(args.initial_wait_seconds),
        max_wait_minutes=float(args.max_wait_minutes),
        show_progress=not args.no_progress,
    )


# ------------------------------------------------------------- pipeline


def job_folder_for(job: ExportJob, downloads_dir: Path) -> Path:
    name = sanitize_folder_name(job.friendly_name) if job.friendly_name else job.job_sid
    return Path(downloads_dir) / name


def log_reconciliation(job: ExportJob, plan: DayReconciliation, start_day: Optional[str], end_day: Optional[str]) -> None:
    log_event(
        "DAYS_PLAN",
        job_sid=job.job_sid,
        with_data=len(plan.days_with_data),
        empty=len(plan.empty_days),
        to_download=len(plan.days_to_download),
    )
    if plan.windowed:
        log_event(
            "DAYS_WINDOW",
            start=start_day,
            end=end_day,
            days_in_range=plan.total_days_in_range,
            to_download=len(plan.days_to_download),
            empty_in_range=len(plan.empty_days_in_range),
            outside_job_scope=plan.days_outside_job_scope,
        )
    elif plan.days_to_download:
        log_event("DAYS_SPAN", first=plan.days_to_download[0], last=plan.days_to_download[-1])


def download_job_exports(
    client: Any,
    job: ExportJob,
    settings: Settings,
    user_start: Optional[str] = None,
    user_end: Optional[str] = None,
    record_failure: Optional[FailureRecorder] = None,
) -> Tuple[Path, DayReconciliation, Optional[DownloadSummary]]:
    """Download the job's day files into ``<downloads>/<job>/files``.

    Returns ``(job_folder, plan, summary)``; ``summary`` is ``None`` when the
    reconciled day set is empty.
    """
    job_folder = job_folder_for(job, settings.downloads_dir)
    files_dir = job_folder / FILES_DIRNAME
    files_dir.mkdir(parents=True, exist_ok=True)
    log_event("JOB_FOLDER", job_sid=job.job_sid, path=job_folder)

    plan = reconcile_days(job.details, user_start, user_end)
    log_reconciliation(job, plan, user_start, user_end)
    if plan.nothing_to_download:
        log_event("DOWNLOAD_SKIPPED", job_sid=job.job_sid, reason="no_days_with_data")
        return job_folder, plan, None

    downloader = DayDownloader(
        client,
        settings.resource_type,
        files_dir,
        max_retries=settings.max_retries,
        retry_base_seconds=settings.retry_base_seconds,
        max_workers=settings.max_workers,
        deadline_seconds=settings.download_deadline_seconds,
        show_progress=settings.show_progress,
    )
    summary = downloader.download_days(plan.days_to_download)
    log_download_summary(summary)
    if record_failure is not None:
        for task in summary.tasks:
            if not task.succeeded:
                record_failure(stage="download", job_sid=job.job_sid, day=task.day, error=str(task.error))
    return job_folder, plan, summary


def _wait_for_job(client: Any, job: ExportJob, expected_days: int, settings: Settings) -> ExportJob:
    poller = CompletionPoller(
        client,
        settings.resource_type,
        poll_interval_seconds=settings.poll_interval_seconds,
        initial_wait_seconds=settings.initial_wait_seconds,
    )
    log_event("JOB_WAIT", job_sid=job.job_sid, expected_days=expected_days, max_minutes=settings.max_wait_minutes)
    return poller.wait_for_completion(job.job_sid, expected_days, settings.max_wait_minutes * 60)


def resolve_job(client: Any, request: ExportRequest, settings: Settings) -> Optional[ExportJob]:
    resolver = JobResolver(client, settings.resource_type)
    if request.mode == "job":
        return resolver.find_job_by_identifier(str(request.job_identifier))

    start_day = str(request.start_day)
    end_day = str(request.end_day)
    expected_days = validate_date_range(start_day, end_day)
    log_event("JOB_LOOKUP", start=start_day, end=end_day, expected_days=expected_days)

    existing = resolver.find_existing_job(start_day, end_day, expected_days)
    if existing is not None:
        if not existing.needs_waiting:
            return existing.job
        return _wait_for_job(client, existing.job, expected_days, settings)

    friendly_name = build_friendly_name(request.mode, start_day, request.custom_name)
    log_event("JOB_CREATE", name=friendly_name, start=start_day, end=end_day)
    job = resolver.create_export_job(start_day, end_day, friendly_name)
    return _wait_for_job(client, job, expected_days, settings)


def run_automation(
    request: ExportRequest,
    settings: Settings,
    client: Any,
    record_failure: Optional[FailureRecorder] = None,
) -> RunResult:
    """Run lookup/creation, polling, download and report; never raises."""
    try:
        job = resolve_job(client, request, settings)
        if job is None:
            return RunResult(success=False, error=f"Job not found with identifier: {request.job_identifier}")
        log_event("JOB_SELECTED", job_sid=job.job_sid, name=job.friendly_name)
        set_log_context(job_sid=job.job_sid)

        if request.mode == "job":
            job_folder, _, summary = download_job_exports(client, job, settings, record_failure=record_failure)
        else:
            job_folder, _, summary = download_job_exports(
                client,
                job,
                settings,
                user_start=request.start_day,
                user_end=request.end_day,
                record_failure=record_failure,
            )

        result = RunResult(success=True, job_folder=str(job_folder), job_sid=job.job_sid)
        if summary is None:
            result.record_count = 0
            return result
        result.failed_days = summary.failed_days
        if summary.succeeded == 0:
            result.success = False
            result.error = f"All {summary.failed} day downloads failed"
            return result

        report = build_report(job_folder, max_workers=settings.max_workers)
        result.record_count = report.record_count
        result.csv_path = str(report.path) if report.path else None
        if record_failure is not None:
            for name in report.failed_files:
                record_failure(stage="report", job_sid=job.job_sid, day=name, error="unreadable archive")
        log_event("RUN_DONE", job_sid=job.job_sid, records=report.record_count, csv=result.csv_path)
        return result
    except Exception as exc:  # noqa: BLE001
        error = format_exception_message(exc)
        if not isinstance(exc, (ExportError, OSError)):
            error = f"{type(exc).__name__}: {error}"
        log_event("RUN_FAILED", mode=request.mode, error_type=type(exc).__name__, error=error)
        if record_failure is not None:
            record_failure(stage="fatal", error=error)
        return RunResult(success=False, error=error)
    finally:
        clear_log_context()


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    run_started_at = now_iso()
    run_started_monotonic = time.monotonic()
    artifacts = open_run_artifacts(Path(args.logs_dir))
    result = RunResult(success=False, error="run did not start")
    request: Optional[ExportRequest] = None
    try:
        log_event(
            "RUN_PATHS",
            run_dir=artifacts.run_dir,
            run_log=artifacts.run_log_path,
            failure_log=artifacts.failures_csv_path,
        )
        if args.config:
            log_event("RUN_CONFIG", config=args.config)

        account_sid = args.account_sid or os.getenv("TWILIO_ACCOUNT_SID")
        auth_token = args.auth_token or os.getenv("TWILIO_AUTH_TOKEN")
        if not account_sid or not auth_token:
            raise SystemExit(
                "Missing credentials. Set --account-sid/--auth-token "
                "or env vars TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN."
            )
        try:
            request = resolve_request(args, date.today())
        except ValidationError as exc:
            raise SystemExit(f"Error: {exc}") from exc
        log_event(
            "RUN_REQUEST",
            mode=request.mode,
            start=request.start_day,
            end=request.end_day,
            job=request.job_identifier,
        )

        settings = settings_from_args(args)
        settings.downloads_dir.mkdir(parents=True, exist_ok=True)
        client = BulkExportsClient(
            account_sid=account_sid,
            auth_token=auth_token,
            base_url=args.base_url,
            timeout_seconds=float(args.timeout_seconds),
            max_retries=settings.max_retries,
        )
        result = run_automation(request, settings, client, record_failure=artifacts.record_failure)
    except SystemExit as exc:
        result = RunResult(success=False, error=str(exc))
        artifacts.record_failure(stage="fatal", error=str(exc))
        raise
    finally:
        safe_args = {key: value for key, value in vars(args).items() if key not in {"account_sid", "auth_token"}}
        run_summary = {
            "started_at": run_started_at,
            "finished_at": now_iso(),
            "status": "completed" if result.success else "failed",
            "elapsed_seconds": round(time.monotonic() - run_started_monotonic, 3),
            "run_dir": str(artifacts.run_dir),
            "run_log": str(artifacts.run_log_path),
            "failures_csv": str(artifacts.failures_csv_path),
            "request": asdict(request) if request else None,
            "args": safe_args,
            "result": result.as_dict(),
        }
        try:
            artifacts.write_summary(run_summary)
            log_event("SUMMARY_WRITTEN", path=artifacts.summary_json_path)
        except Exception as exc:  # noqa: BLE001
            log_event("SUMMARY_WRITE_WARN", error=str(exc))
        finally:
            artifacts.close()

    if result.success:
        print(f"Export ready: {result.csv_path or 'no records'} ({result.record_count or 0} records)")
    else:
        print(f"Export failed: {result.error}", file=sys.stderr)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
