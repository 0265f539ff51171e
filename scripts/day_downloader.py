#!/usr/bin/env python3
"""Concurrent per-day artifact downloads with bounded retries."""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

from tqdm import tqdm

from export_errors import DownloadError
from run_logging import format_exception_message, log_event

CHUNK_SIZE = 1024 * 1024
FAILED_DAYS_DISPLAY_LIMIT = 10


def export_filename(day: str) -> str:
    return f"export_{day}.json.gz"


@dataclass
class DownloadTask:
    day: str
    path: Path
    attempts: int = 0
    size_bytes: int = 0
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.attempts > 0


@dataclass
class DownloadSummary:
    tasks: List[DownloadTask] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> int:
        return sum(1 for task in self.tasks if task.succeeded)

    @property
    def failed(self) -> int:
        return len(self.tasks) - self.succeeded

    @property
    def total_bytes(self) -> int:
        return sum(task.size_bytes for task in self.tasks if task.succeeded)

    @property
    def failed_days(self) -> List[str]:
        return [task.day for task in self.tasks if not task.succeeded]

    @property
    def files_per_second(self) -> Optional[float]:
        if self.elapsed_seconds <= 0:
            return None
        return round(self.succeeded / self.elapsed_seconds, 1)

    def failed_days_display(self, limit: int = FAILED_DAYS_DISPLAY_LIMIT) -> str:
        days = self.failed_days
        text = ", ".join(days[:limit])
        if len(days) > limit:
            text += f" and {len(days) - limit} more..."
        return text


class DayDownloader:
    """Downloads one gzip artifact per day into ``files_dir``.

    Every day runs to completion on its own: a day that exhausts its attempts is
    recorded as failed and never cancels its siblings.
    """

    def __init__(
        self,
        client: Any,
        resource_type: str,
        files_dir: Path,
        max_retries: int = 3,
        retry_base_seconds: float = 1.0,
        max_workers: int = 8,
        deadline_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        show_progress: bool = True,
    ) -> None:
        self.client = client
        self.resource_type = resource_type
        self.files_dir = Path(files_dir)
        self.max_retries = max(0, max_retries)
        self.retry_base_seconds = retry_base_seconds
        self.max_workers = max(1, max_workers)
        self.deadline_seconds = deadline_seconds
        self.sleep = sleep
        self.clock = clock
        self.show_progress = show_progress
        self._deadline_at: Optional[float] = None

    def backoff_seconds(self, retry_number: int) -> float:
        return self.retry_base_seconds * (2 ** (retry_number - 1))

    def _past_deadline(self) -> bool:
        return self._deadline_at is not None and self.clock() >= self._deadline_at

    def _fetch_once(self, day: str, destination: Path) -> int:
        url = self.client.fetch_day_content_location(self.resource_type, day)
        tmp_path = destination.with_name(destination.name + ".part")
        written = 0
        try:
            with self.client.open_content(url) as response:
                with open(tmp_path, "wb") as handle:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
                            written += len(chunk)
            tmp_path.replace(destination)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        return written

    def download_day(self, day: str) -> DownloadTask:
        task = DownloadTask(day=day, path=self.files_dir / export_filename(day))
        last_error: Optional[BaseException] = None
        total_attempts = self.max_retries + 1
        while task.attempts < total_attempts:
            if self._past_deadline():
                last_error = DownloadError(
                    f"Download deadline reached before attempt {task.attempts + 1} for {day}",
                    day=day,
                    attempts=task.attempts,
                )
                break
            task.attempts += 1
            if task.attempts > 1:
                log_event("DAY_RETRY", day=day, retry=f"{task.attempts - 1}/{self.max_retries}")
            try:
                task.size_bytes = self._fetch_once(day, task.path)
                return task
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                log_event(
                    "DAY_ATTEMPT_FAILED",
                    day=day,
                    attempt=task.attempts,
                    error=format_exception_message(exc),
                )
                if task.attempts < total_attempts:
                    self.sleep(self.backoff_seconds(task.attempts))

        task.error = DownloadError(
            f"Failed to download {day} after {task.attempts} attempt(s): "
            f"{format_exception_message(last_error) if last_error else 'no attempt made'}",
            day=day,
            attempts=task.attempts,
        )
        task.error.__cause__ = last_error
        log_event("DAY_FAILED", day=day, attempts=task.attempts, error=str(task.error))
        return task

    def download_days(self, days: Sequence[str]) -> DownloadSummary:
        self.files_dir.mkdir(parents=True, exist_ok=True)
        started = self.clock()
        self._deadline_at = started + self.deadline_seconds if self.deadline_seconds else None
        summary = DownloadSummary()
        if not days:
            return summary

        log_event("DOWNLOAD_START", days=len(days), workers=self.max_workers, files_dir=self.files_dir)
        by_day = {}
        total_bytes = 0
        completed = 0
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {executor.submit(self.download_day, day): day for day in days}
            progress = tqdm(
                as_completed(futures),
                total=len(futures),
                desc="Downloading days",
                unit="file",
                disable=not self.show_progress,
            )
            for future in progress:
                task = future.result()
                by_day[task.day] = task
                if task.succeeded:
                    completed += 1
                    total_bytes += task.size_bytes
                elapsed = max(self.clock() - started, 1e-9)
                progress.set_postfix(
                    speed=f"{completed / elapsed:.1f} files/s",
                    size=f"{total_bytes / (1024 * 1024):.1f} MB",
                )

        summary.tasks = [by_day[day] for day in days]
        summary.elapsed_seconds = self.clock() - started
        return summary


def log_download_summary(summary: DownloadSummary) -> None:
    fps = summary.files_per_second
    log_event(
        "DOWNLOAD_SUMMARY",
        days=len(summary.tasks),
        succeeded=summary.succeeded,
        failed=summary.failed,
        bytes=summary.total_bytes,
        seconds=round(summary.elapsed_seconds),
        files_per_second=fps if fps is not None else "N/A",
    )
    if summary.failed_days:
        log_event("DOWNLOAD_FAILED_DAYS", days=summary.failed_days_display())
