#!/usr/bin/env python3
"""Find, create and wait for Bulk Exports jobs."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from bulk_export_client import JOB_SCAN_LIMIT
from export_errors import ExportTimeoutError, RemoteServiceError, ValidationError
from export_models import ExportJob, summarize_details
from run_logging import format_exception_message, log_event

EXISTING_JOB_SCAN_LIMIT = JOB_SCAN_LIMIT
IDENTIFIER_SCAN_LIMIT = 1000


@dataclass
class ExistingJob:
    job: ExportJob
    needs_waiting: bool


def build_friendly_name(mode: str, start_day: str, custom_name: Optional[str] = None) -> str:
    if custom_name:
        return f"Job_Custom_{custom_name}"
    if mode == "month":
        return f"Job_Month_{start_day[:7].replace('-', '_')}"
    return f"Job_Week_{start_day.replace('-', '_')}"


class JobResolver:
    """Looks up reusable jobs and submits new ones through an injected client."""

    def __init__(self, client: Any, resource_type: str) -> None:
        self.client = client
        self.resource_type = resource_type

    def find_existing_job(self, start_day: str, end_day: str, expected_days: int) -> Optional[ExistingJob]:
        """Return the first listed job covering exactly ``start_day..end_day``.

        ``None`` means no such job exists. Listing failures are raised as
        :class:`RemoteServiceError`, never folded into ``None``.
        """
        jobs = self.client.list_jobs(self.resource_type, EXISTING_JOB_SCAN_LIMIT)
        for job in jobs:
            if job.start_day != start_day or job.end_day != end_day:
                continue
            counts = summarize_details(job.details)
            needs_waiting = counts.completed_days < expected_days
            log_event(
                "JOB_FOUND",
                job_sid=job.job_sid,
                name=job.friendly_name,
                start=start_day,
                end=end_day,
                ready=f"{counts.completed_days}/{expected_days}",
                with_data=counts.days_with_data,
                empty=counts.empty_days,
                needs_waiting=needs_waiting,
            )
            return ExistingJob(job=job, needs_waiting=needs_waiting)
        return None

    def find_job_by_identifier(self, identifier: str, limit: int = IDENTIFIER_SCAN_LIMIT) -> Optional[ExportJob]:
        jobs = self.client.list_jobs(self.resource_type, limit)
        log_event("JOB_LIST", resource_type=self.resource_type, jobs=len(jobs))
        for job in jobs:
            if job.job_sid == identifier or (job.friendly_name and identifier in job.friendly_name):
                return job
        log_event("JOB_NOT_FOUND", identifier=identifier)
        for job in jobs:
            log_event("JOB_AVAILABLE", job_sid=job.job_sid, name=job.friendly_name)
        return None

    def create_export_job(self, start_day: str, end_day: str, friendly_name: str) -> ExportJob:
        if not start_day or not end_day or not friendly_name:
            raise ValidationError("start_day, end_day and friendly_name are required to create an export job")
        job = self.client.create_job(self.resource_type, start_day, end_day, friendly_name)
        log_event("JOB_CREATED", job_sid=job.job_sid, name=job.friendly_name, start=start_day, end=end_day)
        return job


class PollState(enum.Enum):
    INITIAL = "initial"
    WAITING = "waiting"
    COMPLETE = "complete"
    TIMED_OUT = "timed_out"
    ERROR = "error"


class CompletionPoller:
    """Polls a job until every expected day is accounted for or the deadline passes.

    Ticks are strictly sequential. Transient remote failures are logged and the
    loop carries on; authentication failures, a job missing from the listing and
    the deadline end the wait.
    """

    def __init__(
        self,
        client: Any,
        resource_type: str,
        poll_interval_seconds: float = 30.0,
        initial_wait_seconds: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.resource_type = resource_type
        self.poll_interval_seconds = poll_interval_seconds
        self.initial_wait_seconds = initial_wait_seconds
        self.sleep = sleep
        self.clock = clock
        self.state = PollState.INITIAL
        self.ticks = 0

    def _tick(self, job_sid: str, expected_days: int) -> Optional[ExportJob]:
        self.ticks += 1
        job = self.client.get_job(self.resource_type, job_sid)
        if not job.has_details:
            log_event("JOB_POLL", job_sid=job_sid, tick=self.ticks, status="not_started")
            return None
        counts = summarize_details(job.details)
        log_event(
            "JOB_POLL",
            job_sid=job_sid,
            tick=self.ticks,
            ready=f"{counts.completed_days}/{expected_days}",
            with_data=counts.days_with_data,
            empty=counts.empty_days,
            failed=counts.failed_days,
        )
        if counts.is_complete(expected_days):
            log_event(
                "JOB_COMPLETE",
                job_sid=job_sid,
                expected_days=expected_days,
                with_data=counts.days_with_data,
                empty=counts.empty_days,
                failed=counts.failed_days,
            )
            return job
        return None

    def wait_for_completion(self, job_sid: str, expected_days: int, max_wait_seconds: float) -> ExportJob:
        started = self.clock()
        self.state = PollState.WAITING
        if self.initial_wait_seconds > 0:
            log_event("JOB_INITIAL_WAIT", job_sid=job_sid, seconds=self.initial_wait_seconds)
            self.sleep(self.initial_wait_seconds)

        while self.clock() - started < max_wait_seconds:
            try:
                job = self._tick(job_sid, expected_days)
            except RemoteServiceError as exc:
                if exc.is_auth_failure or exc.is_missing_job:
                    self.state = PollState.ERROR
                    log_event("JOB_POLL_ABORTED", job_sid=job_sid, tick=self.ticks, error=format_exception_message(exc))
                    raise
                log_event("JOB_POLL_ERROR", job_sid=job_sid, tick=self.ticks, error=format_exception_message(exc))
            else:
                if job is not None:
                    self.state = PollState.COMPLETE
                    return job
            self.sleep(self.poll_interval_seconds)

        self.state = PollState.TIMED_OUT
        raise ExportTimeoutError(
            f"Job {job_sid} didn't complete within {max_wait_seconds / 60:g} minutes"
        )
