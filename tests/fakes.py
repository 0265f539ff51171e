"""In-memory stand-ins for the Bulk Exports client used across tests."""

from __future__ import annotations

import gzip
import io
import json
import threading
from typing import Dict, Iterable, List, Optional, Sequence

import requests

from bulk_export_client import JOB_SCAN_LIMIT
from export_errors import JOB_NOT_FOUND, RemoteServiceError
from export_models import ExportJob


def job_payload(index: int, **overrides: object) -> Dict[str, object]:
    payload: Dict[str, object] = {
        "job_sid": f"JS{index:03d}",
        "friendly_name": f"Job_{index:03d}",
        "resource_type": "Messages",
        "start_day": "2025-01-01",
        "end_day": "2025-01-01",
        "details": [],
    }
    payload.update(overrides)
    return payload


def canned_response(
    status: int = 200,
    payload: object = None,
    headers: Optional[Dict[str, str]] = None,
    url: str = "https://bulkexports.twilio.com/v1/Exports",
) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.url = url
    response.reason = "reason"
    response._content = json.dumps(payload).encode("utf-8") if payload is not None else b""
    response.headers.update(headers or {})
    response.raw = io.BytesIO(b"")
    response._content_consumed = True
    return response


class RecordingSession:
    """Stands in for ``requests.Session``; replays queued responses or exceptions in order."""

    def __init__(self, responses: Iterable[object]) -> None:
        self.responses = list(responses)
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def request(self, method: str, url: str, **kwargs: object) -> requests.Response:
        with self._lock:
            self.calls.append((method, url, kwargs))
            item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item  # type: ignore[return-value]


def make_job(
    job_sid: str = "JS0001",
    friendly_name: str = "Job_Week_2025_04_01",
    start_day: str = "2025-04-01",
    end_day: str = "2025-04-03",
    completed: Sequence[str] = (),
    empty: Sequence[str] = (),
    failed: int = 0,
    details: Optional[List[Dict[str, object]]] = None,
) -> ExportJob:
    if details is None:
        details = []
        if completed:
            details.append({"status": "Completed", "count": len(completed), "days": list(completed)})
        if empty:
            details.append({"status": "CompletedEmptyRecords", "count": len(empty), "days": list(empty)})
        if failed:
            details.append({"status": "Failed", "count": failed, "days": []})
    return ExportJob.from_payload(
        {
            "job_sid": job_sid,
            "friendly_name": friendly_name,
            "start_day": start_day,
            "end_day": end_day,
            "resource_type": "Messages",
            "details": details,
        }
    )


def gzip_lines(records: Iterable[object]) -> bytes:
    body = "\n".join(json.dumps(record) for record in records) + "\n"
    return gzip.compress(body.encode("utf-8"))


class FakeResponse:
    def __init__(self, body: bytes, fail_after_first_chunk: bool = False) -> None:
        self.body = body
        self.fail_after_first_chunk = fail_after_first_chunk

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def iter_content(self, chunk_size: int = 1024):
        half = max(1, len(self.body) // 2)
        yield self.body[:half]
        if self.fail_after_first_chunk:
            raise ConnectionError("connection reset mid-stream")
        yield self.body[half:]


class FakeClient:
    """Scriptable client: jobs for listing, per-day payloads and failure plans."""

    def __init__(
        self,
        jobs: Optional[List[ExportJob]] = None,
        day_payloads: Optional[Dict[str, bytes]] = None,
        failures_per_day: Optional[Dict[str, int]] = None,
        poll_sequence: Optional[List[object]] = None,
    ) -> None:
        self.jobs = list(jobs or [])
        self.day_payloads = dict(day_payloads or {})
        self.failures_per_day = dict(failures_per_day or {})
        self.poll_sequence = list(poll_sequence or [])
        self.created: List[Dict[str, str]] = []
        self.location_calls: List[str] = []
        self.get_job_calls = 0
        self.list_error: Optional[Exception] = None
        self._lock = threading.Lock()

    def list_jobs(self, resource_type: str, limit: int = 20) -> List[ExportJob]:
        if self.list_error is not None:
            raise self.list_error
        return self.jobs[:limit]

    def get_job(self, resource_type: str, job_sid: str, limit: int = JOB_SCAN_LIMIT) -> ExportJob:
        self.get_job_calls += 1
        if self.poll_sequence:
            item = self.poll_sequence.pop(0)
            if isinstance(item, Exception):
                raise item
            return item  # type: ignore[return-value]
        for job in self.jobs[:limit]:
            if job.job_sid == job_sid:
                return job
        raise RemoteServiceError(f"Job {job_sid} not found", code=JOB_NOT_FOUND)

    def create_job(self, resource_type: str, start_day: str, end_day: str, friendly_name: str) -> ExportJob:
        self.created.append({"start_day": start_day, "end_day": end_day, "friendly_name": friendly_name})
        job = make_job(job_sid="JSNEW", friendly_name=friendly_name, start_day=start_day, end_day=end_day)
        self.jobs.append(job)
        return job

    def fetch_day_content_location(self, resource_type: str, day: str) -> str:
        with self._lock:
            self.location_calls.append(day)
            remaining = self.failures_per_day.get(day, 0)
            if remaining:
                self.failures_per_day[day] = remaining - 1
                raise RemoteServiceError(f"Error fetching day {day} (HTTP 503)", http_status=503)
        return f"https://content.example/{day}.json.gz"

    def open_content(self, url: str) -> FakeResponse:
        day = url.rsplit("/", 1)[-1].split(".", 1)[0]
        return FakeResponse(self.day_payloads.get(day, gzip_lines([{"day": day}])))


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
