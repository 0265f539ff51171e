#!/usr/bin/env python3
"""Thin HTTP client for the Twilio Bulk Exports API."""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from export_errors import JOB_NOT_FOUND, RemoteServiceError, ValidationError
from export_models import ExportJob

API_BASE_URL = "https://bulkexports.twilio.com/v1/Exports"
DEFAULT_RESOURCE_TYPE = "Messages"
RETRYABLE_STATUSES = (429, 500, 502, 503, 504)
REDIRECT_STATUSES = (301, 302, 303, 307, 308)
# Jobs scanned when looking one up by range or SID; list order is newest first.
JOB_SCAN_LIMIT = 200


def parse_retry_after_seconds(value: Optional[str]) -> float:
    if not value:
        return 0.0
    value = value.strip()
    if not value:
        return 0.0
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date Retry-After values are uncommon here; use default backoff.
        return 0.0


def _error_payload(response: Optional[requests.Response]) -> Dict[str, Any]:
    if response is None:
        return {}
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def remote_error(context: str, exc: BaseException) -> RemoteServiceError:
    """Wrap a ``requests`` failure, lifting Twilio's error payload fields."""
    response = getattr(exc, "response", None)
    payload = _error_payload(response)
    http_status = response.status_code if response is not None else None
    provider_message = str(payload.get("message") or "").strip() or None
    code = payload.get("code")
    detail = provider_message or str(exc).strip() or type(exc).__name__
    prefix = f"{context} (HTTP {http_status})" if http_status else context
    return RemoteServiceError(
        f"{prefix}: {detail}",
        code=str(code) if code is not None else None,
        http_status=http_status,
        provider_message=provider_message,
        more_info=payload.get("more_info"),
    )


def coerce_job_rows(payload: object) -> List[Dict[str, object]]:
    if isinstance(payload, dict):
        payload = payload.get("jobs", payload.get("items"))
    if not isinstance(payload, list):
        raise RemoteServiceError("Unexpected job listing shape: no list of jobs was found.", code="bad_payload")
    return [row for row in payload if isinstance(row, dict)]


class BulkExportsClient:
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        base_url: str = API_BASE_URL,
        timeout_seconds: float = 45,
        max_retries: int = 3,
        retry_sleep_seconds: float = 1.5,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(1, max_retries)
        self.retry_sleep_seconds = retry_sleep_seconds
        self.session = requests.Session()
        self.session.auth = (account_sid, auth_token)
        # Content URLs are pre-signed; sending API credentials there gets the request rejected.
        self.content_session = requests.Session()

    def _request(
        self,
        method: str,
        url: str,
        *,
        attempts: Optional[int] = None,
        session: Optional[requests.Session] = None,
        stream: bool = False,
        **kwargs: Any,
    ) -> requests.Response:
        session = session or self.session
        max_attempts = attempts or self.max_retries
        for attempt in range(1, max_attempts + 1):
            try:
                response = session.request(
                    method,
                    url,
                    timeout=self.timeout_seconds,
                    stream=stream,
                    **kwargs,
                )
                if response.status_code in RETRYABLE_STATUSES and attempt < max_attempts:
                    retry_after = parse_retry_after_seconds(response.headers.get("Retry-After"))
                    response.close()
                    time.sleep(max(self.retry_sleep_seconds * attempt, retry_after))
                    continue
                response.raise_for_status()
                return response
            except (requests.ConnectionError, requests.Timeout):
                if attempt >= max_attempts:
                    raise
                time.sleep(self.retry_sleep_seconds * attempt)
        raise RuntimeError("Retry loop exhausted unexpectedly.")

    def jobs_url(self, resource_type: str) -> str:
        return f"{self.base_url}/{resource_type}/Jobs"

    def list_jobs(self, resource_type: str, limit: int = 20) -> List[ExportJob]:
        try:
            response = self._request("GET", self.jobs_url(resource_type), params={"PageSize": limit})
            rows = coerce_job_rows(response.json())
        except requests.RequestException as exc:
            raise remote_error(f"Error listing {resource_type} export jobs", exc) from exc
        except ValueError as exc:
            raise RemoteServiceError(
                f"Error listing {resource_type} export jobs: response was not JSON",
                code="bad_payload",
            ) from exc
        return [ExportJob.from_payload(row) for row in rows[:limit]]

    def get_job(self, resource_type: str, job_sid: str, limit: int = JOB_SCAN_LIMIT) -> ExportJob:
        for job in self.list_jobs(resource_type, limit=limit):
            if job.job_sid == job_sid:
                return job
        raise RemoteServiceError(
            f"Job {job_sid} not found among the {limit} most recent jobs", code=JOB_NOT_FOUND
        )

    def create_job(self, resource_type: str, start_day: str, end_day: str, friendly_name: str) -> ExportJob:
        missing = [
            name
            for name, value in (("start_day", start_day), ("end_day", end_day), ("friendly_name", friendly_name))
            if not value
        ]
        if missing:
            raise ValidationError(f"Missing required job field(s): {', '.join(missing)}")
        try:
            # Single attempt: retrying a POST could register duplicate jobs.
            response = self._request(
                "POST",
                self.jobs_url(resource_type),
                attempts=1,
                data={"StartDay": start_day, "EndDay": end_day, "FriendlyName": friendly_name},
            )
            payload = response.json()
        except requests.RequestException as exc:
            raise remote_error("Failed to create export job", exc) from exc
        except ValueError as exc:
            raise RemoteServiceError(
                "Failed to create export job: response was not JSON", code="bad_payload"
            ) from exc
        if not isinstance(payload, dict) or not payload.get("job_sid"):
            raise RemoteServiceError("Failed to create export job: response has no job_sid", code="bad_payload")
        return ExportJob.from_payload(payload)

    def fetch_day_content_location(self, resource_type: str, day: str) -> str:
        # Day requests make one attempt each; DayDownloader owns their retry budget.
        url = f"{self.base_url}/{resource_type}/Days/{quote(day)}"
        try:
            with self._request("GET", url, attempts=1, allow_redirects=False) as response:
                if response.status_code in REDIRECT_STATUSES:
                    location = response.headers.get("Location")
                else:
                    location = _error_payload(response).get("redirect_to")
        except requests.RequestException as exc:
            raise remote_error(f"Error fetching day {day}", exc) from exc
        if not location:
            raise RemoteServiceError(f"Day {day} has no content location", code="no_redirect")
        return str(location)

    def open_content(self, url: str) -> requests.Response:
        try:
            return self._request("GET", url, attempts=1, session=self.content_session, stream=True)
        except requests.RequestException as exc:
            raise remote_error("Error fetching day content", exc) from exc
