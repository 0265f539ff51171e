#!/usr/bin/env python3
"""Error types shared by the export download and report scripts."""

from __future__ import annotations

from typing import Optional

JOB_NOT_FOUND = "job_not_found"


class ExportError(Exception):
    """Base class for every failure raised by the export pipeline."""


class ValidationError(ExportError, ValueError):
    pass


class RemoteServiceError(ExportError):
    """A Bulk Exports API call failed.

    Populated where the error crosses the HTTP boundary so callers never have
    to inspect ``requests`` exceptions or raw error payloads themselves.
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
        provider_message: Optional[str] = None,
        more_info: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status
        self.provider_message = provider_message
        self.more_info = more_info

    @property
    def is_auth_failure(self) -> bool:
        return self.http_status in (401, 403)

    @property
    def is_missing_job(self) -> bool:
        return self.code == JOB_NOT_FOUND


class DownloadError(ExportError):
    def __init__(self, message: str, *, day: str, attempts: int) -> None:
        super().__init__(message)
        self.day = day
        self.attempts = attempts


class ParseError(ExportError):
    def __init__(self, message: str, *, path: str, line_number: int) -> None:
        super().__init__(message)
        self.path = path
        self.line_number = line_number


class ExportTimeoutError(ExportError, TimeoutError):
    pass
