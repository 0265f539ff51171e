#!/usr/bin/env python3
"""Snapshots of Bulk Exports jobs and their per-day status buckets."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

STATUS_COMPLETED = "Completed"
STATUS_COMPLETED_EMPTY = "CompletedEmptyRecords"
STATUS_FAILED = "Failed"


def _safe_int(value: object, default: int = 0) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _first_present(payload: Dict[str, object], *keys: str) -> Optional[object]:
    # The REST API answers in snake_case, SDK-shaped fixtures use camelCase.
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


@dataclass(frozen=True)
class DayDetail:
    status: str
    count: int
    days: Tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, payload: Dict[str, object]) -> "DayDetail":
        raw_days = payload.get("days")
        days: Tuple[str, ...] = ()
        if isinstance(raw_days, list):
            days = tuple(day for day in raw_days if isinstance(day, str))
        return cls(
            status=str(payload.get("status") or ""),
            count=_safe_int(payload.get("count")),
            days=days,
        )


@dataclass(frozen=True)
class ExportJob:
    job_sid: str
    friendly_name: str
    start_day: str
    end_day: str
    resource_type: str = ""
    details: Tuple[DayDetail, ...] = field(default_factory=tuple)
    has_details: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, object]) -> "ExportJob":
        raw_details = payload.get("details")
        details: Tuple[DayDetail, ...] = ()
        if isinstance(raw_details, list):
            details = tuple(DayDetail.from_payload(row) for row in raw_details if isinstance(row, dict))
        return cls(
            job_sid=str(_first_present(payload, "job_sid", "jobSid") or ""),
            friendly_name=str(_first_present(payload, "friendly_name", "friendlyName") or ""),
            start_day=str(_first_present(payload, "start_day", "startDay") or ""),
            end_day=str(_first_present(payload, "end_day", "endDay") or ""),
            resource_type=str(_first_present(payload, "resource_type", "resourceType") or ""),
            details=details,
            has_details=isinstance(raw_details, list),
        )

    @property
    def label(self) -> str:
        return self.friendly_name or self.job_sid


@dataclass(frozen=True)
class DayCounts:
    completed_days: int
    days_with_data: int
    empty_days: int
    failed_days: int

    def is_complete(self, expected_days: int) -> bool:
        if self.completed_days >= expected_days:
            return True
        # Failed days never turn into data; accept the partial job once every day is accounted for.
        return self.failed_days > 0 and self.completed_days + self.failed_days >= expected_days


def summarize_details(details: Sequence[DayDetail]) -> DayCounts:
    days_with_data = 0
    empty_days = 0
    failed_days = 0
    for detail in details:
        if detail.status == STATUS_COMPLETED:
            days_with_data += detail.count
        elif detail.status == STATUS_COMPLETED_EMPTY:
            empty_days += detail.count
        elif detail.status == STATUS_FAILED:
            failed_days += detail.count
    return DayCounts(
        completed_days=days_with_data + empty_days,
        days_with_data=days_with_data,
        empty_days=empty_days,
        failed_days=failed_days,
    )
