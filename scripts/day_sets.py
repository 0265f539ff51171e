#!/usr/bin/env python3
"""Calendar-day helpers and reconciliation of job days against a requested window."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, List, Optional, Sequence, Set, Tuple

from export_errors import ValidationError
from export_models import STATUS_COMPLETED, STATUS_COMPLETED_EMPTY, DayDetail
from run_logging import log_event

MAX_RANGE_DAYS = 366
DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_day(value: str) -> date:
    if not isinstance(value, str) or not DAY_RE.match(value):
        raise ValidationError(f"Invalid date format: {value}. Use YYYY-MM-DD")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid date format: {value}. Use YYYY-MM-DD") from exc


def validate_date(value: str) -> None:
    parse_day(value)


def expected_day_count(start_day: str, end_day: str) -> int:
    return (parse_day(end_day) - parse_day(start_day)).days + 1


def validate_date_range(start_day: str, end_day: str) -> int:
    """Return the inclusive day count, rejecting reversed or oversized ranges."""
    days = expected_day_count(start_day, end_day)
    if days > MAX_RANGE_DAYS:
        raise ValidationError(f"Date range cannot exceed {MAX_RANGE_DAYS} days (Bulk Exports API limit)")
    if days < 1:
        raise ValidationError("End date must be on or after start date")
    return days


def generate_days_between(start_day: str, end_day: str) -> List[str]:
    # Plain calendar arithmetic: no clock, so DST and UTC offsets cannot skip or repeat a day.
    current = parse_day(start_day)
    final = parse_day(end_day)
    days: List[str] = []
    while current <= final:
        days.append(current.isoformat())
        current += timedelta(days=1)
    return days


def previous_week_dates(today: date) -> Tuple[str, str]:
    monday = today - timedelta(days=today.weekday() + 7)
    sunday = monday + timedelta(days=6)
    return monday.isoformat(), sunday.isoformat()


def previous_month_dates(today: date) -> Tuple[str, str]:
    last_day = today.replace(day=1) - timedelta(days=1)
    return last_day.replace(day=1).isoformat(), last_day.isoformat()


def sanitize_folder_name(name: str) -> str:
    return re.sub(r"_{2,}", "_", re.sub(r"[^A-Za-z0-9_-]", "_", name))


def extract_days_from_details(details: Sequence[DayDetail]) -> Tuple[List[str], List[str]]:
    """Return ``(days_with_data, empty_days)``, each deduplicated in first-seen order."""
    with_data: Dict[str, None] = {}
    empty: Dict[str, None] = {}
    for detail in details:
        if detail.status == STATUS_COMPLETED:
            for day in detail.days:
                with_data.setdefault(day, None)
        elif detail.status == STATUS_COMPLETED_EMPTY:
            for day in detail.days:
                empty.setdefault(day, None)
    return list(with_data), list(empty)


@dataclass
class DayReconciliation:
    days_to_download: List[str]
    empty_days_in_range: List[str]
    days_outside_job_scope: int
    total_days_in_range: int
    days_with_data: List[str]
    empty_days: List[str]
    windowed: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def nothing_to_download(self) -> bool:
        return not self.days_to_download


def reconcile_days(
    details: Sequence[DayDetail],
    user_start: Optional[str] = None,
    user_end: Optional[str] = None,
) -> DayReconciliation:
    """Work out which job days must be downloaded for an optional inclusive window.

    Without a window every ``Completed`` day is returned. With one, ``Completed``
    and ``CompletedEmptyRecords`` days are intersected with the window and the
    remainder of the window is reported as outside the job's scope.
    """
    if (user_start is None) != (user_end is None):
        raise ValidationError("Provide both start and end dates or neither.")

    days_with_data, empty_days = extract_days_from_details(details)

    if user_start is None or user_end is None:
        return DayReconciliation(
            days_to_download=sorted(days_with_data),
            empty_days_in_range=[],
            days_outside_job_scope=0,
            total_days_in_range=0,
            days_with_data=days_with_data,
            empty_days=empty_days,
        )

    validate_date_range(user_start, user_end)
    window = generate_days_between(user_start, user_end)
    window_set: Set[str] = set(window)
    to_download = sorted(day for day in days_with_data if day in window_set)
    empty_in_range = sorted(day for day in empty_days if day in window_set)
    outside = len(window) - len(to_download) - len(empty_in_range)

    warnings: List[str] = []
    if outside < 0:
        overlap = sorted(set(to_download) & set(empty_in_range))
        message = (
            f"Job details report {len(overlap)} day(s) both with data and empty "
            f"({', '.join(overlap[:5])}); days outside job scope is {outside}."
        )
        warnings.append(message)
        log_event("RECONCILE_WARNING", start=user_start, end=user_end, outside=outside, detail=message)

    return DayReconciliation(
        days_to_download=to_download,
        empty_days_in_range=empty_in_range,
        days_outside_job_scope=outside,
        total_days_in_range=len(window),
        days_with_data=days_with_data,
        empty_days=empty_days,
        windowed=True,
        warnings=warnings,
    )
