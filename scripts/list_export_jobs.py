#!/usr/bin/env python3
"""Show recent Bulk Exports jobs and how many of their days are ready."""

from __future__ import annotations

import argparse
import json
import os
from typing import Dict, List, Sequence

from bulk_export_client import API_BASE_URL, DEFAULT_RESOURCE_TYPE, BulkExportsClient
from export_models import ExportJob, summarize_details


def _build_payload(jobs: Sequence[ExportJob]) -> Dict[str, object]:
    rows = []
    for job in jobs:
        counts = summarize_details(job.details)
        rows.append(
            {
                "job_sid": job.job_sid,
                "friendly_name": job.friendly_name,
                "start_day": job.start_day,
                "end_day": job.end_day,
                "days_with_data": counts.days_with_data,
                "empty_days": counts.empty_days,
                "failed_days": counts.failed_days,
            }
        )
    return {"job_count": len(rows), "jobs": rows}


def _print_text(payload: Dict[str, object]) -> None:
    rows: List[Dict[str, object]] = payload["jobs"]  # type: ignore[assignment]
    print(f"Export jobs: {payload['job_count']}")
    print("job_sid\tstart_day\tend_day\twith_data\tempty\tfailed\tfriendly_name")
    for row in rows:
        print(
            f"{row['job_sid']}\t{row['start_day']}\t{row['end_day']}\t"
            f"{row['days_with_data']}\t{row['empty_days']}\t{row['failed_days']}\t{row['friendly_name']}"
        )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--resource-type", default=DEFAULT_RESOURCE_TYPE, help="Exported resource type.")
    parser.add_argument("--base-url", default=API_BASE_URL, help="Bulk Exports API base URL.")
    parser.add_argument("--limit", type=int, default=50, help="Maximum number of jobs to list.")
    parser.add_argument("--json", action="store_true", help="Emit JSON instead of text output.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    account_sid = os.getenv("TWILIO_ACCOUNT_SID")
    auth_token = os.getenv("TWILIO_AUTH_TOKEN")
    if not account_sid or not auth_token:
        raise SystemExit("Missing credentials. Set TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN.")
    client = BulkExportsClient(account_sid, auth_token, base_url=args.base_url)
    payload = _build_payload(client.list_jobs(args.resource_type, args.limit))
    if args.json:
        print(json.dumps(payload, indent=2))
    else:
        _print_text(payload)


if __name__ == "__main__":
    main()
