#!/usr/bin/env python3
"""Rebuild export.csv for already-downloaded job folders without calling the API."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Iterable, List

from report_builder import FILES_DIRNAME, build_report


def resolve_job_folders(downloads_dir: Path, requested: Iterable[str]) -> List[Path]:
    names = [value.strip() for value in requested if value and value.strip()]
    if names:
        seen = set()
        ordered: List[Path] = []
        for name in names:
            if name in seen:
                continue
            seen.add(name)
            ordered.append(downloads_dir / name)
        return ordered
    return sorted(path for path in downloads_dir.iterdir() if (path / FILES_DIRNAME).is_dir())


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--downloads-dir", default="downloads", help="Root folder containing job folders.")
    parser.add_argument("--job", action="append", default=[], help="Job folder name to rebuild (repeatable).")
    parser.add_argument("--workers", type=int, default=4, help="Files decompressed in parallel.")
    args = parser.parse_args()

    downloads_dir = Path(args.downloads_dir)
    if not downloads_dir.exists():
        raise SystemExit(f"Downloads folder not found: {downloads_dir}")

    job_folders = resolve_job_folders(downloads_dir, args.job)
    if not job_folders:
        raise SystemExit("No job folders with downloaded files found.")

    written = 0
    empty = 0
    failures = 0
    for job_folder in job_folders:
        try:
            result = build_report(job_folder, max_workers=args.workers)
        except Exception as exc:  # noqa: BLE001
            failures += 1
            print(f"REBUILD_ERROR job={job_folder.name} error={exc}")
            continue
        if result.has_data:
            written += 1
            print(f"REBUILD_DONE job={job_folder.name} records={result.record_count} path={result.path}")
        else:
            empty += 1
            print(f"REBUILD_EMPTY job={job_folder.name} files={result.files_processed}")

    print(f"REBUILD_SUMMARY jobs={len(job_folders)} written={written} empty={empty} failures={failures}")
    if failures:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
