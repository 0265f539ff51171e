"""Tests for argument handling and the end-to-end export run."""

import json
from datetime import date

import pytest

import twilio_export_report
from export_errors import RemoteServiceError, ValidationError
from fakes import FakeClient, make_job
from twilio_export_report import (
    ExportRequest,
    Settings,
    parse_args,
    resolve_request,
    run_automation,
    settings_from_args,
)

TODAY = date(2025, 4, 10)
RANGE_DAYS = ["2025-04-01", "2025-04-02", "2025-04-03"]


def _settings(tmp_path, **overrides):
    values = dict(
        downloads_dir=tmp_path / "downloads",
        max_retries=0,
        retry_base_seconds=0,
        max_workers=2,
        poll_interval_seconds=0,
        initial_wait_seconds=0,
        max_wait_minutes=1,
        show_progress=False,
    )
    values.update(overrides)
    return Settings(**values)


class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, **kwargs):
        self.calls.append(kwargs)


class TestResolveRequest:
    def test_default_is_previous_week(self):
        request = resolve_request(parse_args([]), TODAY)
        assert request == ExportRequest(mode="week", start_day="2025-03-31", end_day="2025-04-06")

    def test_week_flag(self):
        assert resolve_request(parse_args(["--week"]), TODAY).mode == "week"

    def test_month_flag(self):
        request = resolve_request(parse_args(["--month"]), TODAY)
        assert (request.mode, request.start_day, request.end_day) == ("month", "2025-03-01", "2025-03-31")

    def test_single_positional_is_job_identifier(self):
        request = resolve_request(parse_args(["JS0123"]), TODAY)
        assert request.mode == "job"
        assert request.job_identifier == "JS0123"

    def test_two_positionals_are_a_range(self):
        request = resolve_request(parse_args(["--name", "quarterly", "2025-04-01", "2025-04-07"]), TODAY)
        assert request == ExportRequest(
            mode="range", start_day="2025-04-01", end_day="2025-04-07", custom_name="quarterly"
        )

    @pytest.mark.parametrize(
        "argv",
        [
            ["--name", "x"],
            ["--name", "x", "JS0123"],
            ["--month", "2025-04-01"],
            ["--week", "JS0123"],
            ["2025-04-01", "2025-04-02", "2025-04-03"],
            ["2025-04-07", "2025-04-01"],
            ["2025-4-1", "2025-04-07"],
            ["2024-01-01", "2025-01-01"],
        ],
    )
    def test_invalid_arguments(self, argv):
        with pytest.raises(ValidationError):
            resolve_request(parse_args(argv), TODAY)

    def test_week_and_month_are_exclusive(self):
        with pytest.raises(SystemExit):
            parse_args(["--week", "--month"])


def test_config_file_sets_defaults_and_cli_wins(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text(
        "credentials:\n"
        "  account_sid: ACfromfile\n"
        "polling:\n"
        "  interval_seconds: 5\n"
        "  max_wait_minutes: 15\n"
        "download:\n"
        "  max_workers: 2\n"
        "  no_progress: 'yes'\n",
        encoding="utf-8",
    )
    args = parse_args(["--config", str(config), "--max-workers", "3"])
    assert args.account_sid == "ACfromfile"
    assert args.poll_interval_seconds == 5
    assert args.max_workers == 3
    settings = settings_from_args(args)
    assert settings.max_wait_minutes == 15
    assert settings.show_progress is False


def test_config_file_must_exist(tmp_path):
    with pytest.raises(SystemExit):
        parse_args(["--config", str(tmp_path / "missing.yaml")])


class TestRunAutomation:
    def test_existing_complete_job_builds_report(self, tmp_path):
        job = make_job(completed=RANGE_DAYS[:2], empty=RANGE_DAYS[2:])
        client = FakeClient(jobs=[job])
        request = ExportRequest(mode="range", start_day=RANGE_DAYS[0], end_day=RANGE_DAYS[-1])

        result = run_automation(request, _settings(tmp_path), client)

        assert result.success, result.error
        assert result.job_sid == "JS0001"
        assert result.record_count == 2
        assert client.created == []
        csv_path = tmp_path / "downloads" / "Job_Week_2025_04_01" / "export.csv"
        assert result.csv_path == str(csv_path)
        assert csv_path.read_text(encoding="utf-8") == "day\n2025-04-01\n2025-04-02"
        assert sorted(client.location_calls) == RANGE_DAYS[:2]

    def test_creates_job_and_waits_for_it(self, tmp_path):
        ready = make_job(job_sid="JSNEW", friendly_name="Job_Custom_q", completed=RANGE_DAYS)
        client = FakeClient(poll_sequence=[ready])
        request = ExportRequest(mode="range", start_day=RANGE_DAYS[0], end_day=RANGE_DAYS[-1], custom_name="q")

        result = run_automation(request, _settings(tmp_path), client)

        assert result.success, result.error
        assert client.created == [
            {"start_day": RANGE_DAYS[0], "end_day": RANGE_DAYS[-1], "friendly_name": "Job_Custom_q"}
        ]
        assert result.record_count == 3
        assert result.job_folder == str(tmp_path / "downloads" / "Job_Custom_q")

    def test_job_mode_downloads_every_completed_day(self, tmp_path):
        job = make_job(job_sid="JSAAA", friendly_name="Job_Month_2025_03", completed=["2025-03-02", "2025-03-01"])
        client = FakeClient(jobs=[job])

        result = run_automation(ExportRequest(mode="job", job_identifier="Month_2025"), _settings(tmp_path), client)

        assert result.success, result.error
        assert result.job_sid == "JSAAA"
        assert result.record_count == 2

    def test_unknown_job_identifier_fails(self, tmp_path):
        client = FakeClient(jobs=[make_job()])
        result = run_automation(ExportRequest(mode="job", job_identifier="nope"), _settings(tmp_path), client)
        assert not result.success
        assert "Job not found" in result.error

    def test_job_with_only_empty_days_succeeds_without_report(self, tmp_path):
        client = FakeClient(jobs=[make_job(empty=RANGE_DAYS)])
        request = ExportRequest(mode="range", start_day=RANGE_DAYS[0], end_day=RANGE_DAYS[-1])

        result = run_automation(request, _settings(tmp_path), client)

        assert result.success
        assert result.record_count == 0
        assert result.csv_path is None
        assert client.location_calls == []

    def test_all_downloads_failing_is_a_failed_run(self, tmp_path):
        client = FakeClient(
            jobs=[make_job(completed=RANGE_DAYS)],
            failures_per_day={day: 99 for day in RANGE_DAYS},
        )
        recorder = Recorder()
        request = ExportRequest(mode="range", start_day=RANGE_DAYS[0], end_day=RANGE_DAYS[-1])

        result = run_automation(request, _settings(tmp_path), client, record_failure=recorder)

        assert not result.success
        assert result.failed_days == RANGE_DAYS
        assert [call["day"] for call in recorder.calls] == RANGE_DAYS
        assert {call["stage"] for call in recorder.calls} == {"download"}

    def test_partial_failure_still_builds_report(self, tmp_path):
        client = FakeClient(jobs=[make_job(completed=RANGE_DAYS)], failures_per_day={RANGE_DAYS[1]: 99})
        request = ExportRequest(mode="range", start_day=RANGE_DAYS[0], end_day=RANGE_DAYS[-1])

        result = run_automation(request, _settings(tmp_path), client)

        assert result.success
        assert result.failed_days == [RANGE_DAYS[1]]
        assert result.record_count == 2

    def test_remote_errors_become_failed_result(self, tmp_path):
        client = FakeClient()
        client.list_error = RemoteServiceError("Error listing Messages export jobs (HTTP 500): boom", http_status=500)
        recorder = Recorder()
        request = ExportRequest(mode="range", start_day=RANGE_DAYS[0], end_day=RANGE_DAYS[-1])

        result = run_automation(request, _settings(tmp_path), client, record_failure=recorder)

        assert not result.success
        assert "HTTP 500" in result.error
        assert recorder.calls[-1]["stage"] == "fatal"


def test_main_requires_credentials(tmp_path, monkeypatch):
    monkeypatch.delenv("TWILIO_ACCOUNT_SID", raising=False)
    monkeypatch.delenv("TWILIO_AUTH_TOKEN", raising=False)
    with pytest.raises(SystemExit) as info:
        twilio_export_report.main(["--logs-dir", str(tmp_path / "logs")])
    assert "Missing credentials" in str(info.value)
    summaries = list((tmp_path / "logs").glob("*/summary.json"))
    assert len(summaries) == 1
    assert json.loads(summaries[0].read_text(encoding="utf-8"))["status"] == "failed"


def test_main_writes_summary_without_secrets(tmp_path, monkeypatch, capsys):
    client = FakeClient(jobs=[make_job(completed=RANGE_DAYS)])
    monkeypatch.setattr(twilio_export_report, "BulkExportsClient", lambda **kwargs: client)
    twilio_export_report.main(
        [
            RANGE_DAYS[0],
            RANGE_DAYS[-1],
            "--account-sid",
            "ACtest",
            "--auth-token",
            "secret-token",
            "--downloads-dir",
            str(tmp_path / "downloads"),
            "--logs-dir",
            str(tmp_path / "logs"),
            "--initial-wait-seconds",
            "0",
            "--no-progress",
        ]
    )
    assert "Export ready" in capsys.readouterr().out
    summary_path = next((tmp_path / "logs").glob("*/summary.json"))
    summary_text = summary_path.read_text(encoding="utf-8")
    assert "secret-token" not in summary_text
    summary = json.loads(summary_text)
    assert summary["status"] == "completed"
    assert summary["result"]["record_count"] == 3
