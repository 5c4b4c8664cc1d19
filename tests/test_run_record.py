"""Tests for RunRecord lifecycle and serialization."""

from datetime import timedelta

from testdash.core.run_record import NO_EXIT_CODE, RunRecord, RunStatus


def test_new_record_is_running_without_end_state():
    record = RunRecord("proj1", "npx playwright", ["test"])

    assert record.status is RunStatus.RUNNING
    assert record.exit_code is None
    assert record.ended_at is None
    assert record.id.startswith("run_")


def test_finish_with_zero_completes():
    record = RunRecord("proj1", "npx playwright", ["test"])

    assert record.finish(0) is True

    assert record.status is RunStatus.COMPLETED
    assert record.exit_code == 0
    assert record.ended_at is not None


def test_finish_with_nonzero_fails():
    record = RunRecord("proj1", "npx playwright")
    record.finish(1)

    assert record.status is RunStatus.FAILED
    assert record.exit_code == 1


def test_terminal_record_ignores_appends_and_transitions():
    record = RunRecord("proj1", "npx playwright")
    record.append_output("stdout", "before")
    record.finish(0)
    ended_at = record.ended_at

    assert record.append_output("stdout", "after") is None
    assert record.append_log("info", "after") is None
    assert record.finish(1) is False
    assert record.mark_cancelled() is False

    assert [e["data"] for e in record.stdout] == ["before"]
    assert record.status is RunStatus.COMPLETED
    assert record.exit_code == 0
    assert record.ended_at == ended_at


def test_cancel_sets_end_state():
    record = RunRecord("proj1", "npx playwright")

    assert record.mark_cancelled() is True

    assert record.status is RunStatus.CANCELLED
    assert record.exit_code == NO_EXIT_CODE
    assert record.ended_at is not None


def test_output_is_capped_by_dropping_oldest():
    record = RunRecord("proj1", "cmd", output_limit=3)
    for i in range(5):
        record.append_output("stdout", f"line {i}")
        record.append_log("info", f"log {i}")

    assert [e["data"] for e in record.stdout] == ["line 2", "line 3", "line 4"]
    assert [e["message"] for e in record.logs] == ["log 2", "log 3", "log 4"]


def test_stderr_kept_separately():
    record = RunRecord("proj1", "cmd")
    record.append_output("stdout", "out")
    record.append_output("stderr", "err")

    assert [e["data"] for e in record.stdout] == ["out"]
    assert [e["data"] for e in record.stderr] == ["err"]


def test_matches_text_is_case_insensitive_over_logs():
    record = RunRecord("Checkout", "npx playwright")
    record.append_log("info", "Running ALPHA suite")

    assert record.matches_text("alpha")
    assert record.matches_text("checkout")
    assert record.matches_text("PLAYWRIGHT")
    assert not record.matches_text("beta")


def test_to_dict_hides_process_handle():
    record = RunRecord("proj1", "npx playwright", ["test"], context="staging")
    record.process = object()
    record.process_id = 4242

    payload = record.to_dict()

    assert "process" not in payload
    assert payload["processId"] == 4242
    assert payload["subjectName"] == "proj1"
    assert payload["context"] == "staging"
    assert payload["args"] == ["test"]
    assert payload["endedAt"] is None
    assert payload["exitCode"] is None
    assert payload["status"] == "running"


def test_duration_uses_end_time_once_terminal():
    record = RunRecord("proj1", "cmd")
    record.finish(0)
    record.ended_at = record.started_at + timedelta(milliseconds=1500)

    assert record.duration_ms() == 1500
    assert record.completion_payload()["duration"] == 1500
