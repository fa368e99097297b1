# tests/test_report.py
import json

import pytest

from localci.report import Attempt, JobRun, JobState, RunReport


def _report():
    runs = (
        JobRun(name="build", stage="build", state=JobState.SUCCEEDED, started_at=10.0, finished_at=12.5,
               artifacts=["dist/app"], attempts=[Attempt(1, 10.0, 12.5, 0, "succeeded")]),
        JobRun(name="lint", stage="test", state=JobState.SUCCEEDED, warning=True, exit_code=1,
               reason="exit_code", started_at=12.5, finished_at=13.0),
        JobRun(name="deploy", stage="deploy", state=JobState.SKIPPED, reason="manual"),
    )
    return RunReport(pipeline_id="abc", runs=runs, started_at=10.0, finished_at=14.0)


def test_counts_and_verdict():
    report = _report()

    assert report.counts == {
        "total": 3, "succeeded": 2, "failed": 0, "skipped": 1, "canceled": 0, "warnings": 1,
    }
    assert report.verdict == "succeeded"
    assert report.unstable is True
    assert report.exit_code == 0
    assert report.duration == 4.0
    assert report.outcomes() == {
        "build": "succeeded",
        "lint": "succeeded (warning)",
        "deploy": "skipped (manual)",
    }


def test_canceled_job_fails_the_pipeline():
    report = RunReport(
        pipeline_id="abc",
        runs=(JobRun(name="a", stage="build", state=JobState.CANCELED, reason="fail-fast"),),
        started_at=0.0,
        finished_at=0.0,
    )
    assert report.verdict == "failed"
    assert report.unstable is False
    assert report.exit_code == 1


def test_as_dict_is_json_serializable():
    data = json.loads(json.dumps(_report().as_dict()))

    assert data["verdict"] == "succeeded"
    assert data["jobs"][0]["artifacts"] == ["dist/app"]
    assert data["jobs"][0]["attempts"][0]["duration"] == 2.5
    assert data["jobs"][2]["duration"] is None
    assert [j["state"] for j in data["jobs"]] == ["succeeded", "succeeded", "skipped"]


def test_job_runs_are_frozen_with_the_report():
    report = _report()
    run = report["build"]

    assert run.duration == 2.5
    assert isinstance(run.attempts, tuple)
    with pytest.raises(AttributeError):
        run.exit_code = 3
