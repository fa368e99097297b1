# tests/test_runner.py
"""Scheduler behaviour: ordering, cascade, `when`, concurrency, fail-fast."""

import pytest

from localci.report import JobState
from localci.runner import Scheduler


def _states(report):
    return {name: run.state for name, run in report.jobs.items()}


def test_failed_test_skips_deploy(run_definition, FakeExecutor, three_stage_definition):
    report, _, _ = run_definition(three_stage_definition, FakeExecutor(results={"test": "fail"}))

    assert _states(report) == {
        "build": JobState.SUCCEEDED,
        "test": JobState.FAILED,
        "deploy": JobState.SKIPPED,
    }
    assert report["deploy"].reason == "upstream failed"
    assert report.verdict == "failed"
    assert report.exit_code == 1


def test_allowed_failure_lets_deploy_run(run_definition, FakeExecutor, three_stage_definition):
    three_stage_definition["jobs"]["test"]["allow_failure"] = True
    report, _, _ = run_definition(three_stage_definition, FakeExecutor(results={"test": "warn"}))

    assert report["test"].state == JobState.SUCCEEDED
    assert report["test"].warning is True
    assert report["test"].label == "succeeded (warning)"
    assert report["deploy"].state == JobState.SUCCEEDED
    assert report.verdict == "succeeded"
    assert report.unstable is True
    assert report.exit_code == 0


def test_always_job_runs_after_failure(run_definition, FakeExecutor):
    definition = {
        "jobs": {
            "a": {"script": "false"},
            "b": {"needs": ["a"], "when": "always", "script": "echo cleanup"},
        }
    }
    report, executor, _ = run_definition(definition, FakeExecutor(results={"a": "fail"}))

    assert report["a"].state == JobState.FAILED
    assert report["b"].state == JobState.SUCCEEDED
    assert executor.started == ["a", "b"]


def test_failure_cascades_transitively(run_definition, FakeExecutor):
    definition = {
        "jobs": {
            "a": {"script": "false", "needs": []},
            "b": {"script": "true", "needs": ["a"]},
            "c": {"script": "true", "needs": ["b"]},
            "d": {"script": "true", "needs": []},
        }
    }
    report, executor, _ = run_definition(definition, FakeExecutor(results={"a": "fail"}))

    assert report["b"].state == JobState.SKIPPED
    assert report["c"].state == JobState.SKIPPED
    assert report["d"].state == JobState.SUCCEEDED
    assert "b" not in executor.started


def test_on_failure_job_only_runs_on_upstream_failure(run_definition, FakeExecutor):
    definition = {
        "jobs": {
            "build": {"stage": "build", "script": "make"},
            "notify": {"stage": "test", "when": "on_failure", "script": "echo broken"},
            "deploy": {"stage": "deploy", "script": "echo ship"},
        }
    }

    green, _, _ = run_definition(definition)
    assert green["notify"].state == JobState.SKIPPED
    assert green["notify"].reason == "no upstream failure"
    # an untriggered on_failure job does not hold back the next stage
    assert green["deploy"].state == JobState.SUCCEEDED
    assert green.verdict == "succeeded"

    red, _, _ = run_definition(definition, FakeExecutor(results={"build": "fail"}))
    assert red["notify"].state == JobState.SUCCEEDED
    assert red["deploy"].state == JobState.SKIPPED
    assert red.verdict == "failed"


def test_never_job_blocks_its_needs_chain(run_definition):
    definition = {
        "jobs": {
            "docs": {"when": "never", "script": "make docs", "needs": []},
            "publish": {"needs": ["docs"], "script": "make publish"},
            "lint": {"script": "ruff .", "needs": []},
        }
    }
    report, executor, graph = run_definition(definition)

    assert report["docs"].reason == "when: never"
    assert report["publish"].state == JobState.SKIPPED
    assert report["publish"].reason == "needs did not run"
    assert report["lint"].state == JobState.SUCCEEDED
    assert graph.pipeline.names(graph.unreachable) == ["publish"]
    assert executor.started == ["lint"]
    # skipped jobs do not fail the pipeline
    assert report.verdict == "succeeded"


def test_manual_job_needs_explicit_trigger(run_definition):
    definition = {
        "jobs": {
            "build": {"script": "make", "needs": []},
            "release": {"when": "manual", "needs": ["build"], "script": "make release"},
        }
    }

    report, _, _ = run_definition(definition)
    assert report["release"].state == JobState.SKIPPED
    assert report["release"].reason == "manual"

    report, executor, _ = run_definition(definition, manual=["release"])
    assert report["release"].state == JobState.SUCCEEDED
    assert executor.started == ["build", "release"]


def test_jobs_start_only_after_their_dependencies_finish(run_definition, FakeExecutor):
    definition = {
        "stages": ["build", "test", "deploy"],
        "jobs": {
            "compile": {"stage": "build", "script": "make"},
            "assets": {"stage": "build", "script": "make assets"},
            "unit": {"stage": "test", "needs": ["compile"], "script": "make test"},
            "e2e": {"stage": "test", "needs": ["compile", "assets"], "script": "make e2e"},
            "ship": {"stage": "deploy", "script": "make ship"},
        },
    }
    report, executor, graph = run_definition(definition, FakeExecutor(delay=0.02), max_concurrency=4)

    assert report.verdict == "succeeded"
    for i, job in enumerate(graph.pipeline.jobs):
        deps = set(graph.pipeline.names(graph.deps[i]))
        assert deps <= executor.finished_at_start[job.name], job.name
    # ship has no needs: it waits for the whole previous stage
    assert executor.finished_at_start["ship"] >= {"unit", "e2e"}


def test_concurrency_bound_is_respected(run_definition, FakeExecutor):
    definition = {"jobs": {f"job{i}": {"script": "sleep 1", "needs": []} for i in range(6)}}
    executor = FakeExecutor(delay=0.05)

    report, executor, _ = run_definition(definition, executor, max_concurrency=2)

    assert report.counts["succeeded"] == 6
    assert 1 <= executor.max_running <= 2


def test_dispatch_order_is_deterministic(run_definition, FakeExecutor):
    definition = {
        "stages": ["build", "test"],
        "jobs": {
            "unit": {"stage": "test", "script": "make test"},
            "lint": {"stage": "test", "script": "make lint"},
            "compile": {"stage": "build", "script": "make"},
        },
    }

    first, ex1, graph = run_definition(definition, FakeExecutor(), max_concurrency=1)
    second, ex2, _ = run_definition(definition, FakeExecutor(), max_concurrency=1)

    assert ex1.started == ex2.started == ["compile", "unit", "lint"]
    assert ex1.started == graph.order_names()
    assert first.outcomes() == second.outcomes()


def test_fail_fast_cancels_jobs_not_yet_started(run_definition, FakeExecutor):
    definition = {
        "jobs": {
            "a": {"script": "false", "needs": []},
            "b": {"script": "true", "needs": []},
            "c": {"script": "true", "needs": ["b"]},
        }
    }
    executor = FakeExecutor(results={"a": "fail"})
    report, executor, _ = run_definition(definition, executor, max_concurrency=1, fail_fast=True)

    assert executor.started == ["a"]
    assert report["b"].state == JobState.CANCELED
    assert report["c"].state == JobState.CANCELED
    assert report["b"].reason == "fail-fast"
    assert report.verdict == "failed"
    # running jobs finish on their own
    assert executor.canceled is False


def test_without_fail_fast_independent_work_continues(run_definition, FakeExecutor):
    definition = {
        "jobs": {
            "a": {"script": "false", "needs": []},
            "b": {"script": "true", "needs": []},
        }
    }
    report, _, _ = run_definition(definition, FakeExecutor(results={"a": "fail"}), max_concurrency=1)

    assert report["b"].state == JobState.SUCCEEDED
    assert report.counts["canceled"] == 0


def test_executor_crash_fails_only_that_job(run_definition, FakeExecutor):
    definition = {
        "jobs": {
            "a": {"script": "true", "needs": []},
            "b": {"script": "true", "needs": ["a"]},
            "c": {"script": "true", "needs": []},
        }
    }
    report, _, _ = run_definition(definition, FakeExecutor(results={"a": "raise"}))

    assert report["a"].state == JobState.FAILED
    assert report["a"].reason == "error"
    assert "executor exploded" in report["a"].stderr
    assert report["b"].state == JobState.SKIPPED
    assert report["c"].state == JobState.SUCCEEDED


def test_interrupt_cancels_everything_and_returns_report(run_definition, FakeExecutor):
    definition = {
        "jobs": {
            "a": {"script": "sleep 100", "needs": []},
            "b": {"script": "true", "needs": ["a"]},
        }
    }
    report, executor, _ = run_definition(definition, FakeExecutor(results={"a": "interrupt"}), max_concurrency=1)

    assert report.interrupted is True
    assert executor.canceled is True
    assert report["a"].state == JobState.CANCELED
    assert report["b"].state == JobState.CANCELED
    assert report["b"].reason == "interrupted"
    assert report.exit_code == 1


@pytest.mark.parametrize("policy, expected", [("isolate", False), ("propagate", True)])
def test_warning_policy(run_definition, FakeExecutor, policy, expected):
    definition = {
        "jobs": {
            "flaky": {"script": "true", "allow_failure": True, "needs": []},
            "after": {"script": "true", "needs": ["flaky"]},
            "later": {"script": "true", "needs": ["after"]},
        }
    }
    report, executor, _ = run_definition(
        definition, FakeExecutor(results={"flaky": "warn"}), warning_policy=policy
    )

    assert report["after"].state == JobState.SUCCEEDED
    assert executor.upstream_warning["after"] is expected
    assert executor.upstream_warning["later"] is expected
    assert report["after"].upstream_warning is expected
    assert report["after"].warning is False


def test_artifact_view_covers_transitive_dependencies(run_definition, FakeExecutor):
    definition = {
        "jobs": {
            "a": {"script": "make", "needs": []},
            "b": {"script": "make", "needs": ["a"]},
            "c": {"script": "make", "needs": ["b"]},
            "d": {"script": "make", "needs": []},
        }
    }

    def reads_a(job, artifacts):
        return "ok" if artifacts.get("a", "out/app.bin") == b"binary" else "fail"

    executor = FakeExecutor(results={"c": reads_a}, produce={"a": {"out/app.bin": b"binary"}})
    report, executor, _ = run_definition(definition, executor)

    assert report["c"].state == JobState.SUCCEEDED
    assert executor.producers["c"] == ("a", "b")
    assert executor.producers["d"] == ()
    assert report["a"].artifacts == ("out/app.bin",)


def test_report_is_read_only(run_definition):
    report, _, _ = run_definition({"jobs": {"a": {"script": "true"}}})

    with pytest.raises(AttributeError):
        report["a"].state = JobState.FAILED
    with pytest.raises(TypeError):
        report.jobs["b"] = report["a"]


def test_scheduler_rejects_bad_arguments(FakeExecutor):
    from localci.dag import resolve
    from localci.model import load_pipeline

    graph = resolve(load_pipeline({"jobs": {"a": {"script": "true"}}}))
    with pytest.raises(ValueError):
        Scheduler(graph, FakeExecutor(), max_concurrency=0)
    with pytest.raises(ValueError):
        Scheduler(graph, FakeExecutor(), warning_policy="loud")
