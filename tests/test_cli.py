# tests/test_cli.py
"""End-to-end runs through the click CLI (real /bin/sh)."""

import json

import pytest
import yaml
from click.testing import CliRunner

from localci.cli import cli


@pytest.fixture
def project(tmp_path, monkeypatch):
    root = tmp_path / "project"
    root.mkdir()
    monkeypatch.chdir(root)
    monkeypatch.setenv("LOCALCI_WORKDIR", str(tmp_path / "work"))
    monkeypatch.setenv("LOCALCI_CONCURRENCY", "2")
    monkeypatch.delenv("LOCALCI_VARIABLE_POLICY", raising=False)
    return root


@pytest.fixture
def write_pipeline(project):
    def _write(definition, name="localci.yml"):
        (project / name).write_text(yaml.safe_dump(definition, sort_keys=False))

    return _write


def _invoke(*args):
    return CliRunner().invoke(cli, list(args))


SCENARIO = {
    "stages": ["build", "test", "deploy"],
    "jobs": {
        "build": {"stage": "build", "script": ["echo building"]},
        "test": {"stage": "test", "needs": ["build"], "script": ["exit 1"]},
        "deploy": {"stage": "deploy", "needs": ["test"], "script": ["echo deploying"]},
    },
}


def test_failing_job_exits_1(write_pipeline):
    write_pipeline(SCENARIO)

    result = _invoke("run")

    assert result.exit_code == 1, result.output
    assert "[deploy] SKIPPED (upstream failed)" in result.output
    assert "PIPELINE FAILED" in result.output


def test_allowed_failure_exits_0(write_pipeline):
    definition = json.loads(json.dumps(SCENARIO))
    definition["jobs"]["test"]["allow_failure"] = True
    write_pipeline(definition)

    result = _invoke("run")

    assert result.exit_code == 0, result.output
    assert "PIPELINE SUCCEEDED (with warnings)" in result.output
    assert "[deploy] $ echo deploying" in result.output


def test_self_cycle_exits_2_without_running_anything(write_pipeline):
    write_pipeline({"jobs": {"a": {"script": "echo ran", "needs": ["a"]}}})

    result = _invoke("run")

    assert result.exit_code == 2
    assert "Dependency cycle detected: a -> a" in result.output
    assert "PIPELINE STARTED" not in result.output


def test_invalid_definition_exits_2(write_pipeline):
    write_pipeline({"jobs": {"a": {"script": "true", "stage": "qa"}}})

    result = _invoke("run")

    assert result.exit_code == 2
    assert "undeclared stage 'qa'" in result.output


def test_repeated_job_id_exits_2(project):
    (project / "localci.yml").write_text("jobs:\n  build:\n    script: 'true'\n  build:\n    script: 'false'\n")

    result = _invoke("run")

    assert result.exit_code == 2
    assert "Duplicate job id: 'build'" in result.output
    assert "PIPELINE STARTED" not in result.output


def test_missing_workflow_exits_2(project):
    result = _invoke("run")
    assert result.exit_code == 2
    assert "No workflow file found" in result.output


def test_dry_run_prints_the_plan(write_pipeline):
    write_pipeline(SCENARIO)

    result = _invoke("run", "--dry-run")

    assert result.exit_code == 0
    assert "EXECUTION PLAN" in result.output
    assert "1. build (build)" in result.output
    assert "3. deploy (deploy) needs ['test']" in result.output
    assert "PIPELINE STARTED" not in result.output


def test_var_overrides_definition(write_pipeline):
    write_pipeline({"variables": {"MODE": "debug"}, "jobs": {"check": {"script": 'test "$MODE" = release'}}})

    assert _invoke("run").exit_code == 1
    assert _invoke("run", "--var", "MODE=release").exit_code == 0


def test_malformed_var_is_a_usage_error(write_pipeline):
    write_pipeline({"jobs": {"a": {"script": "true"}}})
    result = _invoke("run", "--var", "NOEQUALS")
    assert result.exit_code == 2


def test_strict_variables(write_pipeline):
    write_pipeline({"variables": {"URL": "http://$HOST"}, "jobs": {"a": {"script": "true"}}})

    relaxed = _invoke("run")
    assert relaxed.exit_code == 0
    assert "variable reference '$HOST' is not defined" in relaxed.output

    assert _invoke("run", "--strict-variables").exit_code == 2
    assert _invoke("run", "--strict-variables", "--var", "HOST=localhost").exit_code == 0


def test_job_selection(write_pipeline):
    write_pipeline(
        {
            "jobs": {
                "broken": {"script": "exit 1", "needs": []},
                "fine": {"script": "true", "needs": []},
            }
        }
    )

    assert _invoke("run").exit_code == 1
    result = _invoke("run", "--job", "fine")
    assert result.exit_code == 0
    assert "[broken]" not in result.output
    assert _invoke("run", "--job", "ghost").exit_code == 2


def test_manual_job(write_pipeline):
    write_pipeline({"jobs": {"release": {"script": "exit 1", "when": "manual"}}})

    assert _invoke("run").exit_code == 0
    assert _invoke("run", "--manual", "release").exit_code == 1
    assert _invoke("run", "--manual", "nope").exit_code == 2


def test_report_artifacts_and_hooks(write_pipeline, project, tmp_path):
    write_pipeline(
        {
            "jobs": {
                "build": {"script": "mkdir -p out && echo hi > out/a.txt", "artifacts": ["out/"]},
                "check": {"script": "grep -q hi out/a.txt", "needs": ["build"]},
            },
            "post": {"success": ["touch hook-ran"], "failure": ["touch should-not-exist"]},
        }
    )
    exported = tmp_path / "exported"

    result = _invoke("run", "--report", "report.json", "--artifacts-dir", str(exported))

    assert result.exit_code == 0, result.output
    assert (exported / "build" / "out" / "a.txt").read_text() == "hi\n"
    assert (project / "hook-ran").exists()
    assert not (project / "should-not-exist").exists()

    report = json.loads((project / "report.json").read_text())
    assert report["verdict"] == "succeeded"
    assert [j["name"] for j in report["jobs"]] == ["build", "check"]
    assert report["jobs"][0]["artifacts"] == ["out/a.txt"]


def test_python_workflow_and_list(project):
    (project / "localci_workflow.py").write_text(
        "from localci import job, wf\n"
        "PIPELINE = wf(\n"
        "    job('lint', 'true', stage='build'),\n"
        "    job('unit', 'true', stage='test', needs=['lint']),\n"
        "    job('e2e', 'true', stage='test'),\n"
        ")\n"
    )

    result = _invoke("list")

    assert result.exit_code == 0, result.output
    assert "unit" in result.output
    assert "(previous stage)" in result.output
    assert _invoke("run").exit_code == 0


def test_multiple_workflow_files_need_a_choice(write_pipeline):
    write_pipeline({"jobs": {"a": {"script": "true"}}})
    write_pipeline({"jobs": {"a": {"script": "false"}}}, name="localci.yaml")

    result = _invoke("run")
    assert result.exit_code == 2
    assert "Multiple workflow files found" in result.output

    assert _invoke("run", "--workflow", "localci.yaml").exit_code == 1
