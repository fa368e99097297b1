# tests/conftest.py
"""
Shared fixtures for the localci test-suite.

Scheduler tests run against FakeExecutor, a duck-typed stand-in for
JobExecutor (store, pipeline_id, variables_for, execute) that never starts a
process. Executor and CLI tests use the real /bin/sh.
"""

import threading
import time

import pytest

from localci.artifacts import ArtifactStore
from localci.dag import resolve
from localci.executor import JobOutcome
from localci.model import load_pipeline
from localci.runner import run_pipeline
from localci.settings import Settings
from localci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def console():
    """A fresh global console per test."""
    c = Console(debug=False)
    set_console(c)
    return c


@pytest.fixture
def settings(tmp_path):
    """Settings with sandboxes under the test's tmp dir."""
    return Settings(concurrency=2, workdir=str(tmp_path / "work"))


@pytest.fixture
def three_stage_definition():
    return {
        "stages": ["build", "test", "deploy"],
        "jobs": {
            "build": {"stage": "build", "script": ["echo build"]},
            "test": {"stage": "test", "needs": ["build"], "script": ["exit 1"]},
            "deploy": {"stage": "deploy", "needs": ["test"], "script": ["echo deploy"]},
        },
    }


class _FakeExecutor:
    """
    Scripted executor.

    `results` maps a job name to "ok" (default), "fail", "warn", "raise",
    "interrupt" or a callable(job, artifacts) returning one of those.
    `produce` maps a job name to {path: bytes} written to the store on success.
    """

    def __init__(self, results=None, delay=0.0, produce=None):
        self.store = ArtifactStore()
        self.pipeline_id = "test-pipeline"
        self.results = results or {}
        self.delay = delay
        self.produce = produce or {}
        self.started = []
        self.finished = []
        self.finished_at_start = {}
        self.producers = {}
        self.upstream_warning = {}
        self.running = 0
        self.max_running = 0
        self.canceled = False
        self._lock = threading.Lock()

    def cancel(self):
        self.canceled = True

    def variables_for(self, job, *, upstream_warning=False):
        self.upstream_warning[job.name] = upstream_warning
        return {"CI_JOB_NAME": job.name}

    def execute(self, job, variables, artifacts):
        with self._lock:
            self.started.append(job.name)
            self.finished_at_start[job.name] = set(self.finished)
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            if self.delay:
                time.sleep(self.delay)
            self.producers[job.name] = artifacts.producers

            result = self.results.get(job.name, "ok")
            if callable(result):
                result = result(job, artifacts)

            if result == "ok":
                files = self.produce.get(job.name, {})
                for path, data in files.items():
                    self.store.put(job.name, path, data)
                return JobOutcome(status="succeeded", exit_code=0, artifacts=sorted(files))
            if result == "warn":
                return JobOutcome(status="succeeded", exit_code=1, reason="exit_code", warning=True)
            if result == "raise":
                raise RuntimeError("executor exploded")
            if result == "interrupt":
                raise KeyboardInterrupt
            return JobOutcome(status="failed", exit_code=1, reason="exit_code", stderr="boom\n")
        finally:
            with self._lock:
                self.running -= 1
                self.finished.append(job.name)


@pytest.fixture
def FakeExecutor():
    """The FakeExecutor class (instantiate per test)."""
    return _FakeExecutor


@pytest.fixture
def run_definition(console):
    """Load, resolve and schedule a definition. Returns (report, executor, graph)."""

    def _run(definition, executor=None, **kwargs):
        executor = executor or _FakeExecutor()
        graph = resolve(load_pipeline(definition))
        report = run_pipeline(graph, executor, console=console, **kwargs)
        return report, executor, graph

    return _run
