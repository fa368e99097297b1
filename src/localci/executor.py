# executor.py
from __future__ import annotations

import os
import re
import shutil
import signal
import subprocess
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .artifacts import ArtifactStore, ScopedArtifacts
from .errors import JobError, JobTimeoutError, LocalCIError, ScopeError, VariableError
from .model import Job, Pipeline
from .report import Attempt
from .settings import Settings
from .ui.console import Console, get_console
from .variables import resolve_layers

# output kept per command stream; older output is dropped
MAX_OUTPUT_CHARS = 64_000

TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}

SANDBOX_IGNORE = (".git", ".localci")

CONTAINER_WORKDIR = "/workspace"


def _tail(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    return text if len(text) <= limit else text[-limit:]


def _hint_for(command: str, exit_code: Optional[int]) -> Optional[str]:
    if exit_code != 127:
        return None
    words = command.strip().split()
    tool = words[0] if words else command
    return TOOL_HINTS.get(tool, f"'{tool}' was not found on PATH inside the job environment.")


# ----------------------------------------------------------------------
# Execution backends
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class CommandResult:
    exit_code: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool = False


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


class LiveProcesses:
    """
    Process groups (and containers) started by running jobs.

    Jobs run in their own session, so Ctrl-C never reaches them; cancel()
    kills whatever is still running and refuses anything started afterwards.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._procs: Dict[int, subprocess.Popen] = {}
        self._containers: Dict[str, str] = {}
        self.canceled = False

    def add(self, proc: subprocess.Popen) -> bool:
        with self._lock:
            if not self.canceled:
                self._procs[proc.pid] = proc
                return True
        _kill_group(proc)
        return False

    def discard(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.pop(proc.pid, None)

    def add_container(self, name: str, docker: str) -> None:
        with self._lock:
            self._containers[name] = docker

    def discard_container(self, name: str) -> None:
        with self._lock:
            self._containers.pop(name, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._procs)

    def cancel(self) -> None:
        with self._lock:
            self.canceled = True
            procs = list(self._procs.values())
            containers = list(self._containers.items())
        for proc in procs:
            _kill_group(proc)
        for name, docker in containers:
            # killing the client leaves the container running
            subprocess.run([docker, "kill", name], capture_output=True, check=False)


def _run_process(
    args,
    *,
    shell: bool,
    cwd: Path,
    env: Mapping[str, str],
    timeout: Optional[float],
    live: Optional[LiveProcesses] = None,
) -> CommandResult:
    # own process group, so a timeout takes down everything the shell started
    proc = subprocess.Popen(
        args,
        shell=shell,
        cwd=str(cwd),
        env=dict(env),
        text=True,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=True,
    )
    if live is not None:
        live.add(proc)
    try:
        out, err = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_group(proc)
        out, err = proc.communicate()
        return CommandResult(exit_code=None, stdout=out or "", stderr=err or "", timed_out=True)
    finally:
        if live is not None:
            live.discard(proc)
    return CommandResult(exit_code=proc.returncode, stdout=out or "", stderr=err or "")


class SubprocessBackend:
    """Runs each command through the system shell inside the job sandbox."""

    def __init__(self, live: Optional[LiveProcesses] = None):
        self.live = live

    def project_dir(self, sandbox: Path) -> str:
        return str(sandbox)

    def run(self, command: str, *, cwd: Path, env: Mapping[str, str], timeout: Optional[float]) -> CommandResult:
        return _run_process(command, shell=True, cwd=cwd, env=env, timeout=timeout, live=self.live)


class DockerBackend:
    """
    Runs each command in a throwaway container with the sandbox mounted at
    /workspace. The container runtime is only driven through its CLI.
    """

    def __init__(self, image: str, docker: str = "docker", live: Optional[LiveProcesses] = None):
        self.image = image
        self.docker = docker
        self.live = live

    def project_dir(self, sandbox: Path) -> str:
        return CONTAINER_WORKDIR

    def command_line(self, command: str, *, cwd: Path, env: Mapping[str, str], name: str) -> List[str]:
        cmd = [self.docker, "run", "--rm", "--name", name]
        cmd.extend(["-v", f"{Path(cwd).resolve()}:{CONTAINER_WORKDIR}"])
        cmd.extend(["-w", CONTAINER_WORKDIR])
        for key, value in env.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.append(self.image)
        cmd.extend(["sh", "-c", command])
        return cmd

    def run(self, command: str, *, cwd: Path, env: Mapping[str, str], timeout: Optional[float]) -> CommandResult:
        name = f"localci-{uuid.uuid4().hex[:12]}"
        argv = self.command_line(command, cwd=cwd, env=env, name=name)
        # job variables go to the container via -e, not to the client
        client_env = {k: v for k, v in os.environ.items() if k in ("PATH", "HOME", "DOCKER_HOST")}
        if self.live is not None:
            self.live.add_container(name, self.docker)
        try:
            result = _run_process(argv, shell=False, cwd=cwd, env=client_env, timeout=timeout, live=self.live)
        except FileNotFoundError:
            return CommandResult(exit_code=127, stdout="", stderr=f"{self.docker}: command not found\n")
        finally:
            if self.live is not None:
                self.live.discard_container(name)
        if result.timed_out:
            # killing the client leaves the container running
            subprocess.run([self.docker, "kill", name], capture_output=True, check=False)
        return result


# ----------------------------------------------------------------------
# Executor
# ----------------------------------------------------------------------

@dataclass
class JobOutcome:
    status: str  # "succeeded" | "failed"
    exit_code: Optional[int] = None
    reason: Optional[str] = None  # None | "exit_code" | "timeout" | "scope" | "variable" | "error" | "interrupted"
    stdout: str = ""
    stderr: str = ""
    artifacts: List[str] = field(default_factory=list)
    attempts: List[Attempt] = field(default_factory=list)
    warning: bool = False
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


def _sanitize(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", name)


class JobExecutor:
    """
    Runs one job at a time (per call) in a fresh sandbox directory.

    Safe to call from several worker threads at once: every job gets its own
    sandbox path and only writes its own artifact keys.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        store: ArtifactStore,
        *,
        settings: Optional[Settings] = None,
        project_dir: str | Path | None = None,
        overrides: Optional[Mapping[str, str]] = None,
        pipeline_id: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
        console: Optional[Console] = None,
        keep_sandbox: bool = False,
    ):
        self.pipeline = pipeline
        self.store = store
        self.settings = settings or Settings()
        self.project_dir = Path(project_dir).resolve() if project_dir is not None else None
        self.overrides = dict(overrides or {})
        self.pipeline_id = pipeline_id or uuid.uuid4().hex[:8]
        self.environ = os.environ if environ is None else environ
        self.console = console or get_console()
        self.keep_sandbox = keep_sandbox
        self.live = LiveProcesses()

        base = Path(self.settings.workdir) if self.settings.workdir else Path(tempfile.gettempdir()) / "localci"
        self.sandbox_root = base.resolve() / self.pipeline_id

    def cancel(self) -> None:
        """Kill every running command; later commands are not started."""
        self.live.cancel()

    def cleanup(self) -> None:
        if not self.keep_sandbox:
            shutil.rmtree(self.sandbox_root, ignore_errors=True)

    # ---- variables ----

    def backend_for(self, job: Job):
        if job.image:
            return DockerBackend(job.image, docker=self.settings.docker, live=self.live)
        return SubprocessBackend(live=self.live)

    def sandbox_for(self, job: Job) -> Path:
        return self.sandbox_root / f"{job.index:03d}-{_sanitize(job.name)}"

    def variables_for(self, job: Job, *, upstream_warning: bool = False) -> Dict[str, str]:
        """
        Resolve a job's variables.

        Precedence (highest first): CLI overrides > job > stage > pipeline >
        predefined CI_* > whitelisted host variables. Unknown references
        resolve to "" with a warning, or raise VariableError under the
        "fail" policy.
        """
        stage = self.pipeline.stage_of(job)
        sandbox = self.sandbox_for(job)
        backend = self.backend_for(job)

        passthrough = {k: self.environ[k] for k in self.settings.passthrough_env if k in self.environ}
        predefined = {
            "CI": "true",
            "CI_JOB_NAME": job.name,
            "CI_JOB_STAGE": job.stage,
            "CI_JOB_ATTEMPT": "1",
            "CI_PIPELINE_ID": self.pipeline_id,
            "CI_PROJECT_DIR": backend.project_dir(sandbox),
            "CI_UPSTREAM_WARNING": "true" if upstream_warning else "false",
        }

        def on_missing(name: str) -> str:
            if self.settings.variable_policy == "fail":
                raise VariableError(name, f"Job '{job.name}': variable '{name}' is not defined")
            self.console.print_warning(f"[{job.name}] variable '{name}' is not defined, using an empty value")
            return ""

        layers = [
            passthrough,
            predefined,
            dict(self.pipeline.variables),
            dict(stage.variables),
            dict(job.variables),
            self.overrides,
        ]
        resolved = resolve_layers(layers, on_missing)
        if job.image:
            # host values make no sense inside a container unless a layer set them
            for k in passthrough:
                if resolved.get(k) == passthrough[k] and not any(k in layer for layer in layers[1:]):
                    resolved.pop(k, None)
        return resolved

    # ---- execution ----

    def _prepare_sandbox(self, job: Job) -> Path:
        sandbox = self.sandbox_for(job)
        if sandbox.exists():
            shutil.rmtree(sandbox)
        if self.project_dir is not None:
            shutil.copytree(
                self.project_dir,
                sandbox,
                symlinks=True,
                ignore=shutil.ignore_patterns(*SANDBOX_IGNORE),
            )
        else:
            sandbox.mkdir(parents=True)
        return sandbox

    def _attempt(
        self,
        job: Job,
        variables: Mapping[str, str],
        artifacts: ScopedArtifacts,
        number: int,
    ) -> tuple[Attempt, List[str], Optional[LocalCIError]]:
        started = time.time()
        stdout: List[str] = []
        stderr: List[str] = []
        sandbox = self._prepare_sandbox(job)
        backend = self.backend_for(job)

        def done(status: str, exit_code: Optional[int], command: Optional[str] = None) -> Attempt:
            return Attempt(
                number=number,
                started_at=started,
                finished_at=time.time(),
                exit_code=exit_code,
                status=status,
                command=command,
                stdout=_tail("".join(stdout)),
                stderr=_tail("".join(stderr)),
            )

        try:
            try:
                restored = artifacts.materialize(sandbox)
            except ScopeError as e:
                stderr.append(f"{e}\n")
                return done("error", None), [], e
            if restored:
                self.console.print_debug(f"[{job.name}] restored {len(restored)} artifact(s)")

            env = {**variables, "CI_JOB_ATTEMPT": str(number)}
            deadline = time.monotonic() + job.timeout if job.timeout else None

            for command in job.script:
                if self.live.canceled:
                    return done("canceled", None, command), [], None

                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        err = JobTimeoutError(job=job.name, command=command, exit_code=None, timeout=job.timeout)
                        stderr.append(f"{err}\n")
                        return done("timeout", None, command), [], err

                self.console.print_command(job.name, command)
                result = backend.run(command, cwd=sandbox, env=env, timeout=remaining)
                stdout.append(result.stdout)
                stderr.append(result.stderr)

                if self.live.canceled:
                    return done("canceled", result.exit_code, command), [], None

                if result.timed_out:
                    err = JobTimeoutError(job=job.name, command=command, exit_code=None, timeout=job.timeout)
                    stderr.append(f"{err}\n")
                    return done("timeout", None, command), [], err

                if result.exit_code != 0:
                    err = JobError(
                        job=job.name,
                        command=command,
                        exit_code=result.exit_code,
                        hint=_hint_for(command, result.exit_code),
                    )
                    if err.hint:
                        stderr.append(f"hint: {err.hint}\n")
                    return done("failed", result.exit_code, command), [], err

            stored: List[str] = []
            if job.artifacts:
                stored, unmatched = self.store.collect(job.name, sandbox, job.artifacts)
                for pattern in unmatched:
                    self.console.print_warning(f"[{job.name}] artifact pattern '{pattern}' matched no files")
            return done("succeeded", 0), stored, None
        finally:
            if not self.keep_sandbox:
                shutil.rmtree(sandbox, ignore_errors=True)

    def execute(
        self,
        job: Job,
        variables: Mapping[str, str],
        artifacts: ScopedArtifacts,
    ) -> JobOutcome:
        """
        Run a job's commands in order, honoring timeout, retries and
        allow_failure. Never raises for job-level failures; they come back
        as a failed JobOutcome.
        """
        attempts: List[Attempt] = []
        produced: List[str] = []
        error: Optional[LocalCIError] = None

        for number in range(1, job.retries + 2):
            self.console.print_job_start(job.name, job.stage, number)
            attempt, produced, error = self._attempt(job, variables, artifacts, number)
            attempts.append(attempt)
            if attempt.status == "succeeded":
                break
            if attempt.status in ("timeout", "error", "canceled"):
                break  # not retried

        last = attempts[-1]
        outcome = JobOutcome(
            status="succeeded",
            exit_code=last.exit_code,
            stdout=last.stdout,
            stderr=last.stderr,
            artifacts=produced,
            attempts=attempts,
            error=error,
        )
        if last.status == "succeeded":
            return outcome

        outcome.reason = {
            "failed": "exit_code",
            "timeout": "timeout",
            "error": "scope",
            "canceled": "interrupted",
        }[last.status]
        if job.allow_failure and last.status != "canceled":
            outcome.warning = True
        else:
            outcome.status = "failed"
        return outcome

