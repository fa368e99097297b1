from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple


class JobState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELED = "canceled"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED, JobState.CANCELED)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Attempt:
    """One execution of a job's script, from the first command."""
    number: int
    started_at: float
    finished_at: float
    exit_code: Optional[int]
    status: str  # "succeeded" | "failed" | "timeout" | "error" | "canceled"
    command: Optional[str] = None  # the command that failed, if any
    stdout: str = ""
    stderr: str = ""

    @property
    def duration(self) -> float:
        return max(0.0, self.finished_at - self.started_at)


@dataclass
class JobRun:
    """
    Runtime record for one job in one pipeline run.

    Owned by the scheduler; frozen once the run report is built.
    """
    name: str
    stage: str
    state: JobState = JobState.PENDING
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    artifacts: List[str] = field(default_factory=list)
    attempts: List[Attempt] = field(default_factory=list)
    warning: bool = False
    upstream_warning: bool = False
    allow_failure: bool = False

    def __setattr__(self, key: str, value: Any) -> None:
        if getattr(self, "_frozen", False):
            raise AttributeError(f"JobRun '{self.name}' is read-only once the report is built")
        super().__setattr__(key, value)

    def freeze(self) -> None:
        self.artifacts = tuple(self.artifacts)  # type: ignore[assignment]
        self.attempts = tuple(self.attempts)  # type: ignore[assignment]
        object.__setattr__(self, "_frozen", True)

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return max(0.0, self.finished_at - self.started_at)

    @property
    def label(self) -> str:
        if self.state == JobState.SUCCEEDED and self.warning:
            return "succeeded (warning)"
        if self.reason and self.state in (JobState.FAILED, JobState.SKIPPED, JobState.CANCELED):
            return f"{self.state.value} ({self.reason})"
        return self.state.value

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "stage": self.stage,
            "state": self.state.value,
            "reason": self.reason,
            "exit_code": self.exit_code,
            "warning": self.warning,
            "upstream_warning": self.upstream_warning,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration": self.duration,
            "artifacts": list(self.artifacts),
            "attempts": [
                {
                    "number": a.number,
                    "status": a.status,
                    "exit_code": a.exit_code,
                    "command": a.command,
                    "duration": a.duration,
                }
                for a in self.attempts
            ],
        }


@dataclass(frozen=True)
class RunReport:
    pipeline_id: str
    runs: Tuple[JobRun, ...]
    started_at: float
    finished_at: float
    interrupted: bool = False

    def __post_init__(self) -> None:
        for run in self.runs:
            if not getattr(run, "_frozen", False):
                run.freeze()
        object.__setattr__(self, "_by_name", MappingProxyType({r.name: r for r in self.runs}))

    @property
    def jobs(self) -> Mapping[str, JobRun]:
        return self._by_name  # type: ignore[attr-defined]

    def __getitem__(self, name: str) -> JobRun:
        return self.jobs[name]

    @property
    def duration(self) -> float:
        return max(0.0, self.finished_at - self.started_at)

    def _count(self, state: JobState) -> int:
        return sum(1 for r in self.runs if r.state == state)

    @property
    def counts(self) -> Dict[str, int]:
        return {
            "total": len(self.runs),
            "succeeded": self._count(JobState.SUCCEEDED),
            "failed": self._count(JobState.FAILED),
            "skipped": self._count(JobState.SKIPPED),
            "canceled": self._count(JobState.CANCELED),
            "warnings": sum(1 for r in self.runs if r.warning),
        }

    @property
    def verdict(self) -> str:
        if any(r.state in (JobState.FAILED, JobState.CANCELED) for r in self.runs):
            return "failed"
        return "succeeded"

    @property
    def succeeded(self) -> bool:
        return self.verdict == "succeeded"

    @property
    def unstable(self) -> bool:
        """Succeeded, but at least one job only passed through allow_failure."""
        return self.succeeded and any(r.warning for r in self.runs)

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def outcomes(self) -> Dict[str, str]:
        return {r.name: r.label for r in self.runs}

    def as_dict(self) -> Dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "verdict": self.verdict,
            "unstable": self.unstable,
            "interrupted": self.interrupted,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration": self.duration,
            "counts": self.counts,
            "jobs": [r.as_dict() for r in self.runs],
        }
