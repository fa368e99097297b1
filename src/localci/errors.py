# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence


class LocalCIError(Exception):
    """Base class for every error raised by localci."""


# ----------------------------------------------------------------------
# Structural errors (raised before any job runs)
# ----------------------------------------------------------------------

class ValidationError(LocalCIError):
    """
    The pipeline definition is structurally invalid: unknown references,
    duplicate job ids, undeclared stages, bad field values.

    `problems` holds every issue found, not just the first one.
    """

    def __init__(self, message: str, problems: Optional[Sequence[str]] = None):
        self.problems: List[str] = list(problems or [])
        super().__init__(message)

    def __str__(self) -> str:
        msg = super().__str__()
        if not self.problems:
            return msg
        return "\n".join([msg, *(f"  - {p}" for p in self.problems)])


class CycleError(LocalCIError):
    """Dependency cycle. `cycle` is the path, first job repeated at the end."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle: List[str] = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")

    @property
    def jobs(self) -> List[str]:
        # every job on the cycle, once
        return list(dict.fromkeys(self.cycle))


class VariableError(LocalCIError):
    """Malformed interpolation or unresolved variable reference."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(message)


class DefinitionNotFound(LocalCIError):
    pass


# ----------------------------------------------------------------------
# Job-level errors (stay inside one JobRun)
# ----------------------------------------------------------------------

@dataclass
class JobError(LocalCIError):
    job: str
    command: str
    exit_code: Optional[int]
    hint: Optional[str] = None

    def __str__(self) -> str:
        lines = [f"[{self.job}] command failed (exit={self.exit_code}): {self.command}"]
        if self.hint:
            lines.append(f"hint: {self.hint}")
        return "\n".join(lines)


@dataclass
class JobTimeoutError(JobError):
    timeout: float = 0.0

    def __str__(self) -> str:
        return f"[{self.job}] timed out after {self.timeout:g}s while running: {self.command}"


@dataclass
class ScopeError(LocalCIError):
    """A job tried to read an artifact from a job outside its dependency closure."""
    requester: str
    producer: str
    path: Optional[str] = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        target = f"{self.producer}:{self.path}" if self.path else self.producer
        return (
            f"Job '{self.requester}' cannot read artifacts of '{target}': "
            f"'{self.producer}' is not one of its dependencies"
        )


class ArtifactNotFound(LocalCIError, KeyError):
    def __init__(self, job: str, path: str):
        self.job = job
        self.path = path
        super().__init__(f"No artifact '{path}' produced by job '{job}'")

    def __str__(self) -> str:
        return self.args[0]
