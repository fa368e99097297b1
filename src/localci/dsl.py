# src/localci/dsl.py
from __future__ import annotations

import shlex
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

import pydantic

from .errors import ValidationError
from .schema import JobSpec, PipelineSpec


def _spec(cls, **fields):
    try:
        return cls(**fields)
    except pydantic.ValidationError as e:
        problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ValidationError(f"Invalid {cls.__name__}", problems) from None


# ---------------------------------------------------------------------
# Command helper
# ---------------------------------------------------------------------

def sh(cmd: str, *, cwd: str | None = None) -> str:
    """A shell command, optionally run from a sub-directory of the job sandbox."""
    if cwd:
        return f"cd {shlex.quote(cwd)} && {cmd}"
    return cmd


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *commands: str,  # allow: job("x", "make", sh("pytest", cwd="tests"))
    script: Optional[List[str]] = None,  # allow: job("x", script=[...])
    stage: Optional[str] = None,
    needs: Optional[List[str]] = None,
    variables: Optional[Dict[str, Any]] = None,
    when: str = "on_success",
    artifacts: Optional[List[str]] = None,
    allow_failure: bool = False,
    retries: int = 0,
    timeout: Union[int, float, str, None] = None,
    image: Optional[str] = None,
    dependencies: Optional[List[str]] = None,
    cwd: str | None = None,  # default cwd applied to every command
) -> JobSpec:
    commands_final: List[str] = []
    if script:
        commands_final.extend(script)
    commands_final.extend(commands)

    if not commands_final:
        raise ValidationError(f"job({name!r}) must have at least one command")

    if cwd is not None:
        commands_final = [sh(c, cwd=cwd) for c in commands_final]

    return _spec(
        JobSpec,
        name=name,
        stage=stage,
        script=commands_final,
        needs=needs,
        variables=variables or {},
        when=when,
        artifacts=artifacts or [],
        allow_failure=allow_failure,
        retries=retries,
        timeout=timeout,
        image=image,
        dependencies=dependencies,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._stage: Optional[str] = None
        self._needs: Optional[List[str]] = None
        self._script: List[str] = []
        self._variables: Dict[str, str] = {}
        self._artifacts: List[str] = []
        self._when = "on_success"
        self._allow_failure = False
        self._retries = 0
        self._timeout: Union[int, float, str, None] = None
        self._image: Optional[str] = None

    def in_stage(self, stage: str):
        self._stage = stage
        return self

    def depends_on(self, *job_names: str):
        if self._needs is None:
            self._needs = []
        self._needs.extend(job_names)
        return self

    def define_step(self, run: str, cwd: str | None = None):
        self._script.append(sh(run, cwd=cwd))
        return self

    def with_variables(self, **variables):
        # force values to str, they end up in a process environment
        self._variables.update({k: str(v) for k, v in variables.items()})
        return self

    def with_artifacts(self, *paths: str):
        self._artifacts.extend(paths)
        return self

    def run_when(self, when: str):
        self._when = when
        return self

    def allow_failure(self, allowed: bool = True):
        self._allow_failure = allowed
        return self

    def retry(self, times: int):
        self._retries = times
        return self

    def with_timeout(self, timeout: Union[int, float, str]):
        self._timeout = timeout
        return self

    def in_image(self, image: str):
        self._image = image
        return self

    def build(self) -> JobSpec:
        if not self._script:
            raise ValidationError(f"Job '{self.name}' has no steps")

        return job(
            self.name,
            script=self._script,
            stage=self._stage,
            needs=self._needs,
            variables=self._variables,
            when=self._when,
            artifacts=self._artifacts,
            allow_failure=self._allow_failure,
            retries=self._retries,
            timeout=self._timeout,
            image=self._image,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander. Every generated job gets `key` as a variable
    holding its value, unless the builder already set one.

    Example:
        matrix("PY", ["3.11", "3.12"]).jobs(
            lambda v: job(f"test-py{v}", "tox -e py$PY")
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], JobSpec]) -> List[JobSpec]:
        out = []
        for value in self.values:
            spec = builder(value)
            variables = {self.key: str(value), **spec.variables}
            out.append(spec.model_copy(update={"variables": variables}))
        return out


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: Union[JobSpec, Sequence[JobSpec]],
    stages: Optional[List[Any]] = None,
    variables: Optional[Dict[str, Any]] = None,
    post: Optional[Dict[str, List[str]]] = None,
) -> PipelineSpec:
    """
    Workflow definition helper. Lists (e.g. from matrix) are flattened.

    Users can write:
        from localci import wf, job

        def workflow():
            return wf(
                job("build", "make", stage="build"),
                job("test", "make test", stage="test"),
                stages=["build", "test"],
            )

    Or define PIPELINE = wf(...) directly.
    """
    flat: List[JobSpec] = []
    for entry in jobs:
        if isinstance(entry, JobSpec):
            flat.append(entry)
        else:
            flat.extend(entry)

    by_name: Dict[str, JobSpec] = {}
    duplicates: List[str] = []
    for spec in flat:
        if spec.name in by_name:
            duplicates.append(f"Duplicate job id: {spec.name!r}")
            continue
        by_name[spec.name] = spec
    if duplicates:
        raise ValidationError("Invalid pipeline definition", duplicates)

    return _spec(
        PipelineSpec,
        stages=stages,
        variables=variables or {},
        jobs=by_name,
        post=post or {},
    )
