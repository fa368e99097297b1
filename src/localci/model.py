# model.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import pydantic

from .errors import ValidationError, VariableError
from .schema import JobSpec, PipelineSpec, StageSpec
from .variables import PREDEFINED_VARIABLES, check_syntax, unresolved

DEFAULT_STAGES = ("build", "test", "deploy")

POST_KEYS = ("always", "success", "failure", "unstable")


def _frozen(mapping: Optional[Mapping[str, str]]) -> Mapping[str, str]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class Stage:
    name: str
    index: int
    variables: Mapping[str, str] = field(default_factory=lambda: _frozen({}))


@dataclass(frozen=True)
class Job:
    """
    A CI job: ordered shell commands + dependencies + execution policy.

    References to other jobs (`needs`, `dependencies`) are indices into
    Pipeline.jobs. `needs=None` means "not declared" and lets the resolver
    fall back to stage ordering; an empty tuple means "no dependencies".
    """
    index: int
    name: str
    stage: str
    stage_index: int
    script: Tuple[str, ...]
    variables: Mapping[str, str] = field(default_factory=lambda: _frozen({}))
    needs: Optional[Tuple[int, ...]] = None
    artifacts: Tuple[str, ...] = ()
    when: str = "on_success"
    allow_failure: bool = False
    retries: int = 0
    timeout: Optional[float] = None
    image: Optional[str] = None
    dependencies: Optional[Tuple[int, ...]] = None  # artifact sources; None -> whole closure

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.stage_index, self.index)


@dataclass(frozen=True)
class Pipeline:
    stages: Tuple[Stage, ...]
    jobs: Tuple[Job, ...]
    variables: Mapping[str, str] = field(default_factory=lambda: _frozen({}))
    post: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: MappingProxyType({}))
    warnings: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_name", {j.name: j for j in self.jobs})

    def __len__(self) -> int:
        return len(self.jobs)

    def job(self, name: str) -> Job:
        try:
            return self._by_name[name]  # type: ignore[attr-defined]
        except KeyError:
            raise ValidationError(f"Unknown job: {name!r}") from None

    def has_job(self, name: str) -> bool:
        return name in self._by_name  # type: ignore[attr-defined]

    def stage_of(self, job: Job) -> Stage:
        return self.stages[job.stage_index]

    def names(self, indices: Iterable[int]) -> List[str]:
        return [self.jobs[i].name for i in indices]


# ----------------------------------------------------------------------
# Construction
# ----------------------------------------------------------------------

def _pydantic_problems(err: pydantic.ValidationError) -> List[str]:
    problems = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e.get("loc", ())) or "<root>"
        problems.append(f"{loc}: {e.get('msg')}")
    return problems


def _parse_spec(definition: Union[Mapping[str, Any], PipelineSpec]) -> PipelineSpec:
    if isinstance(definition, PipelineSpec):
        return definition
    if not isinstance(definition, Mapping):
        raise ValidationError(
            f"Pipeline definition must be a mapping, got {type(definition).__name__}"
        )
    try:
        return PipelineSpec.model_validate(dict(definition))
    except pydantic.ValidationError as e:
        raise ValidationError("Invalid pipeline definition", _pydantic_problems(e)) from None


def _named_jobs(spec: PipelineSpec, problems: List[str]) -> List[Tuple[str, JobSpec]]:
    out: List[Tuple[str, JobSpec]] = []
    for name, js in spec.jobs.items():
        if not name:
            problems.append("jobs: empty job id")
            continue
        if js.name is not None and js.name != name:
            problems.append(f"jobs.{name}: name field {js.name!r} does not match key")
        out.append((name, js))
    return out


def _stages(spec: PipelineSpec, problems: List[str]) -> List[Stage]:
    raw: Sequence[StageSpec] = (
        spec.stages if spec.stages is not None else [StageSpec(name=n) for n in DEFAULT_STAGES]
    )
    stages: List[Stage] = []
    seen = set()
    for entry in raw:
        name, variables = entry.name, entry.variables
        if name in seen:
            problems.append(f"Duplicate stage: {name!r}")
            continue
        seen.add(name)
        stages.append(Stage(name=name, index=len(stages), variables=_frozen(variables)))
    if not stages:
        problems.append("stages: at least one stage is required")
    return stages


def _check_variable_syntax(spec: PipelineSpec, stages: Sequence[Stage], named: Sequence[Tuple[str, JobSpec]]) -> None:
    for key, value in spec.variables.items():
        check_syntax(value, where=f"variables.{key}")
    for st in stages:
        for key, value in st.variables.items():
            check_syntax(value, where=f"stages.{st.name}.variables.{key}")
    for name, js in named:
        for key, value in js.variables.items():
            check_syntax(value, where=f"jobs.{name}.variables.{key}")
        for i, cmd in enumerate(js.script):
            check_syntax(cmd, where=f"jobs.{name}.script.{i}")
        if js.image:
            check_syntax(js.image, where=f"jobs.{name}.image")


def load_pipeline(
    definition: Union[Mapping[str, Any], PipelineSpec],
    *,
    variable_policy: str = "warn",
    known_variables: Iterable[str] = (),
) -> Pipeline:
    """
    Build a validated, immutable Pipeline from a parsed definition.

    Raises:
      ValidationError: bad shape, unknown references, duplicate ids,
                       undeclared stages, needs pointing at a later stage
      VariableError:   malformed interpolation syntax, or (policy "fail")
                       a reference to a variable defined nowhere
    """
    if variable_policy not in ("warn", "fail"):
        raise ValueError(f"variable_policy must be 'warn' or 'fail', got {variable_policy!r}")

    spec = _parse_spec(definition)
    problems: List[str] = []

    stages = _stages(spec, problems)
    stage_by_name = {s.name: s for s in stages}
    named = _named_jobs(spec, problems)
    index_of = {name: i for i, (name, _) in enumerate(named)}

    # pass 1: stage assignment
    stage_idx: Dict[str, int] = {}
    for name, js in named:
        if js.stage is None:
            if stages:
                stage_idx[name] = 0
        elif js.stage not in stage_by_name:
            problems.append(
                f"Job '{name}' uses undeclared stage '{js.stage}'. Declared stages: {[s.name for s in stages]}"
            )
        else:
            stage_idx[name] = stage_by_name[js.stage].index

    # pass 2: references
    jobs: List[Job] = []
    for name, js in named:
        needs: Optional[Tuple[int, ...]] = None
        if js.needs is not None:
            resolved_needs: List[int] = []
            for dep in js.needs:
                if dep not in index_of:
                    problems.append(
                        f"Job '{name}' needs missing job '{dep}'. Known jobs: {sorted(index_of)}"
                    )
                    continue
                if name in stage_idx and dep in stage_idx and stage_idx[dep] > stage_idx[name]:
                    problems.append(
                        f"Job '{name}' (stage '{stages[stage_idx[name]].name}') needs '{dep}' "
                        f"from later stage '{stages[stage_idx[dep]].name}'"
                    )
                    continue
                if index_of[dep] not in resolved_needs:
                    resolved_needs.append(index_of[dep])
            needs = tuple(resolved_needs)

        dependencies: Optional[Tuple[int, ...]] = None
        if js.dependencies is not None:
            deps: List[int] = []
            for dep in js.dependencies:
                if dep not in index_of:
                    problems.append(f"Job '{name}' lists missing job '{dep}' in dependencies")
                    continue
                if index_of[dep] not in deps:
                    deps.append(index_of[dep])
            dependencies = tuple(deps)

        if name not in stage_idx:
            continue

        jobs.append(
            Job(
                index=index_of[name],
                name=name,
                stage=stages[stage_idx[name]].name,
                stage_index=stage_idx[name],
                script=tuple(js.script),
                variables=_frozen(js.variables),
                needs=needs,
                artifacts=tuple(js.artifacts),
                when=js.when,
                allow_failure=js.allow_failure,
                retries=js.retries,
                timeout=js.timeout,
                image=js.image,
                dependencies=dependencies,
            )
        )

    if problems:
        raise ValidationError("Invalid pipeline definition", problems)

    _check_variable_syntax(spec, stages, named)

    # unresolved references in variable values
    warnings: List[str] = []
    base_known = set(known_variables) | set(PREDEFINED_VARIABLES)
    for job in jobs:
        stage = stages[job.stage_index]
        merged = {**spec.variables, **stage.variables, **job.variables}
        for missing in unresolved(merged, base_known):
            msg = f"Job '{job.name}': variable reference '${missing}' is not defined"
            if variable_policy == "fail":
                raise VariableError(missing, msg)
            if msg not in warnings:
                warnings.append(msg)

    post = {key: tuple(getattr(spec.post, key)) for key in POST_KEYS if getattr(spec.post, key)}

    return Pipeline(
        stages=tuple(stages),
        jobs=tuple(jobs),
        variables=_frozen(spec.variables),
        post=MappingProxyType(post),
        warnings=tuple(warnings),
    )


def select(
    pipeline: Pipeline,
    *,
    jobs: Iterable[str] = (),
    stages: Iterable[str] = (),
) -> Pipeline:
    """
    Restrict a pipeline to the named jobs and/or stages plus everything they
    (transitively) `need`. Implicit stage predecessors that were not selected
    are dropped. With nothing named, the pipeline is returned unchanged.
    """
    job_names = list(jobs)
    stage_names = list(stages)
    if not job_names and not stage_names:
        return pipeline

    problems: List[str] = []
    wanted: List[int] = []
    for name in job_names:
        if not pipeline.has_job(name):
            problems.append(f"Unknown job: {name!r}")
            continue
        wanted.append(pipeline.job(name).index)

    declared = {s.name for s in pipeline.stages}
    for st in stage_names:
        if st not in declared:
            problems.append(f"Unknown stage: {st!r}")
            continue
        wanted.extend(j.index for j in pipeline.jobs if j.stage == st)

    if problems:
        raise ValidationError("Invalid selection", problems)

    keep = set()
    stack = list(wanted)
    while stack:
        i = stack.pop()
        if i in keep:
            continue
        keep.add(i)
        stack.extend(pipeline.jobs[i].needs or ())

    old_to_new = {old: new for new, old in enumerate(sorted(keep))}

    def remap(refs: Optional[Tuple[int, ...]]) -> Optional[Tuple[int, ...]]:
        if refs is None:
            return None
        return tuple(old_to_new[r] for r in refs if r in old_to_new)

    kept_jobs = tuple(
        replace(
            pipeline.jobs[old],
            index=new,
            needs=remap(pipeline.jobs[old].needs),
            dependencies=remap(pipeline.jobs[old].dependencies),
        )
        for old, new in sorted(old_to_new.items())
    )

    return Pipeline(
        stages=pipeline.stages,
        jobs=kept_jobs,
        variables=pipeline.variables,
        post=pipeline.post,
        warnings=pipeline.warnings,
    )
