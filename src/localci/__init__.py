from .dsl import job, sh, matrix, wf, JobBuilder, build
from .model import Job, Pipeline, Stage, load_pipeline, select
from .dag import ExecutionGraph, resolve
from .runner import run_pipeline
from .executor import JobExecutor
from .artifacts import ArtifactStore
from .report import JobRun, JobState, RunReport
from .errors import (
    LocalCIError,
    ValidationError,
    CycleError,
    VariableError,
    JobError,
    JobTimeoutError,
    ScopeError,
    ArtifactNotFound,
    DefinitionNotFound,
)

__all__ = [
    "job", "sh", "matrix", "wf", "JobBuilder", "build",
    "Job", "Pipeline", "Stage", "load_pipeline", "select",
    "ExecutionGraph", "resolve", "run_pipeline", "JobExecutor", "ArtifactStore",
    "JobRun", "JobState", "RunReport",
    "LocalCIError", "ValidationError", "CycleError", "VariableError", "JobError",
    "JobTimeoutError", "ScopeError", "ArtifactNotFound", "DefinitionNotFound",
]
