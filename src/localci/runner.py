from __future__ import annotations

import heapq
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional, Tuple

from .artifacts import ScopedArtifacts
from .dag import ExecutionGraph
from .errors import VariableError
from .executor import JobOutcome
from .model import Job
from .report import JobRun, JobState, RunReport
from .settings import default_concurrency
from .ui.console import Console, get_console

WARNING_POLICIES = ("isolate", "propagate")

# local dev ---> definition ---> resolve ---> schedule ---> report


# ----------------------------------------------------------------------
# Worker side
# ----------------------------------------------------------------------

def _run_job(executor, job: Job, upstream_warning: bool, artifacts: ScopedArtifacts) -> JobOutcome:
    """
    Resolve variables and execute one job on a worker thread.

    Anything going wrong here fails this job only; the coordinator keeps
    scheduling unrelated work.
    """
    try:
        variables = executor.variables_for(job, upstream_warning=upstream_warning)
    except VariableError as e:
        return JobOutcome(status="failed", reason="variable", stderr=f"{e}\n", error=e)
    return executor.execute(job, variables, artifacts)


# ----------------------------------------------------------------------
# Coordinator
# ----------------------------------------------------------------------

class Scheduler:
    """
    Dependency-driven dispatcher.

    Keeps three sets: pending (unmet dependencies), ready (heap keyed by
    stage then declaration order) and in-flight (submitted to the pool).
    Only the coordinator thread touches JobRun records.
    """

    def __init__(
        self,
        graph: ExecutionGraph,
        executor,
        *,
        max_concurrency: Optional[int] = None,
        fail_fast: bool = False,
        manual: Iterable[str] = (),
        warning_policy: str = "isolate",
        console: Optional[Console] = None,
    ):
        if warning_policy not in WARNING_POLICIES:
            raise ValueError(f"warning_policy must be one of {WARNING_POLICIES}, got {warning_policy!r}")
        if max_concurrency is None:
            max_concurrency = default_concurrency()
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")

        self.graph = graph
        self.pipeline = graph.pipeline
        self.executor = executor
        self.max_concurrency = max_concurrency
        self.fail_fast = fail_fast
        self.manual = set(manual)
        self.warning_policy = warning_policy
        self.console = console or get_console()

        n = len(self.pipeline.jobs)
        self.runs: List[JobRun] = [
            JobRun(name=j.name, stage=j.stage, allow_failure=j.allow_failure) for j in self.pipeline.jobs
        ]
        self.unmet: List[int] = [len(d) for d in graph.deps]
        self.upstream_failed: List[bool] = [False] * n
        self.upstream_warning: List[bool] = [False] * n
        self.pending = set(range(n))
        self.ready: List[Tuple[int, int]] = []
        self.in_flight: Dict[Future, int] = {}
        self._position = {job_index: pos for pos, job_index in enumerate(graph.order)}

    # ---- readiness ----

    def _decide(self, i: int) -> Optional[str]:
        """
        Return None if job i should run, else the reason it is skipped.

        Upstream failure reaches a job through every edge. A dependency that
        was skipped or canceled only blocks jobs naming it in `needs`; implicit
        stage dependents are exempt, so an on_failure job that never fired does
        not hold up the next stage.
        """
        job = self.pipeline.jobs[i]
        deps = self.graph.deps[i]

        self.upstream_failed[i] = any(
            self.runs[d].state == JobState.FAILED or self.upstream_failed[d] for d in deps
        )
        if self.warning_policy == "propagate":
            self.upstream_warning[i] = any(self.runs[d].warning or self.upstream_warning[d] for d in deps)

        # skips caused by `when` travel along explicit needs only
        needs_not_run = any(
            self.runs[d].state in (JobState.SKIPPED, JobState.CANCELED) for d in self.graph.explicit[i]
        )

        when = job.when
        if when == "never":
            return "when: never"
        if when == "manual":
            if job.name not in self.manual:
                return "manual"
            when = "on_success"
        if when == "always":
            return None
        if when == "on_failure":
            return None if self.upstream_failed[i] else "no upstream failure"
        # on_success
        if self.upstream_failed[i]:
            return "upstream failed"
        if needs_not_run:
            return "needs did not run"
        return None

    def _finish(self, i: int) -> None:
        """Job i reached a terminal state: release its dependents."""
        work = [i]
        while work:
            done = work.pop()
            for d in self.graph.dependents[done]:
                if self.runs[d].state.terminal:
                    continue
                self.unmet[d] -= 1
                if self.unmet[d] == 0:
                    if self._release(d):
                        work.append(d)

    def _release(self, i: int) -> bool:
        """Move job i out of pending. Returns True if it was skipped on the spot."""
        self.pending.discard(i)
        reason = self._decide(i)
        run = self.runs[i]
        if reason is None:
            run.state = JobState.READY
            heapq.heappush(self.ready, self.pipeline.jobs[i].sort_key)
            return False
        now = time.time()
        run.state = JobState.SKIPPED
        run.reason = reason
        run.started_at = run.finished_at = now
        self.console.print_job_skipped(run.name, reason)
        return True

    def _cancel_remaining(self, reason: str) -> None:
        now = time.time()
        for i in sorted(self.pending | {idx for _, idx in self.ready}):
            run = self.runs[i]
            if run.state.terminal:
                continue
            run.state = JobState.CANCELED
            run.reason = reason
            run.started_at = run.finished_at = now
            self.console.print_job_canceled(run.name, reason)
        self.pending.clear()
        self.ready.clear()

    # ---- dispatch ----

    def _artifacts_for(self, i: int) -> ScopedArtifacts:
        job = self.pipeline.jobs[i]
        closure = sorted(self.graph.closure[i], key=self._position.__getitem__)
        sources = None
        if job.dependencies is not None:
            sources = self.pipeline.names(job.dependencies)
        return self.executor.store.scoped(job.name, self.pipeline.names(closure), sources)

    def _dispatch(self, pool: ThreadPoolExecutor, i: int) -> None:
        job = self.pipeline.jobs[i]
        run = self.runs[i]
        run.state = JobState.RUNNING
        run.started_at = time.time()
        fut = pool.submit(_run_job, self.executor, job, self.upstream_warning[i], self._artifacts_for(i))
        self.in_flight[fut] = i

    def _complete(self, i: int, outcome: JobOutcome) -> None:
        run = self.runs[i]
        run.finished_at = time.time()
        run.state = JobState.SUCCEEDED if outcome.succeeded else JobState.FAILED
        run.exit_code = outcome.exit_code
        run.reason = outcome.reason
        run.stdout = outcome.stdout
        run.stderr = outcome.stderr
        run.artifacts = list(outcome.artifacts)
        run.attempts = list(outcome.attempts)
        run.warning = outcome.warning
        run.upstream_warning = self.upstream_warning[i]
        self.console.print_job_finished(run)

    def run(self) -> RunReport:
        started = time.time()
        interrupted = False

        for i in sorted(self.graph.unreachable):
            self.console.print_warning(
                f"Job '{self.pipeline.jobs[i].name}' can never run: a job it needs is 'when: never'"
            )

        # seed: jobs with no dependencies at all
        seeds = [i for i in self.graph.order if self.unmet[i] == 0]
        skipped_now = [i for i in seeds if self._release(i)]
        for i in skipped_now:
            self._finish(i)

        pool = ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="localci-job")
        try:
            while self.ready or self.in_flight:
                while self.ready and len(self.in_flight) < self.max_concurrency:
                    _, i = heapq.heappop(self.ready)
                    self._dispatch(pool, i)

                if not self.in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready jobs
                fut = next(as_completed(list(self.in_flight.keys())))
                i = self.in_flight.pop(fut)
                try:
                    outcome = fut.result()
                except Exception as e:
                    outcome = JobOutcome(status="failed", reason="error", stderr=f"{e}\n", error=e)
                self._complete(i, outcome)

                if self.fail_fast and self.runs[i].state == JobState.FAILED:
                    self._cancel_remaining("fail-fast")
                self._finish(i)
        except KeyboardInterrupt:
            interrupted = True
            # running commands live in their own session and never see the SIGINT
            cancel = getattr(self.executor, "cancel", None)
            if cancel is not None:
                cancel()
            self._cancel_remaining("interrupted")
            now = time.time()
            for run in self.runs:
                if run.state.terminal:
                    continue
                # in flight, or popped but never completed
                run.state = JobState.CANCELED
                run.reason = "interrupted"
                run.finished_at = now
            self.in_flight.clear()
        finally:
            pool.shutdown(wait=not interrupted, cancel_futures=interrupted)

        if self.pending:
            # only reachable if the graph was not built by resolve()
            self._cancel_remaining("unresolved dependencies")

        return RunReport(
            pipeline_id=getattr(self.executor, "pipeline_id", "local"),
            runs=tuple(self.runs),
            started_at=started,
            finished_at=time.time(),
            interrupted=interrupted,
        )


def run_pipeline(
    graph: ExecutionGraph,
    executor,
    *,
    max_concurrency: Optional[int] = None,
    fail_fast: bool = False,
    manual: Iterable[str] = (),
    warning_policy: str = "isolate",
    console: Optional[Console] = None,
) -> RunReport:
    """
    Execute a resolved pipeline and return the frozen RunReport.

    `executor` provides `store`, `variables_for(job, upstream_warning=...)`
    and `execute(job, variables, artifacts)`; see JobExecutor.
    """
    scheduler = Scheduler(
        graph,
        executor,
        max_concurrency=max_concurrency,
        fail_fast=fail_fast,
        manual=manual,
        warning_policy=warning_policy,
        console=console,
    )
    return scheduler.run()
