"""Console output formatting utilities for localci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from localci.dag import ExecutionGraph
    from localci.report import JobRun, RunReport

# lines of captured output shown for a failed job (all of it in debug mode)
FAILURE_TAIL_LINES = 20


def _fmt_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return "-"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m{secs:02d}s"


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # jobs report from worker threads; keep multi-line blocks together
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        job_count: int,
        pipeline_id: str,
        concurrency: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nPIPELINE STARTED",
            f"Workflow: {workflow}",
            f"Pipeline: {pipeline_id}",
            f"Jobs: {job_count}",
            f"Concurrency: {concurrency}",
            "",
        )

    def print_job_start(self, name: str, stage: str, attempt: int = 1) -> None:
        """Print job start message."""
        suffix = f" (attempt {attempt})" if attempt > 1 else ""
        self._out(f"[{name}] STARTED in stage '{stage}'{suffix}")

    def print_command(self, name: str, command: str) -> None:
        """Print command start message."""
        first = command.strip().splitlines()[0] if command.strip() else command
        self._out(f"[{name}] $ {first}")

    def print_job_finished(self, run: "JobRun") -> None:
        """Print job completion, with the tail of its output on failure."""
        lines = [f"[{run.name}] {run.label.upper()} in {_fmt_duration(run.duration)}"]
        if run.state.value == "failed" or (run.warning and self.debug):
            output = "\n".join(s for s in (run.stdout, run.stderr) if s).rstrip()
            if output:
                out_lines = output.splitlines()
                if not self.debug:
                    out_lines = out_lines[-FAILURE_TAIL_LINES:]
                lines.extend(f"[{run.name}]   | {line}" for line in out_lines)
            if run.exit_code is not None:
                lines.append(f"[{run.name}] Exit code: {run.exit_code}")
        self._out(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"[{name}] SKIPPED ({reason})")

    def print_job_canceled(self, name: str, reason: str) -> None:
        self._out(f"[{name}] CANCELED ({reason})")

    def print_plan(self, graph: "ExecutionGraph") -> None:
        """Print the resolved execution order (dry run)."""
        pipeline = graph.pipeline
        lines = ["\nEXECUTION PLAN"]
        for n, level in enumerate(graph.levels(), start=1):
            lines.append(f"=== Level {n}: {level} ===")
        lines.append("")
        lines.append("Order:")
        for pos, i in enumerate(graph.order, start=1):
            job = pipeline.jobs[i]
            deps = sorted(pipeline.names(graph.deps[i]))
            extra = f" needs {deps}" if deps else ""
            flags = []
            if job.when != "on_success":
                flags.append(f"when={job.when}")
            if job.allow_failure:
                flags.append("allow_failure")
            if job.retries:
                flags.append(f"retries={job.retries}")
            tail = f" [{', '.join(flags)}]" if flags else ""
            lines.append(f"  {pos}. {job.name} ({job.stage}){extra}{tail}")
        if graph.unreachable:
            lines.append("")
            lines.append("Unreachable (an ancestor is when=never):")
            lines.extend(f"  {name}" for name in pipeline.names(sorted(graph.unreachable)))
        self._out(*lines)

    def print_job_list(self, rows: Iterable[tuple]) -> None:
        lines = [f"  {name:<24} {stage:<12} {when:<11} {needs}" for name, stage, when, needs in rows]
        self._out(f"  {'JOB':<24} {'STAGE':<12} {'WHEN':<11} NEEDS", *lines)

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary."""
        width = max([len(r.name) for r in report.runs] + [3])
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for run in report.runs:
            lines.append(
                f"  {run.name:<{width}}  {run.stage:<12}  {run.label.upper():<28}  {_fmt_duration(run.duration)}"
            )
        c = report.counts
        lines.append("")
        lines.append(
            f"Total: {c['total']}  Succeeded: {c['succeeded']}  Failed: {c['failed']}  "
            f"Skipped: {c['skipped']}  Canceled: {c['canceled']}  Warnings: {c['warnings']}"
        )
        lines.append(f"Duration: {_fmt_duration(report.duration)}")
        verdict = report.verdict.upper()
        if report.unstable:
            verdict += " (with warnings)"
        lines.append(f"PIPELINE {verdict}")
        self._out(*lines)

    def print_warning(self, message: str) -> None:
        """Print a warning on stderr."""
        self._out(f"WARNING: {message}", err=True)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", f"{message}"]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
