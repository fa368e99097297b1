"""
Pipeline-level completion hooks.

A hook is a predicate over the final RunReport plus the commands to hand to
a notifier when it holds. Hooks run once, after the report is frozen; a
failing hook is reported as a warning and never changes any JobRun.
"""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .report import RunReport
from .settings import Settings
from .ui.console import Console, get_console

# evaluation order
HOOK_EVENTS = ("always", "success", "unstable", "failure")

PREDICATES: Dict[str, Callable[[RunReport], bool]] = {
    "always": lambda r: True,
    "success": lambda r: r.succeeded and not r.unstable,
    "unstable": lambda r: r.unstable,
    "failure": lambda r: not r.succeeded,
}


@dataclass(frozen=True)
class HookResult:
    event: str
    command: str
    exit_code: Optional[int]
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandNotifier:
    """Runs hook commands in the shell with the pipeline status in the environment."""

    def __init__(
        self,
        *,
        cwd: str | Path | None = None,
        settings: Optional[Settings] = None,
        environ: Optional[Mapping[str, str]] = None,
        timeout: float = 300,
    ):
        self.cwd = str(cwd) if cwd is not None else None
        self.settings = settings or Settings()
        self.environ = os.environ if environ is None else environ
        self.timeout = timeout

    def __call__(self, event: str, commands: Sequence[str], report: RunReport) -> List[HookResult]:
        env = {k: self.environ[k] for k in self.settings.passthrough_env if k in self.environ}
        env.update(
            {
                "PIPELINE_EVENT": event,
                "PIPELINE_STATUS": report.verdict,
                "PIPELINE_ID": report.pipeline_id,
                "PIPELINE_UNSTABLE": "true" if report.unstable else "false",
            }
        )
        results: List[HookResult] = []
        for command in commands:
            try:
                proc = subprocess.run(
                    command,
                    shell=True,
                    cwd=self.cwd,
                    env=env,
                    text=True,
                    capture_output=True,
                    timeout=self.timeout,
                )
                results.append(HookResult(event, command, proc.returncode, (proc.stdout + proc.stderr)[-4000:]))
            except subprocess.TimeoutExpired:
                results.append(HookResult(event, command, None, f"timed out after {self.timeout:g}s"))
        return results


Notifier = Callable[[str, Sequence[str], RunReport], List[HookResult]]


def hooks_for(report: RunReport, post: Mapping[str, Sequence[str]]) -> List[Tuple[str, Tuple[str, ...]]]:
    """The (event, commands) pairs whose predicate holds for this report."""
    return [
        (event, tuple(post[event]))
        for event in HOOK_EVENTS
        if post.get(event) and PREDICATES[event](report)
    ]


def run_hooks(
    report: RunReport,
    post: Mapping[str, Sequence[str]],
    notifier: Optional[Notifier] = None,
    console: Optional[Console] = None,
) -> List[HookResult]:
    console = console or get_console()
    notifier = notifier or CommandNotifier()

    results: List[HookResult] = []
    for event, commands in hooks_for(report, post):
        console.print_info(f"POST ({event}): {len(commands)} command(s)")
        try:
            batch = notifier(event, commands, report)
        except OSError as e:
            console.print_warning(f"post '{event}' hook could not run: {e}")
            continue
        for res in batch:
            if not res.ok:
                console.print_warning(f"post '{event}' command failed (exit={res.exit_code}): {res.command}")
        results.extend(batch)
    return results
