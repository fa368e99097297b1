# cli.py
from __future__ import annotations

import json
import sys
from dataclasses import replace
from pathlib import Path

import click

from localci.artifacts import ArtifactStore
from localci.dag import resolve
from localci.errors import CycleError, DefinitionNotFound, ValidationError, VariableError
from localci.executor import JobExecutor
from localci.hooks import CommandNotifier, run_hooks
from localci.loader import DEFAULT_WORKFLOW_FILES, find_workflow_files, load_definition
from localci.model import load_pipeline, select
from localci.runner import WARNING_POLICIES, run_pipeline
from localci.settings import Settings
from localci.ui.console import Console, get_console, set_console

# exit codes
EXIT_JOB_FAILED = 1
EXIT_DEFINITION = 2
EXIT_INTERRUPTED = 130

DEFINITION_ERRORS = (ValidationError, CycleError, VariableError, DefinitionNotFound)


def discover_workflow(workflow_arg: str | None, directory: str | Path = ".") -> Path:
    """
    Discover workflow file from argument or default.

    Args:
        workflow_arg: Optional workflow argument from CLI
        directory: Where to look for the default file names

    Returns:
        Path to workflow file

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    # If workflow is explicitly provided, use it
    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  localci run --workflow localci.yml",
            )
            sys.exit(EXIT_DEFINITION)
        return workflow_path

    workflow_files = find_workflow_files(directory)

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *(f"  {name}" for name in DEFAULT_WORKFLOW_FILES)],
            suggestion="Create a workflow file:\n  localci.yml\n\nOr specify a workflow explicitly:\n  localci run --workflow my_pipeline.yml",
        )
        sys.exit(EXIT_DEFINITION)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  localci run --workflow {workflow_files[0].name}",
        )
        sys.exit(EXIT_DEFINITION)

    return workflow_files[0]


def _parse_vars(ctx, param, values):
    overrides = {}
    for item in values:
        key, sep, value = item.partition("=")
        key = key.strip()
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", ctx=ctx, param=param)
        overrides[key] = value
    return overrides


def _load_settings() -> Settings:
    try:
        return Settings.from_env()
    except ValueError as e:
        get_console().print_error("Invalid configuration", str(e))
        sys.exit(EXIT_DEFINITION)


def _definition_error(e: Exception, workflow_path: Path) -> None:
    console = get_console()
    if isinstance(e, CycleError):
        console.print_error(
            "Dependency cycle",
            str(e),
            details=[f"Jobs on the cycle: {', '.join(e.jobs)}"],
            suggestion="Remove one of the `needs` edges on the cycle.",
        )
    elif isinstance(e, ValidationError):
        console.print_error(
            "Invalid pipeline definition",
            f"{workflow_path}: {e.args[0]}",
            details=e.problems or None,
        )
    elif isinstance(e, VariableError):
        console.print_error("Variable error", str(e))
    else:
        console.print_error("Workflow file not found", str(e))


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """localci: run CI pipelines on your machine."""
    # Initialize console with debug flag
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Pipeline definition (defaults to localci.yml if present)")
@click.option("--job", "jobs", multiple=True, help="Run only this job and what it needs (repeatable)")
@click.option("--stage", "stages", multiple=True, help="Run only this stage and what it needs (repeatable)")
@click.option("--var", "overrides", multiple=True, callback=_parse_vars, metavar="KEY=VALUE",
              help="Override a variable for every job (repeatable)")
@click.option("--concurrency", default=None, type=click.IntRange(min=1), help="Max jobs running at once")
@click.option("--dry-run", is_flag=True, default=False, help="Print the execution plan and exit")
@click.option("--fail-fast/--no-fail-fast", default=False, show_default=True,
              help="Cancel jobs not yet started after the first failure")
@click.option("--manual", "manual", multiple=True, help="Run this `when: manual` job (repeatable)")
@click.option("--strict-variables", is_flag=True, default=False, help="Treat undefined variables as errors")
@click.option("--warning-policy", type=click.Choice(WARNING_POLICIES), default="isolate", show_default=True,
              help="Whether allow_failure warnings are visible to dependents")
@click.option("--project-dir", default=".", show_default=True, type=click.Path(file_okay=False, exists=True),
              help="Directory copied into every job sandbox")
@click.option("--artifacts-dir", default=None, type=click.Path(file_okay=False),
              help="Export collected artifacts here after the run")
@click.option("--report", "report_path", default=None, type=click.Path(dir_okay=False),
              help="Write the run report as JSON")
@click.option("--keep-sandbox", is_flag=True, default=False, help="Keep job sandboxes for inspection")
@click.pass_context
def run(ctx, workflow, jobs, stages, overrides, concurrency, dry_run, fail_fast, manual,
        strict_variables, warning_policy, project_dir, artifacts_dir, report_path, keep_sandbox):
    """Run a pipeline."""
    console = get_console()
    settings = _load_settings()
    workflow_path = discover_workflow(workflow)

    if strict_variables:
        settings = replace(settings, variable_policy="fail")
    variable_policy = settings.variable_policy
    try:
        definition = load_definition(workflow_path)
        pipeline = load_pipeline(
            definition,
            variable_policy=variable_policy,
            known_variables=[*overrides, *settings.passthrough_env],
        )
        pipeline = select(pipeline, jobs=jobs, stages=stages)
        unknown_manual = [m for m in manual if not pipeline.has_job(m)]
        if unknown_manual:
            raise ValidationError("Invalid --manual", [f"Unknown job: {m!r}" for m in unknown_manual])
        graph = resolve(pipeline)
    except DEFINITION_ERRORS as e:
        _definition_error(e, workflow_path)
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(EXIT_DEFINITION)

    for warning in pipeline.warnings:
        console.print_warning(warning)

    if dry_run:
        console.print_plan(graph)
        return

    max_concurrency = concurrency or settings.concurrency
    executor = JobExecutor(
        pipeline,
        ArtifactStore(),
        settings=settings,
        project_dir=project_dir,
        overrides=overrides,
        console=console,
        keep_sandbox=keep_sandbox,
    )

    try:
        console.print_run_started(
            workflow=workflow_path.name,
            job_count=len(pipeline),
            pipeline_id=executor.pipeline_id,
            concurrency=max_concurrency,
        )
        try:
            report = run_pipeline(
                graph,
                executor,
                max_concurrency=max_concurrency,
                fail_fast=fail_fast,
                manual=manual,
                warning_policy=warning_policy,
                console=console,
            )
        finally:
            executor.cleanup()

        console.print_results(report)

        if pipeline.post:
            run_hooks(report, pipeline.post, CommandNotifier(cwd=project_dir, settings=settings), console)

        if artifacts_dir:
            written = executor.store.export(artifacts_dir)
            console.print_info(f"Exported {len(written)} artifact file(s) to {artifacts_dir}")

        if report_path:
            Path(report_path).write_text(json.dumps(report.as_dict(), indent=2), encoding="utf-8")
            console.print_info(f"Report written to {report_path}")

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_JOB_FAILED)

    if report.interrupted:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    sys.exit(report.exit_code)


@cli.command(name="list")
@click.option("--workflow", default=None, help="Pipeline definition (defaults to localci.yml if present)")
@click.pass_context
def list_jobs(ctx, workflow):
    """List the jobs of a pipeline in execution order."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        pipeline = load_pipeline(load_definition(workflow_path))
        graph = resolve(pipeline)
    except DEFINITION_ERRORS as e:
        _definition_error(e, workflow_path)
        sys.exit(EXIT_DEFINITION)

    rows = []
    for i in graph.order:
        job = pipeline.jobs[i]
        if job.needs is None:
            needs = "(previous stage)" if graph.deps[i] else "-"
        else:
            needs = ", ".join(pipeline.names(job.needs)) or "-"
        rows.append((job.name, job.stage, job.when, needs))

    console.print_header(f"{workflow_path.name}: {len(pipeline)} job(s) in {len(pipeline.stages)} stage(s)")
    console.print_job_list(rows)


if __name__ == "__main__":
    cli()
