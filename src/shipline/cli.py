# cli.py
from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from shipline.actions import default_registry
from shipline.dag import plan as plan_stages
from shipline.engine import Engine, validate_pipeline
from shipline.environments import EnvironmentRegistry
from shipline.errors import DefinitionError
from shipline.git import default_ref
from shipline.loader import find_workflow_files, load_workflow
from shipline.model import RunStatus
from shipline.settings import Settings
from shipline.ui.console import Console, get_console, set_console


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Resolve the workflow file from the --workflow argument or by looking in
    the current directory.

    Raises:
        SystemExit: If no workflow is found or the choice is ambiguous
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  shipline run --workflow shipline.yml",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files(".")

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any pipeline definition.",
            details=[
                "Looked for:",
                "  shipline.yml / shipline.yaml",
                "  .shipline/pipelines/*.yml",
                "  *_workflow.py",
            ],
            suggestion="Create shipline.yml, or specify a workflow explicitly:\n  shipline run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple pipeline definitions. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  shipline run --workflow shipline.yml",
        )
        sys.exit(1)

    return workflow_files[0]


def _load_or_exit(ctx, workflow_path: Path):
    console = get_console()
    try:
        return load_workflow(workflow_path)
    except DefinitionError as e:
        console.print_error(
            "Invalid pipeline definition",
            f"Could not load pipeline from {workflow_path}",
            details=str(e).splitlines(),
        )
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and step output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print errors and the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """shipline: staged pipelines with artifacts, serialized runs and gated deployments."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Pipeline file (.yml/.yaml/.py); discovered if omitted")
@click.option("--event", default="push", show_default=True, help="Trigger event")
@click.option("--ref", default=None, help="Git ref being pushed (defaults to the current branch, else main)")
@click.option("--workers", default=None, type=int, help="Number of parallel job workers")
@click.option("--state-dir", default=None, type=click.Path(file_okay=False), help="State directory (artifacts, workspaces, reports)")
@click.option("--source", default=".", show_default=True, type=click.Path(file_okay=False), help="Source tree for the checkout action")
@click.option("--keep-workspaces/--no-keep-workspaces", default=None, help="Keep job workspaces after the run")
@click.pass_context
def run(ctx, workflow, event, ref, workers, state_dir, source, keep_workspaces):
    """Trigger a pipeline run and wait for it to finish."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    pipeline = _load_or_exit(ctx, workflow_path)

    settings = Settings.from_env().override(
        state_dir=Path(state_dir) if state_dir else None,
        max_workers=workers,
        keep_workspaces=keep_workspaces,
    )
    ref = ref or default_ref(source)

    try:
        engine = Engine(settings)
        console.print_header(f"{pipeline.name} ({workflow_path.name})")
        result = engine.trigger(pipeline, event=event, ref=ref, source=source)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except DefinitionError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    if result is None:
        return

    console.print_results(result)
    if result.status != RunStatus.SUCCESS:
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help="Pipeline file (.yml/.yaml/.py); discovered if omitted")
@click.pass_context
def plan(ctx, workflow):
    """Validate a pipeline and print its execution stages."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    pipeline = _load_or_exit(ctx, workflow_path)
    try:
        validate_pipeline(pipeline, default_registry())
    except DefinitionError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)
    console.print_plan(plan_stages(pipeline.jobs))


@cli.command()
@click.option("--state-dir", default=None, type=click.Path(file_okay=False), help="State directory")
def envs(state_dir):
    """List recorded environments and their last deployed URL."""
    settings = Settings.from_env().override(state_dir=Path(state_dir) if state_dir else None)
    get_console().print_environments(EnvironmentRegistry(settings.environments_file).all())


@cli.command()
@click.argument("run_id")
@click.option("--state-dir", default=None, type=click.Path(file_okay=False), help="State directory")
def show(run_id, state_dir):
    """Print the saved report of a run."""
    settings = Settings.from_env().override(state_dir=Path(state_dir) if state_dir else None)
    path = settings.runs_dir / f"{run_id}.json"
    if not path.exists():
        get_console().print_error("Run not found", f"No report for run {run_id} in {settings.runs_dir}")
        sys.exit(1)
    click.echo(json.dumps(json.loads(path.read_text(encoding="utf-8")), indent=2))


if __name__ == "__main__":
    cli()
