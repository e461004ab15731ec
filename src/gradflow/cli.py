# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import click

from gradflow.artifacts import DatasetStore
from gradflow.config import Settings, load_settings
from gradflow.dag import build_dag, topo_levels
from gradflow.errors import ArtifactError, BackendUnavailable, WorkflowError
from gradflow.git_facts.git import get_current_ref, head_sha
from gradflow.loader import dump_workflow, find_workflow_files, load_workflow
from gradflow.runner import run_workflow, triggered_by
from gradflow.ui.console import Console, get_console, set_console
from gradflow.validate import validate_workflow

EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_INTERRUPTED = 130


def find_python_workflows() -> list[Path]:
    """*_workflow.py files in the current directory."""
    return sorted(Path(".").glob("*_workflow.py"))


def discover_workflow(workflow_arg: str | None, settings: Settings) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            # allow `--workflow name` for .gradient/workflows/name.yaml
            candidate = settings.workflows_dir / f"{workflow_arg}.yaml"
            if candidate.exists():
                return candidate
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Specify a different path:\n  gradflow run --workflow .gradient/workflows/my-workflow.yaml",
            )
            sys.exit(EXIT_FAILED)
        return workflow_path

    workflow_files = find_workflow_files(settings.workflows_dir) + find_python_workflows()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {settings.workflows_dir}/*.yaml",
                "  *_workflow.py",
            ],
            suggestion="Specify a workflow explicitly:\n  gradflow run --workflow my_workflow.py",
        )
        sys.exit(EXIT_FAILED)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  gradflow run --workflow {workflow_files[0]}",
        )
        sys.exit(EXIT_FAILED)

    return workflow_files[0]


def _settings(ctx, **overrides) -> Settings:
    try:
        return ctx.obj["settings"].with_overrides(**overrides)
    except ValueError as e:
        get_console().print_error("Invalid option", str(e))
        sys.exit(EXIT_INVALID)


def _git_facts() -> tuple[str | None, str | None]:
    """Current branch and commit, or (None, None) outside a git checkout."""
    try:
        return get_current_ref(), head_sha()
    except (subprocess.CalledProcessError, BackendUnavailable):
        return None, None


def _fail(ctx, e: BaseException) -> None:
    get_console().print_exception(e)
    sys.exit(EXIT_FAILED)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--config", "config_path", default=None, help="Settings file (defaults to ./gradflow.yaml)")
@click.pass_context
def cli(ctx, debug, config_path):
    """gradflow: run Gradient-style ML workflows locally."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    try:
        ctx.obj["settings"] = load_settings(config_path)
    except (OSError, ValueError) as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_INVALID)


# ----------------------------------------------------------------------
# Workflows
# ----------------------------------------------------------------------

@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to the single one in .gradient/workflows)")
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--store", "store_dir", default=None, help="Dataset store directory")
@click.option("--backend", default=None, type=click.Choice(["docker", "local"]), help="Where jobs run")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Stop scheduling new jobs after first failure")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print the job stages")
@click.option("--keep-workspace/--no-keep-workspace", default=None, help="Keep volumes after the run")
@click.pass_context
def run(ctx, workflow, workers, store_dir, backend, fail_fast, print_plan, keep_workspace):
    """Run a workflow once."""
    console = get_console()
    settings = _settings(
        ctx,
        workers=workers,
        store_dir=store_dir,
        backend=backend,
        fail_fast=fail_fast,
        keep_workspace=keep_workspace,
    )
    workflow_path = discover_workflow(workflow, settings)

    try:
        wf = load_workflow(workflow_path)
        branch, commit = _git_facts()
        result = run_workflow(wf, settings, console=console, branch=branch, commit=commit, print_plan=print_plan)
        console.print_results(result.statuses)
        console.print_info(f"Run record: {settings.store_dir / 'runs' / result.run_id / 'run.json'}")

        if not result.ok:
            sys.exit(EXIT_FAILED)

    except WorkflowError as e:
        console.print_problems(e.workflow or workflow_path.stem, e.problems)
        sys.exit(EXIT_INVALID)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        _fail(ctx, e)


@cli.command()
@click.option("--workflow", "workflows", multiple=True, help="Workflow file(s); defaults to all in .gradient/workflows")
@click.pass_context
def validate(ctx, workflows):
    """Check workflow definitions without running anything."""
    console = get_console()
    settings = ctx.obj["settings"]
    paths = [Path(w) for w in workflows] or find_workflow_files(settings.workflows_dir) + find_python_workflows()
    if not paths:
        console.print_error("No workflow file found", f"Nothing to validate in {settings.workflows_dir}")
        sys.exit(EXIT_FAILED)

    invalid = False
    for path in paths:
        try:
            wf = load_workflow(path)
            problems = validate_workflow(wf)
        except WorkflowError as e:
            problems = e.problems
        except (OSError, ValueError, TypeError) as e:
            problems = [str(e)]
        console.print_problems(str(path), problems)
        invalid = invalid or bool(problems)

    if invalid:
        sys.exit(EXIT_INVALID)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file")
@click.pass_context
def plan(ctx, workflow):
    """Print the stages a workflow's jobs run in."""
    console = get_console()
    settings = ctx.obj["settings"]
    workflow_path = discover_workflow(workflow, settings)
    try:
        wf = load_workflow(workflow_path)
        problems = validate_workflow(wf)
        if problems:
            raise WorkflowError(problems, workflow=wf.name)
    except WorkflowError as e:
        console.print_problems(e.workflow or workflow_path.stem, e.problems)
        sys.exit(EXIT_INVALID)
    except (OSError, ValueError, TypeError) as e:
        _fail(ctx, e)

    console.print_header(wf.name)
    console.print_plan(topo_levels(*build_dag(wf.jobs)))
    for j in wf.jobs:
        tier = wf.instance_type_of(j) or "-"
        needs = ", ".join(j.needs) or "-"
        console.print_info(f"  {j.name}: uses={j.uses} instance={tier} needs={needs}")


@cli.command()
@click.option("--branch", default=None, help="Branch that was pushed (defaults to the current git branch)")
@click.option("--backend", default=None, type=click.Choice(["docker", "local"]), help="Where jobs run")
@click.pass_context
def trigger(ctx, branch, backend):
    """Run every workflow whose `on:` trigger matches a push to BRANCH."""
    console = get_console()
    settings = _settings(ctx, backend=backend)

    commit = None
    if branch is None:
        branch, commit = _git_facts()
        if branch is None:
            console.print_error(
                "Could not determine git branch",
                "No --branch specified and this is not a git checkout.",
                suggestion="Specify the branch explicitly:\n  gradflow trigger --branch main",
            )
            sys.exit(EXIT_FAILED)

    failed = False
    matched = 0
    try:
        for path in find_workflow_files(settings.workflows_dir):
            wf = load_workflow(path)
            if not triggered_by(wf, branch):
                console.print_debug(f"{wf.name}: not triggered by {branch}")
                continue
            matched += 1
            result = run_workflow(wf, settings, console=console, branch=branch, commit=commit)
            console.print_results(result.statuses)
            failed = failed or not result.ok
    except WorkflowError as e:
        console.print_problems(e.workflow, e.problems)
        sys.exit(EXIT_INVALID)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        _fail(ctx, e)

    if matched == 0:
        console.print_info(f"No workflow is triggered by a push to {branch}")
    if failed:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--workflow", required=True, help="Python workflow file")
@click.option("--output", "output_path", default=None, help="Write YAML here instead of stdout")
@click.pass_context
def export(ctx, workflow, output_path):
    """Render a workflow (Python or YAML) as Gradient YAML."""
    console = get_console()
    try:
        text = dump_workflow(load_workflow(workflow))
    except WorkflowError as e:
        console.print_problems(e.workflow or Path(workflow).stem, e.problems)
        sys.exit(EXIT_INVALID)
    except (OSError, ValueError, TypeError) as e:
        _fail(ctx, e)

    if output_path:
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        Path(output_path).write_text(text, encoding="utf-8")
        console.print_info(f"Wrote {output_path}")
    else:
        click.echo(text, nl=False)


# ----------------------------------------------------------------------
# Datasets
# ----------------------------------------------------------------------

@cli.group()
@click.option("--store", "store_dir", default=None, help="Dataset store directory")
@click.pass_context
def datasets(ctx, store_dir):
    """Inspect and manage versioned datasets."""
    settings = _settings(ctx, store_dir=store_dir)
    ctx.obj["store"] = DatasetStore(settings.store_dir)


@datasets.command("list")
@click.pass_context
def datasets_list(ctx):
    """List datasets and their latest version."""
    console = get_console()
    store: DatasetStore = ctx.obj["store"]
    refs = store.list_datasets()
    if not refs:
        console.print_info("No datasets")
        return
    for ref in refs:
        versions = store.list_versions(ref)
        latest = versions[-1].version if versions else "(empty)"
        console.print_info(f"{ref}  {latest}  ({len(versions)} version(s))")


@datasets.command("versions")
@click.argument("ref")
@click.pass_context
def datasets_versions(ctx, ref):
    """List the versions of REF."""
    console = get_console()
    store: DatasetStore = ctx.obj["store"]
    try:
        versions = store.list_versions(ref)
    except ArtifactError as e:
        _fail(ctx, e)
    for v in versions:
        tags = f"  [{', '.join(v.tags)}]" if v.tags else ""
        console.print_info(
            f"{v.version}  {v.created_at}  {v.file_count} file(s)  {v.size} bytes  {v.digest[:12]}{tags}  {v.message}"
        )


@datasets.command("create")
@click.argument("ref")
@click.pass_context
def datasets_create(ctx, ref):
    """Create an empty dataset REF."""
    store: DatasetStore = ctx.obj["store"]
    try:
        store.create(ref)
    except ArtifactError as e:
        _fail(ctx, e)
    get_console().print_info(f"Created {ref}")


@datasets.command("import")
@click.argument("ref")
@click.argument("path", type=click.Path(exists=True, file_okay=False))
@click.option("--message", "-m", default="imported", help="Version message")
@click.pass_context
def datasets_import(ctx, ref, path, message):
    """Commit the contents of directory PATH as a new version of REF."""
    store: DatasetStore = ctx.obj["store"]
    try:
        version = store.import_dir(ref, path, message=message)
    except ArtifactError as e:
        _fail(ctx, e)
    get_console().print_info(f"{version.spec}  {version.file_count} file(s)")


@datasets.command("tag")
@click.argument("ref")
@click.argument("version")
@click.argument("tag")
@click.pass_context
def datasets_tag(ctx, ref, version, tag):
    """Point TAG at VERSION of REF."""
    store: DatasetStore = ctx.obj["store"]
    try:
        tagged = store.tag(ref, version, tag)
    except ArtifactError as e:
        _fail(ctx, e)
    get_console().print_info(f"{ref}:{tag} -> {tagged.version}")


# ----------------------------------------------------------------------
# API server
# ----------------------------------------------------------------------

@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--store", "store_dir", default=None, help="Dataset store directory")
@click.pass_context
def serve(ctx, host, port, store_dir):
    """Serve the datasets and runs API."""
    import uvicorn

    from gradflow.api.app import create_app

    settings = _settings(ctx, store_dir=store_dir)
    uvicorn.run(create_app(DatasetStore(settings.store_dir)), host=host, port=port)


if __name__ == "__main__":
    cli()
