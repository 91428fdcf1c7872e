# cli.py
from __future__ import annotations

import json
import shlex
import subprocess
import sys
from pathlib import Path

import click

from matrixci import settings
from matrixci.errors import ConfigurationError
from matrixci.executor import ShellExecutor
from matrixci.git_facts.git import get_remote_url, head_sha
from matrixci.matrix import expand, plan as plan_instances
from matrixci.model import EventKind, Policy, TriggerEvent
from matrixci.provision import EMULATE, HOST, LocalProvisioner
from matrixci.runner import load_policy, orchestrate
from matrixci.ui.console import Console, get_console, set_console
from matrixci.validate import validate_policy

DEFAULT_WORKFLOW = "matrixci_workflow.py"
WORKFLOW_PATTERNS = ("*_workflow.py", "*_workflow.yml", "*_workflow.yaml")

EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def find_workflow_files(directory: Path = Path(".")) -> list[Path]:
    """
    Find all workflow files in `directory`.

    Returns:
        List of Path objects for workflow files
    """
    found = set()
    default_workflow = directory / DEFAULT_WORKFLOW
    if default_workflow.exists():
        found.add(default_workflow)
    for pattern in WORKFLOW_PATTERNS:
        found.update(directory.glob(pattern))
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and not workflow_path.suffix:
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  matrixci run --workflow my_workflow.py",
            )
            sys.exit(EXIT_CONFIG)
        return workflow_path

    workflow_files = find_workflow_files()

    if not workflow_files:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", *(f"  {p}" for p in WORKFLOW_PATTERNS)],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  matrixci run --workflow build.yml",
        )
        sys.exit(EXIT_CONFIG)

    default = Path(".") / DEFAULT_WORKFLOW
    if default in workflow_files:
        return default

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[f"  {f}" for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  matrixci run --workflow my_workflow.py",
        )
        sys.exit(EXIT_CONFIG)

    return workflow_files[0]


def _load(ctx: click.Context, workflow: str | None) -> tuple[Path, Policy]:
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        policy = load_policy(workflow_path)
        validate_policy(policy)
    except ConfigurationError as e:
        console.print_error("Invalid policy", str(e))
        sys.exit(EXIT_CONFIG)
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(EXIT_CONFIG)
    return workflow_path, policy


def _repo_name() -> str:
    try:
        repo_url = get_remote_url("origin")
        return repo_url.rstrip("/").split("/")[-1].replace(".git", "")
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(".").resolve().name


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: run one CI job across a platform matrix."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file (.py or .yml; defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--event", default=settings.EVENT, show_default=True, help="Trigger event kind (push or pull_request)")
@click.option("--workers", default=settings.MAX_WORKERS, type=int, help="Parallel instances (default: all at once)")
@click.option("--work-dir", default=settings.WORK_DIR, show_default=True, help="Workspace root for emulated platforms")
@click.option(
    "--emulate/--host-only",
    default=settings.PROVISION_MODE == EMULATE,
    show_default=True,
    help="Run every platform on this machine in its own workspace, or only the host platform",
)
@click.option(
    "--elevation-command",
    default=settings.ELEVATION_COMMAND,
    help="Override the elevation command of every elevated step (default: the command each step declares)",
)
@click.option("--report", default=None, type=click.Path(dir_okay=False), help="Write the JSON run report here")
@click.pass_context
def run(ctx, workflow, event, workers, work_dir, emulate, elevation_command, report):
    """Run a policy for one trigger event."""
    console = get_console()

    try:
        trigger = TriggerEvent(kind=EventKind.parse(event))
    except ValueError as e:
        console.print_error("Invalid event", str(e))
        sys.exit(EXIT_CONFIG)

    workflow_path, policy = _load(ctx, workflow)

    console.print_run_started(
        repository=_repo_name(),
        workflow=workflow_path.name,
        event=trigger.kind.value,
        platforms=policy.platforms,
    )

    provisioner = LocalProvisioner(source=".", work_dir=work_dir, mode=EMULATE if emulate else HOST)
    executor = ShellExecutor(elevation_command=shlex.split(elevation_command) if elevation_command else None)

    try:
        result = orchestrate(
            policy,
            trigger,
            provisioner=provisioner,
            executor=executor,
            max_workers=workers,
            source=".",
            console=console,
        )
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except ConfigurationError as e:
        console.print_error("Invalid policy", str(e))
        sys.exit(EXIT_CONFIG)

    if not result.triggered:
        return

    console.print_results({p: o.value for p, o in result.outcomes.items()})

    if report:
        data = result.to_dict()
        try:
            data["commit"] = head_sha()
        except (subprocess.CalledProcessError, FileNotFoundError):
            data["commit"] = None
        Path(report).write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        console.print_debug(f"Report written to {report}")

    if result.failed:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file (defaults to {DEFAULT_WORKFLOW} if present)")
@click.pass_context
def plan(ctx, workflow):
    """Show the expanded instances and which steps each one runs."""
    _path, policy = _load(ctx, workflow)
    instances = expand(policy.platforms, policy.job, policy.env)
    get_console().print_plan(policy.job.name, plan_instances(instances))


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file (defaults to {DEFAULT_WORKFLOW} if present)")
@click.pass_context
def validate(ctx, workflow):
    """Check a policy without running it."""
    path, policy = _load(ctx, workflow)
    get_console().print_info(
        f"{path.name}: OK ({len(policy.platforms)} platforms, {len(policy.job.steps)} steps, "
        f"fail-fast {'on' if policy.fail_fast else 'off'})"
    )


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
