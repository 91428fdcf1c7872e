# runner.py
from __future__ import annotations

import runpy
import shlex
import threading
from dataclasses import replace
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import CIError, Cancelled, ConfigurationError, ProvisioningError, StepFailure
from .executor import Executor, ShellExecutor
from .matrix import expand
from .model import (
    Elevation,
    JobInstance,
    Outcome,
    Policy,
    RunReport,
    Step,
    StepKind,
    StepStatus,
    TriggerEvent,
)
from .provision import Provisioner, Workspace
from .step_workflows import checkout as checkout_workflow
from .ui.console import Console, get_console
from .validate import validate_policy

__all__ = [
    "CIError",
    "Cancelled",
    "ConfigurationError",
    "ProvisioningError",
    "StepFailure",
    "load_policy",
    "run_instance",
    "run_all",
    "join_all",
    "orchestrate",
]

# push / pull_request ---> orchestrate ---> expand ---> run_all ---> report


TOOL_HINTS = {
    "cargo": "Install Rust (rustup) or fix PATH.",
    "rustc": "Install Rust (rustup) or fix PATH.",
    "sudo": "Elevated steps need sudo, or set MATRIXCI_ELEVATION_COMMAND.",
    "git": "Install Git or fix PATH.",
}

COMMAND_NOT_FOUND = 127


# ----------------------------------------------------------------------
# Policy loading (local file)
# ----------------------------------------------------------------------

def load_policy(path: str | Path) -> Policy:
    """
    Load a policy from a workflow file.

    A .py file must define either:
      - policy() -> Policy
      - POLICY = Policy(...)

    A .yml/.yaml file is read as a hosted-CI workflow.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in (".yml", ".yaml"):
        from .workflow_yaml import load_workflow_yaml
        return load_workflow_yaml(wf_path)

    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py, .yml or .yaml file, got: {wf_path.name}")

    module_name = f"matrixci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    result = None
    if "policy" in globals_dict and callable(globals_dict["policy"]):
        try:
            result = globals_dict["policy"]()
        except TypeError as e:
            if "missing" in str(e) and "required" in str(e):
                raise TypeError(
                    "Your policy() is being called by the loader but looks like the DSL helper "
                    "(name collision). Import the helper as `define_policy` instead: "
                    "`from matrixci import define_policy` then `def policy(): return define_policy(...)`"
                ) from e
            raise
    elif "POLICY" in globals_dict:
        result = globals_dict["POLICY"]

    if not isinstance(result, Policy):
        raise TypeError(
            "Workflow must return/define a Policy. "
            "Define policy() -> Policy or POLICY = define_policy(...)."
        )

    return result


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _hint_for(cmd: str, exit_code: int | None) -> str | None:
    if exit_code != COMMAND_NOT_FOUND:
        return None
    try:
        tool = shlex.split(cmd)[0]
    except (ValueError, IndexError):
        return None
    return TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")


def _step_env(instance: JobInstance, workspace: Workspace) -> Dict[str, str]:
    # fresh dict per step; the overlay itself is read-only
    env = dict(workspace.env)
    env.update(instance.env)
    return env


def _step_elevation(instance: JobInstance, step: Step) -> Optional[Elevation]:
    """
    The step's elevation, widened so every overlay variable crosses the
    privilege boundary along with the declared `preserve` names.
    """
    if step.elevation is None:
        return None
    carried = dict.fromkeys((*step.elevation.preserve, *instance.env))
    return replace(step.elevation, preserve=tuple(carried))


def _run_step(
    instance: JobInstance,
    step: Step,
    workspace: Workspace,
    *,
    executor: Executor,
    source: Path,
    console: Console,
    cancel_event: Optional[threading.Event],
) -> None:
    platform = instance.platform

    if step.kind is StepKind.CHECKOUT:
        checkout_workflow.run_step(
            instance, step, workspace, source,
            log=lambda line: console.print_output(platform, line),
        )
        return

    cwd = (workspace.path / (step.cwd or ".")).resolve()
    if not cwd.exists():
        raise CIError(
            kind="cwd_missing",
            job=instance.name,
            step=step.name,
            message=f"working directory not found: {cwd}",
        )

    try:
        result = executor.run(
            step.run,
            cwd=str(cwd),
            env=_step_env(instance, workspace),
            elevation=_step_elevation(instance, step),
            on_output=lambda line: console.print_output(platform, line),
            cancel_event=cancel_event,
        )
    except CIError as e:
        e.job = e.job or instance.name
        e.step = e.step or step.name
        raise

    if not result.ok:
        raise StepFailure(
            job=instance.name,
            step=step.name,
            cmd=step.run,
            exit_code=result.exit_code,
            output=result.output,
        )


def _stop(instance: JobInstance, start: int, error: str, console: Console) -> Outcome:
    """Fail the instance; steps from `start` on never run."""
    for rec in instance.records[start:]:
        if rec.status is StepStatus.PENDING:
            rec.status = StepStatus.NOT_RUN
    instance.outcome = Outcome.FAILED
    instance.error = error
    console.print_failure(instance.name, error, is_job=True, platform=instance.platform)
    return instance.outcome


def run_instance(
    instance: JobInstance,
    workspace: Workspace,
    *,
    executor: Optional[Executor] = None,
    source: str | Path = ".",
    console: Optional[Console] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Outcome:
    """
    Run the instance's steps in declared order.

    A step whose condition is false is skipped. The first failing step
    stops the instance; later steps are marked not_run.
    """
    executor = executor or ShellExecutor()
    console = console or get_console()
    source_p = Path(source).resolve()
    platform = instance.platform

    console.print_job_start(platform, instance.name)

    for idx, step in enumerate(instance.steps):
        rec = instance.records[idx]

        if cancel_event is not None and cancel_event.is_set():
            return _stop(instance, idx, "cancelled", console)

        if not step.selected_for(platform):
            rec.status = StepStatus.SKIPPED
            console.print_step_skipped(platform, step.name, f"requires {step.when.describe()}")
            continue

        console.print_step(platform, step.name, elevated=step.elevated)
        try:
            _run_step(
                instance, step, workspace,
                executor=executor,
                source=source_p,
                console=console,
                cancel_event=cancel_event,
            )
        except StepFailure as e:
            rec.status = StepStatus.FAILED
            rec.exit_code = e.exit_code
            rec.error = str(e)
            console.print_failure(
                step.name,
                e.output or str(e),
                exit_code=e.exit_code,
                hint=_hint_for(e.cmd, e.exit_code),
                platform=platform,
            )
            return _stop(instance, idx + 1, str(e), console)
        except Cancelled:
            rec.status = StepStatus.CANCELLED
            rec.error = "cancelled"
            return _stop(instance, idx + 1, "cancelled", console)
        except CIError as e:
            rec.status = StepStatus.FAILED
            rec.error = str(e)
            hint = e.details.get("hint")
            if e.kind == "command_not_found":
                rec.exit_code = COMMAND_NOT_FOUND
                hint = hint or _hint_for(e.details.get("command", ""), COMMAND_NOT_FOUND)
            console.print_failure(
                step.name,
                str(e),
                exit_code=rec.exit_code,
                hint=hint,
                platform=platform,
            )
            return _stop(instance, idx + 1, str(e), console)

        rec.status = StepStatus.SUCCEEDED
        if step.kind is StepKind.SHELL:
            rec.exit_code = 0

    instance.outcome = Outcome.SUCCEEDED
    console.print_success(platform)
    return instance.outcome


# ----------------------------------------------------------------------
# Join-all scheduling
# ----------------------------------------------------------------------

def join_all(
    futures: Iterable[Future],
    *,
    stop: threading.Event,
    cancel_event: Optional[threading.Event] = None,
    fail_fast: bool = False,
    poll_interval: float = 0.1,
) -> None:
    """
    Wait for every future, whatever the others did.

    Failures never cancel siblings unless `fail_fast` is set; an external
    `cancel_event` always sets `stop`, which every running instance watches.
    """
    pending = set(futures)
    while pending:
        try:
            done, pending = wait(pending, timeout=poll_interval, return_when=FIRST_COMPLETED)
        except KeyboardInterrupt:
            stop.set()
            join_all(pending, stop=stop, poll_interval=poll_interval)
            raise
        if cancel_event is not None and cancel_event.is_set():
            stop.set()
        if fail_fast and any(f.result() is Outcome.FAILED for f in done):
            stop.set()


def run_all(
    instances: List[JobInstance],
    *,
    provisioner: Provisioner,
    executor: Optional[Executor] = None,
    fail_fast: bool = False,
    max_workers: int | None = None,
    cancel_event: Optional[threading.Event] = None,
    source: str | Path = ".",
    console: Optional[Console] = None,
) -> Dict[str, Outcome]:
    """
    Run every instance concurrently and return {platform: outcome} for all
    of them, in declared order.
    """
    executor = executor or ShellExecutor()
    console = console or get_console()
    stop = threading.Event()

    if not instances:
        return {}
    if max_workers is None:
        max_workers = len(instances)

    def _task(instance: JobInstance) -> Outcome:
        if stop.is_set():
            return _stop(instance, 0, "cancelled", console)
        try:
            workspace = provisioner.provision(instance.platform, job=instance.name)
        except ProvisioningError as e:
            return _stop(instance, 0, str(e), console)
        try:
            return run_instance(
                instance, workspace,
                executor=executor,
                source=source,
                console=console,
                cancel_event=stop,
            )
        except Exception as e:
            console.print_exception(e)
            return _stop(instance, 0, f"{type(e).__name__}: {e}", console)

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="matrixci") as pool:
        futures = [pool.submit(_task, inst) for inst in instances]
        join_all(futures, stop=stop, cancel_event=cancel_event, fail_fast=fail_fast)

    return {inst.platform: inst.outcome for inst in instances}


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def orchestrate(
    policy: Policy,
    event: TriggerEvent,
    *,
    provisioner: Provisioner,
    executor: Optional[Executor] = None,
    max_workers: int | None = None,
    cancel_event: Optional[threading.Event] = None,
    source: str | Path = ".",
    console: Optional[Console] = None,
) -> RunReport:
    """
    Handle one trigger: validate, expand, run every instance, report.

    ConfigurationError propagates before any instance is created.
    """
    console = console or get_console()
    validate_policy(policy)

    if not policy.triggered_by(event):
        console.print_not_triggered(event.kind.value)
        return RunReport(event=event, triggered=False)

    instances = expand(policy.platforms, policy.job, policy.env)
    run_all(
        instances,
        provisioner=provisioner,
        executor=executor,
        fail_fast=policy.fail_fast,
        max_workers=max_workers,
        cancel_event=cancel_event,
        source=source,
        console=console,
    )
    return RunReport(event=event, instances={inst.platform: inst for inst in instances})
