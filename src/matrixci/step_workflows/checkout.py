# step_workflows/checkout.py
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Callable, Optional

from ..errors import StepFailure
from ..git_facts import git
from ..model import JobInstance, Step, StepKind
from ..provision import Workspace


# ---------------------------------------------------------------------
# Checkout step helper
# ---------------------------------------------------------------------

def checkout_step(name: str = "Checkout", *, ref: str | None = None) -> Step:
    """Create a step that puts the source tree into the instance workspace."""
    return Step(name=name, run="", kind=StepKind.CHECKOUT, ref=ref)


# ---------------------------------------------------------------------
# Checkout step execution
# ---------------------------------------------------------------------

def describe(step: Step, source: Path) -> str:
    ref = f" @ {step.ref}" if step.ref else ""
    return f"checkout {source}{ref}"


def run_step(
    instance: JobInstance,
    step: Step,
    workspace: Workspace,
    source: Path,
    log: Optional[Callable[[str], None]] = None,
) -> None:
    """Clone `source` into the workspace (or reuse it when running in place)."""
    log = log or (lambda _line: None)
    try:
        if workspace.in_place:
            log(f"source already present at {workspace.path}")
        else:
            git.clone(source, workspace.path)
            log(f"cloned {source} into {workspace.path}")
        if step.ref:
            git.checkout(step.ref, workspace.path)
            log(f"checked out {step.ref}")
    except subprocess.CalledProcessError as e:
        raise StepFailure(
            job=instance.name,
            step=step.name,
            cmd=describe(step, source),
            exit_code=e.returncode,
            output=(e.stderr or "")[-4000:],
        ) from e
    except FileNotFoundError as e:
        raise StepFailure(
            job=instance.name,
            step=step.name,
            cmd=describe(step, source),
            exit_code=127,
            output="git command not found. Please install Git.",
        ) from e
