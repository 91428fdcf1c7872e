# matrix.py
from __future__ import annotations

import re
from dataclasses import replace
from typing import Iterable, List, Mapping, Tuple

from .model import JobInstance, JobTemplate, Step

EXPR_RE = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
MATRIX_KEYS = ("matrix.platform", "matrix.os")


def render_command(cmd: str, platform: str, env: Mapping[str, str]) -> str:
    """
    Substitute `${{ env.NAME }}` and `${{ matrix.platform }}` in a command.

    Unknown expressions are rejected by validate_policy() before anything is
    expanded, so here they are a programming error.
    """
    def _sub(m: re.Match) -> str:
        expr = m.group(1)
        if expr in MATRIX_KEYS:
            return platform
        if expr.startswith("env."):
            return env[expr[len("env."):]]
        raise KeyError(f"Unsupported expression: {m.group(0)}")

    return EXPR_RE.sub(_sub, cmd)


def expressions(cmd: str) -> List[str]:
    return EXPR_RE.findall(cmd)


def expand(
    platforms: Iterable[str],
    template: JobTemplate,
    env: Mapping[str, str],
) -> List[JobInstance]:
    """
    One JobInstance per platform, in declared order.

    Each instance gets its own copy of the step tuple with expressions
    rendered for that platform; the overlay mapping is shared read-only.
    """
    instances: List[JobInstance] = []
    for platform in platforms:
        steps = tuple(replace(s, run=render_command(s.run, platform, env)) for s in template.steps)
        instances.append(JobInstance(job=template.name, platform=platform, steps=steps, env=env))
    return instances


def plan(instances: Iterable[JobInstance]) -> List[Tuple[str, List[Tuple[str, bool]]]]:
    """
    Deterministic instance/step structure: [(platform, [(step, selected), ...]), ...].

    Two expansions of the same policy always produce equal plans.
    """
    out = []
    for inst in instances:
        out.append((inst.platform, [(s.name, s.selected_for(inst.platform)) for s in inst.steps]))
    return out


def selected_steps(instance: JobInstance) -> List[Step]:
    return [s for s in instance.steps if s.selected_for(instance.platform)]
