# src/matrixci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from .model import (
    DEFAULT_PLATFORMS,
    Condition,
    Elevation,
    EventKind,
    JobTemplate,
    PlatformIs,
    PlatformIsNot,
    Policy,
    Step,
    StepKind,
    freeze_env,
)
from .step_workflows.checkout import checkout_step


# ---------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------

def platform_is(platform: str) -> PlatformIs:
    return PlatformIs(platform)


def platform_is_not(platform: str) -> PlatformIsNot:
    return PlatformIsNot(platform)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None, when: Optional[Condition] = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, when=when)


checkout = checkout_step


def elevated(
    name: str,
    cmd: str,
    *,
    preserve: Sequence[str] = ("PATH",),
    cwd: str | None = None,
    when: Optional[Condition] = None,
    command: Sequence[str] = ("sudo",),
) -> Step:
    """Create a shell step that runs with elevated privileges, keeping `preserve` set."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        when=when,
        elevation=Elevation(preserve=tuple(preserve), command=tuple(command)),
    )


def elevate_on(
    platform: str,
    name: str,
    cmd: str,
    *,
    elevated_name: str | None = None,
    preserve: Sequence[str] = ("PATH",),
    cwd: str | None = None,
) -> List[Step]:
    """
    The mutually exclusive pair: a default step for every platform except
    `platform`, and an elevated copy of it that runs only on `platform`.

        job("build", checkout(), *elevate_on("macos", "Run tests", "cargo test"))
    """
    return [
        sh(name, cmd, cwd=cwd, when=platform_is_not(platform)),
        elevated(
            elevated_name or f"{name} ({platform})",
            cmd,
            preserve=preserve,
            cwd=cwd,
            when=platform_is(platform),
        ),
    ]


# ---------------------------------------------------------------------
# Job template
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Union[Step, Iterable[Step]],
    steps_list: Optional[List[Step]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> JobTemplate:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(steps_list)
    for s in steps:
        if isinstance(s, Step):
            steps_final.append(s)
        else:
            steps_final.extend(s)

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            s if s.cwd is not None or s.kind is not StepKind.SHELL else replace(s, cwd=cwd)
            for s in steps_final
        ]

    return JobTemplate(name=name, steps=tuple(steps_final))


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    The platform axis of a policy.

    Example:
        matrix("os", ["linux", "windows", "macos"]).policy(
            job("build", ...),
            elevation_platform="macos",
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = [str(v) for v in values]

    def policy(self, template: JobTemplate, **kwargs: Any) -> Policy:
        return policy(template, platforms=self.values, **kwargs)


def matrix(key: str, values: Iterable[Any] = DEFAULT_PLATFORMS) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Policy helper (single-file story)
# ---------------------------------------------------------------------

def policy(
    template: JobTemplate,
    *,
    platforms: Iterable[str] = DEFAULT_PLATFORMS,
    on: Iterable[Union[str, EventKind]] = (EventKind.PUSH, EventKind.PULL_REQUEST),
    fail_fast: bool = False,
    env: Optional[Dict[str, Any]] = None,
    elevation_platform: str | None = None,
) -> Policy:
    """
    Workflow files can write (use the `define_policy` alias so the file's
    own `policy()` does not shadow this helper):
        from matrixci import define_policy, job, sh, checkout

        def policy():
            return define_policy(job(...), env={"CARGO_TERM_COLOR": "always"})

    Or define POLICY directly:
        POLICY = define_policy(job(...))
    """
    return Policy(
        job=template,
        platforms=tuple(platforms),
        on=tuple(EventKind.parse(e) for e in on),
        fail_fast=fail_fast,
        env=freeze_env(env),
        elevation_platform=elevation_platform,
    )


define_policy = policy  # alias for workflow files that define their own policy()
