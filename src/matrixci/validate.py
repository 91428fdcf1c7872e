# validate.py
from __future__ import annotations

import re
from typing import List

from .errors import ConfigurationError
from .matrix import MATRIX_KEYS, expressions
from .model import PlatformIs, PlatformIsNot, Policy, StepKind

ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_policy(policy: Policy) -> None:
    """
    Reject an unusable policy before any instance is created.

    Raises ConfigurationError on the first problem found.
    """
    job_name = policy.job.name
    platforms: List[str] = list(policy.platforms)

    if not platforms:
        raise ConfigurationError("Platform set is empty", job=job_name)
    if len(set(platforms)) != len(platforms):
        dupes = sorted({p for p in platforms if platforms.count(p) > 1})
        raise ConfigurationError(f"Duplicate platforms: {dupes}", job=job_name)

    if not policy.on:
        raise ConfigurationError("Policy is not subscribed to any trigger event", job=job_name)

    for name in policy.env:
        if not ENV_NAME_RE.match(name):
            raise ConfigurationError(f"Invalid environment variable name {name!r}", job=job_name)

    if policy.elevation_platform is not None and policy.elevation_platform not in platforms:
        raise ConfigurationError(
            f"Elevation platform {policy.elevation_platform!r} is not in the platform set",
            job=job_name,
            platforms=platforms,
        )

    steps = policy.job.steps
    if not steps:
        raise ConfigurationError(f"Job '{job_name}' has no steps", job=job_name)

    names = [s.name for s in steps]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate step names: {dupes}", job=job_name)

    for step in steps:
        if step.when is not None:
            if not isinstance(step.when, (PlatformIs, PlatformIsNot)):
                raise ConfigurationError(
                    f"Unknown condition {step.when!r}", job=job_name, step=step.name
                )
            if step.when.platform not in platforms:
                raise ConfigurationError(
                    f"Condition '{step.when.describe()}' names a platform outside the platform set",
                    job=job_name,
                    step=step.name,
                    platforms=platforms,
                )

        if step.kind is StepKind.SHELL and not step.run.strip():
            raise ConfigurationError("Shell step has an empty command", job=job_name, step=step.name)

        for expr in expressions(step.run):
            if expr in MATRIX_KEYS:
                continue
            if expr.startswith("env."):
                var = expr[len("env."):]
                if var not in policy.env:
                    raise ConfigurationError(
                        f"Command references undefined variable env.{var}",
                        job=job_name,
                        step=step.name,
                        defined=sorted(policy.env),
                    )
                continue
            raise ConfigurationError(
                f"Unsupported expression '${{{{ {expr} }}}}'", job=job_name, step=step.name
            )

        if step.elevation is not None:
            _validate_elevation(policy, step)


def _validate_elevation(policy: Policy, step) -> None:
    job_name = policy.job.name
    elevation = step.elevation

    if step.kind is not StepKind.SHELL:
        raise ConfigurationError("Only shell steps can be elevated", job=job_name, step=step.name)
    if not elevation.command:
        raise ConfigurationError("Elevation command is empty", job=job_name, step=step.name)
    for name in elevation.preserve:
        if not ENV_NAME_RE.match(name):
            raise ConfigurationError(
                f"Invalid preserved variable name {name!r}", job=job_name, step=step.name
            )

    target = policy.elevation_platform
    if target is None:
        return
    if step.when != PlatformIs(target):
        raise ConfigurationError(
            f"Elevated step must be gated on 'platform == {target}'",
            job=job_name,
            step=step.name,
        )
