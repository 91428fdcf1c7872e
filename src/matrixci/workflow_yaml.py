# workflow_yaml.py
#
# Reads a hosted-CI style workflow file into a Policy:
#
#   on: [push, pull_request]
#   env: {CARGO_TERM_COLOR: always}
#   jobs:
#     build:
#       runs-on: ${{ matrix.os }}
#       strategy:
#         fail-fast: false
#         matrix: {os: [ubuntu-latest, windows-latest, macos-latest]}
#       steps:
#       - uses: actions/checkout@v3
#       - {name: Run tests, run: cargo test, if: runner.os != 'macOS'}
#       - {name: Run tests (macos), run: sudo "PATH=$PATH" cargo test, if: runner.os == 'macOS'}
#
# Anything the orchestrator cannot honour is a ConfigurationError.

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .dsl import checkout, define_policy, elevated, job, sh
from .errors import ConfigurationError
from .model import LINUX, MACOS, WINDOWS, Condition, EventKind, PlatformIs, PlatformIsNot, Policy, Step

RUNNER_LABEL_PREFIXES = {
    "ubuntu": LINUX,
    "linux": LINUX,
    "windows": WINDOWS,
    "macos": MACOS,
}

RUNNER_OS = {
    "linux": LINUX,
    "windows": WINDOWS,
    "macos": MACOS,
}

MATRIX_RUNS_ON = re.compile(r"^\$\{\{\s*matrix\.(os|platform)\s*\}\}$")
EXPR_WRAPPER = re.compile(r"^\$\{\{\s*(.*?)\s*\}\}$", re.S)
IF_RE = re.compile(r"^(runner\.os|matrix\.os|matrix\.platform)\s*(==|!=)\s*'([^']*)'$")
SUDO_RE = re.compile(r"^sudo\s+((?:\"?[A-Za-z_][A-Za-z0-9_]*=\$\{?[A-Za-z_][A-Za-z0-9_]*\}?\"?\s+)*)(\S.*)$", re.S)
ASSIGN_RE = re.compile(r"\"?([A-Za-z_][A-Za-z0-9_]*)=\$\{?([A-Za-z_][A-Za-z0-9_]*)\}?\"?")

CHECKOUT_ACTION = "actions/checkout"


def platform_for_label(label: str) -> str:
    """ubuntu-latest -> linux, windows-2022 -> windows, macos-14 -> macos."""
    key = str(label).strip().lower()
    for prefix, platform in RUNNER_LABEL_PREFIXES.items():
        if key == prefix or key.startswith(prefix + "-"):
            return platform
    raise ConfigurationError(f"Unknown runner label {label!r}", labels=sorted(RUNNER_LABEL_PREFIXES))


def _events(raw: Any) -> Tuple[EventKind, ...]:
    if raw is None:
        raise ConfigurationError("Workflow has no 'on' triggers")
    if isinstance(raw, str):
        names = [raw]
    elif isinstance(raw, dict):
        names = list(raw)
    else:
        names = list(raw)

    kinds: List[EventKind] = []
    for name in names:
        try:
            kinds.append(EventKind.parse(name))
        except ValueError:
            # other hosted-CI triggers (schedule, workflow_dispatch, ...) do not apply here
            continue
    if not kinds:
        raise ConfigurationError(f"None of the triggers {names} are push or pull_request")
    return tuple(kinds)


def parse_condition(expr: Any, *, step: str, platforms: List[str]) -> Optional[Condition]:
    """
    runner.os != 'macOS'      -> PlatformIsNot("macos")
    matrix.os == 'macos-14'   -> PlatformIs("macos")
    """
    if expr is None:
        return None
    text = str(expr).strip()
    wrapped = EXPR_WRAPPER.match(text)
    if wrapped:
        text = wrapped.group(1)

    m = IF_RE.match(text)
    if not m:
        raise ConfigurationError(f"Unsupported condition {expr!r}", step=step)

    subject, op, value = m.groups()
    if subject == "runner.os":
        platform = RUNNER_OS.get(value.strip().lower())
        if platform is None:
            raise ConfigurationError(f"Unknown runner.os value {value!r}", step=step)
    elif value in platforms:
        platform = value
    else:
        platform = platform_for_label(value)

    return PlatformIs(platform) if op == "==" else PlatformIsNot(platform)


def _split_sudo(run: str) -> Optional[Tuple[List[str], str]]:
    """
    sudo "PATH=$PATH" cargo test -> (["PATH"], "cargo test")

    Only NAME=$NAME assignments count as preservation.
    """
    m = SUDO_RE.match(run.strip())
    if not m:
        return None
    preserve: List[str] = []
    for name, source in ASSIGN_RE.findall(m.group(1)):
        if name != source:
            return None
        preserve.append(name)
    return preserve, m.group(2).strip()


def _step(raw: Dict[str, Any], index: int, platforms: List[str]) -> Step:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Step #{index + 1} is not a mapping")

    uses = raw.get("uses")
    run = raw.get("run")
    name = raw.get("name")
    if uses and run:
        raise ConfigurationError(f"Step #{index + 1} has both 'uses' and 'run'", step=name)

    if uses:
        action = str(uses).split("@", 1)[0]
        if action != CHECKOUT_ACTION:
            raise ConfigurationError(f"Unsupported action {uses!r}", step=name)
        if raw.get("if") is not None:
            raise ConfigurationError("Conditional checkout is not supported", step=name)
        ref = (raw.get("with") or {}).get("ref")
        return checkout(name or "Checkout", ref=ref)

    if not run:
        raise ConfigurationError(f"Step #{index + 1} has neither 'uses' nor 'run'", step=name)

    run = str(run).strip()
    name = name or f"Run {run.splitlines()[0]}"
    when = parse_condition(raw.get("if"), step=name, platforms=platforms)
    cwd = raw.get("working-directory")

    sudo = _split_sudo(run)
    if sudo is not None:
        preserve, cmd = sudo
        return elevated(name, cmd, preserve=preserve, cwd=cwd, when=when)
    return sh(name, run, cwd=cwd, when=when)


def _platforms(job_def: Dict[str, Any]) -> List[str]:
    runs_on = job_def.get("runs-on")
    if runs_on is None:
        raise ConfigurationError("Job has no 'runs-on'")

    strategy = job_def.get("strategy") or {}
    matrix_def = strategy.get("matrix") or {}

    m = MATRIX_RUNS_ON.match(str(runs_on).strip())
    if m:
        values = matrix_def.get(m.group(1))
        if not values:
            raise ConfigurationError(f"runs-on uses matrix.{m.group(1)} but the matrix does not define it")
        return [platform_for_label(v) for v in values]

    if isinstance(runs_on, list):
        raise ConfigurationError("runs-on label lists are not supported; use a matrix")
    return [platform_for_label(runs_on)]


def _elevation_platform(steps: List[Step]) -> Optional[str]:
    targets = {s.when.platform for s in steps if s.elevated and isinstance(s.when, PlatformIs)}
    if len(targets) == 1:
        return targets.pop()
    return None


def policy_from_dict(data: Dict[str, Any]) -> Policy:
    if not isinstance(data, dict):
        raise ConfigurationError("Workflow file must be a mapping")

    # YAML 1.1 reads a bare `on:` key as boolean True
    on = data.get("on", data.get(True))
    events = _events(on)

    jobs = data.get("jobs") or {}
    if len(jobs) != 1:
        raise ConfigurationError(f"Workflow must define exactly one job, found {len(jobs)}", jobs=sorted(jobs))
    job_name, job_def = next(iter(jobs.items()))
    job_def = job_def or {}

    platforms = _platforms(job_def)
    strategy = job_def.get("strategy") or {}
    # hosted CI defaults fail-fast to true when a matrix is present
    fail_fast = bool(strategy.get("fail-fast", True))

    env: Dict[str, Any] = dict(data.get("env") or {})
    env.update(job_def.get("env") or {})

    steps = [_step(raw, i, platforms) for i, raw in enumerate(job_def.get("steps") or [])]
    if not steps:
        raise ConfigurationError(f"Job '{job_name}' has no steps", job=job_name)

    return define_policy(
        job(str(job_name), *steps),
        platforms=platforms,
        on=events,
        fail_fast=fail_fast,
        env=env,
        elevation_platform=_elevation_platform(steps),
    )


def load_workflow_yaml(path: str | Path) -> Policy:
    p = Path(path)
    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    try:
        return policy_from_dict(data)
    except ConfigurationError as e:
        e.details.setdefault("file", str(p))
        raise
