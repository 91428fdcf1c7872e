from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

import pytest

from matrixci.dsl import checkout, define_policy, elevate_on, job, sh
from matrixci.errors import Cancelled, ProvisioningError
from matrixci.executor import CommandResult, Executor
from matrixci.model import Elevation, Policy
from matrixci.provision import Provisioner, Workspace
from matrixci.ui.console import Console

FIXTURES = Path(__file__).parent / "fixtures"


@dataclass
class Call:
    platform: str
    cmd: str
    cwd: str
    env: Dict[str, str]
    elevation: Optional[Elevation]


class RecordingExecutor(Executor):
    """
    Records every command instead of running it.

    `rule(platform, cmd)` returns the exit code; everything succeeds by default.
    """

    def __init__(self, rule: Optional[Callable[[str, str], int]] = None):
        self.rule = rule or (lambda platform, cmd: 0)
        self.calls: List[Call] = []
        self._lock = threading.Lock()

    def run(self, cmd, *, cwd, env, elevation=None, on_output=None, cancel_event=None):
        platform = env["FAKE_PLATFORM"]
        with self._lock:
            self.calls.append(Call(platform, cmd, cwd, dict(env), elevation))
        code = self.rule(platform, cmd)
        if on_output is not None:
            on_output(f"ran {cmd}\n")
        return CommandResult(exit_code=code, output=f"exit {code}")

    def for_platform(self, platform: str) -> List[Call]:
        return [c for c in self.calls if c.platform == platform]


class BlockingExecutor(Executor):
    """
    Blocks until the run's stop signal is set (or `hold` seconds pass).

    Commands containing "fail" return 1 immediately.
    """

    def __init__(self, hold: float = 5.0):
        self.hold = hold
        self.started = threading.Event()

    def run(self, cmd, *, cwd, env, elevation=None, on_output=None, cancel_event=None):
        if "fail" in cmd:
            return CommandResult(exit_code=1)
        self.started.set()
        if cancel_event is not None and cancel_event.wait(self.hold):
            raise Cancelled(cmd)
        return CommandResult(exit_code=0)


class FakeProvisioner(Provisioner):
    """Gives each platform its own directory and a distinct PATH."""

    def __init__(self, root: Path, unavailable: tuple = ()):
        self.root = root
        self.unavailable = set(unavailable)

    def provision(self, platform: str, job: str = "") -> Workspace:
        if platform in self.unavailable:
            raise ProvisioningError(f"no {platform} runners", job=job, platform=platform)
        path = self.root / platform
        path.mkdir(parents=True, exist_ok=True)
        env = {"PATH": f"/opt/{platform}/toolchain/bin:/usr/bin", "FAKE_PLATFORM": platform}
        return Workspace(platform=platform, path=path, env=env, in_place=True)


def build_policy(**overrides) -> Policy:
    kwargs = dict(
        platforms=["linux", "windows", "macos"],
        on=["push", "pull_request"],
        fail_fast=False,
        env={"CARGO_TERM_COLOR": "always"},
        elevation_platform="macos",
    )
    kwargs.update(overrides)
    return define_policy(
        job(
            "build",
            checkout(),
            sh("Build", "cargo build --verbose --all-targets"),
            *elevate_on("macos", "Run tests", "cargo test --verbose", preserve=["PATH"]),
        ),
        **kwargs,
    )


@pytest.fixture
def canonical_policy() -> Policy:
    return build_policy()


@pytest.fixture
def provisioner(tmp_path) -> FakeProvisioner:
    return FakeProvisioner(tmp_path / "work")


@pytest.fixture
def console() -> Console:
    return Console(debug=True)
