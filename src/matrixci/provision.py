# provision.py
from __future__ import annotations

import os
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from .errors import ProvisioningError
from .model import LINUX, MACOS, WINDOWS

HOST = "host"
EMULATE = "emulate"
MODES = (HOST, EMULATE)


def host_platform() -> str:
    if sys.platform.startswith("win"):
        return WINDOWS
    if sys.platform == "darwin":
        return MACOS
    return LINUX


@dataclass
class Workspace:
    """An isolated execution environment for one job instance."""
    platform: str
    path: Path
    env: Dict[str, str] = field(default_factory=dict)
    in_place: bool = False  # workspace is the source tree itself


class Provisioner:
    def provision(self, platform: str, job: str = "") -> Workspace:
        raise NotImplementedError


class LocalProvisioner(Provisioner):
    """
    Supplies workspaces on the local machine.

    host:    only the host platform can be provisioned; it runs in the
             source tree directly.
    emulate: every platform gets a fresh directory under `work_dir`
             (the checkout step fills it); commands still run on the host.
    """

    def __init__(
        self,
        source: str | Path = ".",
        work_dir: str | Path = ".matrixci/work",
        mode: str = HOST,
        base_env: Optional[Dict[str, str]] = None,
    ):
        if mode not in MODES:
            raise ValueError(f"Unknown provisioning mode {mode!r} (expected one of {MODES})")
        self.source = Path(source).resolve()
        self.work_dir = Path(work_dir)
        if not self.work_dir.is_absolute():
            self.work_dir = self.source / self.work_dir
        self.mode = mode
        self.base_env = dict(base_env) if base_env is not None else None

    def _env(self) -> Dict[str, str]:
        return dict(self.base_env if self.base_env is not None else os.environ)

    def provision(self, platform: str, job: str = "") -> Workspace:
        if self.mode == HOST:
            host = host_platform()
            if platform != host:
                raise ProvisioningError(
                    f"Cannot provision '{platform}' on a {host} host",
                    job=job,
                    platform=platform,
                    hint="Run on a matching machine or use --emulate",
                )
            return Workspace(platform=platform, path=self.source, env=self._env(), in_place=True)

        path = self.work_dir / platform
        try:
            if path.exists():
                shutil.rmtree(path)
            path.mkdir(parents=True)
        except OSError as e:
            raise ProvisioningError(
                f"Could not prepare workspace {path}: {e}", job=job, platform=platform
            ) from e
        return Workspace(platform=platform, path=path, env=self._env(), in_place=False)
