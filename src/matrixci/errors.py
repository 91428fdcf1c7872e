# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the JSON run report
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigurationError(CIError):
    """The policy itself is unusable. Raised before any instance starts."""

    def __init__(self, message: str, *, job: str = "", step: str | None = None, **details) -> None:
        super().__init__(kind="configuration_error", job=job, step=step, message=message, details=details)


class ProvisioningError(CIError):
    """The requested platform environment could not be supplied."""

    def __init__(self, message: str, *, job: str = "", platform: str = "", **details) -> None:
        details.setdefault("platform", platform)
        super().__init__(kind="provisioning_error", job=job, step=None, message=message, details=details)


@dataclass
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int
    output: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class Cancelled(Exception):
    """The run was stopped from outside while a command was running."""
