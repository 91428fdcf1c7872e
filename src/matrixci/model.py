# model.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


# ---------------------------------------------------------------------
# Platforms
# ---------------------------------------------------------------------

LINUX = "linux"
WINDOWS = "windows"
MACOS = "macos"

DEFAULT_PLATFORMS: Tuple[str, ...] = (LINUX, WINDOWS, MACOS)


# ---------------------------------------------------------------------
# Step conditions (tagged variants over the platform identifier)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class PlatformIs:
    """Run only on `platform`."""
    platform: str

    def evaluate(self, platform: str) -> bool:
        return platform == self.platform

    def describe(self) -> str:
        return f"platform == {self.platform}"


@dataclass(frozen=True)
class PlatformIsNot:
    """Run everywhere except `platform`."""
    platform: str

    def evaluate(self, platform: str) -> bool:
        return platform != self.platform

    def describe(self) -> str:
        return f"platform != {self.platform}"


Condition = Union[PlatformIs, PlatformIsNot]


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------

class StepKind(str, enum.Enum):
    SHELL = "shell"
    CHECKOUT = "checkout"


@dataclass(frozen=True)
class Elevation:
    """
    Re-run a command with elevated privileges.

    Elevation resets the environment on most systems, so every name in
    `preserve` is passed across the privilege boundary explicitly.
    """
    preserve: Tuple[str, ...] = ("PATH",)
    command: Tuple[str, ...] = ("sudo",)


@dataclass(frozen=True)
class Step:
    """A single named unit of work inside a job."""
    name: str
    run: str
    cwd: str | None = None
    kind: StepKind = StepKind.SHELL
    when: Optional[Condition] = None
    elevation: Optional[Elevation] = None
    ref: str | None = None  # checkout only

    @property
    def elevated(self) -> bool:
        return self.elevation is not None

    def selected_for(self, platform: str) -> bool:
        if self.when is None:
            return True
        return self.when.evaluate(platform)


@dataclass(frozen=True)
class JobTemplate:
    """The logical job that gets expanded once per platform."""
    name: str
    steps: Tuple[Step, ...]


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

class EventKind(str, enum.Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"

    @classmethod
    def parse(cls, value: Union[str, "EventKind"]) -> "EventKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            known = ", ".join(k.value for k in cls)
            raise ValueError(f"Unknown event kind {value!r} (expected one of: {known})") from None


@dataclass(frozen=True)
class TriggerEvent:
    kind: EventKind
    ref: str | None = None


# ---------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------

def freeze_env(env: Optional[Mapping[str, Any]]) -> Mapping[str, str]:
    return MappingProxyType({str(k): str(v) for k, v in (env or {}).items()})


@dataclass(frozen=True)
class Policy:
    """
    The declared orchestration policy.

    `env` is the environment overlay shared (read-only) by every step of
    every instance.
    """
    job: JobTemplate
    platforms: Tuple[str, ...] = DEFAULT_PLATFORMS
    on: Tuple[EventKind, ...] = (EventKind.PUSH, EventKind.PULL_REQUEST)
    fail_fast: bool = False
    env: Mapping[str, str] = field(default_factory=lambda: freeze_env({}))
    elevation_platform: str | None = None

    def triggered_by(self, event: TriggerEvent) -> bool:
        return event.kind in self.on


# ---------------------------------------------------------------------
# Execution state
# ---------------------------------------------------------------------

class Outcome(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_RUN = "not_run"
    CANCELLED = "cancelled"


@dataclass
class StepRecord:
    name: str
    status: StepStatus = StepStatus.PENDING
    exit_code: int | None = None
    error: str | None = None


@dataclass
class JobInstance:
    """One platform-bound copy of the job template."""
    job: str
    platform: str
    steps: Tuple[Step, ...]
    env: Mapping[str, str]
    outcome: Outcome = Outcome.PENDING
    records: List[StepRecord] = field(default_factory=list)
    error: str | None = None

    def __post_init__(self) -> None:
        if not self.records:
            self.records = [StepRecord(name=s.name) for s in self.steps]

    @property
    def name(self) -> str:
        return f"{self.job} ({self.platform})"

    def record(self, step_name: str) -> StepRecord:
        for rec in self.records:
            if rec.name == step_name:
                return rec
        raise KeyError(step_name)


@dataclass
class RunReport:
    """Aggregate result of one orchestrated run."""
    event: TriggerEvent | None
    instances: Dict[str, JobInstance] = field(default_factory=dict)
    triggered: bool = True

    @property
    def outcomes(self) -> Dict[str, Outcome]:
        return {platform: inst.outcome for platform, inst in self.instances.items()}

    @property
    def failed(self) -> bool:
        return any(o is Outcome.FAILED for o in self.outcomes.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event.kind.value if self.event else None,
            "triggered": self.triggered,
            "failed": self.failed,
            "outcomes": {p: o.value for p, o in self.outcomes.items()},
            "instances": {
                platform: {
                    "job": inst.job,
                    "outcome": inst.outcome.value,
                    "error": inst.error,
                    "steps": [
                        {
                            "name": rec.name,
                            "status": rec.status.value,
                            "exit_code": rec.exit_code,
                            "error": rec.error,
                        }
                        for rec in inst.records
                    ],
                }
                for platform, inst in self.instances.items()
            },
        }
