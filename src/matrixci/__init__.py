from .dsl import sh, checkout, elevated, elevate_on, platform_is, platform_is_not, job, matrix, policy, define_policy
from .matrix import expand, plan
from .runner import run_instance, run_all, orchestrate, load_policy
from .validate import validate_policy
from .model import Policy, JobTemplate, JobInstance, Step, TriggerEvent, EventKind, Outcome, RunReport

__all__ = [
    "sh", "checkout", "elevated", "elevate_on", "platform_is", "platform_is_not",
    "job", "matrix", "policy", "define_policy",
    "expand", "plan", "run_instance", "run_all", "orchestrate", "load_policy", "validate_policy",
    "Policy", "JobTemplate", "JobInstance", "Step", "TriggerEvent", "EventKind", "Outcome", "RunReport",
]
