"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional, Sequence, Tuple


class Console:
    """Centralized console output formatting.

    Job instances run on worker threads, so every write goes through a lock
    and every instance line carries its platform prefix.
    """

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        self._lock = threading.Lock()

    def _emit(self, line: str, file=None) -> None:
        with self._lock:
            print(line, file=file or sys.stdout, flush=True)

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        event: str,
        platforms: Sequence[str],
    ) -> None:
        """Print run start information."""
        self._emit(
            "\nRUN STARTED\n"
            f"Repository: {repository}\n"
            f"Workflow: {workflow}\n"
            f"Event: {event}\n"
            f"Platforms: {', '.join(platforms)}\n"
        )

    def print_not_triggered(self, event: str) -> None:
        self._emit(f"Policy is not subscribed to '{event}' events; nothing to run.")

    def print_job_start(self, platform: str, name: str) -> None:
        """Print job instance start message."""
        self._emit(f"[{platform}] JOB STARTED: {name}")

    def print_step(self, platform: str, name: str, elevated: bool = False) -> None:
        """Print step start message."""
        suffix = " (elevated)" if elevated else ""
        self._emit(f"[{platform}] STEP: {name}{suffix}")

    def print_step_skipped(self, platform: str, name: str, reason: str) -> None:
        self._emit(f"[{platform}] SKIPPED: {name} ({reason})")

    def print_output(self, platform: str, line: str) -> None:
        """Print one line of command output."""
        self._emit(f"[{platform}]   {line.rstrip()}")

    def print_success(self, platform: str) -> None:
        """Print success message."""
        self._emit(f"[{platform}] STATUS: succeeded")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
        platform: Optional[str] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
            platform: Optional platform prefix
        """
        prefix = f"[{platform}] " if platform else ""
        lines = [f"{prefix}{'JOB FAILED' if is_job else 'STEP FAILED'}: {name}"]
        if exit_code is not None:
            lines.append(f"{prefix}Exit code: {exit_code}")
        if hint:
            lines.append(f"{prefix}Hint: {hint}")
        if self.debug:
            lines.append(f"{prefix}Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            if error_line:
                lines.append(f"{prefix}Error: {error_line}")
        self._emit("\n".join(lines))

    def print_plan(self, job: str, rows: Iterable[Tuple[str, Sequence[Tuple[str, bool]]]]) -> None:
        """Print the expanded instance/step structure."""
        out = [f"\nPLAN: {job}"]
        for platform, steps in rows:
            out.append(f"  {platform}:")
            for step_name, selected in steps:
                marker = "run " if selected else "skip"
                out.append(f"    [{marker}] {step_name}")
        self._emit("\n".join(out))

    def print_results(self, outcomes: dict[str, str]) -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for platform, status in outcomes.items():
            lines.append(f"  {platform}: {status.upper()}")
        self._emit("\n".join(lines))

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit("\n".join(lines), file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
