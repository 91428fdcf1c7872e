# executor.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

from .errors import CIError, Cancelled
from .model import Elevation

OutputFn = Callable[[str], None]

OUTPUT_TAIL_CHARS = 4000


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def shell_prefix() -> List[str]:
    if os.name == "nt":
        return ["cmd", "/c"]
    return ["/bin/sh", "-c"]


def preserved_env(env: Mapping[str, str], elevation: Elevation) -> Dict[str, str]:
    """
    The variables that must survive the privilege boundary, with the values
    the rest of the instance sees.
    """
    missing = [name for name in elevation.preserve if name not in env]
    if missing:
        raise CIError(
            kind="elevation_env_missing",
            job="",
            step=None,
            message=f"Variables to preserve across elevation are not set: {missing}",
            details={"preserve": list(elevation.preserve)},
        )
    return {name: env[name] for name in elevation.preserve}


def elevated_argv(
    cmd: str,
    env: Mapping[str, str],
    elevation: Elevation,
    command: Optional[Sequence[str]] = None,
) -> List[str]:
    """
    sudo PATH=<value> /bin/sh -c <cmd>

    `command` overrides the elevation command declared on the step.
    """
    keep = preserved_env(env, elevation)
    return [
        *(command or elevation.command),
        *(f"{k}={v}" for k, v in keep.items()),
        *shell_prefix(),
        cmd,
    ]


class Executor:
    """Runs one command and reports its exit status."""

    def run(
        self,
        cmd: str,
        *,
        cwd: str,
        env: Mapping[str, str],
        elevation: Optional[Elevation] = None,
        on_output: Optional[OutputFn] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> CommandResult:
        """
        A command that cannot be started at all raises
        CIError(kind="command_not_found") naming the missing program.
        """
        raise NotImplementedError


class ShellExecutor(Executor):
    """
    Runs commands through the platform shell.

    Output is streamed line by line to `on_output` and the tail is kept for
    failure reports. A set `cancel_event` terminates the process.
    """

    def __init__(
        self,
        elevation_command: Optional[Sequence[str]] = None,
        poll_interval: float = 0.1,
        kill_timeout: float = 5.0,
    ):
        self.elevation_command = list(elevation_command) if elevation_command else None
        self.poll_interval = poll_interval
        self.kill_timeout = kill_timeout

    def build_command(
        self, cmd: str, env: Mapping[str, str], elevation: Optional[Elevation]
    ) -> Union[str, List[str]]:
        if elevation is None:
            return cmd
        return elevated_argv(cmd, env, elevation, self.elevation_command)

    def run(
        self,
        cmd: str,
        *,
        cwd: str,
        env: Mapping[str, str],
        elevation: Optional[Elevation] = None,
        on_output: Optional[OutputFn] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> CommandResult:
        args = self.build_command(cmd, env, elevation)
        try:
            proc = subprocess.Popen(
                args,
                shell=isinstance(args, str),
                cwd=cwd,
                env=dict(env),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                # own process group so cancellation reaches the whole command tree
                start_new_session=(os.name != "nt"),
            )
        except OSError as e:
            program = str(e.filename or (args if isinstance(args, str) else args[0]))
            raise CIError(
                kind="command_not_found",
                job="",
                step=None,
                message=f"Could not start {program!r}: {e.strerror or e}",
                details={"command": os.path.basename(program)},
            ) from e

        tail: deque[str] = deque(maxlen=200)
        stdout = proc.stdout

        def _pump() -> None:
            if stdout is None:
                return
            for line in stdout:
                tail.append(line)
                if on_output is not None:
                    on_output(line)

        reader = threading.Thread(target=_pump, daemon=True)
        reader.start()

        try:
            while True:
                try:
                    code = proc.wait(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    if cancel_event is not None and cancel_event.is_set():
                        self._terminate(proc)
                        reader.join(timeout=self.kill_timeout)
                        raise Cancelled(cmd)
            reader.join()
        finally:
            if stdout is not None:
                stdout.close()

        return CommandResult(exit_code=code, output="".join(tail)[-OUTPUT_TAIL_CHARS:])

    def _terminate(self, proc: subprocess.Popen) -> None:
        self._signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.kill_timeout)
        except subprocess.TimeoutExpired:
            self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            proc.wait()

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        if os.name == "nt":
            if sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
            return
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass  # already exited
