# git.py
# Small, focused wrapper around the Git CLI.
# All Git interactions go through here so the rest of the codebase never
# calls subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional, Union

PathLike = Union[str, Path]


def _git(args: list[str], cwd: Optional[PathLike] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this
    file. A non-zero exit raises subprocess.CalledProcessError.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def head_sha(cwd: Optional[PathLike] = None) -> str:
    """
    Return the full SHA hash of the current HEAD commit.

    Recorded in run reports so a result can be tied to the exact commit it
    was produced from.
    """
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def get_remote_url(remote: str = "origin", cwd: Optional[PathLike] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)


def clone(source: PathLike, dest: PathLike) -> None:
    """
    Clone `source` (a path or URL) into `dest`.

    Local sources are cloned with --no-hardlinks so every workspace owns its
    object store.
    """
    args = ["clone", "--quiet"]
    if Path(str(source)).exists():
        args.append("--no-hardlinks")
    _git([*args, str(source), str(dest)])


def checkout(ref: str, cwd: PathLike) -> None:
    """Check out `ref` (branch, tag or sha) in the repository at `cwd`."""
    _git(["checkout", "--quiet", ref], cwd=cwd)
