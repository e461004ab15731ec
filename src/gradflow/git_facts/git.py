# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

from ..backends import TOOL_HINTS
from ..errors import BackendUnavailable


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.
    Every other function builds on top of this to ensure:
    - consistent invocation of git
    - consistent text output (not bytes)
    - a single place that turns "git is not installed" into a readable error

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero.
        BackendUnavailable: git is not on PATH.
    """
    try:
        out = subprocess.check_output(
            ["git", *args],
            cwd=str(cwd) if cwd else None,
            text=True,   # return output as str instead of bytes
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError:
        raise BackendUnavailable(backend="git", hint=TOOL_HINTS["git"])

    # Strip trailing newlines so callers can do clean string comparisons
    return out.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """
    Return the full SHA hash of the current HEAD commit.

    Recorded in run records so a run can be traced back to the commit
    whose push triggered it.
    """
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def get_current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Return the current branch name, or the HEAD SHA when detached.

    Workflow triggers are keyed on branch names, so this is what
    `gradflow trigger` compares against `on.github.branches.only`.
    """
    # `--abbrev-ref HEAD` prints the branch, or literally "HEAD" if detached
    ref = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if ref == "HEAD":
        return head_sha(cwd=cwd)
    return ref


def clone(url: str, dest: str | Path, ref: Optional[str] = None) -> Path:
    """
    Clone `url` into `dest` and optionally check out `ref`.

    `dest` may already exist but must be empty; git refuses anything else,
    which is what we want for a fresh job output.

    Returns:
        Path to the checkout.
    """
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)

    # --quiet keeps progress meters out of job logs
    _git(["clone", "--quiet", url, str(dest)])

    if ref:
        _git(["checkout", "--quiet", ref], cwd=dest)

    return dest
