# errors.py
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional


class GradflowError(Exception):
    """Base class for every error raised by gradflow."""


@dataclass
class WorkflowError(GradflowError):
    """
    A workflow definition is invalid.

    Raised before any job runs. Carries every problem found so a user can
    fix them in one pass instead of one at a time.
    """
    problems: List[str]
    workflow: str = ""

    def __str__(self) -> str:
        head = f"invalid workflow {self.workflow!r}" if self.workflow else "invalid workflow"
        lines = [f"{head} ({len(self.problems)} problem(s))"]
        lines.extend(f"  - {p}" for p in self.problems)
        return "\n".join(lines)


@dataclass
class JobFailure(GradflowError):
    job: str
    exit_code: int
    cmd: str
    log_path: Optional[Path] = None
    tail: str = ""

    def __str__(self) -> str:
        first = self.cmd.strip().splitlines()[0] if self.cmd.strip() else ""
        msg = f"[{self.job}] command failed (exit={self.exit_code}): {first}"
        if self.log_path is not None:
            msg += f"\nlog={self.log_path}"
        return msg


@dataclass
class ArtifactError(GradflowError):
    ref: str
    message: str

    def __str__(self) -> str:
        return f"{self.ref}: {self.message}"


@dataclass
class BackendUnavailable(GradflowError):
    backend: str
    hint: str

    def __str__(self) -> str:
        return f"{self.backend} is not available. {self.hint}"
