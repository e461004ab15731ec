"""Console output formatting utilities for gradflow."""

from __future__ import annotations

import sys
import threading
from typing import Dict, List, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # jobs report from worker threads
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        run_id: str,
        job_count: int,
        backend: str,
    ) -> None:
        """Print run start information."""
        self._emit(
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Run ID: {run_id}",
            f"Jobs: {job_count}",
            f"Backend: {backend}",
            "",
        )

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print the stages jobs can run in."""
        lines = ["PLAN"]
        for idx, level in enumerate(levels, start=1):
            lines.append(f"  Stage {idx}: {', '.join(level)}")
        self._emit(*lines)

    def print_job_start(self, name: str, instance_type: Optional[str] = None) -> None:
        """Print job start message."""
        tier = f" [{instance_type}]" if instance_type else ""
        self._emit(f"JOB STARTED: {name}{tier}")

    def print_job_success(self, name: str, duration: Optional[float] = None) -> None:
        """Print job success message."""
        took = f" ({duration:.1f}s)" if duration is not None else ""
        self._emit(f"JOB SUCCEEDED: {name}{took}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        tail: Optional[str] = None,
    ) -> None:
        """
        Print job failure message.

        Args:
            name: Job name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            tail: Optional last lines of the job's output
        """
        lines = [f"JOB FAILED: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        if tail:
            lines.append("Output (last lines):")
            lines.extend(f"  | {line}" for line in tail.rstrip("\n").split("\n"))
        self._emit(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._emit(f"JOB SKIPPED: {name} ({reason})")

    def print_dataset_committed(self, job: str, spec: str, reused: bool = False) -> None:
        """Print dataset commit message."""
        note = " (unchanged, reused)" if reused else ""
        self._emit(f"DATASET: {job} -> {spec}{note}")

    def print_results(self, results: Dict[str, str]) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, status in results.items():
            status_display = status.upper() if status != "ok" else "SUCCESS"
            lines.append(f"  {job}: {status_display}")
        self._emit(*lines)

    def print_problems(self, workflow: str, problems: List[str]) -> None:
        """Print workflow validation problems."""
        if not problems:
            self._emit(f"{workflow}: OK")
            return
        self._emit(f"{workflow}: {len(problems)} problem(s)", *[f"  - {p}" for p in problems])

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
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


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
