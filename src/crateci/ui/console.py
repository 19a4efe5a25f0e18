"""Console output formatting utilities for crateci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional, Sequence

from ..model import Job, JobReport, ReleaseDecision, Trigger


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # jobs print from worker threads
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        crate: str,
        pipeline: str,
        trigger: Trigger,
        job_count: int,
        commit: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        kind = f"tag {trigger.tag}" if trigger.is_tag else f"commit on {trigger.branch or '(unknown branch)'}"
        lines = [
            "\nRUN STARTED",
            f"Crate: {crate}",
            f"Pipeline: {pipeline}",
            f"Trigger: {kind}",
        ]
        if commit:
            lines.append(f"Commit: {commit}")
        lines += [f"Jobs: {job_count}", ""]
        self._emit(*lines)

    def print_job_start(self, name: str) -> None:
        self._emit(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, step: str) -> None:
        self._emit(f"[{job}] STEP: {step}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        output: Optional[str] = None,
    ) -> None:
        """
        Print a job failure.

        Args:
            name: Job name
            reason: Failure message
            exit_code: Optional exit code
            output: Captured output tail; shown in full only in debug mode
        """
        lines = [f"JOB FAILED: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        if output:
            tail = output if self.debug else "\n".join(output.splitlines()[-20:])
            lines.append(tail)
        self._emit(*lines)

    def print_cache(self, job: str, status: str) -> None:
        self._emit(f"[{job}] CACHE: {status}")

    def print_plan(self, jobs: Sequence[Job], decisions: Iterable[ReleaseDecision]) -> None:
        """Print expanded jobs with their release decision."""
        self.print_header("PLAN")
        for job, decision in zip(jobs, decisions):
            flags = " ".join(
                part for part in (
                    f"features={job.features}" if job.features else "",
                    f"cpu={job.cpu}" if job.cpu else "",
                ) if part
            )
            release = "release" if decision.eligible else f"no release ({decision.reason})"
            self._emit(f"  {job.name}: {job.target} [{job.channel}] {flags}".rstrip() + f" -> {release}")

    def print_warning(self, message: str) -> None:
        self._emit(f"WARNING: {message}", err=True)

    def print_results(self, reports: Sequence[JobReport]) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for r in reports:
            status_display = "SUCCESS" if r.status == "ok" else r.status.upper()
            line = f"  {r.job.name}: {status_display}"
            if r.publish is not None:
                line += f" (published {', '.join(r.publish.artifacts)})"
            elif r.publish_error:
                line += " (publish FAILED)"
            lines.append(line)
        self._emit(*lines)
        for r in reports:
            if r.publish_error:
                self._emit(f"  {r.job.name}: {r.publish_error}", err=True)

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
        lines += [f"  {d}" for d in (details or [])]
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
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
