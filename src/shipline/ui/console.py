"""Console output formatting utilities for shipline."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from shipline.environments import Environment
    from shipline.model import PipelineRun


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces and step logs
            quiet: If True, only errors and final results are printed
        """
        self.debug = debug
        self.quiet = quiet
        # jobs run on worker threads; keep multi-line blocks together
        self._lock = threading.Lock()

    def _out(self, *lines: str) -> None:
        if self.quiet:
            return
        with self._lock:
            for line in lines:
                print(line)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        run_id: str,
        pipeline: str,
        ref: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Run: {run_id}",
            f"Pipeline: {pipeline}",
            f"Ref: {ref}",
            f"Jobs: {job_count}",
        )

    def print_not_triggered(self, pipeline: str, event: str, ref: str) -> None:
        self._out(f"\nNOT TRIGGERED: {pipeline} does not run on {event} to {ref}")

    def print_queued(self, group: str, active: Optional[str], ahead: int) -> None:
        """Print that a run waits for its concurrency group."""
        self._out(f"QUEUED: group '{group}' busy (active run {active}, {ahead} ahead)")

    def print_cancel_requested(self, group: str, run_id: str) -> None:
        self._out(f"CANCELLING: run {run_id} in group '{group}'")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] STEP: {name}")

    def print_success(self, name: str) -> None:
        """Print success message."""
        self._out(f"[{name}] STATUS: success")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
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
        # failures go to stderr so they survive quiet mode
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"\nJOB SKIPPED: {name} ({reason})")

    def print_job_cancelled(self, name: str, reason: str) -> None:
        self._out(f"\nJOB CANCELLED: {name} ({reason})")

    def print_deployed(self, environment: str, url: Optional[str]) -> None:
        self._out(f"DEPLOYED: {environment} -> {url}")

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print execution stages."""
        for idx, level in enumerate(levels):
            self._out(f"=== Stage {idx + 1}: {', '.join(level)} ===")

    def print_results(self, run: "PipelineRun") -> None:
        """Print final results summary (printed even when quiet)."""
        with self._lock:
            print("\n" + "=" * 40)
            print(f"RESULTS ({run.run_id})")
            print("=" * 40)
            for name, res in run.jobs.items():
                line = f"  {name}: {res.status.value.upper()}"
                if res.error_kind and res.status.value != "success":
                    line += f" [{res.error_kind}]"
                print(line)
            for env, url in run.environments.items():
                print(f"  environment {env}: {url}")
            print(f"RUN STATUS: {run.status.value.upper()}")

    def print_environments(self, envs: Iterable["Environment"]) -> None:
        envs = list(envs)
        if not envs:
            print("No environments recorded.")
            return
        for env in envs:
            print(f"{env.name}: {env.url or '-'} (run {env.last_run_id or '-'}, {env.deployed_at or 'never'})")

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
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


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
