"""Console output formatting utilities for pipelane."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..result import RunResult
    from ..trigger import TriggerDecision


class Console:
    """Centralized console output formatting. Safe to call from pipeline lanes."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only errors and the final results are printed
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, message: str, *, err: bool = False, force: bool = False) -> None:
        if self.quiet and not (err or force):
            return
        with self._lock:
            print(message, file=sys.stderr if err else sys.stdout, flush=True)

    def print_run_started(self, workflow: str, pipeline_count: int, changed: int) -> None:
        """Print run start information."""
        self._out(f"\nRUN STARTED\nWorkflow: {workflow}\nPipelines: {pipeline_count}\nChanged files: {changed}\n")

    def print_plan(self, decisions: list[TriggerDecision]) -> None:
        self._out("PLAN")
        for d in decisions:
            mark = "run " if d.selected else "skip"
            self._out(f"  {mark} {d.pipeline} ({d.reason})")

    def print_pipeline_start(self, name: str) -> None:
        self._out(f"[{name}] PIPELINE STARTED")

    def print_step(self, pipeline: str, step: str) -> None:
        self._out(f"[{pipeline}] STEP: {step}")

    def print_step_skipped(self, pipeline: str, step: str, reason: str) -> None:
        self._out(f"[{pipeline}] STEP: {step} (skipped: {reason})")

    def print_step_failure(self, pipeline: str, step: str, reason: str, exit_code: Optional[int] = None) -> None:
        """Print a failed step; full output only in debug mode."""
        lines = [f"[{pipeline}] STEP FAILED: {step}"]
        if exit_code is not None:
            lines.append(f"[{pipeline}] Exit code: {exit_code}")
        if reason:
            if self.debug:
                lines.append(f"[{pipeline}] Error details: {reason}")
            else:
                lines.append(f"[{pipeline}] Error: {reason.strip().splitlines()[-1]}")
        self._out("\n".join(lines), err=True)

    def print_cache(self, pipeline: str, reason: str) -> None:
        self._out(f"[{pipeline}] CACHE: {reason}")

    def print_cache_saved(self, pipeline: str, key: str, saved: bool) -> None:
        short_key = key[:24] + "..." if len(key) > 24 else key
        self._out(f"[{pipeline}] CACHE: {'saved' if saved else 'already stored'} ({short_key})")

    def print_publish(self, pipeline: str, reference: str, attempts: int) -> None:
        suffix = f" after {attempts} attempts" if attempts > 1 else ""
        self._out(f"[{pipeline}] PUBLISHED: {reference}{suffix}")

    def print_publish_failure(self, pipeline: str, target: str, kind: str, message: str) -> None:
        self._out(f"[{pipeline}] PUBLISH FAILED: {target} ({kind}) {message}", err=True)

    def print_retry(self, pipeline: str, target: str, attempt: int, delay: float) -> None:
        self._out(f"[{pipeline}] RETRY: {target} attempt {attempt} in {delay:.1f}s")

    def print_results(self, result: RunResult) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for name, p in result.pipelines.items():
            line = f"  {name}: {p.status.value.upper()}"
            if p.reason:
                line += f" ({p.reason})"
            lines.append(line)
            for ref in p.published:
                lines.append(f"    -> {ref}")
            for r in p.failed_publishes:
                lines.append(f"    x {r.target}: {r.error_kind}")
        lines.append(f"RUN: {result.status.value.upper()}")
        self._out("\n".join(lines), force=True)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """Print structured error message."""
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out("\n".join(lines), err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


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
