"""Console output formatting utilities for compatgate."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from ..gate import GateReport


class Console:
    """Centralized console output formatting. Safe to call from job threads."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces and job logs
            quiet: If True, only the final report and errors are printed
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(self, run_id: str, trigger: str, job_count: int) -> None:
        """Print run start information."""
        if self.quiet:
            return
        self._out("\nRUN STARTED", f"Run: {run_id}", f"Trigger: {trigger}", f"Jobs: {job_count}", "")

    def print_job_start(self, name: str, resource: str | None = None) -> None:
        if self.quiet:
            return
        where = f" on {resource}" if resource else ""
        self._out(f"JOB STARTED: {name}{where}")

    def print_step(self, job: str, name: str) -> None:
        if self.quiet:
            return
        self._out(f"[{job}] STEP: {name}")

    def print_success(self, name: str, duration: Optional[float] = None) -> None:
        if self.quiet:
            return
        took = f" ({duration:.1f}s)" if duration is not None else ""
        self._out(f"STATUS: {name} success{took}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
    ) -> None:
        """
        Print job failure message.

        Only the first line of `reason` is shown unless debug is enabled.
        """
        lines = [f"JOB FAILED: {name}"]
        if exit_code is not None:
            lines.append(f"  Exit code: {exit_code}")
        if hint:
            lines.append(f"  Hint: {hint}")
        if self.debug:
            lines.append(f"  Error details: {reason}")
        else:
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"  Error: {error_line}")
        self._out(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        if self.quiet:
            return
        self._out(f"STATUS: {name} skipped ({reason})")

    def print_logs(self, name: str, logs: str) -> None:
        if not self.debug or not logs:
            return
        self._out(*(f"[{name}] | {line}" for line in logs.rstrip().splitlines()))

    def print_plan_job(self, name: str, reason: str) -> None:
        """Print job selection plan."""
        self._out(f"  {name} ({reason})")

    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped in plan."""
        self._out(f"  {name} (skipped: {reason})")

    def print_findings(self, findings: List[Dict[str, Any]], indent: str = "    ") -> None:
        self._out(*(f"{indent}- {f.get('element')}: {f.get('kind')}  {f.get('detail', '')}".rstrip() for f in findings))

    def print_report(self, report: "GateReport") -> None:
        """Print final gate report."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for entry in report.entries:
            status = entry["status"].upper()
            if entry.get("skip_reason"):
                status += f" ({entry['skip_reason']})"
            elif entry.get("error_kind"):
                status += f" ({entry['error_kind']})"
            optional = "  [optional]" if entry.get("optional") else ""
            lines.append(f"  {entry['name']}: {status}{optional}")
            diagnostic = entry.get("diagnostic")
            if diagnostic and entry["status"] != "succeeded":
                shown = diagnostic if self.debug else diagnostic.split("\n")[0]
                lines.extend(f"      {line}" for line in shown.splitlines())
            for f in entry.get("findings") or []:
                lines.append(f"      - {f.get('element')}: {f.get('kind')}  {f.get('detail', '')}".rstrip())
        lines.append("")
        lines.append(f"GATE: {report.decision.value.upper()}")
        if report.reasons:
            lines.append("")
            lines.extend(f"  {reason}" for reason in report.reasons)
        self._out(*lines)

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
        self._out(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        if self.quiet:
            return
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (initialized by the CLI)
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
