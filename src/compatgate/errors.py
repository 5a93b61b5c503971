# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the gate report
      - debugging without full tracebacks
    """
    kind: str
    job: str | None
    step: str | None
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigurationError(CIError):
    """Cyclic graph, dangling artifact dependency, bad predicate. Raised before a Run starts."""

    def __init__(self, message: str, *, job: str | None = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(kind="configuration", job=job, step=None, message=message, details=details or {})


class ExecutionFailure(CIError):
    def __init__(self, job: str, step: str, cmd: str, exit_code: int, *, stderr: str = ""):
        details: Dict[str, Any] = {"cmd": cmd, "exit_code": exit_code}
        if stderr:
            details["stderr"] = stderr
        super().__init__(
            kind="execution",
            job=job,
            step=step,
            message=f"step '{step}' failed (exit={exit_code})",
            details=details,
        )
        self.exit_code = exit_code


class TimeoutFailure(CIError):
    def __init__(self, job: str, step: str | None, timeout: float):
        super().__init__(
            kind="timeout",
            job=job,
            step=step,
            message=f"exceeded wall-clock budget of {timeout:g}s",
            details={"timeout": timeout},
        )


class CompatibilityViolation(CIError):
    """A structured Fail from a compatibility or drift check. Findings are kept verbatim."""

    def __init__(
        self,
        job: str,
        step: str | None,
        message: str,
        findings: List[Dict[str, Any]],
        *,
        hint: str | None = None,
    ):
        details: Dict[str, Any] = {}
        if hint:
            details["hint"] = hint
        super().__init__(kind="compatibility", job=job, step=step, message=message, details=details)
        self.findings = findings
        self.hint = hint

    def __str__(self) -> str:
        lines = [super().__str__()]
        for f in self.findings:
            lines.append(f"  - {f.get('element')}: {f.get('kind')} ({f.get('detail', '')})")
        return "\n".join(lines)


class InfrastructureUnavailable(CIError):
    def __init__(self, labels, message: str, *, job: str | None = None):
        super().__init__(
            kind="infrastructure",
            job=job,
            step=None,
            message=message,
            details={"labels": sorted(labels)},
        )


class Cancelled(CIError):
    def __init__(self, job: str | None = None):
        super().__init__(kind="cancelled", job=job, step=None, message="run was cancelled")
