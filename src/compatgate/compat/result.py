# compat/result.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..errors import CompatibilityViolation


@dataclass(frozen=True)
class Finding:
    """One offending element: what it is, what happened to it, and the specifics."""
    element: str
    kind: str
    detail: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"element": self.element, "kind": self.kind, "detail": self.detail}


@dataclass
class CheckResult:
    """
    Outcome shared by every compare-computed-against-expected check
    (schema compatibility and generated-schema drift).
    """
    check: str
    passed: bool
    summary: str
    findings: List[Finding] = field(default_factory=list)
    hint: Optional[str] = None
    base: Optional[str] = None
    head: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "check": self.check,
            "passed": self.passed,
            "summary": self.summary,
            "findings": [f.to_dict() for f in self.findings],
            "hint": self.hint,
            "base": self.base,
            "head": self.head,
        }

    def raise_for_failure(self, job: str, step: str | None = None) -> None:
        if self.passed:
            return
        raise CompatibilityViolation(
            job=job,
            step=step,
            message=self.summary,
            findings=[f.to_dict() for f in self.findings],
            hint=self.hint,
        )
