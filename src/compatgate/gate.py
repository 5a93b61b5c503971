# gate.py
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List

from .model import ErrorKind, JobStatus, SkipReason
from .run import Run


class GateDecision(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    INDETERMINATE = "indeterminate"


EXIT_CODES = {
    GateDecision.PASS: 0,
    GateDecision.FAIL: 1,
    GateDecision.INDETERMINATE: 2,
}

# failures that are the change's fault, as opposed to the infrastructure's
BLOCKING_ERRORS = (ErrorKind.EXECUTION, ErrorKind.TIMEOUT, ErrorKind.COMPATIBILITY)


@dataclass
class GateReport:
    run_id: str
    decision: GateDecision
    entries: List[Dict[str, Any]] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)
    trigger: Dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.decision]

    def entry(self, name: str) -> Dict[str, Any]:
        for e in self.entries:
            if e["name"] == name:
                return e
        raise KeyError(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "decision": self.decision.value,
            "exit_code": self.exit_code,
            "reasons": list(self.reasons),
            "cancelled": self.cancelled,
            "trigger": dict(self.trigger),
            "jobs": [dict(e) for e in self.entries],
        }

    def write_json(self, path: str | Path) -> Path:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
        return p


def aggregate(run: Run) -> GateReport:
    """
    Reduce a finished Run to one merge decision.

    FAIL beats INDETERMINATE: a real failure is reported as such even when
    other jobs could not be evaluated. Optional jobs are listed but never
    decide anything.
    """
    entries: List[Dict[str, Any]] = []
    failures: List[str] = []
    unknown: List[str] = []

    for st in run.states():
        job = run.graph[st.name]
        entry = st.to_dict()
        entry["optional"] = job.optional
        entry["abandoned"] = st.abandoned
        entries.append(entry)
        if job.optional:
            continue

        if st.status == JobStatus.FAILED and st.error_kind in BLOCKING_ERRORS:
            failures.append(f"{st.name}: failed ({st.error_kind.value})")
        elif st.status == JobStatus.SKIPPED and st.skip_reason == SkipReason.UPSTREAM_FAILED:
            failures.append(f"{st.name}: blocked by failed upstream '{st.blocked_by}'")
        elif st.abandoned:
            unknown.append(f"{st.name}: never ran ({st.diagnostic})")
        elif st.status == JobStatus.SKIPPED and st.skip_reason in (SkipReason.UPSTREAM_INCOMPLETE, SkipReason.CANCELLED):
            unknown.append(f"{st.name}: not evaluated ({st.skip_reason.value})")
        elif st.status == JobStatus.FAILED:
            unknown.append(f"{st.name}: interrupted ({st.error_kind.value if st.error_kind else 'unknown'})")
        elif not st.status.terminal:
            unknown.append(f"{st.name}: did not finish")

    if run.cancelled:
        unknown.insert(0, "run was cancelled")

    if failures:
        decision = GateDecision.FAIL
        reasons = failures
    elif unknown:
        decision = GateDecision.INDETERMINATE
        reasons = unknown
    else:
        decision = GateDecision.PASS
        reasons = []

    return GateReport(
        run_id=run.id,
        decision=decision,
        entries=entries,
        reasons=reasons,
        trigger=run.trigger.to_dict(),
        cancelled=run.cancelled,
    )
