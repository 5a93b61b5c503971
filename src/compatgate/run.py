# run.py
from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from .artifacts import ArtifactStore, ArtifactTransport
from .dag import PipelineGraph
from .errors import ConfigurationError
from .model import ErrorKind, JobStatus, SkipReason, Trigger

# Allowed status moves. Anything else is refused, so a job never goes backwards.
_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.SKIPPED},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED},
}


@dataclass
class JobState:
    name: str
    status: JobStatus = JobStatus.PENDING
    skip_reason: Optional[SkipReason] = None
    error_kind: Optional[ErrorKind] = None
    diagnostic: str = ""
    findings: List[Dict[str, Any]] = field(default_factory=list)
    blocked_by: Optional[str] = None
    resource: Optional[str] = None
    logs: str = ""
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    # PENDING forever: no runner could be obtained
    abandoned: bool = False

    @property
    def settled(self) -> bool:
        return self.status.terminal or self.abandoned

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "skip_reason": self.skip_reason.value if self.skip_reason else None,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "diagnostic": self.diagnostic,
            "findings": list(self.findings),
            "blocked_by": self.blocked_by,
            "resource": self.resource,
            "duration": self.duration,
        }


class Run:
    """
    One execution of a PipelineGraph for one trigger.

    Branch predicates are evaluated here, once; excluded jobs are SKIPPED before
    anything is scheduled. All status changes go through one lock.
    """

    def __init__(
        self,
        graph: PipelineGraph,
        trigger: Trigger,
        *,
        run_id: str | None = None,
        transport: Optional[ArtifactTransport] = None,
        artifacts: Optional[ArtifactStore] = None,
    ):
        self.id = run_id or uuid.uuid4().hex[:12]
        self.graph = graph
        self.trigger = trigger
        self.artifacts = artifacts if artifacts is not None else ArtifactStore(self.id, transport)
        self.created_at = time.time()

        self._lock = threading.RLock()
        self._cancel_event = threading.Event()
        self._cancel_hooks: List[Callable[[], None]] = []
        self._states: Dict[str, JobState] = {name: JobState(name) for name in graph.order()}

        self.applicable: Dict[str, bool] = {
            job.name: job.branches.matches(trigger) for job in graph.jobs
        }
        self._check_skipped_producers()
        for name, ok in self.applicable.items():
            if not ok:
                self.mark_skipped(
                    name,
                    SkipReason.BRANCH,
                    diagnostic=f"not applicable to branch '{trigger.branch}' ({graph[name].branches.describe()})",
                )

    def _check_skipped_producers(self) -> None:
        for job in self.graph.jobs:
            if not self.applicable[job.name]:
                continue
            for artifact, producer in self.graph.producers_of(job.name).items():
                if self.applicable[producer] or job.input(artifact).optional:
                    continue
                raise ConfigurationError(
                    f"Job '{job.name}' requires artifact '{artifact}' but its producer "
                    f"'{producer}' is skipped on branch '{self.trigger.branch}'",
                    job=job.name,
                    details={"artifact": artifact, "producer": producer},
                )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def state(self, name: str) -> JobState:
        with self._lock:
            return replace(self._states[name])

    def status(self, name: str) -> JobStatus:
        with self._lock:
            return self._states[name].status

    def states(self) -> List[JobState]:
        with self._lock:
            return [replace(self._states[n]) for n in self.graph.order()]

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    @property
    def finished(self) -> bool:
        with self._lock:
            return all(s.settled for s in self._states.values())

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _move(self, name: str, new: JobStatus) -> Optional[JobState]:
        st = self._states[name]
        if new not in _TRANSITIONS.get(st.status, ()):
            return None
        st.status = new
        return st

    def mark_running(self, name: str, resource: str | None = None) -> bool:
        """False when the job is no longer PENDING, e.g. the run was cancelled meanwhile."""
        with self._lock:
            if self.cancelled:
                return False
            st = self._move(name, JobStatus.RUNNING)
            if st is None:
                return False
            st.resource = resource
            st.started_at = time.time()
            return True

    def mark_succeeded(self, name: str, *, logs: str = "") -> bool:
        with self._lock:
            st = self._move(name, JobStatus.SUCCEEDED)
            if st is None:
                return False
            st.finished_at = time.time()
            st.logs = logs
            # after the status write, so nobody sees an artifact of a job not yet Succeeded
            self.artifacts.commit(name)
            return True

    def mark_failed(
        self,
        name: str,
        kind: ErrorKind,
        diagnostic: str,
        *,
        findings: Optional[List[Dict[str, Any]]] = None,
        logs: str = "",
    ) -> bool:
        with self._lock:
            st = self._move(name, JobStatus.FAILED)
            if st is None:
                return False
            st.finished_at = time.time()
            st.error_kind = kind
            st.diagnostic = diagnostic
            st.findings = list(findings or [])
            st.logs = logs
        self.artifacts.discard(name)
        return True

    def mark_skipped(
        self,
        name: str,
        reason: SkipReason,
        *,
        blocked_by: str | None = None,
        diagnostic: str = "",
    ) -> bool:
        with self._lock:
            st = self._move(name, JobStatus.SKIPPED)
            if st is None:
                return False
            st.skip_reason = reason
            st.blocked_by = blocked_by
            if diagnostic:
                st.diagnostic = diagnostic
            st.finished_at = time.time()
            return True

    def mark_unavailable(self, name: str, diagnostic: str) -> bool:
        """No runner could be obtained. The job stays PENDING; the gate reports it as Indeterminate."""
        with self._lock:
            st = self._states[name]
            if st.status != JobStatus.PENDING:
                return False
            st.abandoned = True
            st.error_kind = ErrorKind.INFRASTRUCTURE
            st.diagnostic = diagnostic
            return True

    # ------------------------------------------------------------------
    # Cancellation / teardown
    # ------------------------------------------------------------------

    def on_cancel(self, hook: Callable[[], None]) -> None:
        with self._lock:
            self._cancel_hooks.append(hook)
            already = self.cancelled
        if already:
            hook()

    def cancel(self) -> bool:
        """
        Cancel the run. Idempotent: returns False if it was already cancelled.

        Pending jobs are skipped right away; running jobs are terminated through
        the hooks the scheduler registered and end FAILED(cancelled).
        """
        with self._lock:
            if self._cancel_event.is_set():
                return False
            self._cancel_event.set()
            for name in self.graph.order():
                st = self._states[name]
                if st.status == JobStatus.PENDING:
                    self.mark_skipped(
                        name,
                        SkipReason.CANCELLED,
                        diagnostic="" if st.abandoned else "run cancelled",
                    )
            hooks = list(self._cancel_hooks)
        for hook in hooks:
            hook()
        return True

    def teardown(self) -> None:
        self.artifacts.release()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.id,
            "trigger": self.trigger.to_dict(),
            "cancelled": self.cancelled,
            "jobs": [s.to_dict() for s in self.states()],
        }
