# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from .errors import ConfigurationError


class EventKind(str, Enum):
    PULL_REQUEST = "pull_request"
    BRANCH_PUSH = "branch_push"
    SCHEDULED_RELEASE = "scheduled_release"
    MANUAL_DISPATCH = "manual_dispatch"


class JobStatus(str, Enum):
    PENDING = "pending"
    SKIPPED = "skipped"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SKIPPED, JobStatus.SUCCEEDED, JobStatus.FAILED)


class SkipReason(str, Enum):
    BRANCH = "branch"
    UPSTREAM_FAILED = "upstream_failed"
    UPSTREAM_INCOMPLETE = "upstream_incomplete"
    CANCELLED = "cancelled"


class ErrorKind(str, Enum):
    EXECUTION = "execution"
    TIMEOUT = "timeout"
    COMPATIBILITY = "compatibility"
    INFRASTRUCTURE = "infrastructure"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None
    # "sh" | "compat" | "drift"
    kind: str = "sh"
    data: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Input:
    """A named artifact a job consumes. `path` is where it is placed before the job runs."""
    artifact: str
    path: str | None = None
    optional: bool = False


@dataclass(frozen=True)
class Output:
    """A named artifact a job produces, collected from `path` after success."""
    artifact: str
    path: str
    retention_days: float = 1


@dataclass(frozen=True)
class BranchPredicate:
    """
    Decides whether a job applies to a run.

    String form follows the usual CI convention:
      "!master !beta !stable"   -> everything except those branches
      "master release/*"        -> only those branches
    """
    include: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()
    events: FrozenSet[EventKind] = frozenset()

    @classmethod
    def parse(cls, expr: str | None, *, events=None) -> "BranchPredicate":
        include: list[str] = []
        exclude: list[str] = []
        for token in (expr or "").split():
            if token.startswith("!"):
                pattern = token[1:]
                if not pattern:
                    raise ConfigurationError(f"Empty negated pattern in branch predicate {expr!r}")
                exclude.append(pattern)
            else:
                include.append(token)

        overlap = sorted(set(include) & set(exclude))
        if overlap:
            raise ConfigurationError(
                f"Branch predicate {expr!r} both includes and excludes {overlap}",
            )

        kinds = set()
        for e in events or ():
            try:
                kinds.add(EventKind(e))
            except ValueError:
                raise ConfigurationError(
                    f"Unknown event kind {e!r} in branch predicate",
                    details={"known": [k.value for k in EventKind]},
                ) from None

        return cls(include=tuple(include), exclude=tuple(exclude), events=frozenset(kinds))

    def matches(self, trigger: "Trigger") -> bool:
        if self.events and trigger.event not in self.events:
            return False
        branch = trigger.branch
        if any(fnmatchcase(branch, p) for p in self.exclude):
            return False
        if self.include and not any(fnmatchcase(branch, p) for p in self.include):
            return False
        return True

    def describe(self) -> str:
        parts = list(self.include) + [f"!{p}" for p in self.exclude]
        if self.events:
            parts.append("on " + ",".join(sorted(e.value for e in self.events)))
        return " ".join(parts) or "always"


ALWAYS = BranchPredicate()


@dataclass(frozen=True)
class Job:
    """
    A CI job: steps + declared artifacts + selection metadata.

    Dependencies are never listed by hand: they are derived from which job
    produces each of `inputs`.
    """
    name: str
    steps: Tuple[Step, ...]
    inputs: Tuple[Input, ...] = ()
    outputs: Tuple[Output, ...] = ()
    branches: BranchPredicate = ALWAYS
    labels: FrozenSet[str] = frozenset()
    env: Mapping[str, str] = field(default_factory=dict)
    timeout: float | None = None
    # optional jobs are reported but never block the gate
    optional: bool = False

    @property
    def input_names(self) -> list[str]:
        return [i.artifact for i in self.inputs]

    @property
    def output_names(self) -> list[str]:
        return [o.artifact for o in self.outputs]

    def input(self, artifact: str) -> Input | None:
        for i in self.inputs:
            if i.artifact == artifact:
                return i
        return None


@dataclass(frozen=True)
class Trigger:
    """What started a run. `params["branch"]` overrides the branch for manual dispatch."""
    event: EventKind
    source_branch: str
    target_ref: str | None = None
    source_ref: str | None = None
    params: Mapping[str, str] = field(default_factory=dict)

    @property
    def branch(self) -> str:
        if self.event == EventKind.MANUAL_DISPATCH and self.params.get("branch"):
            return self.params["branch"]
        return self.source_branch

    def describe(self) -> str:
        text = f"{self.event.value} on {self.branch}"
        if self.target_ref:
            text += f" -> {self.target_ref}"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event.value,
            "branch": self.branch,
            "source_ref": self.source_ref,
            "target_ref": self.target_ref,
            "params": dict(self.params),
        }
