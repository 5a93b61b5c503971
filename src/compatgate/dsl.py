# src/compatgate/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .errors import ConfigurationError
from .model import ALWAYS, BranchPredicate, Input, Job, Output, Step

InputSpec = Union[str, Input]
OutputSpec = Union[str, Output]
LabelSpec = Union[Iterable[str], Mapping[str, str], None]


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


# ---------------------------------------------------------------------
# Artifact helpers
# ---------------------------------------------------------------------

def use(artifact: str, path: str | None = None, *, optional: bool = False) -> Input:
    """Declare a consumed artifact. `path` is where it lands before the job starts."""
    return Input(artifact=artifact, path=path, optional=optional)


def produce(artifact: str, path: str, *, retention_days: float = 1) -> Output:
    """Declare a produced artifact, collected from `path` once every step passed."""
    return Output(artifact=artifact, path=path, retention_days=retention_days)


def _as_input(spec: InputSpec) -> Input:
    # "neard" or "neard=target/release/neard"
    if isinstance(spec, Input):
        return spec
    name, _, path = spec.partition("=")
    if not name:
        raise ConfigurationError(f"Invalid input {spec!r}")
    return Input(artifact=name, path=path or None)


def _as_output(spec: OutputSpec) -> Output:
    # "neard=target/release/neard"
    if isinstance(spec, Output):
        return spec
    name, _, path = spec.partition("=")
    if not name or not path:
        raise ConfigurationError(f"Output {spec!r} must look like name=path")
    return Output(artifact=name, path=path)


def _as_labels(labels: LabelSpec) -> frozenset:
    if labels is None:
        return frozenset()
    if isinstance(labels, Mapping):
        return frozenset(f"{k}={v}" for k, v in labels.items())
    return frozenset(labels)


def _as_predicate(branches: Union[str, BranchPredicate, None], events: Optional[Iterable[str]]) -> BranchPredicate:
    if isinstance(branches, BranchPredicate):
        if events:
            return replace(branches, events=BranchPredicate.parse(None, events=events).events)
        return branches
    if branches is None and not events:
        return ALWAYS
    return BranchPredicate.parse(branches, events=events)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    inputs: Optional[List[InputSpec]] = None,
    outputs: Optional[List[OutputSpec]] = None,
    branches: Union[str, BranchPredicate, None] = None,
    events: Optional[List[str]] = None,
    labels: LabelSpec = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
    optional: bool = False,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ConfigurationError(f"job({name!r}) must have at least one step", job=name)

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=tuple(steps_final),
        inputs=tuple(_as_input(i) for i in inputs or []),
        outputs=tuple(_as_output(o) for o in outputs or []),
        branches=_as_predicate(branches, events),
        labels=_as_labels(labels),
        env={k: str(v) for k, v in (env or {}).items()},
        timeout=timeout,
        optional=optional,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._steps: list[Step] = []
        self._inputs: list[Input] = []
        self._outputs: list[Output] = []
        self._branches: Optional[str] = None
        self._events: list[str] = []
        self._labels: set[str] = set()
        self._env: dict[str, str] = {}
        self._timeout: float | None = None
        self._optional = False

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def add_step(self, step: Step):
        self._steps.append(step)
        return self

    def consumes(self, artifact: str, path: str | None = None, *, optional: bool = False):
        self._inputs.append(Input(artifact=artifact, path=path, optional=optional))
        return self

    def produces(self, artifact: str, path: str, *, retention_days: float = 1):
        self._outputs.append(Output(artifact=artifact, path=path, retention_days=retention_days))
        return self

    def on_branches(self, expr: str):
        self._branches = expr
        return self

    def on_events(self, *events: str):
        self._events.extend(events)
        return self

    def runs_on(self, *labels: str, **kv: str):
        self._labels.update(labels)
        self._labels.update(f"{k}={v}" for k, v in kv.items())
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def mark_optional(self, optional: bool = True):
        self._optional = optional
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ConfigurationError(f"Job '{self.name}' has no steps", job=self.name)
        return Job(
            name=self.name,
            steps=tuple(self._steps),
            inputs=tuple(self._inputs),
            outputs=tuple(self._outputs),
            branches=_as_predicate(self._branches, self._events),
            labels=frozenset(self._labels),
            env=dict(self._env),
            timeout=self._timeout,
            optional=self._optional,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("os", ["linux", "macos"]).jobs(
            lambda v: job(f"nextest-{v}", sh(...), labels={"os": v})
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        out = [builder(v) for v in self.values]
        names = [j.name for j in out]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"matrix {self.key!r} produced duplicate job names: {names}")
        return out


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Union[Job, List[Job]]) -> List[Job]:
    """
    Workflow definition helper. Matrix results may be passed directly:

        def workflow():
            return wf(
                job(...),
                matrix("os", [...]).jobs(lambda v: job(...)),
            )
    """
    out: List[Job] = []
    for j in jobs:
        if isinstance(j, list):
            out.extend(j)
        else:
            out.append(j)
    return out
