# definition.py
"""
Declarative pipeline documents.

The same pipeline a workflow file builds with the DSL can be written as JSON:

    {
      "jobs": [
        {"name": "build binary",
         "steps": [{"name": "build", "run": "cargo build -p neard --release"}],
         "outputs": [{"artifact": "neard", "path": "target/release/neard"}],
         "labels": ["distro=amazonlinux", "queue=default"]},
        {"name": "backward compatible",
         "steps": [{"name": "check", "run": "python3 tests/backward_compatible.py"}],
         "inputs": [{"artifact": "neard", "path": "target/release/neard"}],
         "branches": "!master !beta !stable"}
      ]
    }

Validation happens here with pydantic; graph-level checks (cycles, dangling
artifacts) are left to PipelineGraph.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .model import BranchPredicate, EventKind, Input, Job, Output, Step, Trigger

STEP_KINDS = ("sh", "compat", "drift")


class StepDefinition(BaseModel):
    name: str
    run: str = ""
    cwd: Optional[str] = None
    kind: str = "sh"
    data: Optional[Dict[str, Any]] = None

    @field_validator("kind")
    @classmethod
    def _known_kind(cls, v: str) -> str:
        if v not in STEP_KINDS:
            raise ValueError(f"unknown step kind {v!r} (expected one of {', '.join(STEP_KINDS)})")
        return v


class InputDefinition(BaseModel):
    artifact: str
    path: Optional[str] = None
    optional: bool = False


class OutputDefinition(BaseModel):
    artifact: str
    path: str
    retention_days: Optional[float] = Field(default=None, gt=0)


class JobDefinition(BaseModel):
    name: str
    steps: List[StepDefinition] = Field(min_length=1)
    inputs: List[InputDefinition] = Field(default_factory=list)
    outputs: List[OutputDefinition] = Field(default_factory=list)
    branches: Optional[str] = None
    events: List[EventKind] = Field(default_factory=list)
    labels: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)
    optional: bool = False

    def to_job(self, *, retention_days: float = 1) -> Job:
        return Job(
            name=self.name,
            steps=tuple(Step(name=s.name, run=s.run, cwd=s.cwd, kind=s.kind, data=s.data) for s in self.steps),
            inputs=tuple(Input(artifact=i.artifact, path=i.path, optional=i.optional) for i in self.inputs),
            outputs=tuple(
                Output(
                    artifact=o.artifact,
                    path=o.path,
                    retention_days=o.retention_days if o.retention_days is not None else retention_days,
                )
                for o in self.outputs
            ),
            branches=BranchPredicate.parse(self.branches, events=[e.value for e in self.events]),
            labels=frozenset(self.labels),
            env=dict(self.env),
            timeout=self.timeout,
            optional=self.optional,
        )


class PipelineDefinition(BaseModel):
    jobs: List[JobDefinition] = Field(min_length=1)

    def to_jobs(self, *, retention_days: float = 1) -> List[Job]:
        return [j.to_job(retention_days=retention_days) for j in self.jobs]


class TriggerDefinition(BaseModel):
    event: EventKind = EventKind.PULL_REQUEST
    branch: str
    target_ref: Optional[str] = None
    source_ref: Optional[str] = None
    params: Dict[str, str] = Field(default_factory=dict)

    def to_trigger(self) -> Trigger:
        return Trigger(
            event=self.event,
            source_branch=self.branch,
            target_ref=self.target_ref,
            source_ref=self.source_ref,
            params=dict(self.params),
        )


def _validation_error(source: str, e: ValidationError) -> ConfigurationError:
    problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
    return ConfigurationError(f"Invalid pipeline definition in {source}", details={"problems": problems})


def parse_pipeline(data: Any, *, source: str = "<document>", retention_days: float = 1) -> List[Job]:
    try:
        pipeline = PipelineDefinition.model_validate(data)
    except ValidationError as e:
        raise _validation_error(source, e) from None
    return pipeline.to_jobs(retention_days=retention_days)


def load_pipeline(path: str | Path, *, retention_days: float = 1) -> List[Job]:
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Pipeline file {p} is not valid JSON: {e}") from None
    return parse_pipeline(data, source=str(p), retention_days=retention_days)


def job_to_dict(job: Job) -> Dict[str, Any]:
    """
    Convert a Job to its declarative form. This is the reverse of JobDefinition.to_job().
    """
    steps = []
    for step in job.steps:
        step_dict: Dict[str, Any] = {"name": step.name, "run": step.run, "kind": step.kind}
        if step.cwd is not None:
            step_dict["cwd"] = step.cwd
        if step.data is not None:
            step_dict["data"] = dict(step.data)
        steps.append(step_dict)

    job_dict: Dict[str, Any] = {
        "name": job.name,
        "steps": steps,
        "inputs": [{"artifact": i.artifact, "path": i.path, "optional": i.optional} for i in job.inputs],
        "outputs": [
            {"artifact": o.artifact, "path": o.path, "retention_days": o.retention_days} for o in job.outputs
        ],
        "labels": sorted(job.labels),
        "env": dict(job.env),
        "optional": job.optional,
    }

    # Add optional fields if present
    branches = " ".join(list(job.branches.include) + [f"!{p}" for p in job.branches.exclude])
    if branches:
        job_dict["branches"] = branches
    if job.branches.events:
        job_dict["events"] = sorted(e.value for e in job.branches.events)
    if job.timeout is not None:
        job_dict["timeout"] = job.timeout
    return job_dict


def pipeline_to_dict(jobs: List[Job]) -> Dict[str, Any]:
    return {"jobs": [job_to_dict(j) for j in jobs]}
