from .dsl import job, sh, use, produce, matrix, wf, JobBuilder, build
from .step_workflows.compat import compat_step
from .step_workflows.drift import drift_step
from .model import BranchPredicate, EventKind, Input, Job, Output, Step, Trigger
from .dag import PipelineGraph
from .run import Run
from .scheduler import execute, run_pipeline
from .gate import GateDecision, GateReport, aggregate

__all__ = [
    "job", "sh", "use", "produce", "matrix", "wf", "JobBuilder", "build",
    "compat_step", "drift_step",
    "BranchPredicate", "EventKind", "Input", "Job", "Output", "Step", "Trigger",
    "PipelineGraph", "Run", "execute", "run_pipeline",
    "GateDecision", "GateReport", "aggregate",
]
