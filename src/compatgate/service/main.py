from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from ..artifacts import LocalTransport
from ..dag import PipelineGraph
from ..definition import PipelineDefinition, TriggerDefinition
from ..errors import CIError
from ..executor import JobExecutor
from ..gate import GateReport
from ..run import Run
from ..runners import LocalSubstrate, RunnerPool, Substrate
from ..scheduler import execute
from ..settings import Settings, load_settings
from ..ui.console import get_console

# -------------------- Schemas --------------------

class CreateRunRequest(BaseModel):
    pipeline: PipelineDefinition
    trigger: TriggerDefinition


class CreateRunResponse(BaseModel):
    run_id: str
    jobs: list[str]


class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool


class RunResponse(BaseModel):
    run_id: str
    # pending | pass | fail | indeterminate
    decision: str
    exit_code: Optional[int] = None
    cancelled: bool = False
    reasons: list[str] = Field(default_factory=list)
    trigger: dict[str, Any] = Field(default_factory=dict)
    jobs: list[dict[str, Any]] = Field(default_factory=list)


# -------------------- Registry --------------------

@dataclass
class RunRecord:
    run: Run
    thread: Optional[threading.Thread] = None
    report: Optional[GateReport] = None
    error: Optional[str] = None
    done: threading.Event = field(default_factory=threading.Event)


class RunRegistry:
    """In-memory; runs do not survive a restart."""

    def __init__(self) -> None:
        self._records: Dict[str, RunRecord] = {}
        self._lock = threading.Lock()

    def add(self, record: RunRecord) -> None:
        with self._lock:
            self._records[record.run.id] = record

    def get(self, run_id: str) -> RunRecord:
        with self._lock:
            record = self._records.get(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"unknown run {run_id}")
        return record

    def all(self) -> List[RunRecord]:
        with self._lock:
            return list(self._records.values())


def _response(record: RunRecord) -> RunResponse:
    if record.report is not None:
        return RunResponse(**{k: v for k, v in record.report.to_dict().items() if k in RunResponse.model_fields})
    run = record.run
    reasons = [record.error] if record.error else []
    return RunResponse(
        run_id=run.id,
        decision="pending",
        cancelled=run.cancelled,
        reasons=reasons,
        trigger=run.trigger.to_dict(),
        jobs=[s.to_dict() for s in run.states()],
    )


# -------------------- App --------------------

def create_app(
    *,
    settings: Optional[Settings] = None,
    substrate_factory: Optional[Callable[[], Substrate]] = None,
    workdir: str | Path = ".",
) -> FastAPI:
    """
    Build the gate service.

    `substrate_factory` is called once per run; by default every run gets its
    own local runner pool built from COMPATGATE_RUNNERS.
    """
    settings = settings or load_settings()
    registry = RunRegistry()
    app = FastAPI(title="compatgate gate service")
    app.state.registry = registry
    app.state.settings = settings

    def _substrate() -> Substrate:
        if substrate_factory is not None:
            return substrate_factory()
        return LocalSubstrate(RunnerPool(settings.resources()))

    def _drive(record: RunRecord, executor: JobExecutor) -> None:
        try:
            record.report = execute(record.run, executor, max_workers=settings.workers)
        except Exception as e:
            record.error = f"{type(e).__name__}: {e}"
            get_console().print_exception(e)
        finally:
            record.done.set()

    # -------------------- Endpoints --------------------

    @app.get("/health")
    async def health() -> dict:
        return {"ok": True}

    @app.post("/runs", response_model=CreateRunResponse)
    async def create_run(req: CreateRunRequest):
        try:
            jobs = req.pipeline.to_jobs(retention_days=settings.retention_days)
            graph = PipelineGraph(jobs)
            trigger = req.trigger.to_trigger()
            run = Run(graph, trigger, transport=LocalTransport(settings.artifact_dir))
        except CIError as e:
            raise HTTPException(status_code=422, detail=str(e))

        executor = JobExecutor(
            _substrate(),
            workdir=workdir,
            default_target_ref=trigger.target_ref or settings.target_ref,
            default_timeout=settings.job_timeout,
            acquire_timeout=settings.acquire_timeout,
        )
        record = RunRecord(run=run)
        record.thread = threading.Thread(target=_drive, args=(record, executor), name=f"run-{run.id}", daemon=True)
        registry.add(record)
        record.thread.start()
        return CreateRunResponse(run_id=run.id, jobs=graph.order())

    @app.get("/runs", response_model=list[RunResponse])
    async def list_runs():
        return [_response(r) for r in registry.all()]

    @app.get("/runs/{run_id}", response_model=RunResponse)
    async def get_run(run_id: str):
        return _response(registry.get(run_id))

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    async def cancel_run(run_id: str):
        record = registry.get(run_id)
        return CancelResponse(run_id=run_id, cancelled=record.run.cancel())

    return app


app = create_app()
