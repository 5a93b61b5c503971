# scheduler.py
from __future__ import annotations

import os
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Optional, Tuple

from .gate import GateReport, aggregate
from .model import ErrorKind, Job, JobStatus, SkipReason
from .run import JobState, Run
from .ui.console import get_console

# local dev ---> push ---> run ---> gate ---> merge

JobFn = Callable[[Run, Job], None]


def _default_workers(job_count: int) -> int:
    c = os.cpu_count() or 2
    return max(1, min(job_count, max(1, c - 1)))


def _blocking_reason(state: JobState) -> Optional[SkipReason]:
    """How a settled, unsatisfying producer blocks its consumers."""
    if state.status == JobStatus.FAILED:
        return SkipReason.UPSTREAM_FAILED
    if state.status == JobStatus.SKIPPED:
        if state.skip_reason == SkipReason.UPSTREAM_FAILED:
            return SkipReason.UPSTREAM_FAILED
        if state.skip_reason in (SkipReason.UPSTREAM_INCOMPLETE, SkipReason.CANCELLED):
            return SkipReason.UPSTREAM_INCOMPLETE
    if state.abandoned:
        return SkipReason.UPSTREAM_INCOMPLETE
    return None


def _readiness(run: Run, name: str) -> Tuple[bool, Optional[Tuple[SkipReason, str]]]:
    """
    (ready, block) for a PENDING job.

    ready: every producer of every input has Succeeded, or was branch-skipped
    and the input is optional.
    block: (reason, producer) once some producer settled without making the input available.
    """
    graph = run.graph
    job = graph[name]
    ready = True
    for artifact, producer in sorted(graph.producers_of(name).items()):
        st = run.state(producer)
        if st.status == JobStatus.SUCCEEDED:
            continue
        if st.status == JobStatus.SKIPPED and st.skip_reason == SkipReason.BRANCH and job.input(artifact).optional:
            continue
        reason = _blocking_reason(st)
        if reason is not None:
            return False, (reason, producer)
        ready = False
    return ready, None


def _root_cause(run: Run, producer: str) -> str:
    """Follow blocked_by back to the job that actually failed or never ran."""
    seen = set()
    name = producer
    while name not in seen:
        seen.add(name)
        st = run.state(name)
        if st.blocked_by is None:
            return name
        name = st.blocked_by
    return name


def run_pipeline(run: Run, job_fn: JobFn, *, max_workers: int | None = None) -> Run:
    """
    Drive a Run to completion.

    Jobs start as soon as their input artifacts are committed; a failed job
    blocks only its own descendants and everything else keeps going. Returns
    once every job is settled. Each job is handed to `job_fn` at most once.
    """
    console = get_console()
    graph = run.graph
    order = graph.order()
    submitted: set[str] = set()
    in_flight: Dict[Future, str] = {}

    if max_workers is None:
        max_workers = _default_workers(len(graph))

    # running commands must die with the run
    terminate = getattr(job_fn, "terminate_all", None)
    if terminate is not None:
        run.on_cancel(terminate)

    for st in run.states():
        if st.status == JobStatus.SKIPPED and st.skip_reason == SkipReason.BRANCH:
            console.print_job_skipped(st.name, st.diagnostic or "branch")

    def schedule(pool: ThreadPoolExecutor) -> None:
        # one topological pass settles transitive blocks in order
        for name in order:
            if name in submitted or run.status(name) != JobStatus.PENDING:
                continue
            ready, block = _readiness(run, name)
            if block is not None:
                reason, producer = block
                cause = _root_cause(run, producer)
                if reason == SkipReason.UPSTREAM_FAILED:
                    diagnostic = f"blocked: upstream job '{cause}' failed"
                else:
                    diagnostic = f"blocked: upstream job '{cause}' did not complete"
                if run.mark_skipped(name, reason, blocked_by=producer, diagnostic=diagnostic):
                    console.print_job_skipped(name, diagnostic)
                continue
            if ready and not run.cancelled:
                submitted.add(name)
                in_flight[pool.submit(job_fn, run, graph[name])] = name

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        try:
            while True:
                schedule(pool)
                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready jobs
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    try:
                        fut.result()
                    except Exception as e:
                        # the executor records every job-level problem itself; this is a bug in it
                        console.print_exception(e)
                        run.mark_running(name)
                        run.mark_failed(name, ErrorKind.EXECUTION, f"{type(e).__name__}: {e}")
        except KeyboardInterrupt:
            # stop the jobs before the pool joins its threads
            run.cancel()
            raise

    return run


def execute(
    run: Run,
    job_fn: JobFn,
    *,
    max_workers: int | None = None,
    keep_artifacts: bool = False,
) -> GateReport:
    """
    Run the pipeline, aggregate the gate decision, then release the run's artifacts.

    With `keep_artifacts` they stay in the transport until their retention window ends.
    """
    console = get_console()
    console.print_run_started(run.id, run.trigger.describe(), len(run.graph))
    try:
        run_pipeline(run, job_fn, max_workers=max_workers)
        report = aggregate(run)
    finally:
        if not keep_artifacts:
            run.teardown()
    return report
