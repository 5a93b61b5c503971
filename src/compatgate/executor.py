# executor.py
from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .artifacts import pack_path, unpack_to
from .compat import CheckResult
from .errors import (
    Cancelled,
    CIError,
    CompatibilityViolation,
    ExecutionFailure,
    InfrastructureUnavailable,
    TimeoutFailure,
)
from .model import ErrorKind, Job, Step
from .run import Run
from .runners import CommandResult, ResourceHandle, Substrate
from .step_workflows import compat as compat_workflow
from .step_workflows import drift as drift_workflow
from .ui.console import get_console

TOOL_HINTS = {
    "buf": "Install buf (https://buf.build) or fix PATH.",
    "cargo": "Install the Rust toolchain (rustup) or fix PATH.",
    "git": "Install git or fix PATH.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "docker": "Install Docker and ensure the daemon is running.",
}

# exit status of a shell that could not find the command
COMMAND_NOT_FOUND = 127


def _tool_hint(command: str) -> Optional[str]:
    first = command.strip().split()[0] if command.strip() else ""
    return TOOL_HINTS.get(Path(first).name)


def _shorter(a: Optional[float], b: Optional[float]) -> Optional[float]:
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b)


def _env_name(artifact: str) -> str:
    return "COMPATGATE_ARTIFACT_" + re.sub(r"[^A-Za-z0-9]", "_", artifact).upper()


# ----------------------------------------------------------------------
# Job context
# ----------------------------------------------------------------------

@dataclass
class JobContext:
    """Everything a step needs while its job holds a runner."""
    run: Run
    job: Job
    substrate: Substrate
    handle: ResourceHandle
    workdir: Path
    default_target_ref: str
    timeout: Optional[float] = None
    env: Dict[str, str] = field(default_factory=dict)
    started: float = field(default_factory=time.monotonic)
    _logs: List[str] = field(default_factory=list)

    def remaining(self) -> Optional[float]:
        if self.timeout is None:
            return None
        return self.timeout - (time.monotonic() - self.started)

    def cwd_for(self, step: Step) -> Path:
        cwd = (self.workdir / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise FileNotFoundError(f"[{self.job.name}] step '{step.name}' cwd not found: {cwd}")
        return cwd

    def log(self, line: str) -> None:
        self._logs.append(line)

    @property
    def logs(self) -> str:
        return "\n".join(self._logs)

    def check_budget(self, step: Step | None = None) -> None:
        if self.run.cancelled:
            raise Cancelled(self.job.name)
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise TimeoutFailure(self.job.name, step.name if step else None, self.timeout)

    def sh(self, step: Step, command: str | None = None) -> CommandResult:
        """Run one shell command on the job's runner within what is left of the budget."""
        command = command if command is not None else step.run
        self.check_budget(step)
        result = self.substrate.execute(
            self.handle,
            command,
            env=self.env,
            cwd=self.cwd_for(step),
            timeout=self.remaining(),
        )
        self.log(f"$ {command}")
        if result.stdout:
            self.log(result.stdout.rstrip())
        if result.stderr:
            self.log(result.stderr.rstrip())

        if result.timed_out:
            raise TimeoutFailure(self.job.name, step.name, self.timeout)
        if self.run.cancelled:
            raise Cancelled(self.job.name)
        if result.exit_code != 0:
            raise ExecutionFailure(
                self.job.name,
                step.name,
                command,
                result.exit_code,
                stderr=result.stderr[-1000:],
            )
        return result


def _run_sh_step(ctx: JobContext, step: Step) -> None:
    ctx.sh(step)


StepRunner = Callable[[JobContext, Step], Optional[CheckResult]]

STEP_KINDS: Dict[str, StepRunner] = {
    "sh": _run_sh_step,
    "compat": compat_workflow.run_step,
    "drift": drift_workflow.run_step,
}


# ----------------------------------------------------------------------
# Job execution
# ----------------------------------------------------------------------

class JobExecutor:
    """
    Runs one job of a Run end to end: acquire a runner, stage inputs, run steps,
    collect outputs, record the terminal status, release the runner.

    Never raises for job-level problems; the outcome is always written to the Run.
    """

    def __init__(
        self,
        substrate: Substrate,
        *,
        workdir: str | Path = ".",
        default_target_ref: str = "origin/master",
        default_timeout: float | None = None,
        acquire_timeout: float | None = None,
    ):
        self.substrate = substrate
        self.workdir = Path(workdir).resolve()
        self.default_target_ref = default_target_ref
        self.default_timeout = default_timeout
        self.acquire_timeout = acquire_timeout
        self._active: Dict[int, ResourceHandle] = {}
        self._lock = threading.Lock()

    # -- cancellation -----------------------------------------------------

    def terminate_all(self) -> None:
        """Wake resource waiters and kill whatever is running."""
        self.substrate.interrupt()
        with self._lock:
            handles = list(self._active.values())
        for handle in handles:
            self.substrate.terminate(handle)

    # -- helpers -----------------------------------------------------------

    def _base_env(self, run: Run, job: Job) -> Dict[str, str]:
        trigger = run.trigger
        env = {
            "CI": "true",
            "COMPATGATE_RUN_ID": run.id,
            "COMPATGATE_JOB": job.name,
            "COMPATGATE_EVENT": trigger.event.value,
            "COMPATGATE_BRANCH": trigger.branch,
            "COMPATGATE_TARGET_REF": trigger.target_ref or self.default_target_ref,
        }
        env.update({k: str(v) for k, v in job.env.items()})
        return env

    def _stage_inputs(self, ctx: JobContext) -> None:
        run, job = ctx.run, ctx.job
        for inp in job.inputs:
            if not run.artifacts.visible(inp.artifact):
                if inp.optional:
                    ctx.log(f"input {inp.artifact}: absent (optional)")
                    continue
                raise CIError(
                    kind="execution",
                    job=job.name,
                    step=None,
                    message=f"required artifact '{inp.artifact}' is not available",
                )
            ref = run.artifacts.ref(inp.artifact)
            dest = ctx.workdir / (inp.path or inp.artifact)
            unpack_to(run.artifacts.fetch(inp.artifact), ref.is_dir, dest)
            ctx.env[_env_name(inp.artifact)] = str(dest)
            ctx.log(f"input {inp.artifact}: {ref.size} bytes -> {dest}")

    def _collect_outputs(self, ctx: JobContext) -> None:
        for out in ctx.job.outputs:
            src = ctx.workdir / out.path
            data, is_dir = pack_path(src)
            ctx.run.artifacts.stage(
                ctx.job.name,
                out.artifact,
                data,
                retention_days=out.retention_days,
                is_dir=is_dir,
            )
            ctx.log(f"output {out.artifact}: {len(data)} bytes from {src}")

    # -- entry point -------------------------------------------------------

    def __call__(self, run: Run, job: Job) -> None:
        console = get_console()
        timeout = job.timeout if job.timeout is not None else self.default_timeout

        # a job left pending past its own budget is abandoned, not run late
        wait = _shorter(self.acquire_timeout, timeout)
        waited_from = time.monotonic()
        try:
            handle = self.substrate.acquire(
                job.labels,
                timeout=wait,
                cancelled=run.cancel_event,
            )
        except InfrastructureUnavailable as e:
            message = e.message
            if timeout is not None and wait == timeout and time.monotonic() - waited_from >= timeout:
                message = f"still pending after its {timeout:g}s budget: {e.message}"
            run.mark_unavailable(job.name, message)
            console.print_failure(job.name, message, hint="no runner could be obtained; the gate will be indeterminate")
            return
        except Cancelled:
            # cancel() already marked the job skipped
            return

        with self._lock:
            self._active[handle.id] = handle
        ctx = JobContext(
            run=run,
            job=job,
            substrate=self.substrate,
            handle=handle,
            workdir=self.workdir,
            default_target_ref=self.default_target_ref,
            timeout=timeout,
            env=self._base_env(run, job),
        )
        try:
            if not run.mark_running(job.name, handle.resource):
                return
            console.print_job_start(job.name, handle.resource)
            self._execute(ctx)
        finally:
            with self._lock:
                self._active.pop(handle.id, None)
            self.substrate.release(handle)

    def _execute(self, ctx: JobContext) -> None:
        run, job = ctx.run, ctx.job
        console = get_console()
        try:
            # cancel() may have raced the RUNNING transition
            ctx.check_budget()
            self._stage_inputs(ctx)
            for step in job.steps:
                ctx.check_budget(step)
                console.print_step(job.name, step.name)
                runner = STEP_KINDS.get(step.kind)
                if runner is None:
                    raise CIError(
                        kind="execution",
                        job=job.name,
                        step=step.name,
                        message=f"unknown step kind {step.kind!r}",
                        details={"known": sorted(STEP_KINDS)},
                    )
                runner(ctx, step)
            ctx.check_budget()
            self._collect_outputs(ctx)
        except Cancelled:
            run.mark_failed(job.name, ErrorKind.CANCELLED, "terminated: run was cancelled", logs=ctx.logs)
            console.print_failure(job.name, "run was cancelled")
        except TimeoutFailure as e:
            run.mark_failed(job.name, ErrorKind.TIMEOUT, e.message, logs=ctx.logs)
            console.print_failure(job.name, str(e))
        except CompatibilityViolation as e:
            diagnostic = e.message if not e.hint else f"{e.message}\n{e.hint}"
            run.mark_failed(job.name, ErrorKind.COMPATIBILITY, diagnostic, findings=e.findings, logs=ctx.logs)
            console.print_failure(job.name, str(e), hint=e.hint)
        except ExecutionFailure as e:
            if run.cancelled:
                run.mark_failed(job.name, ErrorKind.CANCELLED, "terminated: run was cancelled", logs=ctx.logs)
                console.print_failure(job.name, "run was cancelled")
                return
            hint = _tool_hint(e.details["cmd"]) if e.exit_code == COMMAND_NOT_FOUND else None
            diagnostic = str(e) if not hint else f"{e}\nhint={hint}"
            run.mark_failed(job.name, ErrorKind.EXECUTION, diagnostic, logs=ctx.logs)
            console.print_failure(job.name, str(e), exit_code=e.exit_code, hint=hint)
        except Exception as e:
            # git errors, unreadable schema files, missing outputs, ...
            if run.cancelled:
                run.mark_failed(job.name, ErrorKind.CANCELLED, "terminated: run was cancelled", logs=ctx.logs)
                return
            reason = str(e) if isinstance(e, CIError) else f"{type(e).__name__}: {e}"
            stderr = getattr(e, "stderr", None)
            if isinstance(stderr, str) and stderr.strip():
                reason += f"\n{stderr.strip()}"
            run.mark_failed(job.name, ErrorKind.EXECUTION, reason, logs=ctx.logs)
            console.print_failure(job.name, reason)
        else:
            if run.mark_succeeded(job.name, logs=ctx.logs):
                console.print_success(job.name, run.state(job.name).duration)
        finally:
            console.print_logs(job.name, ctx.logs)
