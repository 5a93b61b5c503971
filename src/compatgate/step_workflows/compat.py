# step_workflows/compat.py
from __future__ import annotations

from typing import TYPE_CHECKING, List

from ..compat import CheckResult, WorkingTreeSource, check_compatibility, resolve_base
from ..model import Step

if TYPE_CHECKING:
    from ..executor import JobContext


# ---------------------------------------------------------------------
# Compatibility step helper
# ---------------------------------------------------------------------

def compat_step(
    name: str,
    paths: List[str],
    *,
    against: str = "merge-base",
    target_ref: str | None = None,
    ref: str | None = None,
    baseline: List[str] | None = None,
    fetch: str | None = None,
    cwd: str | None = None,
) -> Step:
    """
    Create a step that fails on breaking schema changes.

    `paths` are globs of schema files (e.g. "proto/**/*.proto"). The head side is
    always the working tree; `against` picks the base: "merge-base" (default,
    against `target_ref` or the run's target), "ref", or "file" (`baseline`).
    """
    data = {
        "paths": list(paths),
        "against": against,
        "target_ref": target_ref,
        "ref": ref,
        "baseline": list(baseline or []),
        "fetch": fetch,
    }
    label = f"compat {against} {' '.join(paths)}"
    return Step(name=name, run=label, cwd=cwd, kind="compat", data=data)


# ---------------------------------------------------------------------
# Compatibility step execution
# ---------------------------------------------------------------------

def run_step(ctx: "JobContext", step: Step) -> CheckResult:
    data = step.data or {}
    patterns = data.get("paths") or []
    if not patterns:
        raise ValueError(f"[{ctx.job.name}] step '{step.name}' declares no schema paths")

    root = ctx.cwd_for(step)
    target_ref = data.get("target_ref") or ctx.run.trigger.target_ref or ctx.default_target_ref
    base = resolve_base(
        data.get("against", "merge-base"),
        patterns,
        repo=root,
        target_ref=target_ref,
        ref=data.get("ref"),
        baseline=[root / b for b in data.get("baseline") or []],
        fetch_remote=data.get("fetch"),
    )
    head = WorkingTreeSource(root, patterns)

    base_snapshot = base.load()
    head_snapshot = head.load()
    ctx.log(f"compat: base={base.describe()} ({len(base_snapshot)} elements), "
            f"head={head.describe()} ({len(head_snapshot)} elements)")

    result = check_compatibility(base_snapshot, head_snapshot)
    ctx.log(f"compat: {result.summary}")
    result.raise_for_failure(ctx.job.name, step.name)
    return result
