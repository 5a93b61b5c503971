# step_workflows/drift.py
from __future__ import annotations

import difflib
from pathlib import Path
from typing import TYPE_CHECKING

from ..compat import CheckResult, Finding
from ..model import Step

if TYPE_CHECKING:
    from ..executor import JobContext

# lines of unified diff kept in the finding
DIFF_EXCERPT_LINES = 40


# ---------------------------------------------------------------------
# Drift step helper
# ---------------------------------------------------------------------

def drift_step(
    name: str,
    *,
    generated: str,
    baseline: str,
    generate: str | None = None,
    regenerate: str | None = None,
    clean: bool = True,
    cwd: str | None = None,
) -> Step:
    """
    Create a step that regenerates a derived file and compares it byte-for-byte
    with the copy checked into the tree.

    `generate` produces `generated`; `regenerate` is the command a developer runs
    locally to refresh `baseline` and is quoted in the failure message.
    With `clean`, a stale `generated` file is removed before regenerating.
    """
    data = {
        "generated": generated,
        "baseline": baseline,
        "generate": generate,
        "regenerate": regenerate,
        "clean": clean,
    }
    return Step(name=name, run=generate or f"compare {generated} {baseline}", cwd=cwd, kind="drift", data=data)


# ---------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------

def _hint(baseline: str, regenerate: str | None) -> str:
    if regenerate:
        return f"{baseline} reflects an outdated structure; please run\n    {regenerate}"
    return f"{baseline} is out of date; regenerate it and commit the result"


def compare_files(baseline: Path, generated: Path, *, regenerate: str | None = None) -> CheckResult:
    """Byte comparison against the committed baseline. Never consults history."""
    hint = _hint(baseline.as_posix(), regenerate)

    for path, role in ((baseline, "baseline"), (generated, "generated")):
        if not path.exists():
            return CheckResult(
                check="drift",
                passed=False,
                summary=f"{role} file {path.as_posix()} does not exist",
                findings=[Finding(element=path.as_posix(), kind="missing", detail=f"{role} file not found")],
                hint=hint,
                base=baseline.as_posix(),
                head=generated.as_posix(),
            )

    expected = baseline.read_bytes()
    actual = generated.read_bytes()
    if expected == actual:
        return CheckResult(
            check="drift",
            passed=True,
            summary=f"{baseline.as_posix()} is up to date",
            base=baseline.as_posix(),
            head=generated.as_posix(),
        )

    diff = list(
        difflib.unified_diff(
            expected.decode("utf-8", errors="replace").splitlines(),
            actual.decode("utf-8", errors="replace").splitlines(),
            fromfile=baseline.as_posix(),
            tofile=generated.as_posix(),
            lineterm="",
        )
    )
    excerpt = "\n".join(diff[:DIFF_EXCERPT_LINES])
    if len(diff) > DIFF_EXCERPT_LINES:
        excerpt += f"\n... ({len(diff) - DIFF_EXCERPT_LINES} more diff lines)"
    return CheckResult(
        check="drift",
        passed=False,
        summary=f"{baseline.as_posix()} differs from freshly generated {generated.as_posix()}",
        findings=[Finding(element=baseline.as_posix(), kind="drifted", detail=excerpt or "binary content differs")],
        hint=hint,
        base=baseline.as_posix(),
        head=generated.as_posix(),
    )


# ---------------------------------------------------------------------
# Drift step execution
# ---------------------------------------------------------------------

def run_step(ctx: "JobContext", step: Step) -> CheckResult:
    data = step.data or {}
    root = ctx.cwd_for(step)
    generated = root / data["generated"]
    baseline = root / data["baseline"]

    generate = data.get("generate")
    if generate:
        if data.get("clean", True):
            generated.unlink(missing_ok=True)
        ctx.sh(step, generate)

    result = compare_files(baseline, generated, regenerate=data.get("regenerate"))
    ctx.log(f"drift: {result.summary}")
    result.raise_for_failure(ctx.job.name, step.name)
    return result
