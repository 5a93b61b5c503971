# cli.py
from __future__ import annotations

import json
import subprocess
import sys
import urllib.error
import urllib.request
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urljoin

import click

from compatgate.artifacts import LocalTransport
from compatgate.compat import WorkingTreeSource, check_compatibility, resolve_base
from compatgate.compat.result import CheckResult
from compatgate.dag import PipelineGraph
from compatgate.definition import pipeline_to_dict
from compatgate.errors import CIError, ConfigurationError
from compatgate.executor import JobExecutor
from compatgate.gate import GateDecision, GateReport
from compatgate.git_facts.git import get_current_ref
from compatgate.loader import load_workflow
from compatgate.model import EventKind, Job, Trigger
from compatgate.run import Run
from compatgate.runners import LocalSubstrate, RunnerPool, parse_runners
from compatgate.scheduler import execute
from compatgate.settings import Settings, load_settings
from compatgate.step_workflows.drift import compare_files
from compatgate.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "compatgate_workflow.py"
# exit code of a check that could not be evaluated (matches the gate)
EXIT_INDETERMINATE = 2


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in sorted(current_dir.glob("*_workflow.py")) + sorted(current_dir.glob("*_pipeline.json")):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix not in (".py", ".json"):
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion=f"Create a workflow file or specify a different path:\n  compatgate run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_WORKFLOW}",
                "  *_workflow.py",
                "  *_pipeline.json",
            ],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  compatgate run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  compatgate run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(1)

    return workflow_files[0]


def _parse_params(params: tuple) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for p in params:
        key, sep, value = p.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {p!r}", param_hint="--param")
        out[key] = value
    return out


def build_trigger(
    *,
    event: str,
    branch: str | None,
    target_ref: str | None,
    source_ref: str | None,
    params: Dict[str, str],
    settings: Settings,
) -> Trigger:
    if not branch:
        try:
            branch = get_current_ref()
        except (subprocess.CalledProcessError, FileNotFoundError):
            raise ConfigurationError(
                "Could not determine the branch from git; pass --branch explicitly",
            ) from None
    return Trigger(
        event=EventKind(event),
        source_branch=branch,
        target_ref=target_ref or settings.target_ref,
        source_ref=source_ref,
        params=params,
    )


def _load(ctx, workflow: str | None, settings: Settings) -> tuple[Path, List[Job]]:
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        return workflow_path, load_workflow(workflow_path, retention_days=settings.retention_days)
    except CIError as e:
        console.print_error("Invalid workflow", str(e))
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            console.print_exception(e)
    sys.exit(1)


def _print_check(result: CheckResult) -> None:
    console = get_console()
    status = "PASS" if result.passed else "FAIL"
    console.print_info(f"{result.check.upper()}: {status}: {result.summary}")
    if result.base or result.head:
        console.print_info(f"  base: {result.base or '-'}")
        console.print_info(f"  head: {result.head or '-'}")
    if result.findings:
        console.print_findings([f.to_dict() for f in result.findings])
    if result.hint and not result.passed:
        console.print_info(f"\n{result.hint}")


event_option = click.option(
    "--event",
    type=click.Choice([e.value for e in EventKind]),
    default=EventKind.PULL_REQUEST.value,
    show_default=True,
    help="What triggered the run",
)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces, job logs and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print the final report and errors")
@click.pass_context
def cli(ctx, debug, quiet):
    """compatgate: compatibility-gated release pipelines."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    try:
        ctx.obj["settings"] = load_settings()
    except CIError as e:
        console.print_error("Invalid settings", str(e))
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file (.py or .json; defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--branch", default=None, help="Source branch (defaults to the current git branch)")
@event_option
@click.option("--target-ref", default=None, help="Ref compatibility checks compare against (default: COMPATGATE_TARGET_REF)")
@click.option("--source-ref", default=None, help="Commit under test, for the report")
@click.option("--param", "params", multiple=True, help="key=value trigger parameter (repeatable)")
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--runners", default=None, help='Runner pool, e.g. "linux:distro=amazonlinux,queue=default*4"')
@click.option("--artifact-dir", default=None, help="Artifact transport directory")
@click.option("--job-timeout", default=None, type=float, help="Default wall-clock budget per job, seconds")
@click.option("--acquire-timeout", default=None, type=float, help="How long a job may wait for a runner, seconds")
@click.option("--report-json", default=None, type=click.Path(dir_okay=False), help="Write the gate report as JSON")
@click.option("--keep-artifacts/--no-keep-artifacts", default=False, show_default=True,
              help="Leave artifacts in place until their retention window ends")
@click.pass_context
def run(ctx, workflow, branch, event, target_ref, source_ref, params, workers, runners,
        artifact_dir, job_timeout, acquire_timeout, report_json, keep_artifacts):
    """Run a pipeline and exit with the gate decision (0 pass, 1 fail, 2 indeterminate)."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    workflow_path, jobs = _load(ctx, workflow, settings)

    try:
        graph = PipelineGraph(jobs)
        trigger = build_trigger(
            event=event,
            branch=branch,
            target_ref=target_ref,
            source_ref=source_ref,
            params=_parse_params(params),
            settings=settings,
        )
        transport = LocalTransport(artifact_dir or settings.artifact_dir)
        pruned = transport.prune()
        if pruned:
            console.print_debug(f"pruned expired artifacts: {pruned}")
        run_ = Run(graph, trigger, transport=transport)
        pool = RunnerPool(parse_runners(runners or settings.runners))
    except CIError as e:
        console.print_error("Invalid pipeline", str(e), suggestion=f"Check {workflow_path}")
        sys.exit(1)

    executor = JobExecutor(
        LocalSubstrate(pool),
        workdir=".",
        default_target_ref=trigger.target_ref or settings.target_ref,
        default_timeout=job_timeout if job_timeout is not None else settings.job_timeout,
        acquire_timeout=acquire_timeout if acquire_timeout is not None else settings.acquire_timeout,
    )

    try:
        report: GateReport = execute(
            run_,
            executor,
            max_workers=workers or settings.workers,
            keep_artifacts=keep_artifacts,
        )
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user; run cancelled")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_report(report)
    if report_json:
        report.write_json(report_json)
        console.print_info(f"Report written to {report_json}")
    sys.exit(report.exit_code)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file (.py or .json; defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--branch", default=None, help="Source branch (defaults to the current git branch)")
@event_option
@click.option("--param", "params", multiple=True, help="key=value trigger parameter (repeatable)")
@click.pass_context
def plan(ctx, workflow, branch, event, params):
    """Show which jobs would run for a trigger, stage by stage."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    workflow_path, jobs = _load(ctx, workflow, settings)

    try:
        graph = PipelineGraph(jobs)
        trigger = build_trigger(
            event=event,
            branch=branch,
            target_ref=None,
            source_ref=None,
            params=_parse_params(params),
            settings=settings,
        )
        run_ = Run(graph, trigger, run_id="plan")
    except CIError as e:
        console.print_error("Invalid pipeline", str(e), suggestion=f"Check {workflow_path}")
        sys.exit(1)

    console.print_header(f"PLAN: {workflow_path.name} ({trigger.describe()})")
    for i, level in enumerate(graph.levels(), start=1):
        console.print_info(f"Stage {i}:")
        for name in level:
            st = run_.state(name)
            if not run_.applicable[name]:
                console.print_plan_job_skipped(name, st.diagnostic)
                continue
            job = graph[name]
            parts = []
            needs = graph.producers_of(name)
            if needs:
                parts.append("needs " + ", ".join(f"{a} from {p}" for a, p in sorted(needs.items())))
            if job.labels:
                parts.append("on " + ",".join(sorted(job.labels)))
            if job.optional:
                parts.append("optional")
            console.print_plan_job(name, "; ".join(parts) or "no inputs")


@cli.command()
@click.argument("patterns", nargs=-1, required=True)
@click.option("--against", type=click.Choice(["merge-base", "ref", "file"]), default="merge-base", show_default=True)
@click.option("--target-ref", default=None, help="Target branch for merge-base (default: COMPATGATE_TARGET_REF)")
@click.option("--ref", default=None, help="Base ref for --against ref")
@click.option("--baseline", multiple=True, help="Baseline schema file for --against file (repeatable)")
@click.option("--fetch", "fetch_remote", default=None, help="git fetch this remote before resolving the merge-base")
@click.option("--repo", default=".", type=click.Path(file_okay=False, exists=True), help="Repository root")
@click.option("--report-json", default=None, type=click.Path(dir_okay=False), help="Write the result as JSON")
@click.pass_context
def compat(ctx, patterns, against, target_ref, ref, baseline, fetch_remote, repo, report_json):
    """Check schema files (globs) for breaking changes against a base."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    try:
        base = resolve_base(
            against,
            patterns,
            repo=repo,
            target_ref=target_ref or settings.target_ref,
            ref=ref,
            baseline=baseline,
            fetch_remote=fetch_remote,
        )
        head = WorkingTreeSource(repo, patterns)
        result = check_compatibility(base.load(), head.load())
    except subprocess.CalledProcessError as e:
        console.print_error("git failed", " ".join(e.cmd), details=[(e.stderr or "").strip()])
        sys.exit(EXIT_INDETERMINATE)
    except (ValueError, OSError) as e:
        console.print_error("Compatibility check could not run", str(e))
        sys.exit(EXIT_INDETERMINATE)

    _print_check(result)
    if report_json:
        Path(report_json).write_text(json.dumps(result.to_dict(), indent=2) + "\n", encoding="utf-8")
    sys.exit(0 if result.passed else 1)


@cli.command()
@click.option("--generated", required=True, type=click.Path(dir_okay=False), help="File written by --generate")
@click.option("--baseline", required=True, type=click.Path(dir_okay=False), help="Checked-in copy to compare with")
@click.option("--generate", default=None, help="Command that regenerates --generated")
@click.option("--regenerate", default=None, help="Command developers run locally to refresh the baseline")
@click.option("--clean/--no-clean", default=True, show_default=True, help="Remove a stale generated file first")
@click.pass_context
def drift(ctx, generated, baseline, generate, regenerate, clean):
    """Regenerate a derived file and compare it byte-for-byte with the checked-in baseline."""
    console = get_console()
    generated_p = Path(generated)
    if generate:
        if clean:
            generated_p.unlink(missing_ok=True)
        console.print_info(f"STEP: {generate}")
        proc = subprocess.run(generate, shell=True, text=True, capture_output=True)
        if proc.returncode != 0:
            console.print_error(
                "Generation failed",
                f"`{generate}` exited with {proc.returncode}",
                details=(proc.stderr or "").strip().splitlines()[-20:],
            )
            sys.exit(EXIT_INDETERMINATE)

    result = compare_files(Path(baseline), generated_p, regenerate=regenerate)
    _print_check(result)
    sys.exit(0 if result.passed else 1)


# ----------------------------------------------------------------------
# Gate service client
# ----------------------------------------------------------------------

def _api_request(base_url: str, path: str, payload: Optional[dict] = None) -> dict:
    url = urljoin(base_url.rstrip("/") + "/", path)
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    req = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json"},
        method="POST" if payload is not None else "GET",
    )
    with urllib.request.urlopen(req) as response:
        body = response.read().decode("utf-8")
    return json.loads(body) if body else {}


def _api_failure(ctx, base_url: str, e: Exception) -> None:
    console = get_console()
    if isinstance(e, urllib.error.HTTPError):
        error_body = e.read().decode("utf-8") if e.fp else ""
        console.print_error(
            "API request failed",
            f"HTTP {e.code} {e.reason}",
            details=[error_body] if error_body else None,
            suggestion=f"Check the service at {base_url} and verify your request.",
        )
    elif isinstance(e, urllib.error.URLError):
        console.print_error(
            "Network error",
            f"Could not connect to {base_url}",
            details=[str(e.reason)],
            suggestion="Verify the API URL is correct and the service is running.",
        )
    else:
        console.print_exception(e)
    sys.exit(1)


@cli.command()
@click.option("--api", required=True, help="Gate service base URL (e.g., http://localhost:8000)")
@click.option("--workflow", default=None, help=f"Workflow file (.py or .json; defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--branch", default=None, help="Source branch (defaults to the current git branch)")
@event_option
@click.option("--target-ref", default=None, help="Target ref for compatibility checks")
@click.option("--param", "params", multiple=True, help="key=value trigger parameter (repeatable)")
@click.pass_context
def submit(ctx, api, workflow, branch, event, target_ref, params):
    """Submit a pipeline run to the gate service."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    workflow_path, jobs = _load(ctx, workflow, settings)
    console.print_info(f"Loaded {len(jobs)} job(s) from {workflow_path}")

    try:
        trigger = build_trigger(
            event=event,
            branch=branch,
            target_ref=target_ref,
            source_ref=None,
            params=_parse_params(params),
            settings=settings,
        )
    except CIError as e:
        console.print_error("Invalid trigger", str(e))
        sys.exit(1)

    request_data = {
        "pipeline": pipeline_to_dict(jobs),
        "trigger": {
            "event": trigger.event.value,
            "branch": trigger.source_branch,
            "target_ref": trigger.target_ref,
            "params": dict(trigger.params),
        },
    }
    try:
        result = _api_request(api, "runs", request_data)
    except (urllib.error.URLError, json.JSONDecodeError) as e:
        _api_failure(ctx, api, e)
        return

    console.print_info(f"\nSuccessfully submitted run to {api.rstrip('/')}")
    console.print_info(f"  Run ID: {result.get('run_id')}")
    console.print_info(f"  Jobs: {', '.join(result.get('jobs', []))}")
    console.print_info(f"\nCheck the gate with:\n  compatgate status --api {api} {result.get('run_id')}")


@cli.command()
@click.option("--api", required=True, help="Gate service base URL (e.g., http://localhost:8000)")
@click.argument("run_id")
@click.pass_context
def status(ctx, api, run_id):
    """Show the gate decision of a submitted run (exit code as for `run`; 3 while pending)."""
    console = get_console()
    try:
        result = _api_request(api, f"runs/{run_id}")
    except (urllib.error.URLError, json.JSONDecodeError) as e:
        _api_failure(ctx, api, e)
        return

    decision = result.get("decision", "pending")
    console.print_info(f"Run {run_id}: {decision.upper()}")
    for job in result.get("jobs", []):
        reason = job.get("skip_reason") or job.get("error_kind") or ""
        console.print_info(f"  {job['name']}: {job['status'].upper()}" + (f" ({reason})" if reason else ""))
    for reason in result.get("reasons", []):
        console.print_info(f"  {reason}")
    if decision == "pending":
        sys.exit(3)
    sys.exit(GateReport(run_id=run_id, decision=GateDecision(decision)).exit_code)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
