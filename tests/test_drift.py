from conftest import FakeSubstrate

from compatgate.dsl import job
from compatgate.gate import GateDecision
from compatgate.model import ErrorKind, JobStatus
from compatgate.runners import CommandResult
from compatgate.scheduler import execute
from compatgate.step_workflows.drift import compare_files, drift_step

SCHEMA = '{\n  "ActionError": ["AccountDoesNotExist"]\n}\n'
NEW_SCHEMA = '{\n  "ActionError": ["AccountDoesNotExist", "InsufficientStake"]\n}\n'


def test_identical_files_pass(tmp_path):
    (tmp_path / "a.json").write_text(SCHEMA)
    (tmp_path / "b.json").write_text(SCHEMA)

    result = compare_files(tmp_path / "a.json", tmp_path / "b.json")

    assert result.passed
    assert result.check == "drift"


def test_difference_fails_with_diff_and_regenerate_hint(tmp_path):
    (tmp_path / "committed.json").write_text(SCHEMA)
    (tmp_path / "fresh.json").write_text(NEW_SCHEMA)

    result = compare_files(
        tmp_path / "committed.json",
        tmp_path / "fresh.json",
        regenerate="./chain/jsonrpc/build_errors_schema.sh",
    )

    assert not result.passed
    finding = result.findings[0]
    assert finding.kind == "drifted"
    assert '+  "ActionError": ["AccountDoesNotExist", "InsufficientStake"]' in finding.detail
    assert "outdated structure" in result.hint
    assert result.hint.endswith("./chain/jsonrpc/build_errors_schema.sh")


def test_whitespace_only_difference_still_fails(tmp_path):
    (tmp_path / "a.json").write_text(SCHEMA)
    (tmp_path / "b.json").write_text(SCHEMA.rstrip("\n"))

    assert not compare_files(tmp_path / "a.json", tmp_path / "b.json").passed


def test_missing_generated_file(tmp_path):
    (tmp_path / "a.json").write_text(SCHEMA)

    result = compare_files(tmp_path / "a.json", tmp_path / "never-written.json")

    assert not result.passed
    assert result.findings[0].kind == "missing"
    assert "generated" in result.summary


def _write_generated(content):
    def behavior(cwd, env):
        out = cwd / "target" / "rpc_errors_schema.json"
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(content)
        return CommandResult(exit_code=0)
    return behavior


def _drift_job():
    return job(
        "rpc errors schema",
        drift_step(
            "RPC errors schema",
            generate="dump-schema",
            generated="target/rpc_errors_schema.json",
            baseline="res/rpc_errors_schema.json",
            regenerate="./build_errors_schema.sh",
        ),
    )


def test_drift_step_passes_when_regenerated_matches(workdir, make_run, make_executor):
    (workdir / "res").mkdir()
    (workdir / "res" / "rpc_errors_schema.json").write_text(SCHEMA)
    substrate = FakeSubstrate(behaviors={"dump-schema": _write_generated(SCHEMA)})

    report = execute(make_run([_drift_job()]), make_executor(substrate))

    assert report.decision == GateDecision.PASS
    assert substrate.calls == [("rpc errors schema", "dump-schema")]


def test_drift_step_fails_as_compatibility_violation(workdir, make_run, make_executor):
    (workdir / "res").mkdir()
    (workdir / "res" / "rpc_errors_schema.json").write_text(SCHEMA)
    substrate = FakeSubstrate(behaviors={"dump-schema": _write_generated(NEW_SCHEMA)})
    run = make_run([_drift_job()])

    report = execute(run, make_executor(substrate))

    st = run.state("rpc errors schema")
    assert st.status == JobStatus.FAILED
    assert st.error_kind == ErrorKind.COMPATIBILITY
    assert st.findings[0]["kind"] == "drifted"
    assert "./build_errors_schema.sh" in st.diagnostic
    assert report.decision == GateDecision.FAIL


def test_stale_generated_file_is_not_compared(workdir, make_run, make_executor):
    (workdir / "res").mkdir()
    (workdir / "res" / "rpc_errors_schema.json").write_text(SCHEMA)
    stale = workdir / "target" / "rpc_errors_schema.json"
    stale.parent.mkdir()
    stale.write_text(SCHEMA)
    # the generator succeeds but writes nothing
    substrate = FakeSubstrate(behaviors={"dump-schema": 0})
    run = make_run([_drift_job()])

    execute(run, make_executor(substrate))

    st = run.state("rpc errors schema")
    assert st.error_kind == ErrorKind.COMPATIBILITY
    assert st.findings[0]["kind"] == "missing"


def test_generator_failure_is_an_execution_failure(workdir, make_run, make_executor):
    (workdir / "res").mkdir()
    (workdir / "res" / "rpc_errors_schema.json").write_text(SCHEMA)
    run = make_run([_drift_job()])

    execute(run, make_executor(FakeSubstrate(behaviors={"dump-schema": 2})))

    assert run.state("rpc errors schema").error_kind == ErrorKind.EXECUTION
