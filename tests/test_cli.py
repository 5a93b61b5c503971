import json

import pytest
from click.testing import CliRunner

from compatgate import cli as cli_module
from compatgate.cli import cli

WORKFLOW = '''
from compatgate import job, sh, wf


def workflow():
    return wf(
        job(
            "build",
            sh("build", "mkdir -p out && printf bin > out/bin"),
            outputs=["bin=out/bin"],
        ),
        job(
            "smoke",
            sh("check", 'test "$(cat "$COMPATGATE_ARTIFACT_BIN")" = "{expected}"'),
            inputs=["bin"],
        ),
        job("pr only", sh("noop", "true"), branches="!master"),
    )
'''


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for key in ("COMPATGATE_RUNNERS", "COMPATGATE_WORKERS", "COMPATGATE_JOB_TIMEOUT"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("COMPATGATE_ARTIFACT_DIR", str(tmp_path / "artifacts"))
    return tmp_path


def _write_workflow(project, expected="bin"):
    (project / "gate_workflow.py").write_text(WORKFLOW.format(expected=expected))


def test_run_passes_and_writes_report(project):
    _write_workflow(project)

    result = CliRunner().invoke(
        cli,
        ["run", "--branch", "feature/x", "--runners", "local*2", "--report-json", "report.json"],
    )

    assert result.exit_code == 0, result.output
    assert "GATE: PASS" in result.output
    report = json.loads((project / "report.json").read_text())
    assert report["decision"] == "pass"
    assert {j["name"]: j["status"] for j in report["jobs"]} == {
        "build": "succeeded",
        "pr only": "succeeded",
        "smoke": "succeeded",
    }
    # artifacts are released when the run ends
    assert not list((project / "artifacts").rglob("*.blob"))


def test_run_fails_with_exit_code_one(project):
    _write_workflow(project, expected="something else")

    result = CliRunner().invoke(cli, ["run", "--branch", "feature/x"])

    assert result.exit_code == 1
    assert "GATE: FAIL" in result.output
    assert "smoke: failed (execution)" in result.output


def test_run_with_unavailable_runner_is_indeterminate(project):
    (project / "mac_workflow.py").write_text(
        "from compatgate import job, sh\n"
        "JOBS = [job('mac', sh('noop', 'true'), labels={'os': 'macos'})]\n"
    )

    result = CliRunner().invoke(cli, ["--quiet", "run", "--branch", "feature/x"])

    assert result.exit_code == 2
    assert "GATE: INDETERMINATE" in result.output


def test_invalid_pipeline_exits_one(project):
    (project / "bad_workflow.py").write_text(
        "from compatgate import job, sh\n"
        "JOBS = [job('a', sh('x', 'true'), inputs=['nothing-makes-this'])]\n"
    )

    result = CliRunner().invoke(cli, ["run", "--branch", "feature/x"])

    assert result.exit_code == 1
    assert "Invalid pipeline" in result.output


def test_plan_shows_stages_and_branch_skips(project):
    _write_workflow(project)

    result = CliRunner().invoke(cli, ["plan", "--workflow", "gate_workflow.py", "--branch", "master"])

    assert result.exit_code == 0, result.output
    assert "Stage 1:" in result.output
    assert "needs bin from build" in result.output
    assert "pr only (skipped:" in result.output


def test_multiple_workflows_need_an_explicit_choice(project):
    _write_workflow(project)
    (project / "other_workflow.py").write_text("JOBS = []\n")

    result = CliRunner().invoke(cli, ["plan", "--branch", "x"])

    assert result.exit_code == 1
    assert "Multiple workflow files found" in result.output


def test_compat_against_baseline_file(project):
    (project / "base").mkdir()
    (project / "head").mkdir()
    (project / "base" / "schema.json").write_text('{"A": "int32", "B": "string"}')
    (project / "head" / "schema.json").write_text('{"A": "int32", "B": "string", "C": "bool"}')

    ok = CliRunner().invoke(
        cli, ["compat", "*.json", "--against", "file", "--baseline", "base/schema.json", "--repo", "head"]
    )
    assert ok.exit_code == 0, ok.output

    (project / "head" / "schema.json").write_text('{"A": "int64"}')
    bad = CliRunner().invoke(
        cli,
        ["compat", "*.json", "--against", "file", "--baseline", "base/schema.json", "--repo", "head",
         "--report-json", "compat.json"],
    )
    assert bad.exit_code == 1
    assert "A: retyped" in bad.output
    assert "B: removed" in bad.output
    doc = json.loads((project / "compat.json").read_text())
    assert {f["element"] for f in doc["findings"]} == {"A", "B"}


def test_compat_without_baseline_cannot_run(project):
    result = CliRunner().invoke(cli, ["compat", "*.json", "--against", "file"])

    assert result.exit_code == 2


def test_drift_command(project):
    (project / "committed.json").write_text('{"errors": ["A"]}\n')
    (project / "fresh.json").write_text('{"errors": ["A", "B"]}\n')

    result = CliRunner().invoke(
        cli,
        ["drift", "--generated", "out.json", "--baseline", "committed.json",
         "--generate", "cp fresh.json out.json", "--regenerate", "./build_schema.sh"],
    )

    assert result.exit_code == 1
    assert "drifted" in result.output
    assert "./build_schema.sh" in result.output

    (project / "fresh.json").write_text('{"errors": ["A"]}\n')
    again = CliRunner().invoke(
        cli, ["drift", "--generated", "out.json", "--baseline", "committed.json", "--generate", "cp fresh.json out.json"]
    )
    assert again.exit_code == 0, again.output


def test_drift_generation_failure_is_indeterminate(project):
    (project / "committed.json").write_text("{}")

    result = CliRunner().invoke(
        cli, ["drift", "--generated", "out.json", "--baseline", "committed.json", "--generate", "exit 4"]
    )

    assert result.exit_code == 2


@pytest.mark.parametrize("decision, code", [("pass", 0), ("fail", 1), ("indeterminate", 2), ("pending", 3)])
def test_status_exit_codes(monkeypatch, decision, code):
    payload = {
        "run_id": "abc",
        "decision": decision,
        "jobs": [{"name": "build", "status": "failed", "error_kind": "execution"}],
        "reasons": ["build: failed (execution)"],
    }
    monkeypatch.setattr(cli_module, "_api_request", lambda base, path, data=None: payload)

    result = CliRunner().invoke(cli, ["status", "--api", "http://gate", "abc"])

    assert result.exit_code == code
    assert "build: FAILED (execution)" in result.output


def test_submit_posts_pipeline_and_trigger(project, monkeypatch):
    _write_workflow(project)
    sent = {}

    def fake_request(base, path, data=None):
        sent.update(base=base, path=path, data=data)
        return {"run_id": "abc", "jobs": ["build", "pr only", "smoke"]}

    monkeypatch.setattr(cli_module, "_api_request", fake_request)

    result = CliRunner().invoke(
        cli, ["submit", "--api", "http://gate", "--branch", "feature/x", "--target-ref", "origin/main"]
    )

    assert result.exit_code == 0, result.output
    assert sent["path"] == "runs"
    assert sent["data"]["trigger"] == {
        "event": "pull_request",
        "branch": "feature/x",
        "target_ref": "origin/main",
        "params": {},
    }
    assert [j["name"] for j in sent["data"]["pipeline"]["jobs"]] == ["build", "smoke", "pr only"]
    assert "Run ID: abc" in result.output
