import time

import pytest
from conftest import HANG, FakeSubstrate
from fastapi.testclient import TestClient

from compatgate.service.main import create_app
from compatgate.settings import Settings

PIPELINE = {
    "jobs": [
        {
            "name": "build",
            "steps": [{"name": "build", "run": "build"}],
        },
        {
            "name": "style",
            "steps": [{"name": "fmt", "run": "fmt"}],
            "branches": "!master",
        },
    ]
}


def _client(tmp_path, substrate_factory):
    app = create_app(
        settings=Settings(artifact_dir=str(tmp_path / "artifacts")),
        substrate_factory=substrate_factory,
        workdir=tmp_path,
    )
    return TestClient(app)


def _wait_decision(client, run_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/runs/{run_id}").json()
        if body["decision"] != "pending":
            return body
        time.sleep(0.02)
    pytest.fail(f"run {run_id} did not finish")


def test_health(tmp_path):
    client = _client(tmp_path, FakeSubstrate)

    assert client.get("/health").json() == {"ok": True}


def test_run_lifecycle(tmp_path):
    client = _client(tmp_path, FakeSubstrate)

    created = client.post("/runs", json={"pipeline": PIPELINE, "trigger": {"branch": "master"}})

    assert created.status_code == 200
    run_id = created.json()["run_id"]
    assert sorted(created.json()["jobs"]) == ["build", "style"]

    body = _wait_decision(client, run_id)
    assert body["decision"] == "pass"
    assert body["exit_code"] == 0
    jobs = {j["name"]: j for j in body["jobs"]}
    assert jobs["build"]["status"] == "succeeded"
    assert jobs["style"]["skip_reason"] == "branch"
    assert body["trigger"]["branch"] == "master"

    listed = client.get("/runs").json()
    assert [r["run_id"] for r in listed] == [run_id]


def test_failing_job_fails_the_gate(tmp_path):
    client = _client(tmp_path, lambda: FakeSubstrate(behaviors={"build": 1}))

    run_id = client.post("/runs", json={"pipeline": PIPELINE, "trigger": {"branch": "feature"}}).json()["run_id"]

    body = _wait_decision(client, run_id)
    assert body["decision"] == "fail"
    assert body["exit_code"] == 1
    assert "build: failed (execution)" in body["reasons"]


def test_cancel_running_run(tmp_path):
    client = _client(tmp_path, lambda: FakeSubstrate(behaviors={"build": HANG}))
    run_id = client.post("/runs", json={"pipeline": PIPELINE, "trigger": {"branch": "feature"}}).json()["run_id"]

    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        jobs = {j["name"]: j for j in client.get(f"/runs/{run_id}").json()["jobs"]}
        if jobs["build"]["status"] == "running":
            break
        time.sleep(0.02)

    first = client.post(f"/runs/{run_id}/cancel").json()
    second = client.post(f"/runs/{run_id}/cancel").json()
    assert first == {"run_id": run_id, "cancelled": True}
    assert second["cancelled"] is False

    body = _wait_decision(client, run_id)
    assert body["decision"] == "indeterminate"
    assert body["cancelled"]
    jobs = {j["name"]: j for j in body["jobs"]}
    assert jobs["build"]["error_kind"] == "cancelled"


def test_invalid_pipeline_is_rejected(tmp_path):
    client = _client(tmp_path, FakeSubstrate)
    pipeline = {"jobs": [{"name": "a", "steps": [{"name": "s", "run": "x"}], "inputs": [{"artifact": "missing"}]}]}

    response = client.post("/runs", json={"pipeline": pipeline, "trigger": {"branch": "feature"}})

    assert response.status_code == 422
    assert "missing" in response.json()["detail"]


def test_malformed_request_is_rejected(tmp_path):
    client = _client(tmp_path, FakeSubstrate)

    response = client.post("/runs", json={"pipeline": {"jobs": []}, "trigger": {"branch": "x"}})

    assert response.status_code == 422


def test_unknown_run(tmp_path):
    client = _client(tmp_path, FakeSubstrate)

    assert client.get("/runs/nope").status_code == 404
    assert client.post("/runs/nope/cancel").status_code == 404
