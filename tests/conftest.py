import shutil
import subprocess
import threading
from pathlib import Path

import pytest

from compatgate.artifacts import LocalTransport
from compatgate.dag import PipelineGraph
from compatgate.executor import JobExecutor
from compatgate.model import EventKind, Trigger
from compatgate.run import Run
from compatgate.runners import CommandResult, Resource, RunnerPool
from compatgate.ui.console import Console, set_console

# behaviour marker: block until terminated or timed out
HANG = "hang"


class FakeSubstrate:
    """
    Scripted runner platform.

    `behaviors` maps a command string to an exit code, HANG, or a callable
    (cwd, env) -> CommandResult. Unknown commands succeed.
    """

    def __init__(self, resources=None, behaviors=None):
        self.pool = RunnerPool(resources or [Resource("local", frozenset({"os=linux"}), capacity=4)])
        self.behaviors = dict(behaviors or {})
        self.calls = []
        self._lock = threading.Lock()
        self._killed = {}

    def acquire(self, labels, timeout=None, cancelled=None):
        return self.pool.acquire(labels, timeout=timeout, cancelled=cancelled)

    def release(self, handle):
        self.pool.release(handle)

    def interrupt(self):
        self.pool.interrupt()

    def _kill_event(self, handle):
        with self._lock:
            return self._killed.setdefault(handle.id, threading.Event())

    def terminate(self, handle):
        self._kill_event(handle).set()

    def execute(self, handle, command, env, cwd, timeout=None):
        with self._lock:
            self.calls.append((env.get("COMPATGATE_JOB"), command))
        behavior = self.behaviors.get(command, 0)
        if behavior == HANG:
            killed = self._kill_event(handle).wait(timeout)
            return CommandResult(exit_code=-9, timed_out=not killed)
        if callable(behavior):
            return behavior(Path(cwd), env)
        return CommandResult(exit_code=behavior, stderr="boom" if behavior else "")

    def jobs_executed(self):
        with self._lock:
            return {job for job, _ in self.calls}


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(quiet=True))
    yield
    set_console(Console())


@pytest.fixture
def substrate():
    return FakeSubstrate()


@pytest.fixture
def make_run(tmp_path):
    def _make(jobs, branch="feature/x", event=EventKind.PULL_REQUEST, **trigger_kw):
        graph = PipelineGraph(jobs)
        trigger = Trigger(event=event, source_branch=branch, **trigger_kw)
        return Run(graph, trigger, transport=LocalTransport(tmp_path / "artifacts"))

    return _make


@pytest.fixture
def workdir(tmp_path):
    d = tmp_path / "work"
    d.mkdir()
    return d


@pytest.fixture
def make_executor(workdir):
    def _make(substrate, **kw):
        kw.setdefault("default_target_ref", "master")
        return JobExecutor(substrate, workdir=workdir, **kw)

    return _make


# ---------------------------------------------------------------------
# git fixtures
# ---------------------------------------------------------------------

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def git(repo: Path, *args: str) -> str:
    return subprocess.check_output(["git", *args], cwd=repo, text=True).strip()


@pytest.fixture
def git_repo(tmp_path):
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/master")
    git(repo, "config", "user.email", "ci@example.com")
    git(repo, "config", "user.name", "CI")
    git(repo, "config", "commit.gpgsign", "false")
    return repo


def commit_file(repo: Path, rel: str, content: str, message: str) -> str:
    p = repo / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(content, encoding="utf-8")
    git(repo, "add", rel)
    git(repo, "commit", "-q", "-m", message)
    return git(repo, "rev-parse", "HEAD")
