# runners.py
from __future__ import annotations

import itertools
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Protocol

from .errors import Cancelled, ConfigurationError, InfrastructureUnavailable


@dataclass(frozen=True)
class Resource:
    """A class of runner agents sharing one label set, e.g. distro=amazonlinux,queue=default."""
    name: str
    labels: FrozenSet[str]
    capacity: int = 1

    def satisfies(self, required: Iterable[str]) -> bool:
        return set(required) <= self.labels


@dataclass(frozen=True)
class ResourceHandle:
    id: int
    resource: str
    labels: FrozenSet[str]


@dataclass
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration: float = 0.0


def parse_runners(spec: str) -> List[Resource]:
    """
    Parse a runner pool description.

      "linux:distro=amazonlinux,queue=default*4;mac:os=macos*1"

    Each entry is name:label,label*capacity. Capacity defaults to 1.
    """
    out: List[Resource] = []
    for entry in (spec or "").split(";"):
        entry = entry.strip()
        if not entry:
            continue
        capacity = 1
        if "*" in entry:
            entry, _, cap = entry.rpartition("*")
            try:
                capacity = int(cap)
            except ValueError:
                raise ConfigurationError(f"Invalid runner capacity {cap!r}") from None
        name, _, labels = entry.partition(":")
        if not name:
            raise ConfigurationError(f"Runner entry without a name: {entry!r}")
        if capacity < 1:
            raise ConfigurationError(f"Runner '{name}' must have capacity >= 1")
        label_set = frozenset(l.strip() for l in labels.split(",") if l.strip())
        out.append(Resource(name=name, labels=label_set, capacity=capacity))
    return out


class RunnerPool:
    """
    Labeled runner capacity. The per-resource in-use counters are the only shared
    mutable state and are guarded by one Condition; waiters sleep on it instead of polling.
    """

    def __init__(self, resources: Iterable[Resource]):
        self._resources: Dict[str, Resource] = {}
        for r in resources:
            if r.name in self._resources:
                raise ConfigurationError(f"Duplicate runner name: {r.name}")
            self._resources[r.name] = r
        self._in_use: Dict[str, int] = {n: 0 for n in self._resources}
        self._held: Dict[int, ResourceHandle] = {}
        self._ids = itertools.count(1)
        self._cond = threading.Condition()

    @property
    def resources(self) -> List[Resource]:
        return [self._resources[n] for n in sorted(self._resources)]

    def in_use(self) -> Dict[str, int]:
        with self._cond:
            return dict(self._in_use)

    def can_ever_satisfy(self, labels: Iterable[str]) -> bool:
        return any(r.satisfies(labels) for r in self._resources.values())

    def _try_take(self, labels: FrozenSet[str]) -> Optional[ResourceHandle]:
        for name in sorted(self._resources):
            res = self._resources[name]
            if res.satisfies(labels) and self._in_use[name] < res.capacity:
                self._in_use[name] += 1
                handle = ResourceHandle(id=next(self._ids), resource=name, labels=res.labels)
                self._held[handle.id] = handle
                return handle
        return None

    def acquire(
        self,
        labels: Iterable[str],
        timeout: float | None = None,
        cancelled: Optional[threading.Event] = None,
    ) -> ResourceHandle:
        wanted = frozenset(labels)
        if not self.can_ever_satisfy(wanted):
            raise InfrastructureUnavailable(wanted, f"no runner offers labels {sorted(wanted)}")

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if cancelled is not None and cancelled.is_set():
                    raise Cancelled()
                handle = self._try_take(wanted)
                if handle is not None:
                    return handle
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise InfrastructureUnavailable(
                        wanted, f"no runner with labels {sorted(wanted)} became free within {timeout:g}s"
                    )
                self._cond.wait(remaining)

    def release(self, handle: ResourceHandle) -> None:
        with self._cond:
            if self._held.pop(handle.id, None) is None:
                return
            self._in_use[handle.resource] -= 1
            self._cond.notify_all()

    def interrupt(self) -> None:
        """Wake every waiter so it can observe cancellation."""
        with self._cond:
            self._cond.notify_all()


class Substrate(Protocol):
    """What the scheduler needs from the runner platform."""

    def acquire(self, labels: Iterable[str], timeout: float | None = None, cancelled: Optional[threading.Event] = None) -> ResourceHandle: ...

    def execute(
        self,
        handle: ResourceHandle,
        command: str,
        env: Mapping[str, str],
        cwd: Path,
        timeout: float | None = None,
    ) -> CommandResult: ...

    def release(self, handle: ResourceHandle) -> None: ...

    def terminate(self, handle: ResourceHandle) -> None: ...

    def interrupt(self) -> None: ...


# output kept per stream; enough to explain a failure
OUTPUT_TAIL = 4000


class LocalSubstrate:
    """Runs commands on this machine with subprocess; capacity comes from a RunnerPool."""

    def __init__(self, pool: RunnerPool):
        self.pool = pool
        self._procs: Dict[int, subprocess.Popen] = {}
        self._terminated: set[int] = set()
        self._lock = threading.Lock()

    def acquire(self, labels, timeout=None, cancelled=None) -> ResourceHandle:
        return self.pool.acquire(labels, timeout=timeout, cancelled=cancelled)

    def release(self, handle: ResourceHandle) -> None:
        with self._lock:
            self._terminated.discard(handle.id)
        self.pool.release(handle)

    def execute(self, handle, command, env, cwd, timeout=None) -> CommandResult:
        full_env = os.environ.copy()
        full_env.update(env or {})
        start = time.monotonic()
        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=str(cwd),
            env=full_env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
        with self._lock:
            self._procs[handle.id] = proc
            if handle.id in self._terminated:
                self._kill(proc)
        try:
            try:
                out, err = proc.communicate(timeout=timeout)
                timed_out = False
            except subprocess.TimeoutExpired:
                self._kill(proc)
                out, err = proc.communicate()
                timed_out = True
        finally:
            with self._lock:
                self._procs.pop(handle.id, None)

        return CommandResult(
            exit_code=proc.returncode,
            stdout=(out or "")[-OUTPUT_TAIL:],
            stderr=(err or "")[-OUTPUT_TAIL:],
            timed_out=timed_out,
            duration=time.monotonic() - start,
        )

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            proc.kill()

    def terminate(self, handle: ResourceHandle) -> None:
        with self._lock:
            self._terminated.add(handle.id)
            proc = self._procs.get(handle.id)
        if proc is not None and proc.poll() is None:
            self._kill(proc)

    def interrupt(self) -> None:
        self.pool.interrupt()

