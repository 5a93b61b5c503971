import threading
import time

import pytest

from compatgate.errors import Cancelled, ConfigurationError, InfrastructureUnavailable
from compatgate.runners import LocalSubstrate, Resource, RunnerPool, parse_runners


def test_parse_runners():
    resources = parse_runners("linux:distro=amazonlinux,queue=default*4; mac:os=macos")

    assert resources == [
        Resource("linux", frozenset({"distro=amazonlinux", "queue=default"}), 4),
        Resource("mac", frozenset({"os=macos"}), 1),
    ]
    assert parse_runners("local*2") == [Resource("local", frozenset(), 2)]


@pytest.mark.parametrize("spec", ["local*x", "local*0", ":os=linux"])
def test_parse_runners_rejects_bad_entries(spec):
    with pytest.raises(ConfigurationError):
        parse_runners(spec)


def test_acquire_picks_a_runner_with_all_labels():
    pool = RunnerPool(parse_runners("plain*1;amazon:distro=amazonlinux,queue=default*1"))

    handle = pool.acquire({"distro=amazonlinux"})

    assert handle.resource == "amazon"
    assert pool.in_use() == {"plain": 0, "amazon": 1}
    pool.release(handle)
    pool.release(handle)
    assert pool.in_use() == {"plain": 0, "amazon": 0}


def test_unknown_labels_fail_without_waiting():
    pool = RunnerPool([Resource("local", frozenset({"os=linux"}), 1)])

    start = time.monotonic()
    with pytest.raises(InfrastructureUnavailable) as exc:
        pool.acquire({"os=macos"})
    assert time.monotonic() - start < 1
    assert exc.value.details["labels"] == ["os=macos"]


def test_acquire_blocks_until_release():
    pool = RunnerPool([Resource("local", frozenset(), 1)])
    first = pool.acquire(())
    got = []

    t = threading.Thread(target=lambda: got.append(pool.acquire(())))
    t.start()
    time.sleep(0.1)
    assert got == []

    pool.release(first)
    t.join(timeout=5)
    assert len(got) == 1
    assert pool.in_use() == {"local": 1}


def test_acquire_times_out_when_capacity_stays_busy():
    pool = RunnerPool([Resource("local", frozenset(), 1)])
    pool.acquire(())

    with pytest.raises(InfrastructureUnavailable):
        pool.acquire((), timeout=0.1)


def test_cancelled_waiter_is_woken_by_interrupt():
    pool = RunnerPool([Resource("local", frozenset(), 1)])
    pool.acquire(())
    cancel = threading.Event()
    errors = []

    def waiter():
        try:
            pool.acquire((), cancelled=cancel)
        except Cancelled as e:
            errors.append(e)

    t = threading.Thread(target=waiter)
    t.start()
    time.sleep(0.05)
    cancel.set()
    pool.interrupt()
    t.join(timeout=5)

    assert len(errors) == 1
    assert pool.in_use() == {"local": 1}


def test_local_substrate_runs_commands(tmp_path):
    substrate = LocalSubstrate(RunnerPool([Resource("local", frozenset(), 1)]))
    handle = substrate.acquire(())
    try:
        ok = substrate.execute(handle, "echo hello-$WHO", {"WHO": "gate"}, tmp_path)
        bad = substrate.execute(handle, "echo oops >&2; exit 3", {}, tmp_path)
    finally:
        substrate.release(handle)

    assert ok.exit_code == 0
    assert ok.stdout.strip() == "hello-gate"
    assert bad.exit_code == 3
    assert "oops" in bad.stderr


def test_local_substrate_kills_on_timeout(tmp_path):
    substrate = LocalSubstrate(RunnerPool([Resource("local", frozenset(), 1)]))
    handle = substrate.acquire(())
    try:
        result = substrate.execute(handle, "sleep 10", {}, tmp_path, timeout=0.2)
    finally:
        substrate.release(handle)

    assert result.timed_out
    assert result.duration < 5
