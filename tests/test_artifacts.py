import io
import tarfile
import time

import pytest

from compatgate.artifacts import ArtifactStore, LocalTransport, pack_path, unpack_to


@pytest.fixture
def transport(tmp_path):
    return LocalTransport(tmp_path / "store")


def test_transport_roundtrip_and_prune(transport):
    ref = transport.upload("run1/bin", b"\x7fELF", retention_days=1)

    assert transport.download(ref) == b"\x7fELF"
    assert transport.prune() == []
    assert transport.prune(now=time.time() + 2 * 24 * 60 * 60) == ["run1/bin"]
    with pytest.raises(FileNotFoundError):
        transport.download(ref)


def test_prune_without_any_uploads(transport):
    assert transport.prune() == []
    assert not transport.root.exists()


def test_staged_artifacts_are_invisible_until_commit(transport):
    store = ArtifactStore("run1", transport)
    store.stage("build", "bin", b"binary")

    assert not store.visible("bin")
    with pytest.raises(KeyError):
        store.fetch("bin")

    assert store.commit("build") == ["bin"]
    assert store.visible("bin")
    assert store.fetch("bin") == b"binary"


def test_artifacts_are_write_once(transport):
    store = ArtifactStore("run1", transport)
    store.stage("build", "bin", b"one")

    with pytest.raises(ValueError):
        store.stage("build", "bin", b"two")
    with pytest.raises(ValueError):
        store.stage("other", "bin", b"three")

    store.commit("build")
    with pytest.raises(ValueError):
        store.stage("build", "bin", b"four")


def test_discard_drops_staged_outputs(transport):
    store = ArtifactStore("run1", transport)
    ref = store.stage("build", "bin", b"partial")

    store.discard("build")

    assert store.commit("build") == []
    assert not store.visible("bin")
    with pytest.raises(FileNotFoundError):
        transport.download(ref)


def test_expired_artifact_is_not_visible(transport):
    store = ArtifactStore("run1", transport)
    store.stage("build", "bin", b"x", retention_days=0)
    store.commit("build")

    assert not store.visible("bin")
    with pytest.raises(KeyError):
        store.ref("bin")


def test_release_is_idempotent(transport):
    store = ArtifactStore("run1", transport)
    ref = store.stage("build", "bin", b"x")
    store.commit("build")

    store.release()
    store.release()

    assert store.names() == []
    with pytest.raises(FileNotFoundError):
        transport.download(ref)
    with pytest.raises(ValueError):
        store.stage("build", "late", b"y")


def test_directories_pack_and_unpack(tmp_path):
    src = tmp_path / "src"
    (src / "nested").mkdir(parents=True)
    (src / "a.txt").write_text("a")
    (src / "nested" / "b.txt").write_text("b")

    data, is_dir = pack_path(src)
    assert is_dir
    # identical trees pack to identical bytes
    assert pack_path(src)[0] == data

    dest = tmp_path / "dest"
    unpack_to(data, is_dir, dest)
    assert (dest / "a.txt").read_text() == "a"
    assert (dest / "nested" / "b.txt").read_text() == "b"


def test_single_file_unpacks_to_path(tmp_path):
    src = tmp_path / "neard"
    src.write_bytes(b"bin")

    data, is_dir = pack_path(src)
    unpack_to(data, is_dir, tmp_path / "pytest" / "neard")

    assert not is_dir
    assert (tmp_path / "pytest" / "neard").read_bytes() == b"bin"


def test_missing_path_cannot_be_packed(tmp_path):
    with pytest.raises(FileNotFoundError):
        pack_path(tmp_path / "nope")


def test_unpack_refuses_path_traversal(tmp_path):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        payload = b"evil"
        info = tarfile.TarInfo("../escape.txt")
        info.size = len(payload)
        tar.addfile(info, io.BytesIO(payload))

    with pytest.raises(ValueError):
        unpack_to(buf.getvalue(), True, tmp_path / "dest")
    assert not (tmp_path / "escape.txt").exists()
