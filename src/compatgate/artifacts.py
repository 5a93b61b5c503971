# artifacts.py
from __future__ import annotations

import hashlib
import io
import json
import tarfile
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

# ---------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------
# Transport (shared between runs, survives a process):
#   root/
#     <run_id>/<artifact>/<sha256>.blob
#     <run_id>/<artifact>/<sha256>.meta.json
#
# ArtifactStore (one per Run, in memory):
#   staged    -> uploaded by a running job, invisible to consumers
#   committed -> visible; only written when the producer is recorded Succeeded
# ---------------------------------------------------------------------

DEFAULT_ARTIFACT_DIR = ".compatgate/artifacts"
SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class ArtifactRef:
    name: str
    key: str  # sha256 of the content
    size: int
    is_dir: bool
    expires_at: float

    def expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at

    def to_dict(self) -> Dict:
        return asdict(self)


class ArtifactTransport(Protocol):
    def upload(self, name: str, data: bytes, retention_days: float, *, is_dir: bool = False) -> ArtifactRef: ...

    def download(self, ref: ArtifactRef) -> bytes: ...

    def delete(self, ref: ArtifactRef) -> None: ...


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def pack_path(src: Path) -> tuple[bytes, bool]:
    """Read a file as-is, or a directory as a tar.gz of its contents. Returns (data, is_dir)."""
    if src.is_file():
        return src.read_bytes(), False
    if not src.is_dir():
        raise FileNotFoundError(f"Artifact path not found: {src}")

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for f in _iter_files_under(src):
            rel = str(f.relative_to(src)).replace("\\", "/")
            info = tar.gettarinfo(str(f), arcname=rel)
            # stable archives for identical trees
            info.mtime = 0
            with f.open("rb") as fh:
                tar.addfile(info, fileobj=fh)
    return buf.getvalue(), True


def unpack_to(data: bytes, is_dir: bool, dest: Path) -> None:
    if not is_dir:
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(dest.name + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(dest)
        return

    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        for member in tar.getmembers():
            target = (dest / member.name).resolve()
            if dest.resolve() not in target.parents:
                raise ValueError(f"Refusing to extract outside of {dest}: {member.name}")
        tar.extractall(path=str(dest))


class LocalTransport:
    """
    File-based transport. Blobs are content addressed inside a per-name directory,
    written to a temp file and renamed into place.
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        self.root = Path(root).resolve()

    def _blob_path(self, name: str, key: str) -> Path:
        return self.root / name / f"{key}.blob"

    def _meta_path(self, name: str, key: str) -> Path:
        return self.root / name / f"{key}.meta.json"

    def upload(self, name: str, data: bytes, retention_days: float, *, is_dir: bool = False) -> ArtifactRef:
        key = _sha256_bytes(data)
        ref = ArtifactRef(
            name=name,
            key=key,
            size=len(data),
            is_dir=is_dir,
            expires_at=time.time() + retention_days * SECONDS_PER_DAY,
        )
        blob = self._blob_path(name, key)
        blob.parent.mkdir(parents=True, exist_ok=True)
        tmp = blob.with_suffix(".blob.tmp")
        try:
            tmp.write_bytes(data)
            tmp.replace(blob)
            self._meta_path(name, key).write_text(
                json.dumps(ref.to_dict(), sort_keys=True, indent=2), encoding="utf-8"
            )
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        return ref

    def download(self, ref: ArtifactRef) -> bytes:
        blob = self._blob_path(ref.name, ref.key)
        if not blob.exists():
            raise FileNotFoundError(f"Artifact blob missing: {ref.name} ({ref.key[:12]}...)")
        return blob.read_bytes()

    def delete(self, ref: ArtifactRef) -> None:
        self._blob_path(ref.name, ref.key).unlink(missing_ok=True)
        self._meta_path(ref.name, ref.key).unlink(missing_ok=True)
        d = self.root / ref.name
        while d != self.root and d.exists() and not any(d.iterdir()):
            d.rmdir()
            d = d.parent

    def prune(self, now: float | None = None) -> List[str]:
        """Delete every blob whose retention window has passed. Returns the pruned names."""
        now = now if now is not None else time.time()
        pruned: List[str] = []
        if not self.root.is_dir():
            return pruned
        for meta in sorted(self.root.rglob("*.meta.json")):
            try:
                ref = ArtifactRef(**json.loads(meta.read_text(encoding="utf-8")))
            except (ValueError, TypeError):
                continue
            if ref.expired(now):
                self.delete(ref)
                pruned.append(ref.name)
        return pruned


class ArtifactStore:
    """
    Run-scoped, append-only artifact table.

    A producer stages outputs while it runs; they become visible to consumers
    only when `commit(producer)` is called, which the Run does together with the
    SUCCEEDED transition.
    """

    def __init__(self, run_id: str, transport: Optional[ArtifactTransport] = None):
        self.run_id = run_id
        self.transport = transport if transport is not None else LocalTransport()
        self._lock = threading.Lock()
        self._owner: Dict[str, str] = {}
        self._staged: Dict[str, Dict[str, ArtifactRef]] = {}
        self._committed: Dict[str, ArtifactRef] = {}
        self._released = False

    def _qualified(self, name: str) -> str:
        return f"{self.run_id}/{name}"

    def stage(self, producer: str, name: str, data: bytes, *, retention_days: float = 1, is_dir: bool = False) -> ArtifactRef:
        with self._lock:
            if self._released:
                raise ValueError(f"Artifact store for run {self.run_id} already released")
            owner = self._owner.get(name)
            if owner is not None and owner != producer:
                raise ValueError(f"Artifact '{name}' already produced by '{owner}'")
            if name in self._committed or name in self._staged.get(producer, {}):
                raise ValueError(f"Artifact '{name}' is write-once")
            self._owner[name] = producer

        ref = self.transport.upload(self._qualified(name), data, retention_days, is_dir=is_dir)
        with self._lock:
            self._staged.setdefault(producer, {})[name] = ref
        return ref

    def commit(self, producer: str) -> List[str]:
        with self._lock:
            staged = self._staged.pop(producer, {})
            self._committed.update(staged)
            return sorted(staged)

    def discard(self, producer: str) -> None:
        with self._lock:
            staged = self._staged.pop(producer, {})
            for name in staged:
                self._owner.pop(name, None)
        for ref in staged.values():
            self.transport.delete(ref)

    def visible(self, name: str) -> bool:
        with self._lock:
            ref = self._committed.get(name)
        return ref is not None and not ref.expired()

    def ref(self, name: str) -> ArtifactRef:
        with self._lock:
            ref = self._committed.get(name)
        if ref is None:
            raise KeyError(f"Artifact '{name}' is not available in run {self.run_id}")
        if ref.expired():
            raise KeyError(f"Artifact '{name}' expired in run {self.run_id}")
        return ref

    def fetch(self, name: str) -> bytes:
        return self.transport.download(self.ref(name))

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._committed)

    def release(self) -> None:
        """Delete everything this run uploaded. Safe to call more than once."""
        with self._lock:
            if self._released:
                return
            self._released = True
            refs = list(self._committed.values())
            for staged in self._staged.values():
                refs.extend(staged.values())
            self._committed.clear()
            self._staged.clear()
        for ref in refs:
            self.transport.delete(ref)
