# compat/sources.py
"""
Where the two sides of a comparison come from.

The diff itself never knows whether it is looking at history or at files on
disk; a source only has to produce a snapshot and say what it is.
"""
from __future__ import annotations

from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from ..git_facts import git
from .schema import CompatibilitySnapshot


class SnapshotSource(Protocol):
    def load(self) -> CompatibilitySnapshot: ...

    def describe(self) -> str: ...


def _matches(path: str, patterns: Iterable[str]) -> bool:
    # "**/x" also matches x at the repository root, as Path.glob does
    return any(fnmatch(path, p) or (p.startswith("**/") and fnmatch(path, p[3:])) for p in patterns)


class WorkingTreeSource:
    """Schema files as they are on disk right now (the head of a change)."""

    def __init__(self, root: str | Path, patterns: Iterable[str]):
        self.root = Path(root)
        self.patterns = list(patterns)

    def files(self) -> List[Path]:
        seen: Dict[str, Path] = {}
        for pat in self.patterns:
            for p in sorted(self.root.glob(pat)):
                if p.is_file():
                    seen[p.relative_to(self.root).as_posix()] = p
        return [seen[k] for k in sorted(seen)]

    def load(self) -> CompatibilitySnapshot:
        docs = {p.relative_to(self.root).as_posix(): p.read_text(encoding="utf-8") for p in self.files()}
        return CompatibilitySnapshot.from_documents(docs, source=self.describe())

    def describe(self) -> str:
        return "working tree"


class FileSource:
    """Explicit files, e.g. a checked-in baseline."""

    def __init__(self, paths: Iterable[str | Path], label: str | None = None):
        self.paths = [Path(p) for p in paths]
        self.label = label

    def load(self) -> CompatibilitySnapshot:
        docs = {}
        for p in self.paths:
            if not p.exists():
                raise FileNotFoundError(f"Schema file not found: {p}")
            docs[p.as_posix()] = p.read_text(encoding="utf-8")
        return CompatibilitySnapshot.from_documents(docs, source=self.describe())

    def describe(self) -> str:
        return self.label or ", ".join(p.as_posix() for p in self.paths)


class RefSource:
    """Schema files as they were at a fixed git ref."""

    def __init__(self, ref: str, patterns: Iterable[str], repo: str | Path | None = None):
        self.ref = ref
        self.patterns = list(patterns)
        self.repo = repo

    def _resolved_ref(self) -> str:
        return self.ref

    def load(self) -> CompatibilitySnapshot:
        ref = self._resolved_ref()
        files = [f for f in git.list_files(ref, cwd=self.repo) if _matches(f, self.patterns)]
        docs = {f: git.show_file(ref, f, cwd=self.repo) for f in files}
        return CompatibilitySnapshot.from_documents(docs, source=self.describe())

    def describe(self) -> str:
        return f"ref {self.ref}"


class MergeBaseSource(RefSource):
    """
    Schema files at the merge-base of `head` and `target_ref`.

    Comparing against the common ancestor rather than the target tip means
    changes that landed on the target after the branch point are never
    attributed to the change under test.
    """

    def __init__(
        self,
        target_ref: str,
        patterns: Iterable[str],
        repo: str | Path | None = None,
        *,
        head: str = "HEAD",
        fetch_remote: Optional[str] = None,
    ):
        super().__init__(target_ref, patterns, repo)
        self.target_ref = target_ref
        self.head = head
        self.fetch_remote = fetch_remote
        self._base: Optional[str] = None

    def _resolved_ref(self) -> str:
        if self._base is None:
            if self.fetch_remote:
                git.fetch(self.fetch_remote, cwd=self.repo)
            self._base = git.merge_base(self.target_ref, head=self.head, cwd=self.repo)
        return self._base

    @property
    def base_commit(self) -> str:
        return self._resolved_ref()

    def describe(self) -> str:
        if self._base is None:
            return f"merge-base of {self.head} and {self.target_ref}"
        return f"merge-base {self._base[:12]} of {self.head} and {self.target_ref}"


def resolve_base(
    against: str,
    patterns: Iterable[str],
    *,
    repo: str | Path | None = None,
    target_ref: str | None = None,
    ref: str | None = None,
    baseline: Iterable[str | Path] = (),
    fetch_remote: Optional[str] = None,
) -> SnapshotSource:
    """Pick the base-side source from a short name: merge-base, ref, or file."""
    if against == "merge-base":
        if not target_ref:
            raise ValueError("merge-base comparison needs a target ref")
        return MergeBaseSource(target_ref, patterns, repo, fetch_remote=fetch_remote)
    if against == "ref":
        if not ref:
            raise ValueError("ref comparison needs a ref")
        return RefSource(ref, patterns, repo)
    if against == "file":
        paths = list(baseline)
        if not paths:
            raise ValueError("file comparison needs at least one baseline file")
        return FileSource(paths)
    raise ValueError(f"Unknown comparison base {against!r} (expected merge-base, ref or file)")
