from .diff import BREAKING, Change, ChangeKind, DiffResult, check_compatibility, diff_snapshots
from .result import CheckResult, Finding
from .schema import CompatibilitySnapshot, SchemaElement
from .sources import FileSource, MergeBaseSource, RefSource, SnapshotSource, WorkingTreeSource, resolve_base

__all__ = [
    "BREAKING",
    "Change",
    "ChangeKind",
    "CheckResult",
    "CompatibilitySnapshot",
    "DiffResult",
    "FileSource",
    "Finding",
    "MergeBaseSource",
    "RefSource",
    "SchemaElement",
    "SnapshotSource",
    "WorkingTreeSource",
    "check_compatibility",
    "diff_snapshots",
    "resolve_base",
]
