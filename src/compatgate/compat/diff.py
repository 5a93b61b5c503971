# compat/diff.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Set

from .result import CheckResult, Finding
from .schema import NUMBERED_KINDS, CompatibilitySnapshot, SchemaElement


class ChangeKind(str, Enum):
    REMOVED = "removed"
    RETYPED = "retyped"
    RENUMBERED = "renumbered"
    RENAMED = "renamed"
    REQUIRED_ADDED = "required_added"
    ADDED = "added"


BREAKING = frozenset(
    {
        ChangeKind.REMOVED,
        ChangeKind.RETYPED,
        ChangeKind.RENUMBERED,
        ChangeKind.RENAMED,
        ChangeKind.REQUIRED_ADDED,
    }
)


@dataclass(frozen=True)
class Change:
    element: str
    kind: ChangeKind
    detail: str = ""

    @property
    def breaking(self) -> bool:
        return self.kind in BREAKING

    def to_finding(self) -> Finding:
        return Finding(element=self.element, kind=self.kind.value, detail=self.detail)


@dataclass(frozen=True)
class DiffResult:
    changes: tuple

    @property
    def breaking(self) -> List[Change]:
        return [c for c in self.changes if c.breaking]

    @property
    def passed(self) -> bool:
        return not self.breaking

    def to_check_result(self, *, base: str | None = None, head: str | None = None) -> CheckResult:
        breaking = self.breaking
        if breaking:
            summary = f"{len(breaking)} breaking change(s) against {base or 'base'}"
        else:
            added = len(self.changes)
            summary = f"no breaking changes ({added} additive change(s))"
        return CheckResult(
            check="compat",
            passed=not breaking,
            summary=summary,
            findings=[c.to_finding() for c in breaking],
            base=base,
            head=head,
        )


def _under_any(el: SchemaElement, roots: Set[str], snapshot: CompatibilitySnapshot) -> bool:
    parent = el.parent
    while parent:
        if parent in roots:
            return True
        owner = snapshot.get(parent)
        parent = owner.parent if owner else None
    return False


def _renamed_to(base_el: SchemaElement, head: CompatibilitySnapshot) -> Optional[SchemaElement]:
    if base_el.kind not in NUMBERED_KINDS or base_el.number is None:
        return None
    other = head.by_number(base_el.parent, base_el.kind, base_el.number)
    if other is not None and other.path != base_el.path:
        return other
    return None


def diff_snapshots(base: CompatibilitySnapshot, head: CompatibilitySnapshot) -> DiffResult:
    """
    Compare two snapshots element by element, matched by qualified name.

    Order of declaration never matters. A removed container is reported once;
    its children are not listed again. Pure: neither snapshot is touched.
    """
    changes: List[Change] = []
    removed: Set[str] = set()
    rename_targets: Set[str] = set()

    for path in base:
        b = base[path]
        if _under_any(b, removed, base):
            continue

        h = head.get(path)
        if h is None:
            target = _renamed_to(b, head)
            if target is not None:
                rename_targets.add(target.path)
                detail = f"number {b.number} is now '{target.name}'"
                if target.signature != b.signature:
                    detail += f" ({b.signature} -> {target.signature})"
                changes.append(Change(path, ChangeKind.RENAMED, detail))
            else:
                removed.add(path)
                changes.append(Change(path, ChangeKind.REMOVED, f"{b.kind} {b.signature}".strip()))
            continue

        if h.kind != b.kind:
            changes.append(Change(path, ChangeKind.RETYPED, f"{b.kind} -> {h.kind}"))
            continue
        if h.signature != b.signature:
            changes.append(Change(path, ChangeKind.RETYPED, f"{b.signature} -> {h.signature}"))
        if b.number is not None and h.number != b.number:
            changes.append(Change(path, ChangeKind.RENUMBERED, f"{b.number} -> {h.number}"))

    for path in head:
        if path in base or path in rename_targets:
            continue
        h = head[path]
        # only report the outermost new element
        if h.parent and h.parent in head and h.parent not in base:
            continue
        if h.kind == "field" and h.label == "required" and h.parent in base:
            changes.append(Change(path, ChangeKind.REQUIRED_ADDED, h.signature))
        else:
            changes.append(Change(path, ChangeKind.ADDED, f"{h.kind} {h.signature}".strip()))

    return DiffResult(changes=tuple(changes))


def check_compatibility(base: CompatibilitySnapshot, head: CompatibilitySnapshot) -> CheckResult:
    return diff_snapshots(base, head).to_check_result(base=base.source or None, head=head.source or None)
