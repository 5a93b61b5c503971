# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None, *, strip: bool = True) -> str:
    """
    Execute a git command and return its stdout as a string.

    This is the single low-level entry point for all Git operations in this file.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.
        strip: Strip surrounding whitespace. File contents are read with strip=False.

    Returns:
        Stdout from the git command.
    """
    # Non-zero exit raises CalledProcessError, which callers surface as a job failure.
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip() if strip else out


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd)


def merge_base(with_ref: str = "origin/master", head: str = "HEAD", cwd: Optional[str | Path] = None) -> str:
    """
    Return the merge-base (nearest common ancestor) between `head` and another ref.

    This is the stable comparison point for compatibility checks: it ignores
    whatever landed on `with_ref` after the current change branched off.

    Returns:
        Commit SHA of the merge-base.
    """
    return _git(["merge-base", head, with_ref], cwd)


def fetch(remote: str = "origin", cwd: Optional[str | Path] = None) -> None:
    """Fetch a remote so merge-base sees the full, current history of the target branch."""
    _git(["fetch", remote], cwd)


def list_files(ref: str, cwd: Optional[str | Path] = None) -> List[str]:
    """Every tracked file path at `ref` under `cwd`, relative to `cwd`."""
    out = _git(["ls-tree", "-r", "--name-only", ref], cwd)
    if not out:
        return []
    return out.splitlines()


def show_file(ref: str, path: str, cwd: Optional[str | Path] = None) -> str:
    """Contents of `path` as of `ref`, with `path` relative to `cwd` like list_files returns it."""
    # "./" makes git resolve the path from cwd instead of the repository root
    return _git(["show", f"{ref}:./{path}"], cwd, strip=False)


def get_current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Current branch name, or the HEAD SHA when detached.
    """
    branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
    if branch == "HEAD":
        return head_sha(cwd)
    return branch
