# git.py
# Small, focused wrapper around the Git CLI. Turns version-control state into
# the change-set a run is triggered with.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional

from .model import ChangeSet


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout with surrounding whitespace
    removed. Raises CalledProcessError on a non-zero exit.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def _lines(out: str) -> List[str]:
    return out.splitlines() if out else []


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path of the repository containing `cwd`."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True if there are modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """Files changed between two refs, relative to the repository root."""
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd))


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Commit where HEAD diverged from `with_ref`."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def worktree_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Unstaged, staged and untracked paths of a dirty working tree."""
    files = set()
    files.update(_lines(_git(["diff", "--name-only"], cwd=cwd)))
    files.update(_lines(_git(["diff", "--name-only", "--cached"], cwd=cwd)))
    files.update(_lines(_git(["ls-files", "--others", "--exclude-standard"], cwd=cwd)))
    return sorted(files)


def detect_change_set(compare_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> ChangeSet:
    """
    Change-set for a local or CI run:
      - dirty tree: everything not yet committed
      - clean tree: HEAD against its merge-base with `compare_ref`,
        falling back to HEAD~1, then to every tracked file (first commit)
    """
    root = repo_root(cwd)
    if is_dirty(root):
        return ChangeSet.of(worktree_changes(root))

    try:
        base = merge_base(compare_ref, cwd=root)
    except subprocess.CalledProcessError:
        # no remote configured, unrelated histories, ...
        base = "HEAD~1"

    try:
        return ChangeSet.of(changed_files(base, "HEAD", cwd=root))
    except subprocess.CalledProcessError:
        return ChangeSet.of(_lines(_git(["ls-files"], cwd=root)))
