# git.py
# Small, focused wrapper around the Git CLI.
# The CLI uses it to describe the local checkout as a triggering event when
# no --ref is given.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional

from matrixci.model import RunContext


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    """Absolute path to the root of the current Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """Branch name, or None on a detached HEAD."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def tags_at_head(cwd: Optional[str] = None) -> List[str]:
    """Tags pointing exactly at HEAD, sorted."""
    out = _git(["tag", "--points-at", "HEAD"], cwd=cwd)
    return sorted(out.splitlines()) if out else []


def user_name(cwd: Optional[str] = None) -> Optional[str]:
    try:
        return _git(["config", "user.name"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        return None


def current_event(cwd: Optional[str] = None, *, prefer_tag: bool = True) -> RunContext:
    """
    Describe the checkout as the event that would trigger CI for it:

      - HEAD carries a tag (and prefer_tag)  -> tag_push of that tag
      - otherwise on a branch                -> push of that branch
      - detached HEAD without a tag          -> ValueError
    """
    sha = head_sha(cwd)
    tags = tags_at_head(cwd) if prefer_tag else []
    actor = user_name(cwd)
    if tags:
        return RunContext(event="tag_push", ref_name=tags[-1], ref_kind="tag", actor=actor, sha=sha)
    branch = current_branch(cwd)
    if branch is None:
        raise ValueError("HEAD is detached and not tagged; pass --ref explicitly")
    return RunContext(event="push", ref_name=branch, ref_kind="branch", actor=actor, sha=sha)
