"""Thin wrappers around the git CLI.

Every call runs synchronously and returns the CompletedProcess; callers
decide which return codes matter.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from murm.log import verbose_log

# git worktree was introduced in 2.5
MIN_GIT_MAJOR = 2
MIN_GIT_MINOR = 5

VERSION_PATTERN = re.compile(r"(\d+)\.(\d+)")


def run_git(args: list[str], cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
    cmd = ["git", *args]
    verbose_log(f"Running: {' '.join(cmd)}", "GIT")
    return subprocess.run(
        cmd,
        capture_output=True,
        text=True,
        check=False,
        cwd=str(cwd) if cwd else None,
    )


@dataclass
class GitStatus:
    is_git_repo: bool
    is_dirty: bool
    git_version: str


def is_git_version_supported(version: str) -> bool:
    """Compare major.minor against the minimum version that has worktrees."""
    match = VERSION_PATTERN.search(version or "")
    if not match:
        return False
    major, minor = int(match.group(1)), int(match.group(2))
    if major > MIN_GIT_MAJOR:
        return True
    return major == MIN_GIT_MAJOR and minor >= MIN_GIT_MINOR


def check_git_status(cwd: Optional[Path] = None) -> GitStatus:
    """Probe whether cwd is a repository, whether it is dirty, and the git version."""
    try:
        inside = run_git(["rev-parse", "--git-dir"], cwd)
        if inside.returncode != 0:
            return GitStatus(is_git_repo=False, is_dirty=False, git_version="0.0.0")
        porcelain = run_git(["status", "--porcelain"], cwd)
        version_output = run_git(["--version"], cwd).stdout
    except FileNotFoundError:
        return GitStatus(is_git_repo=False, is_dirty=False, git_version="0.0.0")

    match = re.search(r"(\d+\.\d+\.\d+)", version_output or "")
    return GitStatus(
        is_git_repo=True,
        is_dirty=bool(porcelain.stdout.strip()),
        git_version=match.group(1) if match else "0.0.0",
    )


def validate_repository(status: GitStatus) -> list[str]:
    """Return blocking repository errors; empty when worktrees can be created."""
    errors = []
    if not status.is_git_repo:
        errors.append("Not in a git repository")
    if status.is_dirty:
        errors.append("Working tree has uncommitted changes")
    if status.is_git_repo and not is_git_version_supported(status.git_version):
        errors.append(f"Git version {MIN_GIT_MAJOR}.{MIN_GIT_MINOR}+ required for worktree support")
    return errors


def get_current_branch(cwd: Optional[Path] = None) -> str:
    result = run_git(["branch", "--show-current"], cwd)
    return result.stdout.strip() if result.returncode == 0 else ""
