"""Per-feature git worktree and branch lifecycle.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import subprocess
from dataclasses import dataclass
from pathlib import Path

from murm.git import run_git
from murm.log import verbose_log


def build_worktree_path(slug: str, worktree_dir: str) -> str:
    return f"{worktree_dir}/feat-{slug}"


def build_branch_name(slug: str) -> str:
    return f"feature/{slug}"


@dataclass
class Worktree:
    slug: str
    path: str
    branch_name: str


class WorktreeManager:
    """Creates and removes the isolated working copy for each feature."""

    def __init__(self, worktree_dir: str, root: Path = Path(".")):
        self.worktree_dir = worktree_dir
        self.root = Path(root)

    def path_for(self, slug: str) -> str:
        return build_worktree_path(slug, self.worktree_dir)

    def create(self, slug: str) -> Worktree:
        """Add a worktree on a new feature branch.

        Raises subprocess.CalledProcessError if git refuses (branch or path
        already exists, not a repository, ...).
        """
        worktree_path = self.path_for(slug)
        branch_name = build_branch_name(slug)

        (self.root / worktree_path).parent.mkdir(parents=True, exist_ok=True)

        cmd = ["worktree", "add", worktree_path, "-b", branch_name]
        result = run_git(cmd, self.root)
        if result.returncode != 0:
            raise subprocess.CalledProcessError(
                result.returncode, ["git", *cmd], output=result.stdout, stderr=result.stderr
            )

        verbose_log(f"Created worktree at {worktree_path} on branch {branch_name}", "WORKTREE")
        return Worktree(slug=slug, path=worktree_path, branch_name=branch_name)

    def remove(self, slug: str) -> None:
        """Force-remove the worktree and delete its branch.

        Either may already be gone after an earlier partial failure, so
        nonzero exits are ignored.
        """
        worktree_path = self.path_for(slug)
        branch_name = build_branch_name(slug)

        # Don't fail if already removed
        run_git(["worktree", "remove", worktree_path, "--force"], self.root)
        run_git(["worktree", "prune"], self.root)
        run_git(["branch", "-D", branch_name], self.root)
        verbose_log(f"Cleaned up worktree at {worktree_path}", "WORKTREE")
