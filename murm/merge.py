"""Merges finished feature branches back into the base branch.

The base branch is shared by every feature, so merges run one at a time in
the order pipelines finish. A conflicted merge is aborted and the branch and
worktree are kept for manual resolution.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from murm.git import run_git
from murm.log import verbose_log, warn
from murm.queue_store import QueueStore
from murm.state import FeatureRecord, FeatureStatus, RunState, transition
from murm.worktree import WorktreeManager, build_branch_name

CONFLICT_MARKER = "CONFLICT"


def has_merge_conflict(git_output: str) -> bool:
    return CONFLICT_MARKER in (git_output or "")


@dataclass
class MergeResult:
    success: bool
    conflict: bool = False
    output: str = ""


class MergeCoordinator:
    def __init__(self, worktrees: WorktreeManager, queue_store: QueueStore, root: Path = Path(".")):
        self.worktrees = worktrees
        self.queue_store = queue_store
        self.root = Path(root)

    def merge_branch(self, branch_name: str) -> MergeResult:
        result = run_git(["merge", branch_name, "--no-edit"], self.root)
        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode == 0:
            return MergeResult(success=True, output=output)
        return MergeResult(success=False, conflict=has_merge_conflict(output), output=output)

    def current_head(self) -> Optional[str]:
        result = run_git(["rev-parse", "HEAD"], self.root)
        sha = result.stdout.strip() if result.returncode == 0 else ""
        return sha or None

    def _abort_in_progress_merge(self) -> None:
        head = run_git(["rev-parse", "-q", "--verify", "MERGE_HEAD"], self.root)
        if head.returncode == 0:
            abort = run_git(["merge", "--abort"], self.root)
            if abort.returncode != 0:
                warn(f"git merge --abort failed: {abort.stderr.strip()}")

    def integrate(self, state: RunState, record: FeatureRecord) -> MergeResult:
        """Merge a successful feature and record the outcome on its record."""
        transition(record, FeatureStatus.MERGE_PENDING)
        self.queue_store.save(state)

        branch_name = record.branch_name or build_branch_name(record.slug)
        pre_merge_head = self.current_head()
        result = self.merge_branch(branch_name)

        if result.success:
            # Rollback reverts exactly this span of history
            record.pre_merge_head = pre_merge_head
            record.merge_commit = self.current_head()
            transition(record, FeatureStatus.COMPLETE)
            self.queue_store.save(state)
            self.worktrees.remove(record.slug)
            verbose_log(f"Merged {branch_name} and removed its worktree", "MERGE")
        elif result.conflict:
            transition(record, FeatureStatus.MERGE_CONFLICT)
            record.conflict_details = result.output
            self._abort_in_progress_merge()
            self.queue_store.save(state)
        else:
            transition(record, FeatureStatus.FAILED)
            record.error = result.output.strip() or "git merge failed"
            self._abort_in_progress_merge()
            self.queue_store.save(state)
        return result
