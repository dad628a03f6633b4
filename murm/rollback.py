"""Undo a finished run and remove leftover worktrees.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from murm.git import run_git
from murm.log import verbose_log
from murm.queue_store import QueueStore
from murm.state import CLEANUP_STATUSES, FeatureRecord, FeatureStatus, order_by_completion
from murm.worktree import WorktreeManager, build_branch_name

ROLLBACK_WORKTREE_STATUSES = frozenset({FeatureStatus.FAILED, FeatureStatus.MERGE_CONFLICT})


def _short(revision: str) -> str:
    if ".." in revision:
        start, end = revision.split("..", 1)
        return f"commits {start[:8]}..{end[:8]}"
    return f"commit {revision[:8]}"


@dataclass
class RollbackReport:
    rolled_back: int = 0
    failures: list[str] = field(default_factory=list)
    dry_run: bool = False


def find_merge_commit(branch_name: str, root: Path = Path(".")) -> Optional[str]:
    """Find the newest merge commit carrying git's default subject for branch_name.

    Used for queue files written before merge heads were recorded.
    """
    result = run_git(["log", "--merges", "--format=%H%x09%s"], root)
    if result.returncode != 0:
        return None
    subject = f"Merge branch '{branch_name}'"
    for line in result.stdout.splitlines():
        sha, _, message = line.partition("\t")
        if message == subject or message.startswith(f"{subject} into "):
            return sha
    return None


def commit_parents(sha: str, root: Path = Path(".")) -> Optional[list[str]]:
    result = run_git(["rev-list", "--parents", "-n", "1", sha], root)
    if result.returncode != 0 or not result.stdout.strip():
        return None
    return result.stdout.split()[1:]


def revert_target(record: FeatureRecord, root: Path = Path(".")) -> Optional[list[str]]:
    """git revert arguments that undo exactly what the feature's merge added.

    A merge commit is reverted against its first parent. A fast-forward is
    reverted as the range of commits it brought in. Returns [] when the
    merge added nothing and None when the commits cannot be found.
    """
    if record.merge_commit is None:
        sha = find_merge_commit(record.branch_name or build_branch_name(record.slug), root)
        return None if sha is None else ["-m", "1", sha]

    if record.merge_commit == record.pre_merge_head:
        return []
    parents = commit_parents(record.merge_commit, root)
    if parents is None:
        return None
    if len(parents) > 1:
        return ["-m", "1", record.merge_commit]
    if record.pre_merge_head:
        return [f"{record.pre_merge_head}..{record.merge_commit}"]
    return [record.merge_commit]


def revert_feature(record: FeatureRecord, root: Path = Path(".")) -> tuple[bool, str]:
    """Revert the merge for a completed feature and commit the revert.

    A failed revert is aborted so the repository is never left mid-revert.
    """
    target = revert_target(record, root)
    if target is None:
        return False, f"Could not find merge commit for {record.slug}"
    if not target:
        return True, "Nothing was merged"

    revert = run_git(["revert", "--no-commit", *target], root)
    if revert.returncode == 0:
        commit = run_git(["commit", "-m", f"Revert: {record.slug} (murmuration rollback)"], root)
        if commit.returncode == 0:
            return True, f"Reverted {_short(target[-1])}"
        error = commit.stderr.strip() or commit.stdout.strip()
    else:
        error = revert.stderr.strip() or revert.stdout.strip()

    run_git(["revert", "--abort"], root)
    return False, f"Failed to rollback: {error}"


def rollback_run(
    queue_store: QueueStore,
    worktrees: WorktreeManager,
    dry_run: bool = False,
    preserve_queue: bool = False,
    root: Path = Path("."),
) -> RollbackReport:
    state = queue_store.load()
    report = RollbackReport(dry_run=dry_run)

    if state.is_empty:
        print("No murmuration run to rollback.")
        return report

    completed = state.with_status(FeatureStatus.COMPLETE)
    leftovers = state.with_status(*ROLLBACK_WORKTREE_STATUSES)
    if not completed and not leftovers:
        print("No completed or failed features to rollback.")
        return report

    print("\nMurmuration Rollback\n")
    if dry_run:
        print("DRY RUN - No changes will be made\n")

    # Later merges are undone first
    for record in reversed(order_by_completion(completed)):
        print(f"Rolling back {record.slug}...")
        if dry_run:
            print(f"  Would revert merge for {record.slug}")
            report.rolled_back += 1
            continue
        ok, message = revert_feature(record, root)
        if ok:
            print(f"  ✓ {message}")
            report.rolled_back += 1
        else:
            print(f"  ✗ {message}")
            report.failures.append(record.slug)

    for record in leftovers:
        if not record.worktree_path:
            continue
        print(f"Cleaning up {record.slug}...")
        if dry_run:
            print(f"  Would remove worktree: {record.worktree_path}")
        else:
            worktrees.remove(record.slug)
            print("  ✓ Removed worktree")
        report.rolled_back += 1

    if not dry_run and not preserve_queue:
        queue_store.clear()
        print("\n✓ Queue cleared")

    print(f"\nRollback complete: {report.rolled_back} item(s) processed")
    return report


def cleanup_worktrees(queue_store: QueueStore, worktrees: WorktreeManager) -> int:
    """Remove worktrees of complete or aborted features."""
    state = queue_store.load()
    cleaned = 0
    for record in state.features:
        if record.status in CLEANUP_STATUSES and record.worktree_path:
            worktrees.remove(record.slug)
            print(f"Cleaned up: {record.worktree_path}")
            cleaned += 1
    if cleaned == 0:
        print("No worktrees to clean up.")
    verbose_log(f"Cleaned {cleaned} worktree(s)", "CLEANUP")
    return cleaned
