"""Murmuration orchestrator: runs a batch of features in parallel worktrees.

Each feature gets its own worktree and branch, runs the pipeline command
there, and is merged back into the base branch when it succeeds. At most
max_concurrency pipelines run at once; queued features take the next free
slot. The queue file is rewritten on every state change so `murm status`,
`murm abort` and `murm rollback` can follow the run from another process.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import subprocess
import sys
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable, Optional

from murm.abort import AbortController, RunContext
from murm.config import LOCK_FILE, MurmConfig
from murm.errors import DiskSpaceLow, LockConflict, PreflightError, RepositoryStateError
from murm.git import GitStatus, check_git_status, get_current_branch, validate_repository
from murm.lock import LockManager
from murm.log import error, log, verbose_log, warn
from murm.merge import MergeCoordinator
from murm.pipeline import PipelineResult, PipelineRunner, build_pipeline_command
from murm.preflight import (
    BatchValidation,
    check_disk_space,
    check_feature_limit,
    format_preflight_results,
    remediation_hints,
    validate_batch,
)
from murm.queue_store import QueueStore
from murm.scheduler import Schedule, split_by_limit
from murm.state import FeatureStatus, RunState, summarize_final, transition, utc_now_iso
from murm.worktree import WorktreeManager, build_branch_name


@dataclass
class RunOptions:
    dry_run: bool = False
    yes: bool = False
    force: bool = False
    skip_preflight: bool = False
    strict: bool = False
    max_concurrency: Optional[int] = None


@dataclass
class RunOutcome:
    success: bool
    state: Optional[RunState] = None
    summary: Optional[dict] = None
    dry_run: bool = False
    cancelled: bool = False


def prompt_confirm(message: str) -> bool:
    try:
        answer = input(f"{message} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def build_confirm_message(slugs: list[str], max_concurrency: int, worktree_dir: str) -> str:
    schedule = split_by_limit(slugs, max_concurrency)
    lines = [
        "",
        "This will:",
        f"  • Create {len(slugs)} git worktree(s) in {worktree_dir}/",
        f"  • Start {len(schedule.active)} murmuration pipeline(s) (max concurrent: {max_concurrency})",
    ]
    if schedule.queued:
        lines.append(f"  • Queue {len(schedule.queued)} additional feature(s)")
    lines.append(f"  • Branches: {', '.join(build_branch_name(s) for s in slugs)}")
    lines += ["", "Continue?"]
    return "\n".join(lines)


class Orchestrator:
    def __init__(
        self,
        config: MurmConfig,
        root: Path = Path("."),
        runner: Optional[PipelineRunner] = None,
        confirm: Callable[[str], bool] = prompt_confirm,
        exit_fn: Callable[[int], None] = sys.exit,
    ):
        self.config = config
        self.root = Path(root)
        self.queue_store = QueueStore(self.root / config.queue_file)
        self.lock_manager = LockManager(self.root / LOCK_FILE)
        self.worktrees = WorktreeManager(config.worktree_dir, self.root)
        self.runner = runner or PipelineRunner(
            config.pipeline_command, config.timeout_seconds, self.root
        )
        self.merger = MergeCoordinator(self.worktrees, self.queue_store, self.root)
        self.confirm = confirm
        self.exit_fn = exit_fn
        self.context = RunContext()

    # --- Entry point ---

    def run(self, slugs: list[str], options: Optional[RunOptions] = None) -> RunOutcome:
        """Validate, lock, and execute a batch.

        Raises a MurmError subclass for problems that stop the whole batch;
        nothing has been allocated when one is raised.
        """
        options = options or RunOptions()
        unique = list(dict.fromkeys(slugs))
        if len(unique) != len(slugs):
            warn("Duplicate feature slugs ignored")
        slugs = unique
        max_concurrency = options.max_concurrency or self.config.max_concurrency

        base_branch = get_current_branch(self.root)
        git_status = check_git_status(self.root)
        repo_errors = validate_repository(git_status)

        batch = None
        if not options.skip_preflight:
            batch = validate_batch(slugs, self.config.features_dir, self.root)
            if options.dry_run or not batch.valid or batch.has_advisories:
                print(format_preflight_results(batch))
            if not batch.valid and not options.dry_run:
                print("\nCannot proceed. Fix issues above or use --skip-preflight to override.\n")
                hints = remediation_hints(batch)
                if hints:
                    print("Suggested commands:")
                    for hint in hints:
                        print(f"  {hint}")
                raise PreflightError(batch)
            if batch.file_overlaps and not options.dry_run and not options.yes:
                warn("File overlaps detected - merge conflicts are likely.")

        if options.dry_run:
            self.print_dry_run(slugs, max_concurrency, base_branch, git_status, repo_errors, batch)
            return RunOutcome(success=True, dry_run=True)

        if repo_errors:
            raise RepositoryStateError(repo_errors)

        check_feature_limit(slugs, self.config.max_features)

        disk = check_disk_space(self.config.min_disk_space_mb, self.root)
        if not disk.sufficient:
            low = DiskSpaceLow(disk.available_mb, disk.required_mb)
            if options.strict:
                raise low
            warn(f"{low} - proceeding anyway")

        self._acquire_lock(slugs, options.force)
        try:
            if not options.yes:
                message = build_confirm_message(slugs, max_concurrency, self.config.worktree_dir)
                if not self.confirm(message):
                    print("\nAborted.\n")
                    return RunOutcome(success=True, cancelled=True)

            state = RunState.new(slugs, base_branch, max_concurrency)
            self.queue_store.save(state)

            log(f"Starting murmuration of {len(slugs)} feature(s)")
            log(f"Base branch: {base_branch}")
            log(f"Max concurrency: {max_concurrency}")

            self.execute(state, max_concurrency)
            summary = summarize_final(state.features)
            self.print_summary(state, summary)
            return RunOutcome(
                success=summary["failed"] == 0 and summary["conflicts"] == 0,
                state=state,
                summary=summary,
            )
        finally:
            self.lock_manager.release()

    def _acquire_lock(self, slugs: list[str], force: bool) -> None:
        if force:
            existing = self.lock_manager.get_info()
            if existing is not None:
                warn(f"Overriding existing lock (PID: {existing.pid})")
            self.lock_manager.acquire(slugs, force=True)
            return
        result = self.lock_manager.acquire(slugs)
        if not result.acquired:
            raise LockConflict(result.existing_lock)

    # --- Scheduling loop ---

    def execute(self, state: RunState, max_concurrency: int) -> None:
        """Drive every feature in state to a terminal status."""
        schedule = split_by_limit([f.slug for f in state.features], max_concurrency)
        abort = AbortController(
            self.context, state, self.queue_store, self.lock_manager, self.exit_fn
        )
        abort.install()
        executor = ThreadPoolExecutor(max_workers=max_concurrency, thread_name_prefix="murm")
        running: dict[Future, str] = {}
        try:
            self._launch(state, schedule, executor, running, list(schedule.active))

            while running:
                done, _ = wait(running, return_when=FIRST_COMPLETED)
                results = [self._collect(future, running.pop(future)) for future in done]
                # Merge in the order pipelines actually finished
                for result in sorted(results, key=lambda r: r.finished_at):
                    slug = result.slug
                    self._finish_feature(state, slug, result)
                    promoted = schedule.finish(slug)
                    if promoted:
                        verbose_log(f"Promoting {', '.join(promoted)} from queue", "SCHEDULE")
                    self._launch(state, schedule, executor, running, promoted)
        finally:
            abort.uninstall()
            executor.shutdown(wait=not self.context.aborting, cancel_futures=True)

    def _launch(
        self,
        state: RunState,
        schedule: Schedule,
        executor: ThreadPoolExecutor,
        running: dict[Future, str],
        slugs: list[str],
    ) -> None:
        pending = list(slugs)
        while pending:
            slug = pending.pop(0)
            future = self._start_feature(state, slug, executor)
            if future is None:
                # Provisioning failed; the slot is free again
                pending.extend(schedule.finish(slug))
            else:
                running[future] = slug

    @staticmethod
    def _collect(future: Future, slug: str) -> PipelineResult:
        try:
            return future.result()
        except Exception as e:
            error(f"{slug}: pipeline runner crashed: {e}")
            return PipelineResult(slug=slug, success=False, error=str(e))

    def _start_feature(
        self, state: RunState, slug: str, executor: ThreadPoolExecutor
    ) -> Optional[Future]:
        record = state.find(slug)
        log(f"{slug}: Taking flight...")

        try:
            worktree = self.worktrees.create(slug)
        except subprocess.CalledProcessError as e:
            transition(record, FeatureStatus.FAILED)
            record.error = (e.stderr or e.stdout or str(e)).strip()
            record.completed_at = utc_now_iso()
            self.queue_store.save(state)
            log(f"{slug}: Could not create worktree ✗ ({record.error})")
            return None

        record.worktree_path = worktree.path
        record.branch_name = worktree.branch_name
        record.started_at = utc_now_iso()
        record.log_path = self.runner.log_path_for(worktree.path)
        transition(record, FeatureStatus.WORKTREE_CREATED)
        self.queue_store.save(state)

        transition(record, FeatureStatus.RUNNING)
        self.queue_store.save(state)
        log(
            f"{slug}: Started (log: {record.log_path}, "
            f"timeout: {self.config.timeout_minutes}min)"
        )
        return executor.submit(
            self.runner.run, slug, worktree.path, partial(self.context.track, slug)
        )

    def _finish_feature(self, state: RunState, slug: str, result: PipelineResult) -> None:
        record = state.find(slug)
        if result.timed_out:
            # The pipeline outlived its budget; ask it to stop
            self.context.terminate(slug)
        else:
            self.context.untrack(slug)

        record.completed_at = utc_now_iso()
        if result.log_path:
            record.log_path = result.log_path

        if result.success:
            log(f"{slug}: Landed ✓")
            merge = self.merger.integrate(state, record)
            if merge.success:
                log(f"{slug}: Merged and landed ✓")
            elif merge.conflict:
                log(f"{slug}: Turbulence - merge conflict ⚠ (branch preserved)")
            else:
                log(f"{slug}: Lost formation - merge failed ✗")
            return

        transition(record, FeatureStatus.FAILED)
        record.error = result.error
        if result.timed_out:
            record.timed_out = True
            log(f"{slug}: Timed out ⏱ (see log: {record.log_path})")
        else:
            log(f"{slug}: Lost formation ✗ (see log: {record.log_path})")
        self.queue_store.save(state)

    # --- Reporting ---

    def print_summary(self, state: RunState, summary: dict) -> None:
        print("\nMurmuration complete")
        print(f"Completed: {summary['completed']}")
        print(f"Failed: {summary['failed']}")
        print(f"Conflicts: {summary['conflicts']}")

        conflicts = state.with_status(FeatureStatus.MERGE_CONFLICT)
        if conflicts:
            print("\nBranches with merge conflicts (resolve manually):")
            for record in conflicts:
                print(f"  - {record.branch_name}")

        failed = state.with_status(FeatureStatus.FAILED)
        if failed:
            print("\nFailed features (worktrees preserved):")
            for record in failed:
                print(f"  - {record.worktree_path or record.slug}")
                if record.log_path:
                    print(f"    Log: {record.log_path}")

    def print_dry_run(
        self,
        slugs: list[str],
        max_concurrency: int,
        base_branch: str,
        git_status: GitStatus,
        repo_errors: list[str],
        batch: Optional[BatchValidation],
    ) -> None:
        schedule = split_by_limit(slugs, max_concurrency)
        cfg = self.config

        print("\n=== DRY RUN MODE ===\n")
        print("Git Checks:")
        print(f"  {'✓' if git_status.is_git_repo else '✗'} Git repository: "
              f"{'yes' if git_status.is_git_repo else 'no'}")
        print(f"  {'✗' if git_status.is_dirty else '✓'} Working tree: "
              f"{'dirty (has uncommitted changes)' if git_status.is_dirty else 'clean'}")
        print(f"  ✓ Git version: {git_status.git_version}")
        print(f"  ✓ Base branch: {base_branch}")
        if repo_errors:
            print("\n⚠️  WARNING: Git checks failed. Real execution would abort.")
            for err in repo_errors:
                print(f"     - {err}")
        if batch is not None and not batch.valid:
            print("\n⚠️  WARNING: Feature validation failed. Real execution would abort.")
        if len(slugs) > cfg.max_features:
            print(f"\n⚠️  WARNING: {len(slugs)} features exceeds max_features ({cfg.max_features}).")

        print("\nConfiguration:")
        print(f"  Max concurrency: {max_concurrency}")
        print(f"  Max features: {cfg.max_features}")
        print(f"  Timeout: {cfg.timeout_minutes} min per pipeline")
        print(f"  Min disk space: {cfg.min_disk_space_mb} MB")
        print(f"  Pipeline command: {cfg.pipeline_command}")
        print(f"  Worktree dir: {cfg.worktree_dir}")
        print(f"  Total features: {len(slugs)}")

        print(f"\nInitial batch ({len(schedule.active)} features):")
        for slug in schedule.active:
            print(f"  → {slug}")
            print(f"      Worktree: {self.worktrees.path_for(slug)}")
            print(f"      Branch:   {build_branch_name(slug)}")
            print(f"      Command:  {' '.join(build_pipeline_command(cfg.pipeline_command, slug))}")

        if schedule.queued:
            print(f"\nQueued ({len(schedule.queued)} features, will start as slots free):")
            for slug in schedule.queued:
                print(f"  ⏳ {slug}")

        print("\nExecution plan:")
        print(f"  1. Create {len(schedule.active)} git worktrees")
        print(f"  2. Spawn {len(schedule.active)} murmuration pipeline processes")
        print(f"  3. As each completes: merge to {base_branch}, cleanup worktree")
        step = 4
        if schedule.queued:
            print(f"  {step}. Promote queued features as slots free")
            step += 1
        print(f"  {step}. Report final summary")
        print("\nTo execute for real, run without --dry-run")
        print("===================\n")
