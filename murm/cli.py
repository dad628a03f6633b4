"""Command-line entry point for murm.

    murm run <slug>... [--dry-run] [--yes] [--force] [--skip-preflight] [--strict]
    murm status [--watch]
    murm abort [--cleanup]
    murm rollback [--dry-run] [--preserve-queue]
    murm cleanup
    murm config [set <key> <value>]

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import argparse
import os
import sys
import threading
from pathlib import Path
from typing import Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from murm.abort import ABORT_EXIT_CODE, abort_run
from murm.config import ConfigStore
from murm.errors import LockConflict, MurmError
from murm.lock import LockManager
from murm.log import error, log, set_verbose, verbose_log
from murm.orchestrator import Orchestrator, RunOptions
from murm.progress import format_detailed_status, get_detailed_status
from murm.queue_store import QueueStore
from murm.rollback import cleanup_worktrees, rollback_run
from murm.worktree import WorktreeManager

# Redraw at least this often even without file events, so elapsed times move
STATUS_REFRESH_SECONDS = 5.0


class QueueFileWatcher(FileSystemEventHandler):
    """Watchdog handler that fires when the queue file is rewritten."""

    def __init__(self, queue_path: Path, event_callback):
        super().__init__()
        self.queue_name = Path(queue_path).name
        self.event_callback = event_callback

    def _matches(self, event) -> bool:
        if event.is_directory:
            return False
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(p and Path(os.fsdecode(p)).name == self.queue_name for p in paths)

    def on_created(self, event):
        if self._matches(event):
            self.event_callback()

    def on_modified(self, event):
        if self._matches(event):
            verbose_log(f"Queue modified: {event.src_path}", "WATCH")
            self.event_callback()

    def on_moved(self, event):
        # Atomic saves land as a rename onto the queue file
        if self._matches(event):
            self.event_callback()


def _render_status(queue_store: QueueStore, root: Path) -> None:
    print(format_detailed_status(get_detailed_status(queue_store, root)), flush=True)


def watch_status(queue_store: QueueStore, root: Path, stop_event: Optional[threading.Event] = None) -> None:
    """Redraw status whenever the queue file changes, until interrupted."""
    stop_event = stop_event or threading.Event()
    changed = threading.Event()

    watch_dir = queue_store.path.parent
    watch_dir.mkdir(parents=True, exist_ok=True)
    observer = Observer()
    observer.schedule(QueueFileWatcher(queue_store.path, changed.set), str(watch_dir), recursive=False)
    observer.start()
    verbose_log(f"Watching directory: {watch_dir}", "WATCH")

    try:
        _render_status(queue_store, root)
        while not stop_event.is_set():
            changed.wait(timeout=STATUS_REFRESH_SECONDS)
            if stop_event.is_set():
                break
            changed.clear()
            print()
            _render_status(queue_store, root)
    except KeyboardInterrupt:
        pass
    finally:
        observer.stop()
        observer.join()


# --- Subcommands ---


def cmd_run(args, store: ConfigStore) -> int:
    config = store.load()
    options = RunOptions(
        dry_run=args.dry_run,
        yes=args.yes,
        force=args.force,
        skip_preflight=args.skip_preflight,
        strict=args.strict,
        max_concurrency=args.concurrency,
    )
    orchestrator = Orchestrator(config, store.root)
    try:
        outcome = orchestrator.run(args.slugs, options)
    except LockConflict as e:
        lock = e.existing_lock
        error(str(e))
        print(f"  Started: {lock.started_at}")
        print(f"  Features: {', '.join(lock.features)}")
        print("\nUse 'murm abort' to stop it, or --force to override.")
        return 1
    return 0 if outcome.success else 1


def cmd_status(args, store: ConfigStore) -> int:
    config = store.load()
    queue_store = QueueStore(store.queue_path(config))
    if args.watch:
        watch_status(queue_store, store.root)
    else:
        _render_status(queue_store, store.root)
    return 0


def cmd_abort(args, store: ConfigStore) -> int:
    config = store.load()
    queue_store = QueueStore(store.queue_path(config))
    worktrees = WorktreeManager(config.worktree_dir, store.root)
    cleanup = (lambda: cleanup_worktrees(queue_store, worktrees)) if args.cleanup else None
    report = abort_run(queue_store, LockManager(store.lock_path), cleanup)
    return 0 if report.owner_stopped else 1


def cmd_rollback(args, store: ConfigStore) -> int:
    config = store.load()
    report = rollback_run(
        QueueStore(store.queue_path(config)),
        WorktreeManager(config.worktree_dir, store.root),
        dry_run=args.dry_run,
        preserve_queue=args.preserve_queue,
        root=store.root,
    )
    return 1 if report.failures else 0


def cmd_cleanup(args, store: ConfigStore) -> int:
    config = store.load()
    cleanup_worktrees(
        QueueStore(store.queue_path(config)),
        WorktreeManager(config.worktree_dir, store.root),
    )
    return 0


def cmd_config(args, store: ConfigStore) -> int:
    if args.action == "set":
        config = store.set_value(args.key, args.value)
        log(f"Set {args.key} = {getattr(config, args.key)}")
        return 0

    config = store.load()
    print("Murmuration Configuration\n")
    for key, value in config.to_dict().items():
        print(f"  {key}: {value}")
    print(f"\nConfig file: {store.config_path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="murm",
        description="Murmuration: run feature pipelines in parallel git worktrees",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Trace git commands and stream pipeline output",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run pipelines for one or more features")
    run.add_argument("slugs", nargs="+", metavar="SLUG")
    run.add_argument("--dry-run", action="store_true", help="Show the plan without changing anything")
    run.add_argument("--yes", "-y", action="store_true", help="Skip the confirmation prompt")
    run.add_argument("--force", action="store_true", help="Override an existing lock")
    run.add_argument("--skip-preflight", action="store_true", help="Skip spec validation")
    run.add_argument("--strict", action="store_true", help="Treat low disk space as fatal")
    run.add_argument(
        "--concurrency", type=int, default=None, metavar="N",
        help="Maximum concurrent pipelines (default: from config)",
    )
    run.set_defaults(handler=cmd_run)

    status = sub.add_parser("status", help="Show progress of the current run")
    status.add_argument("--watch", action="store_true", help="Redraw whenever the queue changes")
    status.set_defaults(handler=cmd_status)

    abort = sub.add_parser("abort", help="Stop a run started from another shell")
    abort.add_argument("--cleanup", action="store_true", help="Also remove finished worktrees")
    abort.set_defaults(handler=cmd_abort)

    rollback = sub.add_parser("rollback", help="Revert merged features and remove leftover worktrees")
    rollback.add_argument("--dry-run", action="store_true", help="Show what would be reverted")
    rollback.add_argument("--preserve-queue", action="store_true", help="Keep the queue file")
    rollback.set_defaults(handler=cmd_rollback)

    cleanup = sub.add_parser("cleanup", help="Remove worktrees of complete or aborted features")
    cleanup.set_defaults(handler=cmd_cleanup)

    config = sub.add_parser("config", help="Show or change settings")
    config_sub = config.add_subparsers(dest="action")
    config_set = config_sub.add_parser("set", help="Set one setting")
    config_set.add_argument("key")
    config_set.add_argument("value")
    config.set_defaults(handler=cmd_config)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    set_verbose(args.verbose)
    if args.command == "run" and args.concurrency is not None and args.concurrency < 1:
        parser.error("--concurrency must be at least 1")

    store = ConfigStore(Path("."))
    for path in store.migrate_legacy():
        log(f"Migrated legacy file to {path}")

    try:
        return args.handler(args, store)
    except MurmError as e:
        error(str(e))
        return 1
    except KeyboardInterrupt:
        return ABORT_EXIT_CODE


if __name__ == "__main__":
    sys.exit(main())
