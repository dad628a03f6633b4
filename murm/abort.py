"""Interrupt handling for a live run, and aborting a run from another process.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from murm.lock import LockManager, is_process_running
from murm.log import log, warn
from murm.queue_store import QueueStore
from murm.state import IN_FLIGHT_STATUSES, FeatureStatus, RunState, transition

# Conventional exit status for a process stopped by SIGINT
ABORT_EXIT_CODE = 130

# How long an external abort waits for the owning process to stop
OWNER_EXIT_TIMEOUT_SECONDS = 10.0
OWNER_POLL_INTERVAL_SECONDS = 0.1

# An external abort also cancels features that never started
EXTERNAL_ABORT_STATUSES = frozenset({
    FeatureStatus.QUEUED, FeatureStatus.WORKTREE_CREATED, FeatureStatus.RUNNING,
})


class RunContext:
    """Mutable state owned by one orchestrator run.

    Holds the live pipeline processes and the abort flag so signal handlers
    reach them through the run rather than through module globals.
    """

    def __init__(self):
        self.processes: dict[str, subprocess.Popen] = {}
        self.aborting = False
        self._lock = threading.Lock()

    def track(self, slug: str, process: subprocess.Popen) -> None:
        with self._lock:
            self.processes[slug] = process

    def untrack(self, slug: str) -> Optional[subprocess.Popen]:
        with self._lock:
            return self.processes.pop(slug, None)

    def terminate(self, slug: str) -> None:
        """Send SIGTERM to one tracked pipeline and stop tracking it."""
        process = self.untrack(slug)
        if process is not None and process.poll() is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass

    def terminate_all(self) -> None:
        with self._lock:
            tracked = list(self.processes.items())
        for slug, process in tracked:
            if process.poll() is None:
                log(f"Stopping {slug} (PID: {process.pid})...")
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass


def mark_aborted(state: RunState, statuses=IN_FLIGHT_STATUSES) -> list[str]:
    """Move every record in one of statuses to aborted; returns their slugs."""
    aborted = []
    for record in state.features:
        if record.status in statuses:
            transition(record, FeatureStatus.ABORTED)
            aborted.append(record.slug)
    return aborted


class AbortController:
    """SIGINT/SIGTERM handler for the running orchestrator."""

    def __init__(
        self,
        context: RunContext,
        state: RunState,
        queue_store: QueueStore,
        lock_manager: LockManager,
        exit_fn: Callable[[int], None] = sys.exit,
    ):
        self.context = context
        self.state = state
        self.queue_store = queue_store
        self.lock_manager = lock_manager
        self.exit_fn = exit_fn
        self._previous_handlers: dict[int, object] = {}

    def install(self) -> None:
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, self.handle_signal)

    def uninstall(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def handle_signal(self, signum, frame) -> None:
        if self.context.aborting:
            return
        self.context.aborting = True

        sig_name = "SIGINT" if signum == signal.SIGINT else "SIGTERM"
        log(f"Received {sig_name}. Scattering the flock...")

        self.context.terminate_all()
        aborted = mark_aborted(self.state)
        self.queue_store.save(self.state)
        self.lock_manager.release()

        for slug in aborted:
            log(f"{slug}: aborted")
        print("\nAborted. Worktrees preserved for debugging.")
        print("Run 'murm cleanup' to remove.\n", flush=True)
        self.exit_fn(ABORT_EXIT_CODE)


@dataclass
class AbortReport:
    aborted: list[str]
    signalled_pid: Optional[int] = None
    worktrees: Optional[list[str]] = None
    owner_stopped: bool = True


def wait_for_owner_exit(
    pid: int,
    lock_manager: LockManager,
    timeout: float = OWNER_EXIT_TIMEOUT_SECONDS,
    poll_interval: float = OWNER_POLL_INTERVAL_SECONDS,
) -> bool:
    """Poll until pid exits or gives up the lock; False if it is still holding on at timeout.

    The owner saves the queue before releasing the lock, so either event
    means its last write has landed.
    """
    deadline = time.monotonic() + timeout
    while True:
        lock = lock_manager.get_info()
        if lock is None or lock.pid != pid or not is_process_running(pid):
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(poll_interval)


def abort_run(
    queue_store: QueueStore,
    lock_manager: LockManager,
    cleanup: Optional[Callable[[], int]] = None,
    timeout: float = OWNER_EXIT_TIMEOUT_SECONDS,
    poll_interval: float = OWNER_POLL_INTERVAL_SECONDS,
) -> AbortReport:
    """Abort a run owned by another murm process.

    Signals the PID recorded in the lock and waits for that process to save
    its own state and exit. Only then is the queue re-read and every
    unfinished feature marked aborted. A live owner that does not stop in
    time is left alone along with its queue and lock.
    """
    lock = lock_manager.get_info()
    state = queue_store.load()

    if lock is None and state.is_empty:
        print("No murmuration pipelines are currently running.")
        return AbortReport(aborted=[])

    print("Stopping murmuration pipelines...\n")
    unfinished = [f.slug for f in state.features if f.status in EXTERNAL_ABORT_STATUSES]

    signalled_pid = None
    if lock is not None and lock.pid != os.getpid():
        print(f"Sending stop signal to main process (PID: {lock.pid})...")
        try:
            os.kill(lock.pid, signal.SIGTERM)
            signalled_pid = lock.pid
        except (ProcessLookupError, PermissionError):
            print("Main process not running.")

    if signalled_pid is not None:
        if not wait_for_owner_exit(signalled_pid, lock_manager, timeout, poll_interval):
            warn(f"Main process (PID: {signalled_pid}) did not stop within {timeout:g}s")
            warn("Queue and lock left unchanged; run 'murm abort' again")
            return AbortReport(aborted=[], signalled_pid=signalled_pid, owner_stopped=False)
        # The owner may have written since the first read
        state = queue_store.load()

    mark_aborted(state, EXTERNAL_ABORT_STATUSES)
    if not state.is_empty:
        queue_store.save(state)
    lock_manager.release()

    aborted = [
        f.slug for f in state.features
        if f.slug in unfinished and f.status == FeatureStatus.ABORTED
    ]
    for slug in aborted:
        print(f"{slug}: Marked as aborted")

    worktrees = [f.worktree_path for f in state.features if f.worktree_path]
    if cleanup is not None:
        print("\nCleaning up worktrees...")
        cleanup()
    else:
        print("\nWorktrees preserved for debugging.")
        if worktrees:
            print("Locations:")
            for path in worktrees:
                print(f"  • {path}")
        print("\nTo clean up: murm cleanup")

    return AbortReport(aborted=aborted, signalled_pid=signalled_pid, worktrees=worktrees)
