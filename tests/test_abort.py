# tests/test_abort.py
# Unit tests for murm.abort: in-process signal handling and external abort.

import json
import signal
import threading
import time
from unittest.mock import MagicMock, patch

from murm.abort import (
    ABORT_EXIT_CODE,
    AbortController,
    RunContext,
    abort_run,
    mark_aborted,
    wait_for_owner_exit,
)
from murm.lock import LockManager
from murm.queue_store import QueueStore
from murm.state import FeatureStatus, RunState


def _mixed_state():
    state = RunState.new(["queued", "created", "running", "done"], "main", 3)
    state.find("created").status = FeatureStatus.WORKTREE_CREATED
    state.find("created").worktree_path = "wt/feat-created"
    state.find("running").status = FeatureStatus.RUNNING
    state.find("running").worktree_path = "wt/feat-running"
    state.find("done").status = FeatureStatus.COMPLETE
    return state


def _fake_process(alive=True, pid=1234):
    process = MagicMock()
    process.pid = pid
    process.poll.return_value = None if alive else 0
    return process


# --- RunContext tests ---


def test_terminate_signals_live_process_and_untracks():
    context = RunContext()
    process = _fake_process()
    context.track("a", process)
    context.terminate("a")
    process.terminate.assert_called_once()
    assert "a" not in context.processes


def test_terminate_skips_finished_process():
    context = RunContext()
    process = _fake_process(alive=False)
    context.track("a", process)
    context.terminate("a")
    process.terminate.assert_not_called()


def test_terminate_all():
    context = RunContext()
    live, dead = _fake_process(), _fake_process(alive=False)
    context.track("live", live)
    context.track("dead", dead)
    context.terminate_all()
    live.terminate.assert_called_once()
    dead.terminate.assert_not_called()


# --- in-process abort ---


def test_mark_aborted_only_in_flight_by_default():
    state = _mixed_state()
    assert mark_aborted(state) == ["created", "running"]
    assert state.find("queued").status == FeatureStatus.QUEUED
    assert state.find("done").status == FeatureStatus.COMPLETE


def test_handle_signal_persists_and_exits_130(tmp_path):
    state = _mixed_state()
    queue_store = QueueStore(tmp_path / "queue.json")
    lock_manager = LockManager(tmp_path / "murm.lock")
    lock_manager.acquire(["queued", "created", "running", "done"])
    context = RunContext()
    process = _fake_process()
    context.track("running", process)
    exit_fn = MagicMock()

    controller = AbortController(context, state, queue_store, lock_manager, exit_fn)
    controller.handle_signal(signal.SIGINT, None)

    process.terminate.assert_called_once()
    exit_fn.assert_called_once_with(ABORT_EXIT_CODE)
    assert not (tmp_path / "murm.lock").exists()
    saved = queue_store.load()
    assert saved.find("running").status == FeatureStatus.ABORTED
    assert saved.find("created").status == FeatureStatus.ABORTED
    assert saved.find("done").status == FeatureStatus.COMPLETE


def test_handle_signal_is_idempotent(tmp_path):
    context = RunContext()
    exit_fn = MagicMock()
    controller = AbortController(
        context, _mixed_state(), QueueStore(tmp_path / "q.json"), LockManager(tmp_path / "l"), exit_fn
    )
    controller.handle_signal(signal.SIGTERM, None)
    controller.handle_signal(signal.SIGINT, None)
    exit_fn.assert_called_once()


def test_install_and_uninstall_restore_handlers(tmp_path):
    previous = signal.getsignal(signal.SIGINT)
    controller = AbortController(
        RunContext(), RunState(), QueueStore(tmp_path / "q.json"), LockManager(tmp_path / "l"), MagicMock()
    )
    controller.install()
    try:
        assert signal.getsignal(signal.SIGINT) == controller.handle_signal
    finally:
        controller.uninstall()
    assert signal.getsignal(signal.SIGINT) == previous


# --- external abort ---


def test_abort_run_nothing_running(tmp_path, capsys):
    report = abort_run(QueueStore(tmp_path / "q.json"), LockManager(tmp_path / "murm.lock"))
    assert report.aborted == []
    assert "No murmuration pipelines" in capsys.readouterr().out


def test_abort_run_signals_owner_and_marks_queue(tmp_path):
    queue_store = QueueStore(tmp_path / "q.json")
    queue_store.save(_mixed_state())
    lock_path = tmp_path / "murm.lock"
    lock_path.write_text(json.dumps({"pid": 98765, "startedAt": "x", "features": []}))

    with patch("murm.abort.os.kill") as mock_kill, \
            patch("murm.abort.is_process_running", return_value=False):
        report = abort_run(queue_store, LockManager(lock_path))

    mock_kill.assert_called_once_with(98765, signal.SIGTERM)
    assert report.owner_stopped
    assert report.signalled_pid == 98765
    assert report.aborted == ["queued", "created", "running"]
    assert not lock_path.exists()
    saved = queue_store.load()
    assert saved.find("queued").status == FeatureStatus.ABORTED
    assert saved.find("done").status == FeatureStatus.COMPLETE
    assert report.worktrees == ["wt/feat-created", "wt/feat-running"]


def test_abort_run_owner_already_gone(tmp_path, capsys):
    queue_store = QueueStore(tmp_path / "q.json")
    queue_store.save(_mixed_state())
    lock_path = tmp_path / "murm.lock"
    lock_path.write_text(json.dumps({"pid": 98765, "startedAt": "x", "features": []}))

    with patch("murm.abort.os.kill", side_effect=ProcessLookupError):
        report = abort_run(queue_store, LockManager(lock_path))

    assert report.signalled_pid is None
    assert "Main process not running" in capsys.readouterr().out
    assert queue_store.load().find("running").status == FeatureStatus.ABORTED


def test_abort_run_never_signals_itself(tmp_path):
    lock_manager = LockManager(tmp_path / "murm.lock")
    lock_manager.acquire(["a"])
    with patch("murm.abort.os.kill") as mock_kill:
        abort_run(QueueStore(tmp_path / "q.json"), lock_manager)
    mock_kill.assert_not_called()
    assert lock_manager.get_info() is None


def test_abort_run_with_cleanup(tmp_path):
    queue_store = QueueStore(tmp_path / "q.json")
    queue_store.save(_mixed_state())
    cleanup = MagicMock(return_value=2)
    with patch("murm.abort.os.kill"):
        abort_run(queue_store, LockManager(tmp_path / "murm.lock"), cleanup)
    cleanup.assert_called_once()


def _write_lock(path, pid=98765):
    path.write_text(json.dumps({"pid": pid, "startedAt": "x", "features": []}))


def test_abort_run_waits_for_live_owner_before_rewriting(tmp_path):
    """The owner's own save lands first; the external abort then marks what is left."""
    queue_store = QueueStore(tmp_path / "q.json")
    queue_store.save(_mixed_state())
    lock_path = tmp_path / "murm.lock"
    _write_lock(lock_path)
    lock_manager = LockManager(lock_path)
    owner_saved = threading.Event()

    def owner_handles_sigterm(pid, signum):
        def shutdown():
            time.sleep(0.2)
            owner_state = _mixed_state()
            mark_aborted(owner_state)
            queue_store.save(owner_state)
            owner_saved.set()
            lock_manager.release()
        threading.Thread(target=shutdown).start()

    with patch("murm.abort.os.kill", side_effect=owner_handles_sigterm), \
            patch("murm.abort.is_process_running", return_value=True):
        report = abort_run(queue_store, lock_manager, timeout=5, poll_interval=0.01)

    assert owner_saved.is_set()
    assert report.owner_stopped
    saved = queue_store.load()
    assert saved.find("queued").status == FeatureStatus.ABORTED
    assert saved.find("created").status == FeatureStatus.ABORTED
    assert saved.find("running").status == FeatureStatus.ABORTED
    assert saved.find("done").status == FeatureStatus.COMPLETE
    assert report.aborted == ["queued", "created", "running"]


def test_abort_run_leaves_unresponsive_owner_alone(tmp_path, capsys):
    queue_store = QueueStore(tmp_path / "q.json")
    queue_store.save(_mixed_state())
    lock_path = tmp_path / "murm.lock"
    _write_lock(lock_path)

    with patch("murm.abort.os.kill"), \
            patch("murm.abort.is_process_running", return_value=True):
        report = abort_run(queue_store, LockManager(lock_path), timeout=0.05, poll_interval=0.01)

    assert not report.owner_stopped
    assert report.aborted == []
    assert lock_path.exists()
    assert queue_store.load().find("queued").status == FeatureStatus.QUEUED
    assert "did not stop" in capsys.readouterr().out


def test_wait_for_owner_exit_when_lock_changes_hands(tmp_path):
    lock_path = tmp_path / "murm.lock"
    _write_lock(lock_path, pid=11111)
    with patch("murm.abort.is_process_running", return_value=True):
        assert wait_for_owner_exit(98765, LockManager(lock_path), timeout=0)
        assert not wait_for_owner_exit(11111, LockManager(lock_path), timeout=0)
