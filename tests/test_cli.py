# tests/test_cli.py
# Unit tests for murm.cli: argument parsing, subcommand wiring and the
# queue file watcher used by `murm status --watch`.

import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import yaml

from murm.cli import QueueFileWatcher, build_parser, main, watch_status
from murm.config import CONFIG_FILE, LEGACY_CONFIG_FILE
from murm.errors import LockConflict
from murm.lock import LockRecord
from murm.orchestrator import RunOutcome
from murm.queue_store import QueueStore
from murm.state import RunState


@pytest.fixture
def in_repo(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_parser_run_options():
    args = build_parser().parse_args(["run", "a", "b", "--dry-run", "-y", "--concurrency", "2"])
    assert args.slugs == ["a", "b"]
    assert args.dry_run
    assert args.yes
    assert args.concurrency == 2
    assert not args.force


def test_parser_requires_subcommand():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_run_rejects_zero_concurrency(in_repo):
    with pytest.raises(SystemExit):
        main(["run", "a", "--concurrency", "0"])


def test_run_passes_options_to_orchestrator(in_repo):
    with patch("murm.cli.Orchestrator") as mock_cls:
        mock_cls.return_value.run.return_value = RunOutcome(success=True)
        assert main(["run", "a", "b", "--yes", "--strict", "--skip-preflight"]) == 0

    slugs, options = mock_cls.return_value.run.call_args[0]
    assert slugs == ["a", "b"]
    assert options.yes and options.strict and options.skip_preflight
    assert not options.dry_run
    assert options.max_concurrency is None


def test_run_failure_exit_code(in_repo):
    with patch("murm.cli.Orchestrator") as mock_cls:
        mock_cls.return_value.run.return_value = RunOutcome(success=False)
        assert main(["run", "a", "-y"]) == 1


def test_run_lock_conflict_reports_owner(in_repo, capsys):
    lock = LockRecord(pid=4242, started_at="2025-01-01T00:00:00.000Z", features=["x", "y"])
    with patch("murm.cli.Orchestrator") as mock_cls:
        mock_cls.return_value.run.side_effect = LockConflict(lock)
        assert main(["run", "a", "-y"]) == 1

    out = capsys.readouterr().out
    assert "PID 4242" in out
    assert "Features: x, y" in out


def test_config_set_and_show(in_repo, capsys):
    assert main(["config", "set", "max_concurrency", "5"]) == 0
    with open(in_repo / CONFIG_FILE) as f:
        assert yaml.safe_load(f)["max_concurrency"] == 5

    assert main(["config"]) == 0
    assert "max_concurrency: 5" in capsys.readouterr().out


def test_config_set_invalid_value(in_repo, capsys):
    assert main(["config", "set", "max_concurrency", "lots"]) == 1
    assert "[ERROR]" in capsys.readouterr().out


def test_startup_migrates_legacy_files(in_repo):
    (in_repo / ".claude").mkdir()
    (in_repo / LEGACY_CONFIG_FILE).write_text("max_concurrency: 4\n")

    assert main(["config"]) == 0

    assert (in_repo / CONFIG_FILE).exists()
    assert not (in_repo / LEGACY_CONFIG_FILE).exists()


def test_status_without_run(in_repo, capsys):
    assert main(["status"]) == 0
    assert "No murmuration pipelines active." in capsys.readouterr().out


def test_cleanup_without_run(in_repo, capsys):
    assert main(["cleanup"]) == 0
    assert "No worktrees to clean up." in capsys.readouterr().out


def test_abort_without_run(in_repo, capsys):
    assert main(["abort"]) == 0
    assert "No murmuration pipelines are currently running." in capsys.readouterr().out


def test_rollback_without_run(in_repo, capsys):
    assert main(["rollback", "--dry-run"]) == 0
    assert "No murmuration run to rollback." in capsys.readouterr().out


# --- status --watch ---


def _event(path, is_directory=False, dest_path=""):
    return SimpleNamespace(src_path=path, dest_path=dest_path, is_directory=is_directory)


def test_queue_file_watcher_matches_queue_only():
    callback = MagicMock()
    watcher = QueueFileWatcher("/repo/.claude/murm-queue.json", callback)

    watcher.on_modified(_event("/repo/.claude/murm.lock"))
    watcher.on_modified(_event("/repo/.claude", is_directory=True))
    callback.assert_not_called()

    watcher.on_modified(_event("/repo/.claude/murm-queue.json"))
    watcher.on_moved(_event("/repo/.claude/murm-queue.json.tmp", dest_path="/repo/.claude/murm-queue.json"))
    assert callback.call_count == 2


def test_watch_status_renders_until_stopped(tmp_path, capsys):
    store = QueueStore(tmp_path / ".claude" / "murm-queue.json")
    store.save(RunState.new(["login"], "main", 1))
    stop = threading.Event()
    stop.set()

    watch_status(store, tmp_path, stop_event=stop)

    assert "login: queued" in capsys.readouterr().out
