# tests/test_integration.py
# End-to-end runs against a real git repository. Pipelines are small Python
# scripts that commit a file on their feature branch.

import shlex
import shutil
import subprocess
import sys
from unittest.mock import MagicMock

import pytest

from murm.config import LOCK_FILE, MurmConfig
from murm.orchestrator import Orchestrator, RunOptions
from murm.queue_store import QueueStore
from murm.rollback import rollback_run
from murm.state import FeatureStatus
from murm.worktree import WorktreeManager

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")

PIPELINE_CODE = """
import subprocess, sys
slug = sys.argv[1]
with open(FILE_NAME, "w") as f:
    f.write(slug + "\\n")
subprocess.run(["git", "add", FILE_NAME], check=True)
subprocess.run(["git", "commit", "-q", "-m", "Add " + slug], check=True)
"""


def _git(repo, *args):
    return subprocess.run(["git", *args], cwd=repo, capture_output=True, text=True, check=True)


@pytest.fixture
def repo(tmp_path, monkeypatch):
    for var in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(var, "Murm Test")
    for var in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(var, "murm@example.com")
    _git(tmp_path, "init", "-q")
    _git(tmp_path, "symbolic-ref", "HEAD", "refs/heads/main")
    (tmp_path / ".gitignore").write_text(".claude/\n")
    _git(tmp_path, "add", ".gitignore")
    _git(tmp_path, "commit", "-q", "-m", "Initial commit")
    return tmp_path


def _orchestrator(repo, file_expr):
    code = PIPELINE_CODE.replace("FILE_NAME", file_expr)
    config = MurmConfig(
        min_disk_space_mb=0,
        timeout_minutes=1,
        pipeline_command=f"{shlex.quote(sys.executable)} -c {shlex.quote(code)} {{slug}}",
    )
    return Orchestrator(config, repo, confirm=lambda message: True, exit_fn=MagicMock())


def test_features_on_separate_files_all_merge(repo):
    """Each feature writes its own file, so every branch merges cleanly."""
    orchestrator = _orchestrator(repo, 'slug + ".txt"')

    outcome = orchestrator.run(["alpha", "beta", "gamma"], RunOptions(yes=True, skip_preflight=True, max_concurrency=2))

    assert outcome.success
    for slug in ("alpha", "beta", "gamma"):
        assert (repo / f"{slug}.txt").read_text() == f"{slug}\n"
        assert not (repo / ".claude" / "worktrees" / f"feat-{slug}").exists()
    assert not (repo / LOCK_FILE).exists()
    assert _git(repo, "status", "--porcelain").stdout == ""


def test_conflicting_features_and_rollback(repo):
    """Two features rewriting the same file: one lands, one conflicts."""
    orchestrator = _orchestrator(repo, '"shared.txt"')

    outcome = orchestrator.run(["alpha", "beta"], RunOptions(yes=True, skip_preflight=True, max_concurrency=2))

    statuses = sorted(f.status.value for f in outcome.state.features)
    assert statuses == ["complete", "merge_conflict"]
    assert outcome.summary["conflicts"] == 1
    conflicted = outcome.state.with_status(FeatureStatus.MERGE_CONFLICT)[0]
    merged = outcome.state.with_status(FeatureStatus.COMPLETE)[0]
    assert "CONFLICT" in conflicted.conflict_details
    # The in-progress merge was aborted and the branch kept
    assert not (repo / ".git" / "MERGE_HEAD").exists()
    assert _git(repo, "branch", "--list", conflicted.branch_name).stdout.strip()
    assert (repo / "shared.txt").read_text() == f"{merged.slug}\n"

    queue_store = QueueStore(repo / orchestrator.config.queue_file)
    worktrees = WorktreeManager(orchestrator.config.worktree_dir, repo)
    report = rollback_run(queue_store, worktrees, root=repo)

    assert report.failures == []
    assert not (repo / "shared.txt").exists()
    assert not (repo / conflicted.worktree_path).exists()
    assert queue_store.load().is_empty


@pytest.mark.parametrize("max_concurrency", [1, 2])
def test_rollback_reverts_only_each_features_own_merge(repo, max_concurrency):
    """One slug is a prefix of the other; each rollback undoes only its own feature."""
    orchestrator = _orchestrator(repo, 'slug + ".txt"')

    outcome = orchestrator.run(
        ["login", "login-v2"], RunOptions(yes=True, skip_preflight=True, max_concurrency=max_concurrency)
    )
    assert outcome.success
    assert all(f.merge_commit for f in outcome.state.features)

    queue_store = QueueStore(repo / orchestrator.config.queue_file)
    worktrees = WorktreeManager(orchestrator.config.worktree_dir, repo)
    report = rollback_run(queue_store, worktrees, root=repo)

    assert report.failures == []
    assert report.rolled_back == 2
    assert sorted(p.name for p in repo.glob("*.txt")) == []
    subjects = _git(repo, "log", "--format=%s", "-n", "2").stdout.splitlines()
    assert sorted(subjects) == [
        "Revert: login (murmuration rollback)",
        "Revert: login-v2 (murmuration rollback)",
    ]
    assert _git(repo, "status", "--porcelain").stdout == ""
