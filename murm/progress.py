"""Coarse progress estimates for `murm status`, inferred from pipeline logs.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from murm.queue_store import QueueStore
from murm.state import FeatureStatus, parse_iso

# (stage, percent, substrings that must all appear), most advanced stage first
# so a late log is never reported as an earlier stage.
PROGRESS_MARKERS: list[tuple[str, int, tuple[str, ...]]] = [
    ("codey-implement", 90, ("codey", "implement")),
    ("codey-plan", 75, ("codey", "plan")),
    ("nigel", 50, ("nigel",)),
    ("cass", 35, ("cass",)),
    ("alex", 20, ("alex",)),
]
RUNNING_STAGE = ("running", 10)
STARTING_STAGE = ("starting", 0)

STATUS_ICONS = {
    FeatureStatus.QUEUED: "⏳",
    FeatureStatus.WORKTREE_CREATED: "🔧",
    FeatureStatus.RUNNING: "🔄",
    FeatureStatus.MERGE_PENDING: "🔀",
    FeatureStatus.COMPLETE: "✅",
    FeatureStatus.FAILED: "❌",
    FeatureStatus.MERGE_CONFLICT: "⚠️",
    FeatureStatus.ABORTED: "⛔",
}

PROGRESS_BAR_WIDTH = 20


@dataclass
class Progress:
    stage: str
    percent: int


@dataclass
class FeatureProgress:
    slug: str
    status: FeatureStatus
    stage: str
    percent: int
    elapsed_seconds: int
    log_path: Optional[str]
    worktree_path: Optional[str]
    branch_name: Optional[str]


def get_progress_from_log(log_path: Path, markers=PROGRESS_MARKERS) -> Progress:
    log_path = Path(log_path)
    if not log_path.exists():
        return Progress(*STARTING_STAGE)
    try:
        content = log_path.read_text(encoding="utf-8", errors="replace").lower()
    except OSError:
        return Progress(stage="unknown", percent=0)

    for stage, percent, needles in markers:
        if all(needle in content for needle in needles):
            return Progress(stage=stage, percent=percent)
    return Progress(*RUNNING_STAGE)


def get_detailed_status(queue_store: QueueStore, root: Path = Path(".")) -> list[FeatureProgress]:
    state = queue_store.load()
    now = time.time()
    details = []
    for record in state.features:
        if record.log_path:
            progress = get_progress_from_log(Path(root) / record.log_path)
        else:
            progress = Progress(stage="pending", percent=0)

        started = parse_iso(record.started_at)
        ended = parse_iso(record.completed_at)
        elapsed = 0
        if started:
            until = ended.timestamp() if ended else now
            elapsed = max(0, round(until - started.timestamp()))

        details.append(FeatureProgress(
            slug=record.slug,
            status=record.status,
            stage=progress.stage,
            percent=progress.percent,
            elapsed_seconds=elapsed,
            log_path=record.log_path,
            worktree_path=record.worktree_path,
            branch_name=record.branch_name,
        ))
    return details


def progress_bar(percent: int, width: int = PROGRESS_BAR_WIDTH) -> str:
    percent = max(0, min(100, percent))
    filled = round(width * percent / 100)
    return "[" + "█" * filled + "░" * (width - filled) + "]"


def format_detailed_status(details: list[FeatureProgress]) -> str:
    if not details:
        return "No murmuration pipelines active."

    lines = ["Murmuration Status", ""]
    for f in details:
        icon = STATUS_ICONS.get(f.status, "?")
        elapsed = ""
        if f.elapsed_seconds > 0:
            elapsed = f" ({f.elapsed_seconds // 60}m {f.elapsed_seconds % 60}s)"
        lines.append(f"{icon} {f.slug}: {f.status.value}{elapsed}")
        if f.status == FeatureStatus.RUNNING:
            lines.append(f"   {progress_bar(f.percent)} {f.percent}% - {f.stage}")
    return "\n".join(lines)
