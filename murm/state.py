"""Feature lifecycle states and the run state persisted in the queue file.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from murm.errors import InvalidTransition


class FeatureStatus(str, Enum):
    QUEUED = "queued"
    WORKTREE_CREATED = "worktree_created"
    RUNNING = "running"
    MERGE_PENDING = "merge_pending"
    COMPLETE = "complete"
    FAILED = "failed"
    MERGE_CONFLICT = "merge_conflict"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self]


VALID_TRANSITIONS: dict[FeatureStatus, frozenset] = {
    # queued -> failed covers a worktree that could not be provisioned
    FeatureStatus.QUEUED: frozenset({
        FeatureStatus.WORKTREE_CREATED, FeatureStatus.FAILED, FeatureStatus.ABORTED,
    }),
    FeatureStatus.WORKTREE_CREATED: frozenset({
        FeatureStatus.RUNNING, FeatureStatus.FAILED, FeatureStatus.ABORTED,
    }),
    FeatureStatus.RUNNING: frozenset({
        FeatureStatus.MERGE_PENDING, FeatureStatus.FAILED, FeatureStatus.ABORTED,
    }),
    FeatureStatus.MERGE_PENDING: frozenset({
        FeatureStatus.COMPLETE, FeatureStatus.MERGE_CONFLICT,
        FeatureStatus.FAILED, FeatureStatus.ABORTED,
    }),
    FeatureStatus.COMPLETE: frozenset(),
    FeatureStatus.FAILED: frozenset(),
    FeatureStatus.MERGE_CONFLICT: frozenset(),
    FeatureStatus.ABORTED: frozenset(),
}

# Statuses an in-process abort interrupts
IN_FLIGHT_STATUSES = frozenset({FeatureStatus.WORKTREE_CREATED, FeatureStatus.RUNNING})

# Statuses whose worktree can be removed without losing diagnostics
CLEANUP_STATUSES = frozenset({FeatureStatus.COMPLETE, FeatureStatus.ABORTED})


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a timestamp written by utc_now_iso(); None for missing/invalid values."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None


def can_transition(source: FeatureStatus, target: FeatureStatus) -> bool:
    return target in VALID_TRANSITIONS[source]


@dataclass
class FeatureRecord:
    """Lifecycle record for one requested feature."""
    slug: str
    status: FeatureStatus = FeatureStatus.QUEUED
    worktree_path: Optional[str] = None
    branch_name: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    log_path: Optional[str] = None
    conflict_details: Optional[str] = None
    timed_out: bool = False
    error: Optional[str] = None
    # HEAD of the base branch just before and just after the feature merged
    pre_merge_head: Optional[str] = None
    merge_commit: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "slug": self.slug,
            "status": self.status.value,
            "worktreePath": self.worktree_path,
            "branchName": self.branch_name,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "logPath": self.log_path,
        }
        if self.conflict_details is not None:
            data["conflictDetails"] = self.conflict_details
        if self.timed_out:
            data["timedOut"] = True
        if self.error is not None:
            data["error"] = self.error
        if self.merge_commit is not None:
            data["preMergeHead"] = self.pre_merge_head
            data["mergeCommit"] = self.merge_commit
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "FeatureRecord":
        return cls(
            slug=data["slug"],
            status=FeatureStatus(data.get("status", FeatureStatus.QUEUED.value)),
            worktree_path=data.get("worktreePath"),
            branch_name=data.get("branchName"),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
            log_path=data.get("logPath"),
            conflict_details=data.get("conflictDetails"),
            timed_out=bool(data.get("timedOut", False)),
            error=data.get("error"),
            pre_merge_head=data.get("preMergeHead"),
            merge_commit=data.get("mergeCommit"),
        )


def transition(record: FeatureRecord, target: FeatureStatus) -> FeatureRecord:
    """Advance a record to target, rejecting moves the lifecycle does not allow."""
    if not can_transition(record.status, target):
        raise InvalidTransition(record.slug, record.status, target)
    record.status = target
    return record


@dataclass
class RunState:
    """One orchestrator invocation: every feature record plus batch metadata."""
    features: list[FeatureRecord] = field(default_factory=list)
    started_at: Optional[str] = None
    base_branch: Optional[str] = None
    max_concurrency: Optional[int] = None
    last_updated: Optional[str] = None

    @classmethod
    def new(cls, slugs: list[str], base_branch: str, max_concurrency: int) -> "RunState":
        return cls(
            features=[FeatureRecord(slug=slug) for slug in slugs],
            started_at=utc_now_iso(),
            base_branch=base_branch,
            max_concurrency=max_concurrency,
        )

    def find(self, slug: str) -> FeatureRecord:
        for record in self.features:
            if record.slug == slug:
                return record
        raise KeyError(slug)

    def with_status(self, *statuses: FeatureStatus) -> list[FeatureRecord]:
        return [f for f in self.features if f.status in statuses]

    @property
    def is_empty(self) -> bool:
        return not self.features

    def to_dict(self) -> dict:
        return {
            "features": [f.to_dict() for f in self.features],
            "startedAt": self.started_at,
            "baseBranch": self.base_branch,
            "maxConcurrency": self.max_concurrency,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RunState":
        return cls(
            features=[FeatureRecord.from_dict(f) for f in data.get("features", [])],
            started_at=data.get("startedAt"),
            base_branch=data.get("baseBranch"),
            max_concurrency=data.get("maxConcurrency"),
            last_updated=data.get("lastUpdated"),
        )


def summarize_final(records: list[FeatureRecord]) -> dict[str, int]:
    return {
        "completed": sum(1 for r in records if r.status == FeatureStatus.COMPLETE),
        "failed": sum(1 for r in records if r.status == FeatureStatus.FAILED),
        "conflicts": sum(1 for r in records if r.status == FeatureStatus.MERGE_CONFLICT),
        "aborted": sum(1 for r in records if r.status == FeatureStatus.ABORTED),
        "total": len(records),
    }


def order_by_completion(records: list[FeatureRecord]) -> list[FeatureRecord]:
    """Sort records by completion time; records never completed sort last."""
    far_future = datetime.max.replace(tzinfo=timezone.utc)
    return sorted(records, key=lambda r: parse_iso(r.completed_at) or far_future)
