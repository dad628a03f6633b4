"""Single-instance lock shared by separate murm invocations.

The lock file records the owning PID. A lock whose PID no longer exists is
stale and is replaced; a live one refuses the new run.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from murm.log import warn
from murm.state import utc_now_iso


@dataclass
class LockRecord:
    pid: int
    started_at: str
    features: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"pid": self.pid, "startedAt": self.started_at, "features": self.features}

    @classmethod
    def from_dict(cls, data: dict) -> "LockRecord":
        return cls(
            pid=int(data["pid"]),
            started_at=data.get("startedAt", ""),
            features=list(data.get("features", [])),
        )


@dataclass
class AcquireResult:
    acquired: bool
    existing_lock: Optional[LockRecord] = None


def is_process_running(pid: int) -> bool:
    """Check if a process with given PID is running (signal 0 probe)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    except OSError:
        return False
    return True


class LockManager:
    def __init__(self, path: Path):
        self.path = Path(path)

    def get_info(self) -> Optional[LockRecord]:
        """Return the parsed lock, or None when absent or unreadable."""
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r") as f:
                return LockRecord.from_dict(json.load(f))
        except (json.JSONDecodeError, IOError, KeyError, TypeError, ValueError):
            return None

    def acquire(self, slugs: list[str], force: bool = False) -> AcquireResult:
        """Take the lock for slugs unless a live process already holds it.

        force skips the liveness check and overwrites unconditionally.
        """
        existing = self.get_info()
        if existing is not None and not force:
            if is_process_running(existing.pid):
                return AcquireResult(acquired=False, existing_lock=existing)
            warn(f"Found stale lock file (PID {existing.pid} not running)")
            warn("Removing stale lock and continuing...")
        elif existing is None and self.path.exists() and not force:
            warn(f"Ignoring unreadable lock file {self.path}")

        record = LockRecord(pid=os.getpid(), started_at=utc_now_iso(), features=list(slugs))
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(record.to_dict(), f, indent=2)
        return AcquireResult(acquired=True)

    def release(self) -> None:
        """Delete the lock file; safe to call when it is already gone."""
        try:
            self.path.unlink()
        except (FileNotFoundError, PermissionError):
            pass
