"""Durable queue file: the single source of truth for a run's feature states.

Every write replaces the whole file through a temp file and rename, so a
concurrent `murm status` never observes a half-written document.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import json
import os
from pathlib import Path

from murm.log import verbose_log
from murm.state import RunState, utc_now_iso


class QueueStore:
    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> RunState:
        """Parse the queue file; an absent or unreadable file is an empty run."""
        if not self.path.exists():
            return RunState()
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            verbose_log(f"Could not read queue file {self.path}: {e}", "QUEUE")
            return RunState()
        if not isinstance(data, dict):
            return RunState()
        return RunState.from_dict(data)

    def save(self, state: RunState) -> None:
        """Stamp last-updated and rewrite the queue file in full."""
        state.last_updated = utc_now_iso()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with open(tmp_path, "w") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if tmp_path.exists():
                tmp_path.unlink()
            raise

    def clear(self) -> None:
        self.save(RunState())
