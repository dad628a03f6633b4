"""Orchestrator settings stored in .claude/murm-config.yaml.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path

import yaml

from murm.errors import ConfigError
from murm.log import verbose_log

CONFIG_FILE = ".claude/murm-config.yaml"
LOCK_FILE = ".claude/murm.lock"
QUEUE_FILE = ".claude/murm-queue.json"

# Paths used before the rename; moved over once at startup
LEGACY_CONFIG_FILE = ".claude/parallel-config.yaml"
LEGACY_LOCK_FILE = ".claude/parallel.lock"
LEGACY_QUEUE_FILE = ".claude/parallel-queue.json"

DEFAULT_MAX_CONCURRENCY = 3
DEFAULT_MAX_FEATURES = 10
DEFAULT_TIMEOUT_MINUTES = 30
DEFAULT_MIN_DISK_SPACE_MB = 500
DEFAULT_PIPELINE_COMMAND = "npx claude /implement-feature {slug} --no-commit"
DEFAULT_WORKTREE_DIR = ".claude/worktrees"
DEFAULT_FEATURES_DIR = ".blueprint/features"

# Integer settings and the smallest value each accepts
INT_SETTING_MINIMUMS = {
    "max_concurrency": 1,
    "max_features": 1,
    "timeout_minutes": 1,
    "min_disk_space_mb": 0,
}


@dataclass
class MurmConfig:
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    max_features: int = DEFAULT_MAX_FEATURES
    timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES
    min_disk_space_mb: int = DEFAULT_MIN_DISK_SPACE_MB
    pipeline_command: str = DEFAULT_PIPELINE_COMMAND
    worktree_dir: str = DEFAULT_WORKTREE_DIR
    queue_file: str = QUEUE_FILE
    features_dir: str = DEFAULT_FEATURES_DIR

    @property
    def timeout_seconds(self) -> int:
        return self.timeout_minutes * 60

    def to_dict(self) -> dict:
        return asdict(self)


def migrate_file(old_path: Path, new_path: Path) -> bool:
    """Move old_path to new_path if the old file exists and the new one doesn't.

    Returns True when a file was moved.
    """
    if old_path.exists() and not new_path.exists():
        new_path.parent.mkdir(parents=True, exist_ok=True)
        os.replace(old_path, new_path)
        verbose_log(f"Migrated {old_path} -> {new_path}", "CONFIG")
        return True
    return False


class ConfigStore:
    """Reads and writes the orchestrator config relative to a repository root."""

    def __init__(self, root: Path = Path(".")):
        self.root = Path(root)
        self.config_path = self.root / CONFIG_FILE
        self.lock_path = self.root / LOCK_FILE

    def migrate_legacy(self) -> list[str]:
        """Move files from the old parallel-* layout to the murm-* layout.

        Called once during CLI startup. Returns the new paths that were
        populated.
        """
        moved = []
        for old, new in (
            (LEGACY_CONFIG_FILE, CONFIG_FILE),
            (LEGACY_LOCK_FILE, LOCK_FILE),
            (LEGACY_QUEUE_FILE, QUEUE_FILE),
        ):
            if migrate_file(self.root / old, self.root / new):
                moved.append(new)
        return moved

    def load(self) -> MurmConfig:
        """Load the config, falling back to defaults on a missing or corrupt file."""
        try:
            with open(self.config_path, "r") as f:
                data = yaml.safe_load(f)
        except (IOError, yaml.YAMLError) as e:
            if self.config_path.exists():
                verbose_log(f"Ignoring unreadable config {self.config_path}: {e}", "CONFIG")
            return MurmConfig()

        if not isinstance(data, dict):
            return MurmConfig()

        known = {f.name for f in fields(MurmConfig)}
        values = {k: v for k, v in data.items() if k in known}
        if values.get("queue_file") == LEGACY_QUEUE_FILE:
            values["queue_file"] = QUEUE_FILE

        config = MurmConfig(**values)
        for key, minimum in INT_SETTING_MINIMUMS.items():
            value = getattr(config, key)
            if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
                verbose_log(f"Invalid {key}={value!r} in config, using default", "CONFIG")
                setattr(config, key, getattr(MurmConfig, key))
        return config

    def save(self, config: MurmConfig) -> None:
        """Persist the full settings object."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w") as f:
            yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)

    def set_value(self, key: str, raw_value: str) -> MurmConfig:
        """Set one setting from its string form and persist the result."""
        known = {f.name for f in fields(MurmConfig)}
        if key not in known:
            raise ConfigError(
                f"Unknown setting '{key}'. Valid settings: {', '.join(sorted(known))}"
            )

        config = self.load()
        if key in INT_SETTING_MINIMUMS:
            try:
                value = int(raw_value)
            except ValueError:
                raise ConfigError(f"{key} must be an integer, got '{raw_value}'")
            if value < INT_SETTING_MINIMUMS[key]:
                raise ConfigError(f"{key} must be >= {INT_SETTING_MINIMUMS[key]}")
            setattr(config, key, value)
        else:
            if not raw_value.strip():
                raise ConfigError(f"{key} cannot be empty")
            setattr(config, key, raw_value)

        self.save(config)
        return config

    def queue_path(self, config: MurmConfig) -> Path:
        return self.root / config.queue_file
