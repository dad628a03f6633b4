"""Exception types for invocation-level failures.

Per-feature failures (pipeline exit codes, timeouts, merge conflicts) are
recorded on the feature record instead of raised, so one feature can never
stop its siblings.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""


class MurmError(Exception):
    """Base class for all murm errors."""


class ConfigError(MurmError):
    """Raised when a config value cannot be set."""


class LockConflict(MurmError):
    """Another orchestrator run holds the lock."""

    def __init__(self, existing_lock):
        self.existing_lock = existing_lock
        super().__init__(
            f"Another murmuration execution is in progress (PID {existing_lock.pid})"
        )


class PreflightError(MurmError):
    """One or more features are missing required spec artifacts."""

    def __init__(self, validation):
        self.validation = validation
        slugs = ", ".join(fv.slug for fv in validation.invalid_features)
        super().__init__(f"Pre-flight validation failed for: {slugs}")


class FeatureLimitExceeded(MurmError):
    def __init__(self, requested: int, maximum: int):
        self.requested = requested
        self.maximum = maximum
        super().__init__(
            f"Too many features: {requested} requested, max is {maximum}"
        )


class DiskSpaceLow(MurmError):
    def __init__(self, available_mb: int, required_mb: int):
        self.available_mb = available_mb
        self.required_mb = required_mb
        super().__init__(
            f"Low disk space: {available_mb}MB available, {required_mb}MB recommended"
        )


class RepositoryStateError(MurmError):
    """The repository cannot host worktrees right now."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class InvalidTransition(MurmError):
    def __init__(self, slug: str, source, target):
        self.slug = slug
        self.source = source
        self.target = target
        super().__init__(
            f"{slug}: invalid transition {source.value} -> {target.value}"
        )
