"""Active-window scheduling over the requested features.

Order is never changed: the first `limit` slugs start, the rest wait and are
promoted FIFO whenever a slot frees up.
"""

from dataclasses import dataclass, field


@dataclass
class Schedule:
    active: list[str] = field(default_factory=list)
    queued: list[str] = field(default_factory=list)
    limit: int = 1

    def promote(self) -> list[str]:
        """Move queued slugs into free active slots. Returns the promoted slugs."""
        promoted = []
        while len(self.active) < self.limit and self.queued:
            slug = self.queued.pop(0)
            self.active.append(slug)
            promoted.append(slug)
        return promoted

    def finish(self, slug: str) -> list[str]:
        """Free the slot held by slug and refill the window."""
        self.active.remove(slug)
        return self.promote()

    @property
    def is_done(self) -> bool:
        return not self.active and not self.queued


def split_by_limit(slugs: list[str], limit: int) -> Schedule:
    if limit < 1:
        raise ValueError(f"Concurrency limit must be at least 1, got {limit}")
    return Schedule(active=list(slugs[:limit]), queued=list(slugs[limit:]), limit=limit)
