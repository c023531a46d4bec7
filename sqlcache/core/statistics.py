"""Hit/miss tracking for cache statistics.

Counters live on the engine instance (no module-level singleton) and reset
with the process. They are only mutated from coroutines on the engine's
event loop, so plain integer increments are atomic with respect to each
other; readers may observe a slightly stale ratio.
"""

from dataclasses import dataclass


@dataclass
class StatisticsTracker:
    """Monotonic hit and miss counters."""

    hits: int = 0
    misses: int = 0

    def record_hit(self, count: int = 1) -> None:
        self.hits += count

    def record_miss(self, count: int = 1) -> None:
        self.misses += count

    @property
    def hit_ratio(self) -> float:
        """hits / (hits + misses), or 0.0 before any lookup."""
        hits, misses = self.hits, self.misses
        total = hits + misses
        if total == 0:
            return 0.0
        return hits / total
