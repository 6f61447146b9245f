"""
Rolling personal baseline.

The window is a FIFO list of the most recent snapshots; the baseline is
recomputed from it on every evaluation and never stored. Spread is the
population standard deviation (divide by N) so a short window is not
penalised with a wider band than the data shows.
"""

import math
from collections.abc import Callable, Sequence
from datetime import UTC, tzinfo
from decimal import ROUND_HALF_UP, Decimal
from statistics import fmean, pstdev

import structlog

from ember.config import BaselineConfig
from ember.domain.models import Baseline, MetricStats, Snapshot

logger = structlog.get_logger(__name__)


def round_half_up(value: float) -> int:
    """Nearest integer with halves rounded up: 6.5 -> 7, not 6."""
    return math.floor(value + 0.5)


def round_half_up_to(value: float, ndigits: int) -> float:
    """Half-up rounding to a fixed number of decimals, on the exact binary value."""
    quantum = Decimal(1).scaleb(-ndigits)
    return float(Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP))


def metric_stats(values: Sequence[float]) -> MetricStats:
    """Mean and population stddev, undefined below two values."""
    if len(values) < 2:
        return MetricStats(count=len(values))
    return MetricStats(mean=fmean(values), stddev=pstdev(values), count=len(values))


def _collect(window: Sequence[Snapshot], getter: Callable[[Snapshot], float | None]) -> list[float]:
    return [v for v in (getter(s) for s in window) if v is not None]


class BaselineEngine:
    """Maintains the bounded snapshot window and derives statistics from it."""

    def __init__(self, config: BaselineConfig | None = None, tz: tzinfo = UTC) -> None:
        self.config = config or BaselineConfig()
        self.tz = tz
        self.logger = logger.bind(component="baseline_engine")

    def append_snapshot(self, window: Sequence[Snapshot], snapshot: Snapshot) -> list[Snapshot]:
        """Return a new window with the snapshot pushed and the oldest entries evicted."""
        updated = [*window, snapshot]
        overflow = len(updated) - self.config.window_limit
        if overflow > 0:
            updated = updated[overflow:]
        return updated

    def compute_baseline(self, window: Sequence[Snapshot]) -> Baseline | None:
        """Summarise the window, or None while it is still too short."""
        if len(window) < self.config.min_samples:
            self.logger.debug(
                "baseline_insufficient_samples",
                sample_count=len(window),
                required=self.config.min_samples,
            )
            return None

        run_days = [s for s in window if s.running_minutes is not None and s.running_minutes > 0]

        typical_run_hour = None
        if run_days:
            hours = [s.timestamp.astimezone(self.tz).hour for s in run_days]
            typical_run_hour = round_half_up(fmean(hours))

        return Baseline(
            sample_count=len(window),
            wake_time=metric_stats(_collect(window, lambda s: s.wake_time_hour)),
            sleep_duration=metric_stats(_collect(window, lambda s: s.sleep_duration_hours)),
            resting_hr=metric_stats(_collect(window, lambda s: s.resting_hr)),
            workout_duration=metric_stats([s.running_minutes for s in run_days]),  # type: ignore[misc]
            run_frequency=len(run_days) / len(window),
            typical_run_hour=typical_run_hour,
        )
