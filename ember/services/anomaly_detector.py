"""
Ordered anomaly rules evaluated against a personal baseline.

Key architectural decisions:
- Rules are explicit objects in a fixed priority tuple, first match wins
- Each rule is a pure predicate plus descriptor builder, testable in isolation
- The detector holds no state beyond its configuration; the clock is passed in
"""

import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Protocol

import structlog

from ember.config import DetectionConfig
from ember.domain.models import AnomalyDescriptor, AnomalyType, Baseline, MetricStats, Snapshot
from ember.services.baseline import round_half_up, round_half_up_to

logger = structlog.get_logger(__name__)

# Below this difference a zero-variance history counts as "no change"
ZERO_VARIANCE_TOLERANCE = 1e-9

Direction = Literal["above", "below"]
ContextBuilder = Callable[[float, MetricStats, Snapshot], dict[str, float | int | bool]]


def z_score(value: float, stats: MetricStats) -> float | None:
    """
    Deviation of value from the baseline in standard deviations.

    Returns None when the rule cannot be evaluated: stats undefined, or a flat
    history that the value matches. A flat history with a different value is
    an unbounded deviation in the direction of the difference.
    """
    if stats.mean is None or stats.stddev is None:
        return None

    delta = value - stats.mean
    if stats.stddev == 0:
        if abs(delta) < ZERO_VARIANCE_TOLERANCE:
            return None
        return math.inf if delta > 0 else -math.inf

    return delta / stats.stddev


class DetectionRule(Protocol):
    """One tagged rule variant."""

    anomaly_type: AnomalyType

    def evaluate(
        self, snapshot: Snapshot, baseline: Baseline, now: datetime, config: DetectionConfig
    ) -> AnomalyDescriptor | None: ...


@dataclass(frozen=True)
class ZScoreRule:
    """Fires when one metric deviates past the threshold in a single direction."""

    anomaly_type: AnomalyType
    observed: Callable[[Snapshot], float | None]
    stats: Callable[[Baseline], MetricStats]
    direction: Direction
    build_context: ContextBuilder
    applies: Callable[[Snapshot], bool] = lambda _: True

    def evaluate(
        self, snapshot: Snapshot, baseline: Baseline, now: datetime, config: DetectionConfig
    ) -> AnomalyDescriptor | None:
        value = self.observed(snapshot)
        if value is None or not self.applies(snapshot):
            return None

        stats = self.stats(baseline)
        z = z_score(value, stats)
        if z is None:
            return None

        threshold = config.deviation_threshold
        triggered = z > threshold if self.direction == "above" else z < -threshold
        if not triggered:
            return None

        return AnomalyDescriptor(
            type=self.anomaly_type,
            z_score=z,
            context=self.build_context(value, stats, snapshot),
        )


@dataclass(frozen=True)
class SkippedRunRule:
    """Fires when a habitual runner has not run well past their usual hour."""

    anomaly_type: AnomalyType = AnomalyType.SKIPPED_RUN

    def evaluate(
        self, snapshot: Snapshot, baseline: Baseline, now: datetime, config: DetectionConfig
    ) -> AnomalyDescriptor | None:
        if baseline.run_frequency <= config.run_frequency_threshold:
            return None
        if snapshot.running_minutes is None or snapshot.running_minutes != 0:
            return None

        typical_run_hour = baseline.typical_run_hour
        if typical_run_hour is None:
            typical_run_hour = config.default_run_hour

        if now.hour <= typical_run_hour + config.run_grace_hours:
            return None

        return AnomalyDescriptor(
            type=self.anomaly_type,
            context={
                "run_frequency": round_half_up_to(baseline.run_frequency, 2),
                "typical_run_hour": typical_run_hour,
            },
        )


def _late_wake_context(value: float, stats: MetricStats, snapshot: Snapshot) -> dict:
    assert stats.mean is not None
    return {
        "is_weekday": snapshot.is_weekday,
        "extra_minutes": round_half_up((value - stats.mean) * 60),
        "usual_wake_hour": round_half_up_to(stats.mean, 2),
        "actual_wake_hour": round_half_up_to(value, 2),
    }


def _short_sleep_context(value: float, stats: MetricStats, snapshot: Snapshot) -> dict:
    assert stats.mean is not None
    return {
        "short_by_hours": round_half_up_to(stats.mean - value, 1),
        "usual_hours": round_half_up_to(stats.mean, 1),
        "actual_hours": round_half_up_to(value, 1),
    }


def _elevated_hr_context(value: float, stats: MetricStats, snapshot: Snapshot) -> dict:
    assert stats.mean is not None
    return {"usual_bpm": round_half_up(stats.mean), "actual_bpm": round_half_up(value)}


def _short_workout_context(value: float, stats: MetricStats, snapshot: Snapshot) -> dict:
    assert stats.mean is not None
    return {"usual_minutes": round_half_up(stats.mean), "actual_minutes": round_half_up(value)}


# Priority order matters: the first rule that fires is the one reported.
DEFAULT_RULES: tuple[DetectionRule, ...] = (
    ZScoreRule(
        anomaly_type=AnomalyType.LATE_WAKE,
        observed=lambda s: s.wake_time_hour,
        stats=lambda b: b.wake_time,
        direction="above",
        build_context=_late_wake_context,
        applies=lambda s: s.is_weekday,
    ),
    ZScoreRule(
        anomaly_type=AnomalyType.SHORT_SLEEP,
        observed=lambda s: s.sleep_duration_hours,
        stats=lambda b: b.sleep_duration,
        direction="below",
        build_context=_short_sleep_context,
    ),
    SkippedRunRule(),
    ZScoreRule(
        anomaly_type=AnomalyType.ELEVATED_HR,
        observed=lambda s: s.resting_hr,
        stats=lambda b: b.resting_hr,
        direction="above",
        build_context=_elevated_hr_context,
    ),
    ZScoreRule(
        anomaly_type=AnomalyType.SHORT_WORKOUT,
        observed=lambda s: s.running_minutes,
        stats=lambda b: b.workout_duration,
        direction="below",
        build_context=_short_workout_context,
        applies=lambda s: s.running_minutes is not None and s.running_minutes > 0,
    ),
)


class AnomalyDetector:
    """Evaluates the rule tuple in order and reports the first match."""

    def __init__(
        self,
        config: DetectionConfig | None = None,
        rules: Sequence[DetectionRule] = DEFAULT_RULES,
    ) -> None:
        self.config = config or DetectionConfig()
        self.rules = tuple(rules)
        self.logger = logger.bind(component="anomaly_detector")

    def evaluate(
        self, snapshot: Snapshot, baseline: Baseline | None, now: datetime
    ) -> AnomalyDescriptor | None:
        """Return the highest-priority anomaly for today's snapshot, or None.

        A None baseline means the window is still below the configured
        minimum, so there is nothing to compare against yet.
        """
        if baseline is None:
            self.logger.debug("detection_skipped_no_baseline")
            return None

        for rule in self.rules:
            anomaly = rule.evaluate(snapshot, baseline, now, self.config)
            if anomaly is not None:
                self.logger.info(
                    "anomaly_detected",
                    anomaly_type=anomaly.type.value,
                    z_score=anomaly.z_score,
                )
                return anomaly

        return None
