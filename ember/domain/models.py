"""
Domain models for personal-baseline health check-ins.

These models represent the core business concepts and are framework-agnostic.
They use Pydantic for validation; everything persisted round-trips through JSON.
"""

from collections.abc import Mapping
from datetime import UTC, datetime, tzinfo
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def weekday_of(moment: datetime) -> int:
    """Weekday of the moment's own calendar date, 1=Sunday ... 7=Saturday."""
    # isoweekday: Monday=1 .. Sunday=7
    return moment.isoweekday() % 7 + 1


class AnomalyType(str, Enum):
    """Deviations the detector can report, in no particular order."""

    LATE_WAKE = "late_wake"
    SHORT_SLEEP = "short_sleep"
    SKIPPED_RUN = "skipped_run"
    ELEVATED_HR = "elevated_hr"
    SHORT_WORKOUT = "short_workout"


class Snapshot(BaseModel):
    """One day's health metrics for a user, as synced from the watch."""

    # inf and nan would serialize to null and silently lose the reading
    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    sleep_duration_hours: float | None = Field(default=None, ge=0.0, le=24.0)
    wake_time_hour: float | None = Field(default=None, ge=0.0, lt=24.0)
    resting_hr: float | None = Field(default=None, gt=0.0, le=300.0)
    running_minutes: float | None = Field(default=None, ge=0.0, le=1440.0)
    weekday: int = Field(ge=1, le=7, description="1=Sunday ... 7=Saturday")

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    @model_validator(mode="before")
    @classmethod
    def derive_weekday(cls, data: Any) -> Any:
        """Fill in the weekday from the timestamp when the client omits it."""
        if not isinstance(data, dict) or data.get("weekday") is not None:
            return data

        timestamp = data.get("timestamp")
        if timestamp is None:
            timestamp = datetime.now(UTC)
            data = {**data, "timestamp": timestamp}
        elif isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        if not isinstance(timestamp, datetime):
            return data

        return {**data, "weekday": weekday_of(timestamp)}

    @classmethod
    def from_payload(cls, data: Mapping[str, Any], tz: tzinfo = UTC) -> "Snapshot":
        """
        Validate a raw sync payload.

        An omitted weekday is taken from the timestamp's date in tz, the same
        calendar the daily cooldown uses.
        """
        fields = dict(data)
        snapshot = cls.model_validate(fields)
        if fields.get("weekday") is None:
            local_date = snapshot.timestamp.astimezone(tz)
            snapshot = snapshot.model_copy(update={"weekday": weekday_of(local_date)})
        return snapshot

    @property
    def is_weekday(self) -> bool:
        return 2 <= self.weekday <= 6


class MetricStats(BaseModel):
    """Mean and population standard deviation for one tracked metric."""

    model_config = ConfigDict(frozen=True)

    mean: float | None = None
    stddev: float | None = None
    count: int = Field(default=0, ge=0)

    @property
    def is_defined(self) -> bool:
        return self.mean is not None and self.stddev is not None


class Baseline(BaseModel):
    """Statistics derived from a user's window. Recomputed on demand, never stored."""

    model_config = ConfigDict(frozen=True)

    sample_count: int = Field(ge=0)
    wake_time: MetricStats
    sleep_duration: MetricStats
    resting_hr: MetricStats
    workout_duration: MetricStats
    run_frequency: float = Field(ge=0.0, le=1.0)
    typical_run_hour: int | None = Field(default=None, ge=0, le=23)


class AnomalyDescriptor(BaseModel):
    """The single best-matching deviation for today's snapshot."""

    model_config = ConfigDict(frozen=True)

    type: AnomalyType
    z_score: float | None = None
    context: dict[str, float | int | bool] = Field(default_factory=dict)


class ConversationTurn(BaseModel):
    """One message in the day's thread."""

    model_config = ConfigDict(frozen=True)

    role: Literal["assistant", "user"]
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class UserState(BaseModel):
    """The one mutable record kept per identity."""

    identity: str = Field(min_length=1)
    window: list[Snapshot] = Field(default_factory=list)
    last_message_date: datetime | None = None
    thread_open: bool = False
    conversation: list[ConversationTurn] = Field(default_factory=list)
    last_anomaly_type: AnomalyType | None = None
    registered_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    revision: int = Field(default=0, ge=0, description="Bumped on every commit")


class SnapshotOutcome(BaseModel):
    """Result of handling one synced snapshot."""

    anomaly: AnomalyDescriptor | None = None
    sent: bool = False


class ReplyOutcome(BaseModel):
    """Result of handling one inbound reply."""

    replied: bool = False
