"""
HealthKit sync payloads mapped onto the core domain.

The iOS app posts one flat JSON body per day: the user's phone number plus
whatever metrics the watch recorded. This module splits that body into the
identity and a core Snapshot, and provides factories that generate
realistic daily snapshots for demos and tests.

Key HealthKit concepts:
- Sleep analysis: total asleep time for the night ending this morning
- Wake time: first out-of-bed sample, as fractional hour of day
- Resting heart rate: Apple's daily resting estimate in BPM
- Workouts: running minutes summed over the day's running workouts
"""

import re
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta, tzinfo
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ember.domain.errors import ValidationError
from ember.domain.models import Snapshot, weekday_of

E164 = re.compile(r"^\+[1-9]\d{6,14}$")


class HealthSyncPayload(BaseModel):
    """Body of the iOS /sync request."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    phone: str = Field(description="E.164 phone number, the user's identity")
    timestamp: datetime | None = None
    sleep_duration_hours: float | None = None
    wake_time_hour: float | None = None
    resting_hr: float | None = None
    running_minutes: float | None = None
    weekday: int | None = None

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        v = v.strip()
        if not E164.match(v):
            raise ValueError("phone must be in E.164 format, e.g. +14155550000")
        return v

    def to_snapshot(self, tz: tzinfo = UTC) -> Snapshot:
        fields = self.model_dump(exclude={"phone"}, exclude_none=True)
        return Snapshot.from_payload(fields, tz)


def parse_sync_payload(body: Mapping[str, Any], tz: tzinfo = UTC) -> tuple[str, Snapshot]:
    """
    Split a sync body into (identity, snapshot), raising the core ValidationError.

    Pass the service's configured zone so a missing weekday is read from the
    same calendar as the cooldown.
    """
    if not body.get("phone"):
        raise ValidationError("phone required")
    try:
        payload = HealthSyncPayload.model_validate(dict(body))
        return payload.phone, payload.to_snapshot(tz)
    except ValueError as e:
        # pydantic.ValidationError is a ValueError
        raise ValidationError(str(e)) from e


def create_daily_snapshot(
    day: datetime,
    sleep_hours: float = 7.5,
    wake_hour: float = 7.0,
    resting_hr: float = 58.0,
    running_minutes: float = 30.0,
    run_hour: int = 7,
) -> Snapshot:
    """Snapshot for one day, timestamped at the hour the run would be logged."""
    timestamp = day.astimezone(UTC).replace(hour=run_hour, minute=30, second=0, microsecond=0)
    return Snapshot(
        timestamp=timestamp,
        sleep_duration_hours=sleep_hours,
        wake_time_hour=wake_hour,
        resting_hr=resting_hr,
        running_minutes=running_minutes,
        weekday=weekday_of(timestamp),
    )


def create_routine_history(
    days: int,
    end: datetime | None = None,
    jitter: float = 0.25,
) -> list[Snapshot]:
    """
    A steady routine ending the day before `end`.

    Values alternate around a fixed centre so the history has a small,
    nonzero spread without pulling in a random source.
    """
    end = end or datetime.now(UTC)
    history = []
    for offset in range(days, 0, -1):
        sign = 1 if offset % 2 else -1
        history.append(
            create_daily_snapshot(
                end - timedelta(days=offset),
                sleep_hours=7.5 + sign * jitter,
                wake_hour=7.0 + sign * jitter / 2,
                resting_hr=58.0 + sign * 2 * jitter,
                running_minutes=30.0 + sign * 8 * jitter,
            )
        )
    return history
