"""
End-to-end tests for the check-in pipeline.

Covers:
- Cooldown: one proactive message per calendar day
- Commit-after-delivery: transport failures leave the gate open
- One acknowledgment per thread
- Validation before any mutation, persistence failures surfaced
"""

import asyncio
import math
from datetime import UTC, datetime, timedelta

import pytest

from adapters.healthkit.domain import create_daily_snapshot, create_routine_history
from ember.config import AppConfig, ConversationConfig, TransportConfig
from ember.domain.errors import PersistenceError, ValidationError
from ember.domain.models import AnomalyType, Snapshot
from ember.services.companion import CompanionService
from ember.services.messaging import DEFAULT_ACKNOWLEDGMENT
from ember.services.result import Result
from ember.services.state_repository import InMemoryRecordStore, StateRepository

PHONE = "+14155550100"
MONDAY = datetime(2025, 3, 3, 8, 0, tzinfo=UTC)


class RecordingTransport:
    """Test double that implements the MessageTransport protocol."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = False
        self.raise_error = False
        self.delay_seconds = 0.0

    async def send_message(self, identity: str, text: str) -> Result[str, Exception]:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.raise_error:
            raise ConnectionError("carrier unreachable")
        if self.fail:
            return Result.err(ConnectionError("undeliverable"))
        self.sent.append((identity, text))
        return Result.ok(f"msg-{len(self.sent)}")


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FailingWriteStore(InMemoryRecordStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail_for: set[str] = set()

    async def write(self, identity: str, document: str) -> None:
        if identity in self.fail_for:
            raise OSError("disk full")
        await super().write(identity, document)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(MONDAY)


@pytest.fixture
def store() -> FailingWriteStore:
    return FailingWriteStore()


@pytest.fixture
def service(
    transport: RecordingTransport, clock: FakeClock, store: FailingWriteStore
) -> CompanionService:
    config = AppConfig(transport=TransportConfig(send_timeout_seconds=0.05))
    return CompanionService(
        transport, config, repository=StateRepository(store), clock=clock
    )


async def _seed_routine(service: CompanionService, identity: str = PHONE, days: int = 14) -> None:
    history = create_routine_history(days, end=MONDAY)
    await service.repository.mutate(identity, lambda s: s.model_copy(update={"window": history}))


def _short_night(day: datetime = MONDAY, hours: float = 4.0) -> Snapshot:
    return create_daily_snapshot(day, sleep_hours=hours)


class TestHandleSnapshot:
    @pytest.mark.asyncio
    async def test_quiet_day_sends_nothing(
        self, service: CompanionService, transport: RecordingTransport
    ) -> None:
        await _seed_routine(service)

        outcome = await service.handle_snapshot(PHONE, create_daily_snapshot(MONDAY))

        assert outcome.anomaly is None
        assert not outcome.sent
        assert transport.sent == []
        assert len((await service.repository.load(PHONE)).window) == 15

    @pytest.mark.asyncio
    async def test_anomaly_opens_thread(
        self, service: CompanionService, transport: RecordingTransport
    ) -> None:
        await _seed_routine(service)

        outcome = await service.handle_snapshot(PHONE, _short_night())

        assert outcome.anomaly is not None
        assert outcome.anomaly.type == AnomalyType.SHORT_SLEEP
        assert outcome.sent
        assert transport.sent == [(PHONE, "Short night?")]

        state = await service.repository.load(PHONE)
        assert state.thread_open
        assert state.last_anomaly_type == AnomalyType.SHORT_SLEEP
        assert [(t.role, t.content) for t in state.conversation] == [("assistant", "Short night?")]

    @pytest.mark.asyncio
    async def test_second_qualifying_snapshot_same_day_is_held_back(
        self, service: CompanionService, transport: RecordingTransport
    ) -> None:
        await _seed_routine(service)

        first = await service.handle_snapshot(PHONE, _short_night())
        second = await service.handle_snapshot(PHONE, _short_night(hours=3.0))

        assert first.sent
        assert second.anomaly is not None
        assert not second.sent
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_next_day_may_message_again(
        self, service: CompanionService, transport: RecordingTransport, clock: FakeClock
    ) -> None:
        await _seed_routine(service)
        await service.handle_snapshot(PHONE, _short_night())

        clock.now = MONDAY + timedelta(days=1)
        outcome = await service.handle_snapshot(PHONE, _short_night(clock.now, hours=3.0))

        assert outcome.sent
        assert len(transport.sent) == 2

    @pytest.mark.parametrize("failure", ["rejected", "raised", "timeout"])
    @pytest.mark.asyncio
    async def test_failed_delivery_leaves_cooldown_unconsumed(
        self, service: CompanionService, transport: RecordingTransport, failure: str
    ) -> None:
        await _seed_routine(service)
        if failure == "rejected":
            transport.fail = True
        elif failure == "raised":
            transport.raise_error = True
        else:
            transport.delay_seconds = 1.0

        outcome = await service.handle_snapshot(PHONE, _short_night())

        assert outcome.anomaly is not None
        assert not outcome.sent
        state = await service.repository.load(PHONE)
        assert state.last_message_date is None
        assert not state.thread_open
        assert len(state.window) == 15  # the snapshot itself is still recorded

        transport.fail = transport.raise_error = False
        transport.delay_seconds = 0.0
        retry = await service.handle_snapshot(PHONE, _short_night())
        assert retry.sent

    @pytest.mark.asyncio
    async def test_window_stays_bounded(self, service: CompanionService, clock: FakeClock) -> None:
        for day in range(35):
            clock.now = MONDAY + timedelta(days=day)
            await service.handle_snapshot(PHONE, create_daily_snapshot(clock.now))

        state = await service.repository.load(PHONE)
        assert len(state.window) == 30
        assert state.window[-1].timestamp.date() == clock.now.date()

    @pytest.mark.asyncio
    async def test_malformed_snapshot_is_rejected_before_mutation(
        self, service: CompanionService
    ) -> None:
        with pytest.raises(ValidationError):
            await service.handle_snapshot(PHONE, {"sleep_duration_hours": -1, "weekday": 2})

        with pytest.raises(ValidationError):
            await service.handle_snapshot("", {"weekday": 2})

        with pytest.raises(ValidationError):
            await service.handle_snapshot(PHONE, {"running_minutes": math.inf, "weekday": 2})

        assert (await service.repository.load(PHONE)).revision == 0

    @pytest.mark.asyncio
    async def test_mapping_payload_is_accepted(self, service: CompanionService) -> None:
        outcome = await service.handle_snapshot(
            PHONE, {"timestamp": "2025-03-03T07:30:00Z", "sleep_duration_hours": 7.5}
        )

        assert not outcome.sent
        state = await service.repository.load(PHONE)
        assert state.window[0].weekday == 2  # derived: Monday

    @pytest.mark.asyncio
    async def test_three_flat_days_are_enough_to_flag_a_change(
        self, service: CompanionService, transport: RecordingTransport, clock: FakeClock
    ) -> None:
        history = [
            Snapshot(timestamp=MONDAY - timedelta(days=d), weekday=1, wake_time_hour=8.0)
            for d in (2, 1, 0)
        ]
        await service.repository.mutate(PHONE, lambda s: s.model_copy(update={"window": history}))
        clock.now = MONDAY + timedelta(days=1)

        outcome = await service.handle_snapshot(
            PHONE, {"timestamp": clock.now.isoformat(), "wake_time_hour": 9.0}
        )

        assert outcome.anomaly is not None
        assert outcome.anomaly.type == AnomalyType.LATE_WAKE
        assert outcome.sent
        assert transport.sent == [(PHONE, "Slow start today?")]

    @pytest.mark.asyncio
    async def test_weekday_follows_configured_timezone(self, transport: RecordingTransport) -> None:
        config = AppConfig(conversation=ConversationConfig(timezone="America/Los_Angeles"))
        service = CompanionService(
            transport, config, repository=StateRepository(InMemoryRecordStore())
        )

        await service.handle_snapshot(PHONE, {"timestamp": "2025-03-04T03:00:00Z"})

        state = await service.repository.load(PHONE)
        assert state.window[0].weekday == 2  # still Monday in Los Angeles

    @pytest.mark.asyncio
    async def test_persistence_failure_propagates_and_is_isolated(
        self, service: CompanionService, store: FailingWriteStore
    ) -> None:
        store.fail_for.add(PHONE)

        with pytest.raises(PersistenceError):
            await service.handle_snapshot(PHONE, create_daily_snapshot(MONDAY))

        other = await service.handle_snapshot("+14155550199", create_daily_snapshot(MONDAY))
        assert not other.sent
        assert (await service.repository.load("+14155550199")).revision == 1


class TestHandleInboundReply:
    @pytest.mark.asyncio
    async def test_reply_is_acknowledged_once(
        self, service: CompanionService, transport: RecordingTransport
    ) -> None:
        await _seed_routine(service)
        await service.handle_snapshot(PHONE, _short_night())

        first = await service.handle_inbound_reply(PHONE, "couldn't sleep")
        second = await service.handle_inbound_reply(PHONE, "still tired")

        assert first.replied
        assert not second.replied
        assert transport.sent[-1] == (PHONE, DEFAULT_ACKNOWLEDGMENT)
        state = await service.repository.load(PHONE)
        assert not state.thread_open
        assert [t.role for t in state.conversation] == ["assistant", "user", "assistant"]

    @pytest.mark.asyncio
    async def test_reply_without_thread_is_ignored(
        self, service: CompanionService, transport: RecordingTransport
    ) -> None:
        await _seed_routine(service)

        outcome = await service.handle_inbound_reply(PHONE, "hi?")

        assert not outcome.replied
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_unknown_sender_is_not_persisted(self, service: CompanionService) -> None:
        outcome = await service.handle_inbound_reply("+14155550177", "who is this")

        assert not outcome.replied
        assert (await service.repository.load("+14155550177")).revision == 0

    @pytest.mark.asyncio
    async def test_yesterdays_thread_does_not_get_a_reply(
        self, service: CompanionService, clock: FakeClock
    ) -> None:
        await _seed_routine(service)
        await service.handle_snapshot(PHONE, _short_night())

        clock.now = MONDAY + timedelta(days=1)
        outcome = await service.handle_inbound_reply(PHONE, "sorry, saw this late")

        assert not outcome.replied

    @pytest.mark.asyncio
    async def test_failed_acknowledgment_keeps_thread_open(
        self, service: CompanionService, transport: RecordingTransport
    ) -> None:
        await _seed_routine(service)
        await service.handle_snapshot(PHONE, _short_night())

        transport.fail = True
        failed = await service.handle_inbound_reply(PHONE, "rough one")
        state = await service.repository.load(PHONE)
        assert not failed.replied
        assert state.thread_open
        assert [t.role for t in state.conversation] == ["assistant", "user"]

        transport.fail = False
        retried = await service.handle_inbound_reply(PHONE, "you there?")
        assert retried.replied
        state = await service.repository.load(PHONE)
        assert [t.role for t in state.conversation] == ["assistant", "user", "user", "assistant"]

    @pytest.mark.asyncio
    async def test_empty_reply_is_rejected(self, service: CompanionService) -> None:
        with pytest.raises(ValidationError):
            await service.handle_inbound_reply(PHONE, "   ")

    @pytest.mark.asyncio
    async def test_concurrent_sync_and_reply_lose_nothing(
        self, service: CompanionService, transport: RecordingTransport
    ) -> None:
        await _seed_routine(service)
        await service.handle_snapshot(PHONE, _short_night())
        transport.delay_seconds = 0.01

        await asyncio.gather(
            service.handle_inbound_reply(PHONE, "couldn't sleep"),
            service.handle_snapshot(PHONE, create_daily_snapshot(MONDAY)),
        )

        state = await service.repository.load(PHONE)
        assert len(state.window) == 16
        assert [t.role for t in state.conversation] == ["assistant", "user", "assistant"]


class TestRegisterUser:
    @pytest.mark.asyncio
    async def test_register_is_idempotent(self, service: CompanionService) -> None:
        first = await service.register_user(PHONE)
        second = await service.register_user(PHONE)

        assert first.revision == 1
        assert second.revision == 1
        assert second.registered_at == first.registered_at
