"""
Companion service: the end-to-end check-in pipeline.

1. Validate the request before touching any state
2. Lock and load the user's record
3. Baseline -> detector -> cooldown gate
4. Generate text and send it; only a confirmed delivery opens the thread
5. Append today's snapshot and commit the record atomically

Collaborator failures (model, transport) degrade the request instead of
failing it. Persistence failures propagate: the caller must not assume the
mutation happened.
"""

import asyncio
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

import pydantic
import structlog

from ember.config import AppConfig, get_config
from ember.domain.errors import UpstreamError, ValidationError
from ember.domain.models import ReplyOutcome, Snapshot, SnapshotOutcome, UserState
from ember.services.anomaly_detector import AnomalyDetector
from ember.services.baseline import BaselineEngine
from ember.services.conversation import ConversationStateMachine
from ember.services.messaging import MessageComposer, MessageTransport
from ember.services.result import Result
from ember.services.state_repository import StateRepository, create_record_store

logger = structlog.get_logger(__name__)


class CompanionService:
    """Wires baseline, detection, conversation state and persistence together."""

    def __init__(
        self,
        transport: MessageTransport,
        config: AppConfig | None = None,
        *,
        repository: StateRepository | None = None,
        composer: MessageComposer | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or get_config()
        self.logger = logger.bind(component="companion_service")

        tz = self.config.conversation.tzinfo
        self.clock = clock or (lambda: datetime.now(tz))
        self.tz = tz

        self.baseline_engine = BaselineEngine(self.config.baseline, tz)
        self.detector = AnomalyDetector(self.config.detection)
        self.conversation = ConversationStateMachine(tz)
        self.repository = repository or StateRepository(
            create_record_store(self.config.storage)
        )
        self.composer = composer or MessageComposer(
            self.config.ai_provider, self.config.conversation.max_message_chars
        )
        self.transport = transport

    def _now(self) -> datetime:
        return self.clock().astimezone(self.tz)

    @staticmethod
    def _require_identity(identity: str | None) -> str:
        if not identity or not identity.strip():
            raise ValidationError("identity required")
        return identity.strip()

    def _validate_snapshot(self, snapshot: Snapshot | Mapping[str, Any]) -> Snapshot:
        if isinstance(snapshot, Snapshot):
            return snapshot
        try:
            return Snapshot.from_payload(snapshot, self.tz)
        except (pydantic.ValidationError, TypeError, ValueError) as e:
            raise ValidationError(f"malformed snapshot: {e}") from e

    async def _deliver(self, identity: str, text: str) -> Result[str, Exception]:
        """Send with a timeout. Any failure is reported as non-delivery."""
        timeout = self.config.transport.send_timeout_seconds
        try:
            result = await asyncio.wait_for(
                self.transport.send_message(identity, text), timeout=timeout
            )
        except TimeoutError:
            self.logger.error("send_timeout", identity=identity, timeout_seconds=timeout)
            return Result.err(UpstreamError("transport", "timed out"))
        except Exception as e:
            self.logger.error("send_failed", identity=identity, error=str(e))
            return Result.err(UpstreamError("transport", str(e)))

        if result.is_err():
            self.logger.warning("send_rejected", identity=identity, error=str(result.unwrap_err()))
        return result

    async def register_user(self, identity: str) -> UserState:
        """Create the persisted record if it does not exist yet. Safe to call repeatedly."""
        identity = self._require_identity(identity)
        existing = await self.repository.load(identity)
        if existing.revision > 0:
            return existing

        state = await self.repository.mutate(identity, lambda s: s)
        self.logger.info("user_registered", identity=identity)
        return state

    async def handle_snapshot(
        self, identity: str, snapshot: Snapshot | Mapping[str, Any]
    ) -> SnapshotOutcome:
        """Evaluate today's snapshot, maybe check in, and fold it into the window."""
        identity = self._require_identity(identity)
        snapshot = self._validate_snapshot(snapshot)
        log = self.logger.bind(identity=identity)

        outcome = SnapshotOutcome()

        async def evaluate(state: UserState) -> UserState:
            now = self._now()
            baseline = self.baseline_engine.compute_baseline(state.window)
            anomaly = self.detector.evaluate(snapshot, baseline, now)
            outcome.anomaly = anomaly

            if anomaly is not None:
                if not self.conversation.cooldown_allows(state, now):
                    log.info("cooldown_active", anomaly_type=anomaly.type.value)
                else:
                    text = await self.composer.generate_check_in_text(anomaly)
                    delivery = await self._deliver(identity, text)
                    if delivery.is_ok():
                        opened = self.conversation.open_thread(state, anomaly.type, text, now)
                        if opened is not None:
                            state = opened
                            outcome.sent = True
                            log.info(
                                "check_in_sent",
                                anomaly_type=anomaly.type.value,
                                delivery_id=delivery.unwrap(),
                            )

            window = self.baseline_engine.append_snapshot(state.window, snapshot)
            return state.model_copy(update={"window": window})

        committed = await self.repository.mutate(identity, evaluate)
        log.info(
            "snapshot_processed",
            window_size=len(committed.window),
            anomaly_type=outcome.anomaly.type.value if outcome.anomaly else None,
            sent=outcome.sent,
        )
        return outcome

    async def handle_inbound_reply(self, identity: str, text: str) -> ReplyOutcome:
        """Acknowledge a reply once, and only inside today's open thread."""
        identity = self._require_identity(identity)
        body = (text or "").strip()
        if not body:
            raise ValidationError("reply text required")
        log = self.logger.bind(identity=identity)

        # Lock-free pre-check keeps unknown numbers and closed threads from writing
        current = await self.repository.load(identity)
        if current.revision == 0 or not self.conversation.thread_is_active(current, self._now()):
            log.info("reply_ignored", known_user=current.revision > 0)
            return ReplyOutcome(replied=False)

        outcome = ReplyOutcome()

        async def reply(state: UserState) -> UserState:
            now = self._now()
            state, accepted = self.conversation.accept_reply(state, body, now)
            if not accepted:
                return state

            acknowledgment = await self.composer.generate_acknowledgment(body, state.conversation)
            delivery = await self._deliver(identity, acknowledgment)
            if delivery.is_err():
                # Reply is kept; the thread stays open so a later reply can still be answered
                return state

            outcome.replied = True
            return self.conversation.acknowledge(state, acknowledgment, now)

        await self.repository.mutate(identity, reply)
        log.info("reply_processed", replied=outcome.replied)
        return outcome
