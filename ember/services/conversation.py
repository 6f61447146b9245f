"""
Daily cooldown and one-shot thread lifecycle.

    Idle --open_thread--> Open --accept_reply/acknowledge--> Closed

All transitions are pure: they take a UserState and return a new one, so the
caller decides when (and whether) the result is committed. Day rollover is
not a transition of its own; it falls out of the same-calendar-day checks.
"""

from datetime import UTC, datetime, tzinfo

import structlog

from ember.domain.models import AnomalyType, ConversationTurn, UserState

logger = structlog.get_logger(__name__)


class ConversationStateMachine:
    """Governs when Ember may speak first and when it may answer."""

    def __init__(self, tz: tzinfo = UTC) -> None:
        self.tz = tz
        self.logger = logger.bind(component="conversation_state_machine")

    def is_same_day(self, moment: datetime | None, now: datetime) -> bool:
        if moment is None:
            return False
        return moment.astimezone(self.tz).date() == now.astimezone(self.tz).date()

    def cooldown_allows(self, state: UserState, now: datetime) -> bool:
        """True unless a proactive message already went out today."""
        return not self.is_same_day(state.last_message_date, now)

    def thread_is_active(self, state: UserState, now: datetime) -> bool:
        """An open thread only counts on the day it was opened."""
        return state.thread_open and self.is_same_day(state.last_message_date, now)

    def open_thread(
        self, state: UserState, anomaly_type: AnomalyType, message_text: str, now: datetime
    ) -> UserState | None:
        """Start today's thread with the proactive message. None when the cooldown blocks."""
        if not self.cooldown_allows(state, now):
            self.logger.info("cooldown_active", identity=state.identity)
            return None

        return state.model_copy(
            update={
                "thread_open": True,
                "last_message_date": now,
                "last_anomaly_type": anomaly_type,
                "conversation": [
                    ConversationTurn(role="assistant", content=message_text, timestamp=now)
                ],
            }
        )

    def accept_reply(
        self, state: UserState, user_text: str, now: datetime
    ) -> tuple[UserState, bool]:
        """Append the user's reply if today's thread is open; otherwise leave state alone."""
        if not self.thread_is_active(state, now):
            self.logger.info(
                "reply_outside_open_thread",
                identity=state.identity,
                thread_open=state.thread_open,
            )
            return state, False

        turn = ConversationTurn(role="user", content=user_text, timestamp=now)
        return state.model_copy(update={"conversation": [*state.conversation, turn]}), True

    def acknowledge(self, state: UserState, text: str, now: datetime) -> UserState:
        """Append Ember's single acknowledgment and close the thread for the day."""
        if not state.conversation or state.conversation[-1].role != "user":
            raise ValueError("acknowledgment requires a pending user turn")

        turn = ConversationTurn(role="assistant", content=text, timestamp=now)
        return self.close_thread(
            state.model_copy(update={"conversation": [*state.conversation, turn]})
        )

    def close_thread(self, state: UserState) -> UserState:
        return state.model_copy(update={"thread_open": False})
