"""
Message generation and delivery collaborators.

Key architectural decisions:
- Separate agents for check-ins and acknowledgments (different prompts/models)
- Every model call is bounded by a timeout and guarded by a circuit breaker
- Output is normalized to one short SMS; anything off-shape is replaced by a
  deterministic template, so the caller always gets usable text
- Delivery is a Protocol so SMS, push or console transports can be swapped in
"""

import asyncio
import json
import re
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog
from pydantic_ai import Agent
from pydantic_ai.models.anthropic import AnthropicModel
from pydantic_ai.providers.anthropic import AnthropicProvider

from ember.config import AIProviderConfig
from ember.domain.errors import UpstreamError
from ember.domain.models import AnomalyDescriptor, AnomalyType, ConversationTurn
from ember.services.result import Result

logger = structlog.get_logger(__name__)

CHECK_IN_TEMPLATES: dict[AnomalyType, str] = {
    AnomalyType.LATE_WAKE: "Slow start today?",
    AnomalyType.SHORT_SLEEP: "Short night?",
    AnomalyType.SKIPPED_RUN: "Skipping our run today?",
    AnomalyType.ELEVATED_HR: "Take it easy today.",
    AnomalyType.SHORT_WORKOUT: "Cutting our run short?",
}
DEFAULT_CHECK_IN = "Everything okay today?"
DEFAULT_ACKNOWLEDGMENT = "Thanks for sharing."

SYSTEM_PROMPT = """You are Ember, a quiet health companion that checks in by SMS when it
notices a deviation from someone's normal routine.

Your voice is:
- Warm and human, like a thoughtful friend, not an app or a coach
- Brief. Always under 10 words. Never more than one sentence.
- Gentle and non-judgmental. You never diagnose, lecture, or push.

Respond with only the message text: no quotes, no labels, no explanation."""

CHECK_IN_INSTRUCTIONS = """Mode: CHECK-IN. You noticed something off from their routine.
Open with a soft question or observation, e.g. "rough night?", "skipping our run today?",
"take it easy today"."""

ACKNOWLEDGMENT_INSTRUCTIONS = """Mode: REPLY. They answered your check-in. Acknowledge what
they said warmly in one short sentence, then step back. No advice, no follow-up questions,
no interpretation. They get the last word."""

_WHITESPACE = re.compile(r"\s+")
_SENTENCE_BREAK = re.compile(r"[.!?]+")


class CircuitBreakerState:
    """Simple circuit breaker for AI service calls."""

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 60) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.last_failure_time: datetime | None = None
        self.state = "closed"  # closed, open, half-open

    def can_execute(self) -> bool:
        """Check if operation can execute based on circuit breaker state."""

        if self.state == "closed":
            return True

        if self.state == "open":
            if self.last_failure_time:
                time_since_failure = datetime.now(UTC) - self.last_failure_time
                if time_since_failure.total_seconds() >= self.recovery_timeout:
                    self.state = "half-open"
                    return True
            return False

        return self.state == "half-open"

    def record_success(self) -> None:
        self.failure_count = 0
        self.state = "closed"

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = datetime.now(UTC)

        if self.state == "half-open" or self.failure_count >= self.failure_threshold:
            self.state = "open"


def normalize_text(text: str | None, max_chars: int = 160) -> str:
    """Collapse whitespace, drop wrapping quotes, cut to one SMS."""
    cleaned = _WHITESPACE.sub(" ", text or "").strip().strip("\"'").strip()
    return cleaned[:max_chars].rstrip()


def to_sentence_case(text: str) -> str:
    return text[:1].upper() + text[1:] if text else text


def is_single_statement(text: str) -> bool:
    """One sentence, and not a question."""
    if "?" in text:
        return False
    sentences = [part for part in _SENTENCE_BREAK.split(text) if part.strip()]
    return len(sentences) == 1


class MessageComposer:
    """
    Turns an anomaly or a reply into a short message.

    Without an API key no agents are built and templates are used throughout.
    """

    def __init__(self, config: AIProviderConfig | None = None, max_chars: int = 160) -> None:
        self.config = config or AIProviderConfig()
        self.max_chars = max_chars
        self.logger = logger.bind(component="message_composer")
        self.circuit_breaker = CircuitBreakerState(
            failure_threshold=self.config.failure_threshold,
            recovery_timeout=self.config.recovery_timeout_seconds,
        )

        self.check_in_agent: Agent[None, str] | None = None
        self.acknowledgment_agent: Agent[None, str] | None = None
        if self.config.enabled:
            self.check_in_agent = self._build_agent(
                self.config.check_in_model, CHECK_IN_INSTRUCTIONS
            )
            self.acknowledgment_agent = self._build_agent(
                self.config.acknowledgment_model, ACKNOWLEDGMENT_INSTRUCTIONS
            )

    def _build_agent(self, model_name: str, instructions: str) -> Agent[None, str]:
        model = AnthropicModel(
            model_name, provider=AnthropicProvider(api_key=self.config.anthropic_api_key)
        )
        return Agent(
            model=model,
            output_type=str,
            system_prompt=f"{SYSTEM_PROMPT}\n\n{instructions}",
            model_settings={
                "max_tokens": self.config.default_max_tokens,
                "temperature": self.config.default_temperature,
            },
        )

    async def _run(
        self, agent: Agent[None, str] | None, prompt: str, kind: str
    ) -> Result[str, UpstreamError]:
        """Run one agent call with timeout and circuit breaker."""
        if agent is None:
            return Result.err(UpstreamError(kind, "no model configured"))

        if not self.circuit_breaker.can_execute():
            self.logger.warning("generation_circuit_open", kind=kind)
            return Result.err(UpstreamError(kind, "circuit open"))

        try:
            result = await asyncio.wait_for(
                agent.run(prompt), timeout=self.config.default_timeout_seconds
            )
        except TimeoutError:
            self.circuit_breaker.record_failure()
            self.logger.error(
                "generation_timeout", kind=kind, timeout_seconds=self.config.default_timeout_seconds
            )
            return Result.err(UpstreamError(kind, "timed out"))
        except Exception as e:
            self.circuit_breaker.record_failure()
            self.logger.error("generation_failed", kind=kind, error=str(e))
            return Result.err(UpstreamError(kind, str(e)))

        self.circuit_breaker.record_success()
        return Result.ok(str(result.output))

    async def generate_check_in_text(self, anomaly: AnomalyDescriptor) -> str:
        """Proactive message for an anomaly; falls back to the per-type template."""
        fallback = CHECK_IN_TEMPLATES.get(anomaly.type, DEFAULT_CHECK_IN)
        payload: dict[str, Any] = {"type": anomaly.type.value, "context": anomaly.context}

        prompt = f"Detected anomaly:\n{json.dumps(payload, indent=2)}\n\nWrite the SMS."
        result = await self._run(self.check_in_agent, prompt, "check_in")

        text = to_sentence_case(normalize_text(result.unwrap_or(""), self.max_chars))
        if not text:
            self.logger.info("check_in_template_used", anomaly_type=anomaly.type.value)
            return fallback
        return text

    async def generate_acknowledgment(
        self, inbound_text: str, conversation: Sequence[ConversationTurn] = ()
    ) -> str:
        """One closing sentence for the user's reply; falls back to a fixed thank-you."""
        history = [{"role": t.role, "content": t.content} for t in conversation]
        prompt = (
            f"Conversation so far:\n{json.dumps(history, indent=2)}\n\n"
            f"User message: {inbound_text}\n\nWrite Ember's reply."
        )
        result = await self._run(self.acknowledgment_agent, prompt, "acknowledgment")

        text = to_sentence_case(normalize_text(result.unwrap_or(""), self.max_chars))
        if not text or not is_single_statement(text):
            self.logger.info("acknowledgment_template_used", generated=bool(text))
            return DEFAULT_ACKNOWLEDGMENT
        return text


class MessageTransport(Protocol):
    """
    Protocol for delivering a message to a user.

    Returns the provider's delivery id on success, or the failure as a Result.
    """

    async def send_message(self, identity: str, text: str) -> Result[str, Exception]: ...
