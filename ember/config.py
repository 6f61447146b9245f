"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Secure defaults (no API keys in code)
"""

import os
from functools import lru_cache
from typing import Literal, cast
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

# Load environment variables from .env file
load_dotenv()


class AIProviderConfig(BaseModel):
    """Text-generation provider configuration. Without a key, templates are used."""

    anthropic_api_key: str | None = Field(None, description="Anthropic API key (optional)")

    check_in_model: str = Field(
        default="claude-3-5-haiku-latest", description="Model for proactive check-ins"
    )
    acknowledgment_model: str = Field(
        default="claude-3-5-haiku-latest", description="Model for reply acknowledgments"
    )

    default_temperature: float = Field(
        default=0.7, ge=0.0, le=1.0, description="Default temperature for AI models"
    )
    default_max_tokens: int = Field(
        default=60, gt=0, description="Default max tokens for AI models"
    )
    default_timeout_seconds: float = Field(
        default=8.0, gt=0.0, description="Default timeout for AI models"
    )

    # Circuit breaker around the model
    failure_threshold: int = Field(default=5, gt=0, description="Failures before opening")
    recovery_timeout_seconds: int = Field(
        default=60, gt=0, description="Seconds before a half-open retry"
    )

    @field_validator("anthropic_api_key")
    def validate_api_key(cls, v):
        if not v:
            return None
        if not v.startswith("sk-"):
            raise ValueError("AI provider API key must start with 'sk-'")
        return v

    @property
    def enabled(self) -> bool:
        return self.anthropic_api_key is not None


class BaselineConfig(BaseModel):
    """Rolling window and statistics settings."""

    window_limit: int = Field(default=30, gt=0, description="Snapshots kept per user")
    # One minimum gates both statistics and detection: with fewer snapshots
    # there is no baseline, and without a baseline no rule runs.
    min_samples: int = Field(
        default=3, ge=2, description="Snapshots required before a baseline exists"
    )


class DetectionConfig(BaseModel):
    """Anomaly rule thresholds."""

    deviation_threshold: float = Field(
        default=2.0, gt=0.0, description="Strict z-score threshold in standard deviations"
    )
    run_frequency_threshold: float = Field(
        default=0.6, ge=0.0, le=1.0, description="Run frequency above which a skip is notable"
    )
    run_grace_hours: int = Field(
        default=3, ge=0, description="Hours past the typical run hour before flagging a skip"
    )
    default_run_hour: int = Field(
        default=9, ge=0, le=23, description="Run hour assumed when history has none"
    )


class ConversationConfig(BaseModel):
    """Thread and message settings."""

    timezone: str = Field(default="UTC", description="IANA zone that defines a calendar day")
    max_message_chars: int = Field(default=160, gt=0, description="Single SMS segment")

    @field_validator("timezone")
    def validate_timezone(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class StorageConfig(BaseModel):
    """Durable record storage."""

    backend: Literal["json", "memory"] = Field(default="json", description="Record store")
    data_dir: str = Field(default="./data/users", description="Directory of per-user records")


class TransportConfig(BaseModel):
    """Notification transport settings."""

    send_timeout_seconds: float = Field(
        default=10.0, gt=0.0, description="Timeout for a single send"
    )
    sender_name: str = Field(default="Ember", description="Display name for outgoing messages")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Component configs
    ai_provider: AIProviderConfig = Field(default_factory=AIProviderConfig)
    baseline: BaselineConfig = Field(default_factory=BaselineConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _backend_to_literal(val: str) -> Literal["json", "memory"]:
        return "memory" if val.strip().lower() == "memory" else "json"

    # Detect environment
    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    ai_config = AIProviderConfig(
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
        check_in_model=os.getenv("CHECK_IN_MODEL", "claude-3-5-haiku-latest"),
        acknowledgment_model=os.getenv("ACKNOWLEDGMENT_MODEL", "claude-3-5-haiku-latest"),
        default_timeout_seconds=float(os.getenv("AI_TIMEOUT_SECONDS", "8.0")),
    )

    baseline_config = BaselineConfig(
        window_limit=int(os.getenv("BASELINE_WINDOW_LIMIT", "30")),
        min_samples=int(os.getenv("BASELINE_MIN_SAMPLES", "3")),
    )

    detection_config = DetectionConfig(
        deviation_threshold=float(os.getenv("DEVIATION_THRESHOLD", "2.0")),
    )

    conversation_config = ConversationConfig(
        timezone=os.getenv("EMBER_TIMEZONE", "UTC"),
    )

    storage_config = StorageConfig(
        backend=_backend_to_literal(os.getenv("STORAGE_BACKEND", "json")),
        data_dir=os.getenv("DATA_DIR", "./data/users"),
    )

    transport_config = TransportConfig(
        send_timeout_seconds=float(os.getenv("SEND_TIMEOUT_SECONDS", "10.0")),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        ai_provider=ai_config,
        baseline=baseline_config,
        detection=detection_config,
        conversation=conversation_config,
        storage=storage_config,
        transport=transport_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def validate_config() -> None:
    """Validate configuration at startup."""
    try:
        config = get_config()
        print(f"Configuration loaded for {config.environment} environment")

        if config.ai_provider.enabled:
            print("Anthropic API key configured")
        else:
            print("No Anthropic API key, using message templates")

    except Exception as e:
        print(f"Configuration validation failed: {e}")
        raise


def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")
    print(f"Timezone: {config.conversation.timezone}")

    print("\nBASELINE & DETECTION")
    print(f"Window Limit: {config.baseline.window_limit} snapshots")
    print(f"Minimum History: {config.baseline.min_samples} snapshots")
    print(f"Deviation Threshold: {config.detection.deviation_threshold} sigma")

    print("\nSTORAGE")
    print(f"Backend: {config.storage.backend}")
    print(f"Data Dir: {config.storage.data_dir}")


if __name__ == "__main__":
    # Test configuration loading
    validate_config()
    print_config_summary()
