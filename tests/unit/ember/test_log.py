"""Tests for structured logging setup."""

import json
from collections.abc import Iterator

import pytest
import structlog

from ember.config import LoggingConfig
from ember.log import configure_logging


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    yield
    structlog.reset_defaults()


def test_json_format_emits_one_object_per_event(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(LoggingConfig(level="INFO", format="json"))

    structlog.get_logger("ember.tests").bind(component="test").info("check_in_sent", sent=True)

    lines = [line for line in capsys.readouterr().err.splitlines() if "check_in_sent" in line]
    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["event"] == "check_in_sent"
    assert record["component"] == "test"
    assert record["level"] == "info"
    assert "timestamp" in record


def test_level_filters_quieter_events(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(LoggingConfig(level="WARNING", format="json"))

    structlog.get_logger("ember.tests").info("too_quiet")

    assert "too_quiet" not in capsys.readouterr().err
