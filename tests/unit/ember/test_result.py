"""Tests for the Result type used at collaborator boundaries."""

import dataclasses

import pytest

from ember.domain.errors import UpstreamError
from ember.services.result import Result


class TestResult:
    """Test the Result type for explicit error handling."""

    def test_result_ok_creates_successful_result(self) -> None:
        result: Result[str, Exception] = Result.ok("success")
        assert result.is_ok()
        assert not result.is_err()
        assert result.unwrap() == "success"

    def test_result_error_creates_failed_result(self) -> None:
        error = ValueError("test error")
        result: Result[str, ValueError] = Result.err(error)
        assert not result.is_ok()
        assert result.is_err()
        assert result.unwrap_or("default") == "default"
        assert result.unwrap_err() is error

    def test_unwrap_raises_on_error_result(self) -> None:
        result: Result[str, UpstreamError] = Result.err(UpstreamError("transport", "timed out"))

        with pytest.raises(UpstreamError, match="timed out"):
            result.unwrap()

    def test_unwrap_err_on_ok_raises(self) -> None:
        with pytest.raises(ValueError, match="unwrap_err"):
            Result.ok("fine").unwrap_err()

    def test_empty_string_is_a_value(self) -> None:
        assert Result.ok("").unwrap_or("fallback") == ""

    def test_requires_exactly_one_side(self) -> None:
        with pytest.raises(ValueError):
            Result()
        with pytest.raises(ValueError):
            Result(value="x", error=ValueError("y"))

    def test_result_is_immutable(self) -> None:
        result: Result[str, Exception] = Result.ok("msg-1")

        with pytest.raises(dataclasses.FrozenInstanceError):
            result.value = "msg-2"  # type: ignore[misc]
