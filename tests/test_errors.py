from datetime import datetime, timedelta, timezone

import httpx
import pytest

from tournament_dashboard.errors import (
    ErrorCategory,
    ErrorHistory,
    ErrorSeverity,
    classify,
    friendly_message,
    summarize,
)
from tournament_dashboard.exceptions import (
    APIException,
    AuthenticationError,
    DataValidationError,
    MissingPredictionsError,
    RateLimitException,
)


class ConnectTimeoutFault(Exception):
    pass


def test_connect_timeout_fault_is_high_severity_network():
    history = ErrorHistory()
    error = history.record(ConnectTimeoutFault("connection refused"))
    assert error.category is ErrorCategory.NETWORK
    assert error.severity is ErrorSeverity.HIGH
    assert "Network connectivity problem" in error.message
    assert error.technical_details == "ConnectTimeoutFault: connection refused"


def test_classification_is_deterministic():
    faults = [ConnectTimeoutFault("connection refused") for _ in range(5)]
    assert len({classify(f) for f in faults}) == 1


@pytest.mark.parametrize(
    "fault, category, severity",
    [
        (ConnectionError("boom"), ErrorCategory.NETWORK, ErrorSeverity.HIGH),
        (httpx.ConnectError("failed"), ErrorCategory.NETWORK, ErrorSeverity.HIGH),
        (RuntimeError("dns lookup failed"), ErrorCategory.NETWORK, ErrorSeverity.HIGH),
        (AuthenticationError("key rejected"), ErrorCategory.AUTH, ErrorSeverity.CRITICAL),
        (RuntimeError("401 Unauthorized"), ErrorCategory.AUTH, ErrorSeverity.CRITICAL),
        (APIException("server said no", status_code=500), ErrorCategory.API, ErrorSeverity.MEDIUM),
        (RateLimitException("slow down"), ErrorCategory.API, ErrorSeverity.MEDIUM),
        (RuntimeError("GraphQL query rejected"), ErrorCategory.API, ErrorSeverity.MEDIUM),
        (RuntimeError("request timed out"), ErrorCategory.TIMEOUT, ErrorSeverity.MEDIUM),
        (ValueError("bad"), ErrorCategory.VALIDATION, ErrorSeverity.LOW),
        (DataValidationError("bad rows"), ErrorCategory.VALIDATION, ErrorSeverity.LOW),
        (FileNotFoundError("train.parquet"), ErrorCategory.DATA, ErrorSeverity.MEDIUM),
        (FileNotFoundError("data/capital_features.parquet"), ErrorCategory.DATA, ErrorSeverity.MEDIUM),
        (MissingPredictionsError("nothing to send"), ErrorCategory.DATA, ErrorSeverity.MEDIUM),
        (KeyError("k"), ErrorCategory.SYSTEM, ErrorSeverity.MEDIUM),
    ],
)
def test_classify_rules(fault, category, severity):
    result = classify(fault)
    assert (result.category, result.severity) == (category, severity)


def test_first_matching_rule_wins():
    # mentions both a connection problem and authorization
    result = classify(RuntimeError("connection refused while checking 403"))
    assert result.category is ErrorCategory.NETWORK


def test_classify_accepts_plain_text():
    assert classify("Invalid credentials supplied").category is ErrorCategory.AUTH


def test_friendly_message_refinements():
    assert "Rate limit reached" in friendly_message(ErrorCategory.API, "Rate limit exceeded")
    assert "check TOURNAMENT_MODELS" in friendly_message(ErrorCategory.API, "Model not found: foo")
    assert friendly_message(ErrorCategory.SYSTEM, "whatever") == "Unexpected system error."


def test_summarize_without_text_uses_type_name():
    assert summarize(RuntimeError()) == "RuntimeError"


def test_history_is_bounded_and_counts_per_category():
    history = ErrorHistory(max_errors=3)
    for _ in range(4):
        history.record(ConnectionError("down"))
    error = history.record(ValueError("bad"), context="Training failed")
    assert len(history) == 3
    assert history.total == 5
    assert history.count(ErrorCategory.NETWORK) == 4
    assert error.count == 1
    assert error.message.startswith("Training failed: ")
    assert history.latest() is error


def test_trend_counts_only_errors_inside_window():
    history = ErrorHistory()
    now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    history.record(ConnectionError("old"), now=now - timedelta(hours=2))
    history.record(ConnectionError("recent"), now=now - timedelta(minutes=5))
    history.record(ValueError("recent"), now=now - timedelta(minutes=1))
    assert history.trend(timedelta(hours=1), now=now) == {
        ErrorCategory.NETWORK: 1,
        ErrorCategory.VALIDATION: 1,
    }
