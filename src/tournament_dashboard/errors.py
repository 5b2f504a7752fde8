"""
Error classification for stage and render faults.

``classify`` is a pure function: the same exception type and text always map
to the same category and severity. ``ErrorHistory`` keeps a bounded record of
classified errors so the recovery report and the trend view can show what has
been going wrong recently.
"""

from __future__ import annotations

import re
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Deque

import httpx

from .exceptions import APIException, AuthenticationError, DataValidationError, MissingPredictionsError


class ErrorCategory(str, Enum):
    API = "API"
    NETWORK = "NETWORK"
    AUTH = "AUTH"
    DATA = "DATA"
    SYSTEM = "SYSTEM"
    TIMEOUT = "TIMEOUT"
    VALIDATION = "VALIDATION"


class ErrorSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass(slots=True, frozen=True)
class Classification:
    category: ErrorCategory
    severity: ErrorSeverity


@dataclass(slots=True, frozen=True)
class CategorizedError:
    """A classified fault, ready for the event log and the recovery report."""

    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    technical_details: str
    timestamp: datetime
    count: int = 1


_CONNECTION_TEXT = (
    "connection refused",
    "connection reset",
    "connection aborted",
    "connection error",
    "network",
    "dns",
    "unreachable",
    "name or service not known",
)
_AUTH_TEXT = (
    "unauthorized",
    "forbidden",
    "401",
    "403",
    "invalid credentials",
    "authentication",
    "api key",
    "not authorized",
)
# Whole words only, so "capital_features.parquet" is not an API fault
_API_PATTERN = re.compile(r"\b(?:api|graphql)\b")
_TIMEOUT_TEXT = ("timeout", "timed out")
_VALIDATION_TEXT = ("invalid", "validation", "schema", "malformed")
_DATA_TEXT = ("parquet", "dataset", "column", "no such file")


def _type_names(fault: BaseException) -> list[str]:
    return [cls.__name__ for cls in type(fault).__mro__]


def _is_connection_fault(fault: BaseException) -> bool:
    if isinstance(fault, (ConnectionError, TimeoutError)):
        return True
    if isinstance(fault, httpx.TransportError):
        return True
    return any("Connect" in name or "Timeout" in name for name in _type_names(fault)[:-2])


def classify(fault: BaseException | str) -> Classification:
    """Map a fault to its category and severity.

    Rules are checked in order and the first match wins: connection faults,
    authorization text, API text, timeout text, validation faults, data
    faults, and finally a generic system error.
    """
    text = str(fault).lower()
    is_exception = isinstance(fault, BaseException)

    if (is_exception and _is_connection_fault(fault)) or any(s in text for s in _CONNECTION_TEXT):
        return Classification(ErrorCategory.NETWORK, ErrorSeverity.HIGH)
    if (is_exception and isinstance(fault, AuthenticationError)) or any(s in text for s in _AUTH_TEXT):
        return Classification(ErrorCategory.AUTH, ErrorSeverity.CRITICAL)
    if (is_exception and isinstance(fault, APIException)) or _API_PATTERN.search(text):
        return Classification(ErrorCategory.API, ErrorSeverity.MEDIUM)
    if any(s in text for s in _TIMEOUT_TEXT):
        return Classification(ErrorCategory.TIMEOUT, ErrorSeverity.MEDIUM)
    if (is_exception and isinstance(fault, (ValueError, DataValidationError))) or any(
        s in text for s in _VALIDATION_TEXT
    ):
        return Classification(ErrorCategory.VALIDATION, ErrorSeverity.LOW)
    if (is_exception and isinstance(fault, (FileNotFoundError, MissingPredictionsError))) or any(
        s in text for s in _DATA_TEXT
    ):
        return Classification(ErrorCategory.DATA, ErrorSeverity.MEDIUM)
    return Classification(ErrorCategory.SYSTEM, ErrorSeverity.MEDIUM)


_TEMPLATES: dict[ErrorCategory, str] = {
    ErrorCategory.NETWORK: "Network connectivity problem. Check your internet connection.",
    ErrorCategory.AUTH: "Authentication failed. Check your API credentials.",
    ErrorCategory.API: "Tournament API error. The service may be degraded, try again later.",
    ErrorCategory.TIMEOUT: "The operation timed out. The service may be slow, try again.",
    ErrorCategory.VALIDATION: "Validation failed. Check the input values.",
    ErrorCategory.DATA: "Data problem. Check that the datasets are downloaded and readable.",
    ErrorCategory.SYSTEM: "Unexpected system error.",
}


def friendly_message(category: ErrorCategory, raw: str) -> str:
    """Return the operator-facing text for a category, refined by the raw message."""
    message = _TEMPLATES[category]
    lowered = raw.lower()
    if "model not found" in lowered:
        message += " The model name was not found; check TOURNAMENT_MODELS."
    elif "rate limit" in lowered:
        message += " Rate limit reached; wait a minute before retrying."
    elif "invalid credentials" in lowered:
        message += " The public ID or secret key was rejected."
    return message


def summarize(fault: BaseException) -> str:
    """One-line technical description of a fault."""
    text = str(fault)
    return f"{type(fault).__name__}: {text}" if text else type(fault).__name__


class ErrorHistory:
    """Bounded history of categorized errors with per-category running counts.

    Not synchronized; callers hold the dashboard state lock.
    """

    def __init__(self, max_errors: int = 50) -> None:
        if max_errors < 1:
            raise ValueError("max_errors must be at least 1")
        self._errors: Deque[CategorizedError] = deque(maxlen=max_errors)
        self._counts: Counter[ErrorCategory] = Counter()

    def record(self, fault: BaseException, *, context: str = "", now: datetime | None = None) -> CategorizedError:
        """Classify ``fault`` and append it to the history."""
        classification = classify(fault)
        self._counts[classification.category] += 1
        raw = summarize(fault)
        message = friendly_message(classification.category, raw)
        if context:
            message = f"{context}: {message}"
        error = CategorizedError(
            category=classification.category,
            severity=classification.severity,
            message=message,
            technical_details=raw,
            timestamp=now or datetime.now(tz=timezone.utc),
            count=self._counts[classification.category],
        )
        self._errors.append(error)
        return error

    def trend(self, window: timedelta, *, now: datetime | None = None) -> dict[ErrorCategory, int]:
        """Per-category error counts within ``[now - window, now]``."""
        now = now or datetime.now(tz=timezone.utc)
        cutoff = now - window
        counts: dict[ErrorCategory, int] = {}
        for error in self._errors:
            if cutoff <= error.timestamp <= now:
                counts[error.category] = counts.get(error.category, 0) + 1
        return counts

    def count(self, category: ErrorCategory) -> int:
        return self._counts[category]

    @property
    def total(self) -> int:
        return sum(self._counts.values())

    def latest(self) -> CategorizedError | None:
        return self._errors[-1] if self._errors else None

    def errors(self) -> list[CategorizedError]:
        return list(self._errors)

    def __len__(self) -> int:
        return len(self._errors)

