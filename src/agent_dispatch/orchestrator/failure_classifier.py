"""Deterministic failure classification for retry and circuit-breaker policy."""

from __future__ import annotations

import asyncio
import errno
from dataclasses import dataclass

import httpx

from agent_dispatch.orchestrator.models import ErrorClassification

FAILURE_CLASSIFIER_VERSION = 1

SIGKILL_EXIT_CODE = 137
SIGTERM_EXIT_CODE = 143

_TRANSIENT_HTTP_CODES = frozenset({429, 502, 503, 529})
_TIMEOUT_HTTP_CODES = frozenset({408, 504})

_RESOURCE_ERRNOS = frozenset({errno.ENOMEM, errno.ENOSPC, errno.EMFILE, errno.ENFILE})
_PERMANENT_ERRNOS = frozenset({errno.ENOENT, errno.EACCES})

_PROGRAMMING_ERRORS: tuple[type[BaseException], ...] = (
    TypeError,
    ValueError,
    KeyError,
    AttributeError,
    NotImplementedError,
)

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "insufficient_quota",
    "quota",
    "billing",
    "payment",
    "credit balance",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "invalid x-api-key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "overloaded",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
)
_RESOURCE_PATTERNS: tuple[str, ...] = (
    "out of memory",
    "heap out of memory",
    "enomem",
    "no space left",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    classification: ErrorClassification
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None

    def to_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job errors and events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "classification": self.classification.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_exception(error: BaseException) -> FailureClassification:  # noqa: C901, PLR0911
    """Classify a raised exception; first matching rule wins."""

    declared = getattr(error, "classification", None)
    if isinstance(declared, ErrorClassification):
        return FailureClassification(
            classification=declared,
            reason_code=type(error).__name__,
            matched_rule="declared_classification",
        )

    if isinstance(error, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return FailureClassification(
            classification=ErrorClassification.TIMEOUT,
            reason_code="timeout",
            matched_rule="timeout_exception",
        )

    if isinstance(error, httpx.HTTPStatusError):
        return classify_http_status(error.response.status_code)

    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int):
        return classify_http_status(status_code)

    if isinstance(error, (ConnectionError, httpx.TransportError)):
        return FailureClassification(
            classification=ErrorClassification.TRANSIENT,
            reason_code="connection_error",
            matched_rule="connection_exception",
            matched_pattern=type(error).__name__,
        )

    if isinstance(error, MemoryError):
        return FailureClassification(
            classification=ErrorClassification.RESOURCE,
            reason_code="out_of_memory",
            matched_rule="memory_exception",
        )

    if isinstance(error, OSError) and error.errno is not None:
        if error.errno in _RESOURCE_ERRNOS:
            return FailureClassification(
                classification=ErrorClassification.RESOURCE,
                reason_code="os_resource_exhausted",
                matched_rule="os_errno",
                matched_pattern=errno.errorcode.get(error.errno),
            )
        if error.errno in _PERMANENT_ERRNOS:
            return FailureClassification(
                classification=ErrorClassification.PERMANENT,
                reason_code="os_not_found_or_denied",
                matched_rule="os_errno",
                matched_pattern=errno.errorcode.get(error.errno),
            )

    if isinstance(error, _PROGRAMMING_ERRORS):
        return FailureClassification(
            classification=ErrorClassification.PERMANENT,
            reason_code="programming_error",
            matched_rule="programming_exception",
            matched_pattern=type(error).__name__,
        )

    return classify_text(str(error))


def classify_http_status(status_code: int) -> FailureClassification:
    """Classify an HTTP response status from a provider."""

    if status_code in _TRANSIENT_HTTP_CODES:
        return FailureClassification(
            classification=ErrorClassification.TRANSIENT,
            reason_code=f"http_{status_code}",
            matched_rule="http_transient",
        )
    if status_code in _TIMEOUT_HTTP_CODES:
        return FailureClassification(
            classification=ErrorClassification.TIMEOUT,
            reason_code=f"http_{status_code}",
            matched_rule="http_timeout",
        )
    if status_code >= 500:  # noqa: PLR2004
        return FailureClassification(
            classification=ErrorClassification.TRANSIENT,
            reason_code=f"http_{status_code}",
            matched_rule="http_server_error",
        )
    return FailureClassification(
        classification=ErrorClassification.PERMANENT,
        reason_code=f"http_{status_code}",
        matched_rule="http_client_error",
    )


def classify_exit_code(exit_code: int) -> FailureClassification:
    """Classify a nonzero subprocess exit code."""

    if exit_code == SIGTERM_EXIT_CODE:
        return FailureClassification(
            classification=ErrorClassification.TIMEOUT,
            reason_code="process_terminated",
            matched_rule="sigterm_exit_code",
        )
    if exit_code == SIGKILL_EXIT_CODE or exit_code < 0:
        return FailureClassification(
            classification=ErrorClassification.RESOURCE,
            reason_code="process_killed",
            matched_rule="signal_exit_code",
        )
    return FailureClassification(
        classification=ErrorClassification.PERMANENT,
        reason_code="process_nonzero_exit",
        matched_rule="nonzero_exit_code",
    )


def classify_text(text: str) -> FailureClassification:  # noqa: PLR0911
    """Classify free-form error output; falls back to transient."""

    haystack = text.lower()

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            classification=ErrorClassification.PERMANENT,
            reason_code="billing_or_quota",
            matched_rule="billing_or_quota",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            classification=ErrorClassification.PERMANENT,
            reason_code="access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            classification=ErrorClassification.PERMANENT,
            reason_code="model_not_available",
            matched_rule="model_not_available",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            classification=ErrorClassification.RESOURCE,
            reason_code="rate_limited",
            matched_rule="rate_limit",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            classification=ErrorClassification.TRANSIENT,
            reason_code="backend_transient",
            matched_rule="generic_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RESOURCE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            classification=ErrorClassification.RESOURCE,
            reason_code="resource_exhausted",
            matched_rule="resource_text",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            classification=ErrorClassification.TIMEOUT,
            reason_code="timeout",
            matched_rule="timeout_text",
            matched_pattern=pattern,
        )

    return FailureClassification(
        classification=ErrorClassification.TRANSIENT,
        reason_code="unknown",
        matched_rule="fallback_transient",
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
