from __future__ import annotations

import errno

import allure
import httpx
import pytest

from agent_dispatch.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_exception,
    classify_exit_code,
    classify_http_status,
    classify_text,
)
from agent_dispatch.orchestrator.models import ErrorClassification

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


@pytest.mark.parametrize(
    ("status_code", "expected"),
    [
        (429, ErrorClassification.TRANSIENT),
        (529, ErrorClassification.TRANSIENT),
        (500, ErrorClassification.TRANSIENT),
        (504, ErrorClassification.TIMEOUT),
        (401, ErrorClassification.PERMANENT),
        (404, ErrorClassification.PERMANENT),
    ],
)
def test_http_status_mapping(status_code: int, expected: ErrorClassification) -> None:
    classified = classify_http_status(status_code)

    assert classified.classification is expected
    assert classified.reason_code == f"http_{status_code}"


def test_connection_reset_is_transient() -> None:
    classified = classify_exception(ConnectionResetError("peer reset"))

    assert classified.classification is ErrorClassification.TRANSIENT
    assert classified.reason_code == "connection_error"


def test_httpx_status_error_uses_response_code() -> None:
    request = httpx.Request("POST", "https://api.example.com/v1/messages")
    response = httpx.Response(503, request=request)
    error = httpx.HTTPStatusError("unavailable", request=request, response=response)

    assert classify_exception(error).classification is ErrorClassification.TRANSIENT


def test_declared_classification_wins() -> None:
    class _Declared(RuntimeError):
        classification = ErrorClassification.RESOURCE

    classified = classify_exception(_Declared("quota"))

    assert classified.classification is ErrorClassification.RESOURCE
    assert classified.matched_rule == "declared_classification"


def test_os_errors_by_errno() -> None:
    no_space = OSError(errno.ENOSPC, "No space left on device")
    missing = OSError(errno.ENOENT, "No such file")

    assert classify_exception(no_space).classification is ErrorClassification.RESOURCE
    assert classify_exception(missing).classification is ErrorClassification.PERMANENT


def test_programming_errors_are_permanent() -> None:
    assert classify_exception(KeyError("x")).classification is ErrorClassification.PERMANENT


def test_timeout_error_is_timeout() -> None:
    assert classify_exception(TimeoutError()).classification is ErrorClassification.TIMEOUT


def test_exit_codes() -> None:
    assert classify_exit_code(143).classification is ErrorClassification.TIMEOUT
    assert classify_exit_code(137).classification is ErrorClassification.RESOURCE
    assert classify_exit_code(-9).classification is ErrorClassification.RESOURCE
    assert classify_exit_code(2).classification is ErrorClassification.PERMANENT


def test_text_prefers_billing_over_rate_limit() -> None:
    classified = classify_text("Rate limit hit: insufficient_quota for this org")

    assert classified.classification is ErrorClassification.PERMANENT
    assert classified.reason_code == "billing_or_quota"
    assert classified.matched_pattern == "insufficient_quota"


def test_text_maps_overloaded_to_resource() -> None:
    classified = classify_text("API overloaded, try later")

    assert classified.classification is ErrorClassification.RESOURCE
    assert classified.to_details()["matched_rule"] == "rate_limit"


def test_unknown_text_falls_back_to_transient() -> None:
    classified = classify_text("something odd happened")

    assert classified.classification is ErrorClassification.TRANSIENT
    assert classified.matched_rule == "fallback_transient"
