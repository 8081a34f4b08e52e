from __future__ import annotations

import json

import httpx
import pytest

from sefdispatch.integrations.authority import (
    AuthorityAuthenticationError,
    AuthorityClient,
    AuthorityError,
    AuthorityNetworkError,
    AuthorityRateLimitError,
    AuthorityServerError,
    AuthorityValidationError,
    classify_authority_error,
)
from sefdispatch.services.job_errors import ErrorClass

BASE_URL = "https://authority.test"


def _client(handler) -> AuthorityClient:
    return AuthorityClient(
        "secret-key",
        base_url=BASE_URL + "/",
        timeout_s=5,
        transport=httpx.MockTransport(handler),
    )


def test_submit_sends_document_with_request_id():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(200, json={"SalesInvoiceId": 4711, "Status": "Sent"})

    result = _client(handler).submit("<Invoice/>", request_id="job-1")

    request = seen["request"]
    assert request.method == "POST"
    assert request.url.path == "/api/publicApi/sales-invoice/ubl"
    assert request.url.params["requestId"] == "job-1"
    assert request.headers["ApiKey"] == "secret-key"
    assert request.headers["Content-Type"] == "application/xml"
    assert request.content == b"<Invoice/>"
    assert result.authority_id == "4711"
    assert result.status == "Sent"


def test_submit_without_invoice_id_is_an_error():
    client = _client(lambda request: httpx.Response(200, json={"Status": "Sent"}))
    with pytest.raises(AuthorityError):
        client.submit("<Invoice/>", request_id="job-1")


def test_validation_error_carries_detail():
    def handler(request):
        return httpx.Response(
            400, json={"message": "Invalid VAT", "errors": ["BT-31"], "code": "VAL-1"}
        )

    with pytest.raises(AuthorityValidationError) as info:
        _client(handler).submit("<Invoice/>")
    assert info.value.message == "Invalid VAT"
    assert info.value.detail == ["BT-31"]
    assert info.value.error_code == "VAL-1"
    assert info.value.status_code == 400


def test_rate_limit_reads_retry_after():
    client = _client(lambda request: httpx.Response(429, headers={"Retry-After": "17"}))
    with pytest.raises(AuthorityRateLimitError) as info:
        client.submit("<Invoice/>")
    assert info.value.retry_after == 17


@pytest.mark.parametrize(
    "status,error_type",
    [
        (500, AuthorityServerError),
        (503, AuthorityServerError),
        (401, AuthorityAuthenticationError),
        (403, AuthorityAuthenticationError),
        (404, AuthorityError),
    ],
)
def test_http_errors_are_mapped(status, error_type):
    client = _client(lambda request: httpx.Response(status, text="nope"))
    with pytest.raises(error_type) as info:
        client.get_status("1")
    assert info.value.status_code == status


@pytest.mark.parametrize(
    "exc",
    [httpx.ConnectError("refused"), httpx.ReadTimeout("slow")],
)
def test_transport_failures_become_network_errors(exc):
    def handler(request):
        raise exc

    with pytest.raises(AuthorityNetworkError):
        _client(handler).submit("<Invoice/>")


def test_cancel_sends_numeric_invoice_id():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"Status": "Cancelled"})

    result = _client(handler).cancel("4711", "Wrong amount")
    assert seen["body"] == {"invoiceId": 4711, "cancelComments": "Wrong amount"}
    assert result["status"] == "Cancelled"


def test_get_status():
    def handler(request):
        assert request.url.params["invoiceId"] == "4711"
        return httpx.Response(200, json={"Status": "Approved", "Comment": "ok"})

    status = _client(handler).get_status("4711")
    assert status["status"] == "Approved"
    assert status["comment"] == "ok"


def test_health_reports_false_on_failure():
    assert _client(lambda request: httpx.Response(200, json={})).health() is True
    assert _client(lambda request: httpx.Response(502)).health() is False


@pytest.mark.parametrize(
    "exc,expected",
    [
        (AuthorityNetworkError("x"), ErrorClass.RETRYABLE),
        (AuthorityServerError("x", status_code=500), ErrorClass.RETRYABLE),
        (AuthorityRateLimitError("x"), ErrorClass.RETRYABLE),
        (AuthorityValidationError("x"), ErrorClass.FATAL),
        (AuthorityAuthenticationError("x"), ErrorClass.FATAL),
        (ValueError("x"), ErrorClass.FATAL),
    ],
)
def test_classify_authority_error(exc, expected):
    assert classify_authority_error(exc) == expected
