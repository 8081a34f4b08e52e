from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from sefdispatch.config import get_settings
from sefdispatch.models.invoice import AuthorityEnvironment
from sefdispatch.services.job_errors import ErrorClass

logger = logging.getLogger(__name__)


class AuthorityError(Exception):
    """Base class for failures talking to the invoice authority."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthorityNetworkError(AuthorityError):
    pass


class AuthorityServerError(AuthorityError):
    pass


class AuthorityAuthenticationError(AuthorityError):
    pass


class AuthorityRateLimitError(AuthorityError):
    def __init__(self, message: str, *, retry_after: int = 60, status_code: int = 429):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class AuthorityValidationError(AuthorityError):
    def __init__(
        self,
        message: str,
        *,
        detail: Any = None,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, status_code=status_code)
        self.detail = detail
        self.error_code = error_code


_RETRYABLE = (AuthorityNetworkError, AuthorityServerError, AuthorityRateLimitError)


def classify_authority_error(exc: BaseException) -> ErrorClass:
    """Network, server and rate-limit failures are retryable; anything else is fatal."""
    if isinstance(exc, _RETRYABLE):
        return ErrorClass.RETRYABLE
    return ErrorClass.FATAL


@dataclass(frozen=True)
class SubmitResult:
    authority_id: str
    status: str
    raw: Dict[str, Any] = field(default_factory=dict)


def _retry_after(response: httpx.Response, default: int = 60) -> int:
    value = response.headers.get("retry-after")
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _error_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {"message": response.text}
    return data if isinstance(data, dict) else {"message": str(data)}


def raise_for_authority_status(response: httpx.Response) -> None:
    status = response.status_code
    if status < 400:
        return
    body = _error_body(response)
    message = body.get("message") or body.get("Message") or response.reason_phrase
    if status in (401, 403):
        raise AuthorityAuthenticationError(
            f"Authority rejected credentials: {message}", status_code=status
        )
    if status in (400, 422):
        raise AuthorityValidationError(
            message or "Document rejected",
            detail=body.get("errors") or body,
            error_code=body.get("code") or body.get("ErrorCode"),
            status_code=status,
        )
    if status == 429:
        raise AuthorityRateLimitError(
            "Authority rate limit exceeded", retry_after=_retry_after(response)
        )
    if status >= 500:
        raise AuthorityServerError(
            f"Authority server error {status}: {message}", status_code=status
        )
    raise AuthorityError(f"Authority request failed {status}: {message}", status_code=status)


class AuthorityClient:
    def __init__(
        self,
        api_key: str,
        *,
        environment: str = AuthorityEnvironment.DEMO.value,
        base_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        settings = get_settings()
        if not base_url:
            base_url = (
                settings.AUTHORITY_PRODUCTION_URL
                if environment == AuthorityEnvironment.PRODUCTION.value
                else settings.AUTHORITY_DEMO_URL
            )
        self.api_key = api_key
        self.environment = environment
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s if timeout_s is not None else settings.AUTHORITY_TIMEOUT_SECONDS
        self._transport = transport

    @classmethod
    def for_company(cls, company, **kwargs) -> "AuthorityClient":
        return cls(
            company.authority_api_key,
            environment=company.authority_environment or AuthorityEnvironment.DEMO.value,
            **kwargs,
        )

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout_s,
            headers={"ApiKey": self.api_key, "Accept": "application/json"},
            transport=self._transport,
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            with self._client() as client:
                resp = client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise AuthorityNetworkError(f"Authority request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise AuthorityNetworkError(f"Authority unreachable: {exc}") from exc
        logger.info(
            "Authority %s %s -> %s environment=%s",
            method,
            path,
            resp.status_code,
            self.environment,
        )
        raise_for_authority_status(resp)
        return resp

    def submit(self, document: str, *, request_id: Optional[str] = None) -> SubmitResult:
        """
        Upload a UBL sales invoice.

        ``request_id`` makes the upload idempotent on the authority side; a
        random one is generated when not provided.
        """
        resp = self._request(
            "POST",
            "/api/publicApi/sales-invoice/ubl",
            params={"requestId": request_id or str(uuid.uuid4()), "sendToCir": "No"},
            content=document.encode("utf-8"),
            headers={"Content-Type": "application/xml"},
        )
        data = resp.json()
        authority_id = data.get("SalesInvoiceId") or data.get("InvoiceId")
        if authority_id is None:
            raise AuthorityError("Authority response is missing an invoice id")
        return SubmitResult(
            authority_id=str(authority_id),
            status=str(data.get("Status") or "Sent"),
            raw=data,
        )

    def cancel(self, authority_id: str, reason: str) -> Dict[str, Any]:
        resp = self._request(
            "POST",
            "/api/publicApi/sales-invoice/cancel",
            json={
                "invoiceId": int(authority_id) if authority_id.isdigit() else authority_id,
                "cancelComments": reason,
            },
        )
        data = resp.json() if resp.content else {}
        return {"status": str(data.get("Status") or "Cancelled"), "raw": data}

    def get_status(self, authority_id: str) -> Dict[str, Any]:
        resp = self._request(
            "GET", "/api/publicApi/sales-invoice", params={"invoiceId": authority_id}
        )
        data = resp.json()
        return {
            "status": str(data.get("Status") or ""),
            "comment": data.get("Comment") or data.get("CancelComment"),
            "raw": data,
        }

    def health(self) -> bool:
        try:
            self._request("GET", "/api/health")
        except AuthorityError as exc:
            logger.warning("Authority health check failed: %s", exc)
            return False
        return True
