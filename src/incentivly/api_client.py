"""Async HTTP client for the Incentivly backend API."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, TypeVar

import httpx

from incentivly.constants import DEFAULT_BASE_URL
from incentivly.sdk_logging import log_request, log_response


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class IncentivlyAPIError(Exception):
    """Base exception for Incentivly API operations."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class IncentivlyServerError(IncentivlyAPIError):
    """Non-2xx response from the backend."""


class IncentivlyConnectionError(IncentivlyAPIError):
    """Network/DNS/socket failure (retryable)."""


class IncentivlyTimeoutError(IncentivlyAPIError):
    """Request timeout (retryable)."""


class IncentivlyDecodeError(IncentivlyAPIError):
    """2xx response whose body is not the expected JSON payload."""


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


def _opt_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


def _opt_int(data: dict[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return value


def _success(data: dict[str, Any]) -> bool:
    value = data.get("success")
    if not isinstance(value, bool):
        raise ValueError("success must be a boolean")
    return value


@dataclass(frozen=True)
class UserRegistrationResponse:
    success: bool
    user_identifier: str | None = None
    influencer_id: str | None = None
    referral_id: str | None = None
    message: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserRegistrationResponse:
        return cls(
            success=_success(data),
            user_identifier=_opt_str(data, "userIdentifier"),
            influencer_id=_opt_str(data, "influencerId"),
            referral_id=_opt_str(data, "referralId"),
            message=_opt_str(data, "message"),
        )


@dataclass(frozen=True)
class UpdateUserIdentifierResponse:
    success: bool
    message: str | None = None
    registrations_updated: int | None = None
    payments_updated: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UpdateUserIdentifierResponse:
        return cls(
            success=_success(data),
            message=_opt_str(data, "message"),
            registrations_updated=_opt_int(data, "registrationsUpdated"),
            payments_updated=_opt_int(data, "paymentsUpdated"),
        )


@dataclass(frozen=True)
class PaymentReportResponse:
    success: bool
    message: str | None = None
    payment_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PaymentReportResponse:
        return cls(
            success=_success(data),
            message=_opt_str(data, "message"),
            payment_id=_opt_str(data, "paymentId"),
        )


T = TypeVar("T")


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class IncentivlyClient:
    """Async client for the Incentivly revenue-sharing API.

    Settings come in through the constructor only. Every call is
    a JSON POST; the client never retries (retry policy belongs to the
    reconciliation ledger).
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        connect_timeout: float = 30.0,
        read_timeout: float = 60.0,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(
                connect=connect_timeout,
                read=read_timeout,
                write=connect_timeout,
                pool=5.0,
            ),
        )

    @property
    def base_url(self) -> str:
        return str(self._client.base_url).rstrip("/")

    # -- internal request dispatcher -----------------------------------------

    async def _post(
        self,
        endpoint: str,
        payload: dict[str, Any],
        decode: Callable[[dict[str, Any]], T],
    ) -> T:
        """POST ``payload`` and decode the body, mapping failures to the hierarchy."""
        url = f"{self.base_url}{endpoint}"
        log_request("POST", url, dict(self._client.headers), payload)
        try:
            response = await self._client.request("POST", endpoint, json=payload)
        except httpx.TimeoutException as exc:
            log_response(None, error=exc)
            raise IncentivlyTimeoutError(str(exc) or "request timed out") from exc
        except httpx.TransportError as exc:
            log_response(None, error=exc)
            raise IncentivlyConnectionError(str(exc) or "connection failed") from exc

        body = response.text
        log_response(response.status_code, dict(response.headers), body)

        if not 200 <= response.status_code < 300:
            raise IncentivlyServerError(
                f"Server error: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError("response body is not a JSON object")
            return decode(data)
        except ValueError as exc:
            raise IncentivlyDecodeError(
                f"Failed to decode response: {exc}",
                status_code=response.status_code,
            ) from exc

    # -- public API methods ---------------------------------------------------

    async def register_user(
        self, dev_key: str, user_identifier: str | None = None,
    ) -> UserRegistrationResponse:
        """POST /register-user — register this installation."""
        payload: dict[str, Any] = {"devKey": dev_key}
        if user_identifier is not None:
            payload["userIdentifier"] = user_identifier
        return await self._post(
            "/register-user", payload, UserRegistrationResponse.from_dict,
        )

    async def update_user_identifier(
        self,
        current_user_identifier: str,
        new_user_identifier: str,
        dev_key: str,
    ) -> UpdateUserIdentifierResponse:
        """POST /update-user-identifier — move registrations/payments to a new id."""
        payload = {
            "currentUserIdentifier": current_user_identifier,
            "newUserIdentifier": new_user_identifier,
            "devKey": dev_key,
        }
        return await self._post(
            "/update-user-identifier", payload, UpdateUserIdentifierResponse.from_dict,
        )

    async def report_payment(
        self,
        user_identifier: str,
        product_id: str,
        purchase_token: str,
        order_id: str | None,
        dev_key: str,
    ) -> PaymentReportResponse:
        """POST /report-payment — report one purchase, keyed by its token.

        The backend names the token field ``iosTransactionId`` for both
        platforms.
        """
        payload = {
            "userIdentifier": user_identifier,
            "productId": product_id,
            "iosTransactionId": purchase_token,
            "androidOrderId": order_id or "",
            "devKey": dev_key,
        }
        return await self._post(
            "/report-payment", payload, PaymentReportResponse.from_dict,
        )

    # -- lifecycle ------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> IncentivlyClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
