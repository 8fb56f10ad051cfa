"""Typed errors surfaced by the public SDK operations."""

from __future__ import annotations

from enum import Enum


class RegistrationErrorReason(str, Enum):
    NOT_REGISTERED = "not_registered"
    DEV_KEY_MISSING = "dev_key_missing"


class ReportFailureReason(str, Enum):
    SERVER_REJECTED = "server_rejected"
    SERVER_ERROR = "server_error"
    TRANSPORT_ERROR = "transport_error"
    DECODING_ERROR = "decoding_error"
    ALREADY_PROCESSED = "already_processed"


_REGISTRATION_MESSAGES = {
    RegistrationErrorReason.NOT_REGISTERED: "User must be registered first.",
    RegistrationErrorReason.DEV_KEY_MISSING: (
        "Developer key not found. Please register user first."
    ),
}


class IncentivlyError(Exception):
    """Base exception for SDK operations."""


class RegistrationError(IncentivlyError):
    """Identity preconditions failed (no identifier or no dev key stored)."""

    def __init__(self, reason: RegistrationErrorReason) -> None:
        super().__init__(_REGISTRATION_MESSAGES[reason])
        self.reason = reason


class ReportError(IncentivlyError):
    """A payment report did not succeed."""

    def __init__(
        self,
        reason: ReportFailureReason,
        status_code: int | None = None,
        message: str | None = None,
    ) -> None:
        detail = message or reason.value.replace("_", " ")
        if status_code is not None:
            detail = f"{detail} (HTTP {status_code})"
        super().__init__(detail)
        self.reason = reason
        self.status_code = status_code


class LedgerError(IncentivlyError):
    """Persisted ledger state could not be parsed.

    Raised by the ledger parsers and caught by the loader, which falls back
    to an empty collection. Never reaches SDK callers.
    """
