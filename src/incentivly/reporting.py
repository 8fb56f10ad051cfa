"""Idempotent payment reporting with outcome classification.

``PaymentReporter.report()`` performs exactly one remote call and turns
every result into a ``ReportSuccess`` or ``ReportFailure`` value. It never
raises for remote failures and never touches the ledger; the caller
applies ``mark_reported`` / ``add_attempt``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

from incentivly.api_client import (
    IncentivlyClient,
    IncentivlyConnectionError,
    IncentivlyDecodeError,
    IncentivlyServerError,
    IncentivlyTimeoutError,
)
from incentivly.errors import ReportError, ReportFailureReason
from incentivly.registration import RegistrationContext, require_identity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReportSuccess:
    payment_id: str | None = None


@dataclass(frozen=True)
class ReportFailure:
    reason: ReportFailureReason
    status_code: int | None = None
    message: str | None = None

    def to_error(self) -> ReportError:
        return ReportError(self.reason, self.status_code, self.message)


ReportOutcome = Union[ReportSuccess, ReportFailure]


class PaymentReporter:
    """Reports purchases to the backend through an ``IncentivlyClient``."""

    def __init__(self, client: IncentivlyClient) -> None:
        self._client = client

    async def report(
        self,
        token: str,
        product_id: str,
        context: RegistrationContext,
        order_id: str | None = None,
    ) -> ReportOutcome:
        """Report one purchase. Preconditions (registered, processable) are the caller's."""
        user_identifier, dev_key = require_identity(context)

        try:
            response = await self._client.report_payment(
                user_identifier, product_id, token, order_id, dev_key,
            )
        except IncentivlyServerError as e:
            outcome: ReportOutcome = ReportFailure(
                ReportFailureReason.SERVER_ERROR, status_code=e.status_code, message=str(e),
            )
        except (IncentivlyConnectionError, IncentivlyTimeoutError) as e:
            outcome = ReportFailure(ReportFailureReason.TRANSPORT_ERROR, message=str(e))
        except IncentivlyDecodeError as e:
            outcome = ReportFailure(
                ReportFailureReason.DECODING_ERROR, status_code=e.status_code, message=str(e),
            )
        else:
            if response.success:
                logger.info(
                    "Payment reported successfully with ID: %s",
                    response.payment_id or "unknown",
                )
                return ReportSuccess(payment_id=response.payment_id)
            outcome = ReportFailure(
                ReportFailureReason.SERVER_REJECTED, message=response.message,
            )

        logger.warning(
            "Failed to report payment for %s (token: %s): %s",
            product_id, token, outcome.reason.value,
        )
        return outcome
