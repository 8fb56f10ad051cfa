"""Incentivly SDK — revenue sharing for in-app purchases.

Reconciles the billing provider's purchases with the Incentivly ledger,
reporting every purchase token at most once.
"""

__version__ = "0.1.0"

from incentivly.sdk_logging import set_logging_enabled, is_logging_enabled
from incentivly.config import IncentivlyConfig
from incentivly.constants import ProductType, PurchaseSource, MAX_REPORT_ATTEMPTS
from incentivly.errors import (
    IncentivlyError,
    RegistrationError,
    RegistrationErrorReason,
    ReportError,
    ReportFailureReason,
    LedgerError,
)
from incentivly.api_client import (
    IncentivlyClient,
    IncentivlyAPIError,
    PaymentReportResponse,
    UpdateUserIdentifierResponse,
    UserRegistrationResponse,
)
from incentivly.ledger import TransactionLedger, LedgerEntry, LedgerState
from incentivly.ledger_store import LedgerStore
from incentivly.store import Store
from incentivly.stores import JsonFileStore, MemoryStore
from incentivly.purchase import PurchaseRecord
from incentivly.provider import BillingProvider, BillingResponseCode, ProviderError, PurchaseUpdate
from incentivly.discovery import discover_purchases
from incentivly.registration import RegistrationContext
from incentivly.reporting import PaymentReporter, ReportSuccess, ReportFailure
from incentivly.reconciler import PurchaseReconciler, ConnectionState, PassSummary
from incentivly.sdk import IncentivlySDK

__all__ = [
    "IncentivlySDK",
    "IncentivlyConfig",
    "IncentivlyClient",
    "IncentivlyError",
    "IncentivlyAPIError",
    "RegistrationError",
    "RegistrationErrorReason",
    "ReportError",
    "ReportFailureReason",
    "LedgerError",
    "PaymentReportResponse",
    "UpdateUserIdentifierResponse",
    "UserRegistrationResponse",
    "TransactionLedger",
    "LedgerEntry",
    "LedgerState",
    "LedgerStore",
    "Store",
    "JsonFileStore",
    "MemoryStore",
    "PurchaseRecord",
    "BillingProvider",
    "BillingResponseCode",
    "ProviderError",
    "PurchaseUpdate",
    "discover_purchases",
    "RegistrationContext",
    "PaymentReporter",
    "ReportSuccess",
    "ReportFailure",
    "PurchaseReconciler",
    "ConnectionState",
    "PassSummary",
    "ProductType",
    "PurchaseSource",
    "MAX_REPORT_ATTEMPTS",
    "set_logging_enabled",
    "is_logging_enabled",
]
