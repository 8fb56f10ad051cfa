"""Constants for Incentivly purchase reconciliation."""

from enum import Enum


DEFAULT_BASE_URL = "https://incentivly.com/api"
DEFAULT_NAMESPACE = "incentivly_prefs"

MAX_REPORT_ATTEMPTS = 5  # failed reports before a token is given up on
POLL_INTERVAL_SECS = 1.0
RECONNECT_DELAY_SECS = 2.0

# Store keys (one namespace per installation)
KEY_USER_IDENTIFIER = "Incentivly_UserIdentifier"
KEY_IS_REGISTERED = "Incentivly_IsRegistered"
KEY_DEV_KEY = "Incentivly_DevKey"
KEY_PROCESSED_TRANSACTIONS = "Incentivly_ProcessedTransactions"
KEY_REPORT_ATTEMPTS = "Incentivly_TransactionReportAttempts"


class ProductType(str, Enum):
    """Billing product types the SDK reconciles."""

    SUBSCRIPTION = "subs"
    ONE_TIME = "inapp"


class PurchaseSource(str, Enum):
    """Which provider query a purchase record came from."""

    ACTIVE = "active"
    HISTORY = "history"
