"""Purchase discovery: one lazy stream over the four provider queries."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Iterable, Iterator

from incentivly.constants import ProductType, PurchaseSource
from incentivly.provider import BillingResponseCode, ProviderError
from incentivly.purchase import PurchaseRecord

if TYPE_CHECKING:
    from incentivly.provider import BillingProvider, PurchaseUpdate

logger = logging.getLogger(__name__)

# Active purchases first, then history as a fallback for anything the
# active queries no longer return.
DISCOVERY_QUERIES: tuple[tuple[PurchaseSource, ProductType], ...] = (
    (PurchaseSource.ACTIVE, ProductType.SUBSCRIPTION),
    (PurchaseSource.ACTIVE, ProductType.ONE_TIME),
    (PurchaseSource.HISTORY, ProductType.SUBSCRIPTION),
    (PurchaseSource.HISTORY, ProductType.ONE_TIME),
)


def normalize_purchases(
    raw: Iterable[dict[str, Any]],
    source: PurchaseSource,
    product_type: ProductType | None = None,
) -> Iterator[PurchaseRecord]:
    """Convert raw provider JSON into records, dropping unusable entries."""
    for data in raw:
        record = PurchaseRecord.from_provider(data, source, product_type)
        if record is not None:
            yield record


async def _run_query(
    provider: BillingProvider,
    source: PurchaseSource,
    product_type: ProductType,
) -> list[dict[str, Any]]:
    if source is PurchaseSource.ACTIVE:
        return await provider.query_purchases(product_type)
    return await provider.query_purchase_history(product_type)


async def discover_purchases(
    provider: BillingProvider,
) -> AsyncIterator[PurchaseRecord]:
    """Yield every purchase the provider currently knows about.

    Each call re-queries the provider. A failing query is logged and
    contributes no records; the remaining queries still run. Records are not
    deduplicated across queries; the ledger decides what gets reported.
    """
    for source, product_type in DISCOVERY_QUERIES:
        try:
            raw = await _run_query(provider, source, product_type)
        except ProviderError as exc:
            logger.error(
                "%s %s query failed: %s", source.value, product_type.value, exc,
            )
            continue
        except Exception:
            logger.exception(
                "%s %s query raised unexpectedly.", source.value, product_type.value,
            )
            continue

        for record in normalize_purchases(raw or [], source, product_type):
            yield record


def records_from_update(update: PurchaseUpdate) -> list[PurchaseRecord]:
    """Records carried by a push update; empty for cancellations and errors."""
    if update.response_code == BillingResponseCode.OK:
        return list(normalize_purchases(update.purchases, PurchaseSource.ACTIVE))
    if update.response_code != BillingResponseCode.USER_CANCELED:
        logger.error(
            "Purchase update error: %s",
            ProviderError(update.response_code, update.debug_message),
        )
    return []
