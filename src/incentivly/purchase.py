"""PurchaseRecord — immutable snapshot of one provider purchase."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from incentivly.constants import ProductType, PurchaseSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseRecord:
    """One purchase as seen by the billing provider.

    ``token`` is the dedup key. Records are consumed by value; the same
    token may legitimately appear from both ACTIVE and HISTORY queries.
    """

    token: str
    product_id: str
    purchase_time_millis: int
    source: PurchaseSource
    product_type: ProductType | None = None
    order_id: str | None = None
    product_ids: tuple[str, ...] = ()

    @classmethod
    def from_provider(
        cls,
        data: Mapping[str, Any],
        source: PurchaseSource,
        product_type: ProductType | None = None,
    ) -> PurchaseRecord | None:
        """Normalize the provider's purchase JSON.

        Accepts ``productIds`` (list) or the legacy single ``productId``.
        Returns None when the token or product is missing.
        """
        token = data.get("purchaseToken")
        if not isinstance(token, str) or not token:
            logger.warning("Dropping %s purchase without a purchase token.", source.value)
            return None

        raw_ids = data.get("productIds")
        if isinstance(raw_ids, (list, tuple)):
            product_ids = tuple(str(p) for p in raw_ids if p)
        elif data.get("productId"):
            product_ids = (str(data["productId"]),)
        else:
            product_ids = ()
        if not product_ids:
            logger.warning("Dropping purchase %s without a product id.", token)
            return None

        try:
            purchase_time = int(data.get("purchaseTime", 0))
        except (TypeError, ValueError):
            purchase_time = 0

        order_id = data.get("orderId")
        return cls(
            token=token,
            product_id=product_ids[0],
            purchase_time_millis=purchase_time,
            source=source,
            product_type=product_type,
            order_id=str(order_id) if order_id else None,
            product_ids=product_ids,
        )
