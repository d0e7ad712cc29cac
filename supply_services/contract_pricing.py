"""
Contract Pricing Cache (``supply_services.contract_pricing``).

Responsibility
--------------
Resolve the contract price of an item from a vendor, caching every answer
(including "no active contract") for a fixed time-to-live so that sending
a PO with many lines does not hit the contract tables once per line.

Architecture position
---------------------
**Services layer** -- a long-lived, process-wide component.  Its lifetime
is owned by ``WorkflowRegistry``; there is no module-level instance.

Invariants enforced
-------------------
* Entries expire ``ttl_seconds`` after they were loaded (injected clock).
* ``clear_cache(vendor_id)`` is the only external invalidation and drops
  every entry of that vendor.  It also bumps the vendor generation, so a
  lookup that was in flight during the clear does not store its answer.
* Expired entries are pruned whenever a miss is stored.
* All cache state is guarded by one lock; catalog lookups run outside it,
  so a slow lookup never blocks readers of other keys.

Failure modes
-------------
* Catalog errors propagate to the caller and nothing is cached.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from supply_kernel.domain.clock import Clock, SystemClock
from supply_kernel.logging_config import get_logger
from supply_services.collaborators import ContractCatalog

logger = get_logger("services.contract_pricing")


@dataclass(frozen=True)
class _CacheEntry:
    price: Decimal | None
    expires_at: datetime


class ContractPricingCache:
    """
    Thread-safe TTL cache in front of a ``ContractCatalog``.

    Guarantees:
        - ``get_price`` returns the catalog answer as of at most
          ``ttl_seconds`` ago.
        - A cached ``None`` is honoured like any other value.
    """

    def __init__(
        self,
        catalog: ContractCatalog,
        clock: Clock | None = None,
        ttl_seconds: int = 3600,
    ):
        self._catalog = catalog
        self._clock = clock or SystemClock()
        self._ttl = timedelta(seconds=ttl_seconds)
        self._entries: dict[tuple[UUID, UUID], _CacheEntry] = {}
        self._generations: dict[UUID, int] = {}
        self._lock = threading.Lock()

    def get_price(self, vendor_id: UUID, item_id: UUID) -> Decimal | None:
        """Contract price for (vendor, item), or None when no active contract."""
        key = (vendor_id, item_id)
        now = self._clock.now()

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > now:
                logger.debug(
                    "contract_price_cache_hit",
                    extra={"vendor_id": str(vendor_id), "item_id": str(item_id)},
                )
                return entry.price
            generation = self._generations.get(vendor_id, 0)

        price = self._catalog.find_active_price(vendor_id, item_id, now.date())

        with self._lock:
            self._prune_expired(now)
            stored = self._generations.get(vendor_id, 0) == generation
            if stored:
                self._entries[key] = _CacheEntry(price=price, expires_at=now + self._ttl)

        logger.info(
            "contract_price_cache_miss",
            extra={
                "vendor_id": str(vendor_id),
                "item_id": str(item_id),
                "price": str(price) if price is not None else None,
                "stored": stored,
            },
        )
        return price

    def clear_cache(self, vendor_id: UUID) -> int:
        """Drop every cached entry of ``vendor_id``; returns how many were dropped."""
        with self._lock:
            # Lookups started before this point must not store their answer.
            self._generations[vendor_id] = self._generations.get(vendor_id, 0) + 1
            keys = [k for k in self._entries if k[0] == vendor_id]
            for key in keys:
                del self._entries[key]
        logger.info(
            "contract_price_cache_cleared",
            extra={"vendor_id": str(vendor_id), "entries_dropped": len(keys)},
        )
        return len(keys)

    def _prune_expired(self, now: datetime) -> None:
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for key in expired:
            del self._entries[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

