"""
Tests for the Contract Pricing Cache and the SQL contract catalog.

Covers:
- Hits, misses and cached "no contract" answers
- TTL expiry with a deterministic clock
- Per-vendor invalidation, including a clear racing with a lookup
- Pruning of expired entries
- Catalog failures are not cached
- Active contract lookup by vendor, item and date
"""

import threading
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from supply_modules.contracts.catalog import SqlContractCatalog
from supply_modules.contracts.orm import ContractItemModel, ContractModel
from supply_services.contract_pricing import ContractPricingCache


class CountingCatalog:
    """Catalog double that counts lookups."""

    def __init__(self, prices=None):
        self.prices = prices or {}
        self.lookups = 0
        self.fail = False

    def find_active_price(self, vendor_id, item_id, on_date):
        self.lookups += 1
        if self.fail:
            raise ConnectionError("catalog unavailable")
        return self.prices.get((vendor_id, item_id))


class TestContractPricingCache:

    def test_second_lookup_is_served_from_cache(self, clock):
        vendor, item = uuid4(), uuid4()
        catalog = CountingCatalog({(vendor, item): Decimal("42.50")})
        cache = ContractPricingCache(catalog, clock=clock, ttl_seconds=3600)

        assert cache.get_price(vendor, item) == Decimal("42.50")
        assert cache.get_price(vendor, item) == Decimal("42.50")

        assert catalog.lookups == 1

    def test_no_contract_is_cached(self, clock):
        catalog = CountingCatalog()
        cache = ContractPricingCache(catalog, clock=clock)
        vendor, item = uuid4(), uuid4()

        assert cache.get_price(vendor, item) is None
        assert cache.get_price(vendor, item) is None

        assert catalog.lookups == 1

    def test_entry_expires_after_ttl(self, clock):
        vendor, item = uuid4(), uuid4()
        catalog = CountingCatalog({(vendor, item): Decimal("10")})
        cache = ContractPricingCache(catalog, clock=clock, ttl_seconds=3600)
        cache.get_price(vendor, item)

        clock.advance(3599)
        cache.get_price(vendor, item)
        assert catalog.lookups == 1

        clock.advance(1)
        catalog.prices[(vendor, item)] = Decimal("11")
        assert cache.get_price(vendor, item) == Decimal("11")
        assert catalog.lookups == 2

    def test_clear_cache_drops_only_that_vendor(self, clock):
        vendor_a, vendor_b, item = uuid4(), uuid4(), uuid4()
        catalog = CountingCatalog()
        cache = ContractPricingCache(catalog, clock=clock)
        cache.get_price(vendor_a, item)
        cache.get_price(vendor_a, uuid4())
        cache.get_price(vendor_b, item)

        dropped = cache.clear_cache(vendor_a)

        assert dropped == 2
        assert len(cache) == 1
        cache.get_price(vendor_b, item)
        assert catalog.lookups == 3

    def test_catalog_error_propagates_and_is_not_cached(self, clock):
        catalog = CountingCatalog()
        catalog.fail = True
        cache = ContractPricingCache(catalog, clock=clock)

        with pytest.raises(ConnectionError):
            cache.get_price(uuid4(), uuid4())

        assert len(cache) == 0

    def test_clear_during_lookup_discards_the_old_answer(self, clock):
        vendor, item = uuid4(), uuid4()
        catalog = CountingCatalog({(vendor, item): Decimal("10")})
        cache = ContractPricingCache(catalog, clock=clock)
        real_lookup = catalog.find_active_price

        def lookup_racing_with_update(vendor_id, item_id, on_date):
            answer = real_lookup(vendor_id, item_id, on_date)
            if catalog.lookups == 1:
                catalog.prices[(vendor, item)] = Decimal("7")
                cache.clear_cache(vendor)
            return answer

        catalog.find_active_price = lookup_racing_with_update

        assert cache.get_price(vendor, item) == Decimal("10")
        assert len(cache) == 0
        assert cache.get_price(vendor, item) == Decimal("7")
        assert catalog.lookups == 2

    def test_expired_entries_are_pruned(self, clock):
        catalog = CountingCatalog()
        cache = ContractPricingCache(catalog, clock=clock, ttl_seconds=60)
        for _ in range(3):
            cache.get_price(uuid4(), uuid4())
        assert len(cache) == 3

        clock.advance(60)
        cache.get_price(uuid4(), uuid4())

        assert len(cache) == 1

    def test_concurrent_readers(self, clock):
        vendor, item = uuid4(), uuid4()
        catalog = CountingCatalog({(vendor, item): Decimal("5")})
        cache = ContractPricingCache(catalog, clock=clock)
        results = []

        def read():
            for _ in range(50):
                results.append(cache.get_price(vendor, item))

        threads = [threading.Thread(target=read) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert set(results) == {Decimal("5")}
        assert len(cache) == 1


class TestSqlContractCatalog:

    def _contract(self, session, actor_id, vendor_id, item_id, price, *,
                  status="ACTIVE", start=date(2024, 10, 1), end=date(2025, 9, 30)):
        contract = ContractModel(
            id=uuid4(),
            contract_number=f"C-{uuid4().hex[:8]}",
            vendor_id=vendor_id,
            status=status,
            start_date=start,
            end_date=end,
            created_by_id=actor_id,
        )
        contract.items.append(ContractItemModel(
            id=uuid4(),
            item_id=item_id,
            contract_price=Decimal(price),
            created_by_id=actor_id,
        ))
        session.add(contract)
        session.commit()
        return contract

    def test_active_price_found(self, session, session_factory, actor_id):
        vendor, item = uuid4(), uuid4()
        self._contract(session, actor_id, vendor, item, "12.34")

        price = SqlContractCatalog(session_factory).find_active_price(
            vendor, item, date(2025, 1, 15),
        )

        assert price == Decimal("12.34")

    def test_inactive_or_out_of_range_contracts_ignored(
        self, session, session_factory, actor_id,
    ):
        vendor, item = uuid4(), uuid4()
        self._contract(session, actor_id, vendor, item, "9", status="EXPIRED")
        self._contract(
            session, actor_id, vendor, item, "8",
            start=date(2023, 1, 1), end=date(2023, 12, 31),
        )
        catalog = SqlContractCatalog(session_factory)

        assert catalog.find_active_price(vendor, item, date(2025, 1, 15)) is None
        assert catalog.find_active_price(uuid4(), item, date(2025, 1, 15)) is None

    def test_latest_started_contract_wins(self, session, session_factory, actor_id):
        vendor, item = uuid4(), uuid4()
        self._contract(session, actor_id, vendor, item, "20", start=date(2024, 10, 1))
        self._contract(session, actor_id, vendor, item, "18", start=date(2025, 1, 1))

        price = SqlContractCatalog(session_factory).find_active_price(
            vendor, item, date(2025, 1, 15),
        )

        assert price == Decimal("18")

    def test_contract_dto_effective_window(self, session, actor_id):
        vendor, item = uuid4(), uuid4()
        contract = self._contract(session, actor_id, vendor, item, "7.50")

        dto = contract.to_dto()

        assert dto.is_effective_on(date(2025, 1, 15))
        assert not dto.is_effective_on(date(2025, 10, 1))
        assert [i.item_id for i in dto.items] == [item]
        assert dto.items[0].contract_price == Decimal("7.50")
