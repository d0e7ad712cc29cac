"""
Supply workflow configuration schema.

Frozen dataclasses describing every tunable of the workflow engine.  YAML
documents are parsed into these types by ``supply_config.loader``; runtime
code receives them through ``get_active_config()`` or constructor
injection and never reads files or environment variables itself.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal


# ---------------------------------------------------------------------------
# Procurement policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProcurementConfig:
    """
    Workflow policy for purchase requests, purchase orders and receipts.

    Field defaults are the hospital's standing rules; override per site in
    YAML.
    """

    min_inspectors: int = 3
    high_value_threshold: Decimal = Decimal("100000")
    reservation_expiry_days: int = 30
    fiscal_year_start_month: int = 10

    def __post_init__(self) -> None:
        if self.min_inspectors < 0:
            raise ValueError(f"min_inspectors must be >= 0, got {self.min_inspectors}")
        if self.reservation_expiry_days <= 0:
            raise ValueError(
                f"reservation_expiry_days must be > 0, got {self.reservation_expiry_days}"
            )
        if not 1 <= self.fiscal_year_start_month <= 12:
            raise ValueError(
                f"fiscal_year_start_month must be 1-12, got {self.fiscal_year_start_month}"
            )


# ---------------------------------------------------------------------------
# External budget ledger
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BudgetLedgerConfig:
    """Connection and retry policy for the budget ledger HTTP service."""

    base_url: str = "http://localhost:8080"
    timeout_seconds: float = 5.0
    max_retries: int = 3
    backoff_seconds: tuple[float, ...] = (1.0, 2.0, 4.0)
    retry_status_codes: tuple[int, ...] = (429, 502, 503, 504)

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {self.timeout_seconds}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.max_retries and len(self.backoff_seconds) == 0:
            raise ValueError("backoff_seconds must not be empty when retries are enabled")

    def backoff_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based); last value repeats."""
        index = min(retry_number, len(self.backoff_seconds)) - 1
        return self.backoff_seconds[index]


# ---------------------------------------------------------------------------
# Contract pricing cache
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PricingCacheConfig:
    """Time-to-live of contract price lookups, misses included."""

    ttl_seconds: int = 3600

    def __post_init__(self) -> None:
        if self.ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {self.ttl_seconds}")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection settings."""

    url: str = "sqlite:///supply.db"
    echo: bool = False
    pool_size: int = 20


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SupplyConfig:
    """The complete runtime configuration of the workflow engine."""

    procurement: ProcurementConfig = field(default_factory=ProcurementConfig)
    budget_ledger: BudgetLedgerConfig = field(default_factory=BudgetLedgerConfig)
    pricing_cache: PricingCacheConfig = field(default_factory=PricingCacheConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    source: str | None = None  # file the config was loaded from
