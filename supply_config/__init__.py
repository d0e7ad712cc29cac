"""
supply_config -- single public entrypoint for workflow configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component may read configuration
    files or environment variables directly.

Architecture position:
    Configuration -- YAML-driven settings.  This package sits above
    ``supply_kernel`` and below ``supply_services`` / ``supply_modules``.
    The kernel MUST NEVER import from ``supply_config``.

Resolution order:
    1. ``config_path`` argument, else ``SUPPLY_CONFIG_PATH``, else the
       packaged ``defaults.yaml``.
    2. ``SUPPLY_BUDGET_LEDGER_URL`` overrides ``budget_ledger.base_url``.
    3. ``SUPPLY_DATABASE_URL`` overrides ``database.url``.

Failure modes:
    - ``FileNotFoundError`` -- the configured path does not exist.
    - ``ValueError`` -- unknown keys or out-of-range values.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``SUPPLY_CONFIG_TRACE`` log entry naming the source file and the
    policy values in force.
"""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path

from supply_config.loader import load_config, parse_config
from supply_config.schema import (
    BudgetLedgerConfig,
    DatabaseConfig,
    PricingCacheConfig,
    ProcurementConfig,
    SupplyConfig,
)
from supply_kernel.logging_config import get_logger

_logger = get_logger("config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"

CONFIG_PATH_ENV = "SUPPLY_CONFIG_PATH"
LEDGER_URL_ENV = "SUPPLY_BUDGET_LEDGER_URL"
DATABASE_URL_ENV = "SUPPLY_DATABASE_URL"


def get_active_config(
    config_path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> SupplyConfig:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: Explicit YAML file; wins over ``SUPPLY_CONFIG_PATH``.
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        SupplyConfig with environment overrides applied.
    """
    env = os.environ if environ is None else environ

    path = config_path or (
        Path(env[CONFIG_PATH_ENV]) if env.get(CONFIG_PATH_ENV) else DEFAULT_CONFIG_PATH
    )
    config = load_config(path)

    ledger_url = env.get(LEDGER_URL_ENV)
    if ledger_url:
        config = dataclasses.replace(
            config,
            budget_ledger=dataclasses.replace(config.budget_ledger, base_url=ledger_url),
        )
    database_url = env.get(DATABASE_URL_ENV)
    if database_url:
        config = dataclasses.replace(
            config,
            database=dataclasses.replace(config.database, url=database_url),
        )

    _logger.info(
        "SUPPLY_CONFIG_TRACE",
        extra={
            "trace_type": "SUPPLY_CONFIG_TRACE",
            "source": config.source,
            "min_inspectors": config.procurement.min_inspectors,
            "high_value_threshold": str(config.procurement.high_value_threshold),
            "reservation_expiry_days": config.procurement.reservation_expiry_days,
            "ledger_base_url": config.budget_ledger.base_url,
            "ledger_timeout_seconds": config.budget_ledger.timeout_seconds,
            "ledger_max_retries": config.budget_ledger.max_retries,
            "pricing_ttl_seconds": config.pricing_cache.ttl_seconds,
        },
    )
    return config


__all__ = [
    "BudgetLedgerConfig",
    "DatabaseConfig",
    "PricingCacheConfig",
    "ProcurementConfig",
    "SupplyConfig",
    "get_active_config",
    "load_config",
    "parse_config",
]
