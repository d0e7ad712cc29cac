"""
Configuration Loader (``supply_config.loader``).

Responsibility
--------------
Loads a YAML configuration document and parses it into the typed
``supply_config.schema`` dataclasses.  Runtime callers use
``supply_config.get_active_config()``; this module is the parsing layer
underneath it (and is used directly by tests).

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Money-like values are parsed to ``Decimal`` through ``str`` -- never float.
* Unknown keys are rejected so a typo cannot silently fall back to a default.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown section or key  -> ``ValueError``.
* Out-of-range values  -> ``ValueError`` from the schema ``__post_init__``.
"""

from __future__ import annotations

from dataclasses import fields
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from supply_config.schema import (
    BudgetLedgerConfig,
    DatabaseConfig,
    PricingCacheConfig,
    ProcurementConfig,
    SupplyConfig,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _check_keys(section: str, data: dict[str, Any], cls: type) -> None:
    allowed = {f.name for f in fields(cls)}
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(
            f"Unknown key(s) in '{section}': {', '.join(sorted(unknown))}"
        )


def parse_procurement(data: dict[str, Any]) -> ProcurementConfig:
    """Parse a ``ProcurementConfig`` from a dict."""
    _check_keys("procurement", data, ProcurementConfig)
    values = dict(data)
    if "high_value_threshold" in values:
        values["high_value_threshold"] = Decimal(str(values["high_value_threshold"]))
    return ProcurementConfig(**values)


def parse_budget_ledger(data: dict[str, Any]) -> BudgetLedgerConfig:
    """Parse a ``BudgetLedgerConfig`` from a dict."""
    _check_keys("budget_ledger", data, BudgetLedgerConfig)
    values = dict(data)
    if "backoff_seconds" in values:
        values["backoff_seconds"] = tuple(float(v) for v in values["backoff_seconds"])
    if "retry_status_codes" in values:
        values["retry_status_codes"] = tuple(int(v) for v in values["retry_status_codes"])
    if "timeout_seconds" in values:
        values["timeout_seconds"] = float(values["timeout_seconds"])
    return BudgetLedgerConfig(**values)


def parse_pricing_cache(data: dict[str, Any]) -> PricingCacheConfig:
    """Parse a ``PricingCacheConfig`` from a dict."""
    _check_keys("pricing_cache", data, PricingCacheConfig)
    return PricingCacheConfig(**data)


def parse_database(data: dict[str, Any]) -> DatabaseConfig:
    """Parse a ``DatabaseConfig`` from a dict."""
    _check_keys("database", data, DatabaseConfig)
    return DatabaseConfig(**data)


_SECTIONS = {
    "procurement": parse_procurement,
    "budget_ledger": parse_budget_ledger,
    "pricing_cache": parse_pricing_cache,
    "database": parse_database,
}


def parse_config(data: dict[str, Any], source: str | None = None) -> SupplyConfig:
    """
    Parse a complete ``SupplyConfig`` from a dict.

    Missing sections take their schema defaults.
    """
    unknown = set(data) - set(_SECTIONS)
    if unknown:
        raise ValueError(
            f"Unknown configuration section(s): {', '.join(sorted(unknown))}"
        )
    parsed = {
        name: parser(data.get(name) or {})
        for name, parser in _SECTIONS.items()
    }
    return SupplyConfig(source=source, **parsed)


def load_config(path: Path) -> SupplyConfig:
    """Load and parse the YAML configuration at ``path``."""
    return parse_config(load_yaml_file(path), source=str(path))
