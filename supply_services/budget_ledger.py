"""
Budget Ledger Client (``supply_services.budget_ledger``).

All outbound HTTP calls to the external budget ledger go through this class.
Orchestrators never call ``requests`` directly.

Operations (``POST {base_url}/budget/<operation>``):

    check-availability   funds left for department / budget type / quarter
    reserve              hold funds for a submitted purchase request
    commit               convert a PR reservation into a PO commitment
    release-reservation  drop a PR hold (idempotent)
    release-commitment   drop a PO commitment (idempotent)

Retry policy (``BudgetLedgerConfig``):
  - Timeout per attempt: 5 s
  - Up to 3 retries with backoff 1 s, 2 s, 4 s
  - Retried: timeouts, connection errors, 429 / 502 / 503 / 504
  - Not retried: any other non-2xx (a definitive answer)

Outcome classification:
  - 2xx                                        -> parsed result
  - release + 404 / 410 / ALREADY_RELEASED      -> ReleaseResult(already_released=True)
  - 409 INSUFFICIENT_FUNDS                      -> BudgetError (available/requested/shortage)
  - every attempt timed out                     -> BudgetTimeoutError
  - anything else                               -> BudgetAPIError (status, body, attempts)

Every attempt and every outcome is logged with the operation name, the
attempt number and the latency.

Testability: pass a ``requests.Session`` double and a no-op ``sleep``.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

import requests

from supply_config.schema import BudgetLedgerConfig
from supply_kernel.exceptions import BudgetAPIError, BudgetError, BudgetTimeoutError
from supply_kernel.logging_config import get_logger

logger = get_logger("services.budget_ledger")

CHECK_AVAILABILITY = "check-availability"
RESERVE = "reserve"
COMMIT = "commit"
RELEASE_RESERVATION = "release-reservation"
RELEASE_COMMITMENT = "release-commitment"

_RELEASE_OPERATIONS = frozenset({RELEASE_RESERVATION, RELEASE_COMMITMENT})
_ALREADY_RELEASED_STATUS = frozenset({404, 410})


@dataclass(frozen=True)
class AvailabilityResult:
    """Ledger answer to an availability check."""
    available: bool
    available_amount: Decimal
    requested_amount: Decimal

    @property
    def shortage(self) -> Decimal:
        return max(self.requested_amount - self.available_amount, Decimal("0"))


@dataclass(frozen=True)
class ReservationResult:
    reservation_id: str | None
    amount: Decimal


@dataclass(frozen=True)
class CommitmentResult:
    commitment_id: str | None
    amount: Decimal


@dataclass(frozen=True)
class ReleaseResult:
    released_amount: Decimal
    already_released: bool = False


def _encode(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items() if v is not None}
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _decimal(value: Any, default: str = "0") -> Decimal:
    if value is None:
        return Decimal(default)
    return Decimal(str(value))


def _body_of(resp: requests.Response) -> Any:
    try:
        return resp.json() if resp.content else {}
    except ValueError:
        return resp.text[:500]


def _error_code(body: Any) -> str | None:
    if isinstance(body, dict):
        code = body.get("code") or body.get("error")
        if isinstance(code, str):
            return code
    return None


class BudgetLedgerClient:
    """
    Resilient client for the budget ledger HTTP API.

    Contract:
        Each public method performs ONE logical ledger operation; retries
        reuse the same ``Idempotency-Key`` header so the ledger can
        deduplicate a request that timed out after it was applied.
    """

    def __init__(
        self,
        config: BudgetLedgerConfig,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._session = session
        self._sleep = sleep

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    @property
    def config(self) -> BudgetLedgerConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def check_availability(
        self,
        *,
        department_id: UUID | None,
        budget_type_id: UUID | None,
        fiscal_year: int,
        quarter: int,
        amount: Decimal,
    ) -> AvailabilityResult:
        data = self._call(CHECK_AVAILABILITY, {
            "department_id": department_id,
            "budget_type_id": budget_type_id,
            "fiscal_year": fiscal_year,
            "quarter": quarter,
            "amount": amount,
        })
        result = AvailabilityResult(
            available=bool(data.get("available", False)),
            available_amount=_decimal(data.get("available_amount")),
            requested_amount=amount,
        )
        logger.info(
            "budget_availability_checked",
            extra={
                "available": result.available,
                "available_amount": str(result.available_amount),
                "requested_amount": str(amount),
            },
        )
        return result

    def reserve(
        self,
        *,
        purchase_request_id: UUID,
        amount: Decimal,
        department_id: UUID | None,
        budget_type_id: UUID | None,
        fiscal_year: int,
        quarter: int,
        expires_at: datetime,
    ) -> ReservationResult:
        data = self._call(RESERVE, {
            "purchase_request_id": purchase_request_id,
            "amount": amount,
            "department_id": department_id,
            "budget_type_id": budget_type_id,
            "fiscal_year": fiscal_year,
            "quarter": quarter,
            "expires_at": expires_at,
        })
        return ReservationResult(
            reservation_id=data.get("reservation_id"),
            amount=_decimal(data.get("amount"), str(amount)),
        )

    def commit(
        self,
        *,
        purchase_request_id: UUID,
        purchase_order_id: UUID,
        amount: Decimal,
    ) -> CommitmentResult:
        data = self._call(COMMIT, {
            "purchase_request_id": purchase_request_id,
            "purchase_order_id": purchase_order_id,
            "amount": amount,
        })
        return CommitmentResult(
            commitment_id=data.get("commitment_id"),
            amount=_decimal(data.get("amount"), str(amount)),
        )

    def release_reservation(self, *, purchase_request_id: UUID) -> ReleaseResult:
        data = self._call(RELEASE_RESERVATION, {
            "purchase_request_id": purchase_request_id,
        })
        return ReleaseResult(
            released_amount=_decimal(data.get("released_amount")),
            already_released=bool(data.get("already_released", False)),
        )

    def release_commitment(self, *, purchase_order_id: UUID) -> ReleaseResult:
        data = self._call(RELEASE_COMMITMENT, {
            "purchase_order_id": purchase_order_id,
        })
        return ReleaseResult(
            released_amount=_decimal(data.get("released_amount")),
            already_released=bool(data.get("already_released", False)),
        )

    # -------------------------------------------------------------------------
    # Core request dispatcher
    # -------------------------------------------------------------------------

    def _url(self, operation: str) -> str:
        return f"{self._config.base_url.rstrip('/')}/budget/{operation}"

    def _call(self, operation: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST with retries; returns the parsed 2xx body or raises."""
        url = self._url(operation)
        body = _encode(payload)
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Idempotency-Key": str(uuid4()),
        }
        timeout = self._config.timeout_seconds
        max_attempts = self._config.max_retries + 1

        timeouts = 0
        last_status: int | None = None
        last_body: Any = None
        last_error = "no attempt made"

        for attempt in range(1, max_attempts + 1):
            t0 = time.perf_counter()
            try:
                resp = self.session.post(url, json=body, headers=headers, timeout=timeout)
            except requests.Timeout:
                timeouts += 1
                last_error = f"timed out after {timeout}s"
                logger.warning(
                    "budget_ledger_attempt_timeout",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "timeout_seconds": timeout,
                    },
                )
            except requests.RequestException as exc:
                last_error = str(exc)[:500]
                logger.warning(
                    "budget_ledger_attempt_network_error",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "error": last_error,
                    },
                )
            else:
                duration_ms = int((time.perf_counter() - t0) * 1000)
                last_status = resp.status_code
                last_body = _body_of(resp)
                code = _error_code(last_body)

                if resp.ok:
                    logger.info(
                        "budget_ledger_call_succeeded",
                        extra={
                            "operation": operation,
                            "attempt": attempt,
                            "status_code": resp.status_code,
                            "duration_ms": duration_ms,
                        },
                    )
                    return last_body if isinstance(last_body, dict) else {}

                if operation in _RELEASE_OPERATIONS and (
                    resp.status_code in _ALREADY_RELEASED_STATUS
                    or code == "ALREADY_RELEASED"
                ):
                    logger.info(
                        "budget_ledger_already_released",
                        extra={
                            "operation": operation,
                            "status_code": resp.status_code,
                            "attempt": attempt,
                        },
                    )
                    return {"already_released": True, "released_amount": "0"}

                if resp.status_code == 409 and code == "INSUFFICIENT_FUNDS":
                    raise self._insufficient_funds(operation, payload, last_body)

                if resp.status_code not in self._config.retry_status_codes:
                    logger.error(
                        "budget_ledger_call_rejected",
                        extra={
                            "operation": operation,
                            "attempt": attempt,
                            "status_code": resp.status_code,
                            "error_code": code,
                            "duration_ms": duration_ms,
                        },
                    )
                    raise BudgetAPIError(
                        f"Budget ledger {operation} rejected with HTTP {resp.status_code}",
                        operation=operation,
                        attempts=attempt,
                        status_code=resp.status_code,
                        body=last_body,
                    )

                last_error = f"HTTP {resp.status_code}"
                logger.warning(
                    "budget_ledger_attempt_transient_status",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "status_code": resp.status_code,
                        "duration_ms": duration_ms,
                    },
                )

            if attempt < max_attempts:
                delay = self._config.backoff_for(attempt)
                logger.info(
                    "budget_ledger_retry",
                    extra={
                        "operation": operation,
                        "next_attempt": attempt + 1,
                        "backoff_seconds": delay,
                    },
                )
                self._sleep(delay)

        if timeouts == max_attempts:
            logger.error(
                "budget_ledger_timed_out",
                extra={"operation": operation, "attempts": max_attempts},
            )
            raise BudgetTimeoutError(
                operation=operation,
                attempts=max_attempts,
                timeout_seconds=timeout,
            )

        logger.error(
            "budget_ledger_retries_exhausted",
            extra={
                "operation": operation,
                "attempts": max_attempts,
                "status_code": last_status,
                "error": last_error,
            },
        )
        raise BudgetAPIError(
            f"Budget ledger {operation} failed after {max_attempts} attempt(s): {last_error}",
            operation=operation,
            attempts=max_attempts,
            status_code=last_status,
            body=last_body,
        )

    def _insufficient_funds(
        self, operation: str, payload: dict[str, Any], body: dict[str, Any],
    ) -> BudgetError:
        requested = _decimal(body.get("requested"), str(payload.get("amount", "0")))
        available = _decimal(body.get("available"))
        shortage = _decimal(
            body.get("shortage"), str(max(requested - available, Decimal("0"))),
        )
        logger.warning(
            "budget_ledger_insufficient_funds",
            extra={
                "operation": operation,
                "available": str(available),
                "requested": str(requested),
                "shortage": str(shortage),
            },
        )
        return BudgetError(
            f"Insufficient budget: available {available}, requested {requested}, "
            f"shortage {shortage}",
            available=available,
            requested=requested,
            shortage=shortage,
        )
