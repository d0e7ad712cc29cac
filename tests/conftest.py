"""
Pytest fixtures for the supply workflow test suite.

Provides:
- A file-backed SQLite database per test (tables created from the ORM registry)
- Deterministic clock, configuration and collaborator fakes
- An in-memory budget ledger reachable through a ``requests.Session`` double
  that returns real ``requests.Response`` objects
- Builders for budget items, purchase requests, purchase orders and receipts

Environment Variables:
- SUPPLY_TEST_DATABASE_URL: run against another database (e.g. PostgreSQL)
  instead of the per-test SQLite file.
"""

import json
import logging
import os
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Any
from uuid import UUID, uuid4

import pytest
import requests

from supply_config.schema import (
    BudgetLedgerConfig,
    PricingCacheConfig,
    ProcurementConfig,
    SupplyConfig,
)
from supply_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from supply_kernel.domain.clock import DeterministicClock
from supply_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from supply_modules.budget.orm import BudgetRequestItemModel
from supply_modules.registry import WorkflowRegistry
from supply_services.budget_ledger import BudgetLedgerClient

# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture supply logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, services):
            services.requisitions.submit(...)
            logs = captured_logs()
            assert any(r["message"] == "pr_submitted" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("supply")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    """Fresh database with every table created."""
    url = os.environ.get("SUPPLY_TEST_DATABASE_URL") or f"sqlite:///{tmp_path / 'supply.db'}"
    eng = init_engine_from_url(url)
    create_tables()
    yield eng
    drop_tables()
    reset_engine()


@pytest.fixture
def session_factory(engine):
    return get_session_factory()


@pytest.fixture
def session(engine):
    s = get_session()
    yield s
    s.rollback()
    s.close()


# =============================================================================
# Time and configuration
# =============================================================================


@pytest.fixture
def clock():
    """15 January 2025, 09:00 UTC: fiscal Q2 with an October year start."""
    return DeterministicClock(datetime(2025, 1, 15, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def config():
    return SupplyConfig(
        procurement=ProcurementConfig(),
        budget_ledger=BudgetLedgerConfig(base_url="http://ledger.test"),
        pricing_cache=PricingCacheConfig(ttl_seconds=3600),
    )


@pytest.fixture
def actor_id() -> UUID:
    return TEST_ACTOR_ID


# =============================================================================
# Budget ledger double
# =============================================================================


def make_response(status: int, body: Any = None, url: str = "") -> requests.Response:
    """A real ``requests.Response`` carrying ``body`` as JSON."""
    resp = requests.Response()
    resp.status_code = status
    resp.reason = "OK" if status < 400 else "Error"
    resp.url = url
    resp.encoding = "utf-8"
    resp.headers["Content-Type"] = "application/json"
    resp._content = json.dumps(body).encode("utf-8") if body is not None else b""
    return resp


class FakeLedger(requests.Session):
    """
    In-memory budget ledger behind the ``requests.Session`` interface.

    ``balance`` is the unreserved, uncommitted budget.  ``script(op, ...)``
    queues outcomes returned (or raised) before the ledger logic runs:
    an ``int`` status, a ``(status, body)`` tuple, or an exception instance.
    ``before_call[op]`` is called before each call of ``op``.
    """

    def __init__(self, balance: Decimal = Decimal("1000000")):
        super().__init__()
        self.balance = balance
        self.reservations: dict[str, Decimal] = {}
        self.commitments: dict[str, Decimal] = {}
        self.calls: list[tuple[str, dict, dict]] = []
        self.before_call: dict[str, Callable[[dict], None]] = {}
        self._scripted: dict[str, list] = {}
        self._lock = threading.Lock()

    def script(self, operation: str, *outcomes) -> None:
        self._scripted.setdefault(operation, []).extend(outcomes)

    def calls_for(self, operation: str) -> list[dict]:
        return [body for op, body, _ in self.calls if op == operation]

    def post(self, url, json=None, headers=None, timeout=None, **kwargs):
        operation = url.rsplit("/", 1)[-1]
        body = json or {}
        hook = self.before_call.get(operation)
        if hook is not None:
            hook(body)
        with self._lock:
            self.calls.append((operation, body, dict(headers or {})))
            queued = self._scripted.get(operation)
            if queued:
                outcome = queued.pop(0)
                if isinstance(outcome, BaseException):
                    raise outcome
                if isinstance(outcome, tuple):
                    return make_response(outcome[0], outcome[1], url)
                return make_response(outcome, {"error": "SCRIPTED"}, url)
            status, payload = getattr(self, "_" + operation.replace("-", "_"))(body)
            return make_response(status, payload, url)

    # -- ledger logic ---------------------------------------------------------

    def _check_availability(self, body):
        amount = Decimal(body["amount"])
        return 200, {
            "available": self.balance >= amount,
            "available_amount": str(self.balance),
        }

    def _reserve(self, body):
        pr_id = body["purchase_request_id"]
        amount = Decimal(body["amount"])
        if pr_id in self.reservations:
            return 200, {"reservation_id": f"RES-{pr_id[:8]}", "amount": str(amount)}
        if amount > self.balance:
            return 409, {
                "code": "INSUFFICIENT_FUNDS",
                "available": str(self.balance),
                "requested": str(amount),
                "shortage": str(amount - self.balance),
            }
        self.balance -= amount
        self.reservations[pr_id] = amount
        return 200, {"reservation_id": f"RES-{pr_id[:8]}", "amount": str(amount)}

    def _commit(self, body):
        pr_id = body["purchase_request_id"]
        po_id = body["purchase_order_id"]
        amount = Decimal(body["amount"])
        held = self.reservations.pop(pr_id, None)
        if held is None:
            return 409, {"code": "NO_RESERVATION"}
        self.balance += held - amount
        self.commitments[po_id] = amount
        return 200, {"commitment_id": f"COM-{po_id[:8]}", "amount": str(amount)}

    def _release_reservation(self, body):
        held = self.reservations.pop(body["purchase_request_id"], None)
        if held is None:
            return 404, {"code": "NOT_FOUND"}
        self.balance += held
        return 200, {"released_amount": str(held)}

    def _release_commitment(self, body):
        held = self.commitments.pop(body["purchase_order_id"], None)
        if held is None:
            return 404, {"code": "NOT_FOUND"}
        self.balance += held
        return 200, {"released_amount": str(held)}


@pytest.fixture
def ledger_http():
    return FakeLedger()


@pytest.fixture
def sleeps():
    """Backoff delays requested by the ledger client (nothing really sleeps)."""
    return []


@pytest.fixture
def ledger(config, ledger_http, sleeps):
    return BudgetLedgerClient(config.budget_ledger, session=ledger_http, sleep=sleeps.append)


# =============================================================================
# Collaborator fakes
# =============================================================================


class FakeAuthorization:
    def __init__(self):
        self.grants: set[tuple[UUID, str]] = set()

    def grant(self, user_id: UUID, action: str) -> None:
        self.grants.add((user_id, action))

    def has_permission(self, user_id: UUID, action: str) -> bool:
        return (user_id, action) in self.grants


class RecordingNotifier:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []
        self.fail = False

    def notify(self, event: str, payload: dict) -> None:
        if self.fail:
            raise ConnectionError("notification service unavailable")
        self.events.append((event, payload))


class FakeDocuments:
    def __init__(self):
        self.attached: set[UUID] = set()

    def attach(self, po_id: UUID) -> None:
        self.attached.add(po_id)

    def has_approval_document(self, purchase_order_id: UUID) -> bool:
        return purchase_order_id in self.attached


@pytest.fixture
def approver_id() -> UUID:
    return uuid4()


@pytest.fixture
def authorization(approver_id):
    authz = FakeAuthorization()
    authz.grant(approver_id, "purchase_request.approve")
    authz.grant(approver_id, "purchase_order.approve")
    return authz


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def documents():
    return FakeDocuments()


# =============================================================================
# Registry and services
# =============================================================================


@pytest.fixture
def registry(config, session_factory, authorization, notifier, documents, ledger, clock):
    return WorkflowRegistry(
        config=config,
        session_factory=session_factory,
        authorization=authorization,
        notifier=notifier,
        documents=documents,
        ledger=ledger,
        clock=clock,
    )


@pytest.fixture
def services(registry, session):
    return registry.bind(session)


# =============================================================================
# Data builders
# =============================================================================


@pytest.fixture
def make_budget_item(session, actor_id):
    """Create a budget request item; quantities default to 1000 planned in Q2."""

    def _make(**overrides) -> BudgetRequestItemModel:
        values = dict(
            id=uuid4(),
            item_id=uuid4(),
            fiscal_year=2025,
            department_id=uuid4(),
            budget_request_id=uuid4(),
            budget_type_id=uuid4(),
            unit_price=Decimal("50"),
            q1_planned_qty=Decimal("1000"),
            q2_planned_qty=Decimal("1000"),
            q3_planned_qty=Decimal("1000"),
            q4_planned_qty=Decimal("1000"),
            created_by_id=actor_id,
        )
        values.update(overrides)
        item = BudgetRequestItemModel(**values)
        session.add(item)
        session.commit()
        return item

    return _make


@pytest.fixture
def make_submitted_pr(services, make_budget_item, actor_id):
    """DRAFT PR with one line, submitted through the orchestrator."""

    def _make(quantity="100", unit_price="50", **item_overrides):
        item = make_budget_item(**item_overrides)
        pr = services.requisitions.create_requisition(
            actor_id,
            [{
                "budget_request_item_id": item.id,
                "quantity": quantity,
                "unit_price": unit_price,
            }],
        )
        return services.requisitions.submit(pr.id, actor_id)

    return _make


@pytest.fixture
def make_sent_po(services, make_submitted_pr, actor_id, approver_id):
    """Purchase order that went through approve and send."""

    def _make(quantity="100", unit_price="50", vendor_id=None, **item_overrides):
        pr = make_submitted_pr(quantity=quantity, unit_price=unit_price, **item_overrides)
        services.requisitions.approve(pr.id, approver_id)
        po = services.purchase_orders.create_from_requisition(
            pr.id, vendor_id or uuid4(), actor_id,
        )
        services.purchase_orders.submit_for_approval(po.id, actor_id)
        services.purchase_orders.approve(po.id, approver_id)
        return services.purchase_orders.send(po.id, actor_id)

    return _make


@pytest.fixture
def make_accepted_receipt(services, actor_id):
    """Receipt against ``po`` with three inspectors, inspected and accepted."""

    def _make(po, quantities=None, inspectors=3, location_id=None):
        quantities = quantities or [line.quantity_ordered for line in po.lines]
        receipt = services.receipts.create_receipt(
            po.id,
            location_id or uuid4(),
            [
                {
                    "purchase_order_line_id": line.id,
                    "quantity_received": qty,
                    "lot_number": f"LOT-{line.line_number}",
                }
                for line, qty in zip(po.lines, quantities)
            ],
            actor_id,
        )
        for _ in range(inspectors):
            services.receipts.add_inspector(receipt.id, uuid4(), actor_id)
        services.receipts.start_inspection(receipt.id, actor_id)
        return services.receipts.accept(receipt.id, actor_id)

    return _make
