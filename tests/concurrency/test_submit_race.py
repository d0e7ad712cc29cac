"""
Concurrency tests for orchestrator claims.

Two sessions on two threads act on the same entity while the first one is
inside a ledger call.  The second must be refused with EntityBusyError and
the ledger must see exactly one reservation.
"""

import threading

import pytest

from supply_kernel.exceptions import EntityBusyError
from supply_modules.procurement.models import PRStatus, ReservationState

pytestmark = pytest.mark.slow_locks


@pytest.fixture
def blocking_ledger(ledger_http):
    """Hold the first availability check until ``release`` is set."""
    entered = threading.Event()
    release = threading.Event()

    def hold(body):
        if not entered.is_set():
            entered.set()
            release.wait(timeout=10)

    ledger_http.before_call["check-availability"] = hold
    return entered, release


def _run(target):
    outcome = {}

    def wrapper():
        try:
            outcome["result"] = target()
        except Exception as exc:
            outcome["error"] = exc

    thread = threading.Thread(target=wrapper)
    thread.start()
    return thread, outcome


class TestSubmitRace:

    def test_second_submit_is_busy(
        self, registry, session_factory, services, make_budget_item, actor_id,
        ledger_http, blocking_ledger,
    ):
        entered, release = blocking_ledger
        item = make_budget_item()
        draft = services.requisitions.create_requisition(
            actor_id, [{"budget_request_item_id": item.id, "quantity": "10"}],
        )

        session_a = session_factory()
        session_b = session_factory()
        try:
            services_a = registry.bind(session_a)
            services_b = registry.bind(session_b)

            thread_a, outcome_a = _run(lambda: services_a.requisitions.submit(draft.id, actor_id))
            assert entered.wait(timeout=10)

            with pytest.raises(EntityBusyError) as exc_info:
                services_b.requisitions.submit(draft.id, actor_id)
            assert exc_info.value.operation == "submit"

            release.set()
            thread_a.join(timeout=30)
        finally:
            release.set()
            session_a.close()
            session_b.close()

        assert "error" not in outcome_a, outcome_a.get("error")
        assert outcome_a["result"].status == PRStatus.SUBMITTED
        assert len(ledger_http.calls_for("reserve")) == 1
        assert list(ledger_http.reservations) == [str(draft.id)]

    def test_reject_during_submit_is_busy(
        self, registry, session_factory, services, make_budget_item, actor_id,
        approver_id, ledger_http, blocking_ledger,
    ):
        entered, release = blocking_ledger
        item = make_budget_item()
        draft = services.requisitions.create_requisition(
            actor_id, [{"budget_request_item_id": item.id, "quantity": "10"}],
        )

        session_a = session_factory()
        session_b = session_factory()
        try:
            services_a = registry.bind(session_a)
            services_b = registry.bind(session_b)

            thread_a, outcome_a = _run(lambda: services_a.requisitions.submit(draft.id, actor_id))
            assert entered.wait(timeout=10)

            with pytest.raises(EntityBusyError):
                services_b.requisitions.reject(draft.id, approver_id, "changed plans")

            release.set()
            thread_a.join(timeout=30)
        finally:
            release.set()
            session_a.close()
            session_b.close()

        pr = services.requisitions.get(draft.id)
        assert pr.status == PRStatus.SUBMITTED
        assert pr.reservation_state == ReservationState.HELD
        assert pr.rejection_reason is None


class TestClaimIsReleasedAfterRace:

    def test_entity_usable_after_busy_refusal(
        self, registry, session_factory, services, make_budget_item, actor_id,
        approver_id, blocking_ledger,
    ):
        entered, release = blocking_ledger
        item = make_budget_item()
        draft = services.requisitions.create_requisition(
            actor_id, [{"budget_request_item_id": item.id, "quantity": "10"}],
        )
        session_a = session_factory()
        try:
            thread_a, _ = _run(
                lambda: registry.bind(session_a).requisitions.submit(draft.id, actor_id)
            )
            assert entered.wait(timeout=10)
            with pytest.raises(EntityBusyError):
                services.requisitions.approve(draft.id, approver_id)
            release.set()
            thread_a.join(timeout=30)
        finally:
            release.set()
            session_a.close()

        approved = services.requisitions.approve(draft.id, approver_id)

        assert approved.status == PRStatus.APPROVED
        assert approved.version >= 2
