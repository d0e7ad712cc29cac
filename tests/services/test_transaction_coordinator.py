"""
Tests for the Transaction Coordinator.

Covers:
- Claim serialization (busy, missing entity)
- Saga lifecycle on success, failure and failed compensation
- Reverse-order compensation of several external steps
- Error wrapping
- Recovery sweep for stale sagas and orphaned claims
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select, update

from supply_kernel.exceptions import (
    EntityBusyError,
    EntityNotFoundError,
    TransactionRolledBackError,
    ValidationError,
)
from supply_modules.procurement.orm import PurchaseRequestModel
from supply_services.orm import SagaStatus, WorkflowSagaModel
from supply_services.transaction_coordinator import TransactionCoordinator


@pytest.fixture
def coordinator(session, clock):
    return TransactionCoordinator(session, clock)


@pytest.fixture
def draft_pr(services, make_budget_item, actor_id):
    item = make_budget_item()
    return services.requisitions.create_requisition(
        actor_id, [{"budget_request_item_id": item.id, "quantity": "10"}],
    )


def _reload(session, pr_id) -> PurchaseRequestModel:
    return session.get(PurchaseRequestModel, pr_id, populate_existing=True)


def _sagas(session) -> list[WorkflowSagaModel]:
    return list(
        session.execute(
            select(WorkflowSagaModel).order_by(WorkflowSagaModel.started_at)
        ).scalars()
    )


class TestClaims:

    def test_successful_unit_releases_claim_and_bumps_version(
        self, session, coordinator, draft_pr, actor_id,
    ):
        before = _reload(session, draft_pr.id).version

        with coordinator.unit(PurchaseRequestModel, draft_pr.id, "approve", actor_id) as unit:
            assert unit.entity.pending_operation == "approve"
            unit.entity.rejection_reason = "touched"

        pr = _reload(session, draft_pr.id)
        assert pr.pending_operation is None
        assert pr.pending_since is None
        assert pr.version == before + 1
        assert pr.rejection_reason == "touched"

    def test_held_claim_raises_busy(self, session, coordinator, draft_pr, actor_id):
        session.execute(
            update(PurchaseRequestModel)
            .where(PurchaseRequestModel.id == draft_pr.id)
            .values(pending_operation="submit")
        )
        session.commit()

        with pytest.raises(EntityBusyError) as exc_info:
            with coordinator.unit(PurchaseRequestModel, draft_pr.id, "approve", actor_id):
                pytest.fail("body must not run")

        assert exc_info.value.operation == "approve"
        assert _reload(session, draft_pr.id).pending_operation == "submit"

    def test_missing_entity(self, coordinator, actor_id, engine):
        with pytest.raises(EntityNotFoundError):
            with coordinator.unit(PurchaseRequestModel, uuid4(), "approve", actor_id):
                pass

    def test_claim_conflict_is_logged(
        self, session, coordinator, draft_pr, actor_id, captured_logs,
    ):
        session.execute(
            update(PurchaseRequestModel)
            .where(PurchaseRequestModel.id == draft_pr.id)
            .values(pending_operation="submit")
        )
        session.commit()

        with pytest.raises(EntityBusyError):
            with coordinator.unit(PurchaseRequestModel, draft_pr.id, "reject", actor_id):
                pass

        conflicts = [r for r in captured_logs() if r["message"] == "entity_claim_conflict"]
        assert conflicts[0]["held_by_operation"] == "submit"


class TestSagas:

    def test_external_step_committed_as_local_committed(
        self, session, coordinator, draft_pr, actor_id,
    ):
        with coordinator.unit(PurchaseRequestModel, draft_pr.id, "submit", actor_id) as unit:
            result = unit.external(
                "reserve", lambda: "RES-1",
                compensation="release_reservation",
                compensate=lambda: None,
                payload={"purchase_request_id": draft_pr.id},
            )
            unit.entity.reservation_id = result

        [saga] = _sagas(session)
        assert saga.status == SagaStatus.LOCAL_COMMITTED.value
        assert saga.action == "reserve"
        assert saga.compensation == "release_reservation"
        assert saga.payload == {"purchase_request_id": str(draft_pr.id)}
        assert saga.entity_type == "purchase_requests"
        assert saga.completed_at is not None
        assert _reload(session, draft_pr.id).reservation_id == "RES-1"

    def test_failure_after_external_compensates_and_rolls_back(
        self, session, coordinator, draft_pr, actor_id,
    ):
        undone = []

        with pytest.raises(ValidationError):
            with coordinator.unit(PurchaseRequestModel, draft_pr.id, "submit", actor_id) as unit:
                unit.external(
                    "reserve", lambda: "RES-1",
                    compensation="release_reservation",
                    compensate=lambda: undone.append("reserve"),
                )
                unit.entity.reservation_id = "RES-1"
                raise ValidationError("later check failed")

        assert undone == ["reserve"]
        [saga] = _sagas(session)
        assert saga.status == SagaStatus.RELEASED.value
        pr = _reload(session, draft_pr.id)
        assert pr.reservation_id is None
        assert pr.pending_operation is None

    def test_compensations_run_in_reverse_order(
        self, session, coordinator, draft_pr, actor_id,
    ):
        undone = []

        with pytest.raises(ValidationError):
            with coordinator.unit(PurchaseRequestModel, draft_pr.id, "submit", actor_id) as unit:
                unit.external("first", lambda: 1, compensate=lambda: undone.append("first"))
                unit.external("second", lambda: 2, compensate=lambda: undone.append("second"))
                raise ValidationError("boom")

        assert undone == ["second", "first"]
        assert {s.status for s in _sagas(session)} == {SagaStatus.RELEASED.value}

    def test_failed_external_call_is_not_compensated(
        self, session, coordinator, draft_pr, actor_id,
    ):
        undone = []

        def fail():
            raise ConnectionError("ledger down")

        with pytest.raises(TransactionRolledBackError) as exc_info:
            with coordinator.unit(PurchaseRequestModel, draft_pr.id, "submit", actor_id) as unit:
                unit.external("reserve", fail, compensate=lambda: undone.append("x"))

        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert undone == []
        [saga] = _sagas(session)
        assert saga.status == SagaStatus.FAILED.value
        assert "ledger down" in saga.error
        assert _reload(session, draft_pr.id).pending_operation is None

    def test_unexpected_error_is_wrapped(self, session, coordinator, draft_pr, actor_id):
        with pytest.raises(TransactionRolledBackError) as exc_info:
            with coordinator.unit(PurchaseRequestModel, draft_pr.id, "approve", actor_id):
                raise KeyError("missing")

        err = exc_info.value
        assert err.entity_type == "purchase_requests"
        assert err.operation == "approve"
        assert "KeyError" in err.reason

    def test_local_mutation_before_external_step_is_refused(
        self, session, coordinator, draft_pr, actor_id,
    ):
        with pytest.raises(TransactionRolledBackError) as exc_info:
            with coordinator.unit(PurchaseRequestModel, draft_pr.id, "submit", actor_id) as unit:
                unit.entity.rejection_reason = "too early"
                unit.external("reserve", lambda: None)

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert _sagas(session) == []
        assert _reload(session, draft_pr.id).rejection_reason is None

    def test_failed_compensation_keeps_claim(
        self, session, coordinator, draft_pr, actor_id, captured_logs,
    ):
        def broken_undo():
            raise ConnectionError("ledger down")

        with pytest.raises(ValidationError):
            with coordinator.unit(PurchaseRequestModel, draft_pr.id, "submit", actor_id) as unit:
                unit.external(
                    "reserve", lambda: None,
                    compensation="release_reservation",
                    compensate=broken_undo,
                )
                raise ValidationError("boom")

        [saga] = _sagas(session)
        assert saga.status == SagaStatus.COMPENSATING.value
        assert "compensation failed" in saga.error
        assert _reload(session, draft_pr.id).pending_operation == "submit"
        messages = [r["message"] for r in captured_logs()]
        assert "claims_retained_for_recovery" in messages


class TestRecoverStale:

    def _leave_open_saga(self, coordinator, draft_pr, actor_id, compensation="release_reservation"):
        def broken_undo():
            raise ConnectionError("ledger down")

        with pytest.raises(ValidationError):
            with coordinator.unit(PurchaseRequestModel, draft_pr.id, "submit", actor_id) as unit:
                unit.external(
                    "reserve", lambda: None,
                    compensation=compensation,
                    compensate=broken_undo,
                    payload={"purchase_request_id": draft_pr.id},
                )
                raise ValidationError("boom")

    def test_recovers_saga_and_clears_claim(
        self, session, coordinator, clock, draft_pr, actor_id,
    ):
        self._leave_open_saga(coordinator, draft_pr, actor_id)
        clock.advance(16 * 60)
        handled = []

        report = coordinator.recover_stale(
            timedelta(minutes=15),
            {"release_reservation": lambda saga: handled.append(saga.payload)},
            actor_id,
            claimable_models=(PurchaseRequestModel,),
        )

        [saga] = _sagas(session)
        assert report.released == (saga.id,)
        assert report.still_open == ()
        assert report.claims_cleared == 1
        assert handled == [{"purchase_request_id": str(draft_pr.id)}]
        assert saga.status == SagaStatus.RELEASED.value
        assert _reload(session, draft_pr.id).pending_operation is None

    def test_recent_sagas_are_left_alone(self, session, coordinator, draft_pr, actor_id):
        self._leave_open_saga(coordinator, draft_pr, actor_id)

        report = coordinator.recover_stale(
            timedelta(minutes=15), {"release_reservation": lambda saga: None}, actor_id,
            claimable_models=(PurchaseRequestModel,),
        )

        assert report.released == ()
        assert report.claims_cleared == 0
        assert _reload(session, draft_pr.id).pending_operation == "submit"

    def test_unknown_compensation_stays_open(
        self, session, coordinator, clock, draft_pr, actor_id,
    ):
        self._leave_open_saga(coordinator, draft_pr, actor_id, compensation="mystery")
        clock.advance(16 * 60)

        report = coordinator.recover_stale(
            timedelta(minutes=15), {}, actor_id,
            claimable_models=(PurchaseRequestModel,),
        )

        [saga] = _sagas(session)
        assert report.still_open == (saga.id,)
        assert saga.status == SagaStatus.COMPENSATING.value
        # The claim is held while its saga is open.
        assert _reload(session, draft_pr.id).pending_operation == "submit"

    def test_failing_handler_stays_open(
        self, session, coordinator, clock, draft_pr, actor_id,
    ):
        self._leave_open_saga(coordinator, draft_pr, actor_id)
        clock.advance(16 * 60)

        def still_broken(saga):
            raise ConnectionError("still down")

        report = coordinator.recover_stale(
            timedelta(minutes=15), {"release_reservation": still_broken}, actor_id,
        )

        [saga] = _sagas(session)
        assert report.still_open == (saga.id,)
        assert "recovery compensation failed" in saga.error

    def test_orphaned_claim_without_saga_is_cleared(
        self, session, coordinator, clock, draft_pr, actor_id,
    ):
        session.execute(
            update(PurchaseRequestModel)
            .where(PurchaseRequestModel.id == draft_pr.id)
            .values(pending_operation="approve", pending_since=clock.now())
        )
        session.commit()
        clock.advance(16 * 60)

        report = coordinator.recover_stale(
            timedelta(minutes=15), {}, actor_id,
            claimable_models=(PurchaseRequestModel,),
        )

        assert report.claims_cleared == 1
        assert _reload(session, draft_pr.id).pending_operation is None
