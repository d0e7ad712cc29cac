"""
Transaction Coordinator (``supply_services.transaction_coordinator``).

Responsibility:
    Gives every orchestrator operation the same unit-of-work shape:
    serialize on the entity, record each external ledger side effect as a
    saga, commit local state once, and on failure roll local state back and
    undo the external side effects that already happened.

Architecture position:
    Services -- stateful orchestration over the kernel.  Used by the PR,
    PO and Receipt orchestrators in ``supply_modules.procurement``.  Knows
    nothing about those entities beyond ``ClaimableMixin``.

Unit of work:

    with coordinator.unit(PurchaseRequestModel, pr_id, "submit", actor_id) as unit:
        pr = unit.entity                      # freshly loaded, claimed
        ... validate, evaluate ...
        unit.external("reserve", perform, compensation="release_reservation",
                      compensate=undo, payload={...})
        ... mutate pr ...
    # exit: sagas LOCAL_COMMITTED + claims released + local state, one commit

    1. claim   UPDATE ... SET pending_operation=:op, version=version+1
               WHERE id=:id AND pending_operation IS NULL; commit.
               rowcount 0 -> EntityBusyError (or EntityNotFoundError).
    2. external  saga row PENDING_EXTERNAL committed BEFORE the call, so
                 a crash during or after the call is visible to recovery.
    3. success   one commit for local state, saga status and claim release.
    4. failure   rollback; each saga whose call succeeded goes COMPENSATING,
                 its compensation runs, then RELEASED.  Claims are released
                 only when every compensation succeeded; otherwise the
                 entity stays claimed until ``recover_stale`` finishes the
                 job.

Invariants enforced:
    - At most one mutating operation in flight per entity.
    - No local state transition is committed unless every external step of
      the unit succeeded.
    - External calls never run with uncommitted local mutations in the
      session (so the saga commit cannot publish half a transition).

Failure modes:
    - ``SupplyWorkflowError`` raised inside a unit propagates unchanged.
    - Any other exception is wrapped in ``TransactionRolledBackError``
      (retryable) with the original as ``__cause__``.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.util import identity_key

from supply_kernel.db.base import Base
from supply_kernel.domain.clock import Clock, SystemClock
from supply_kernel.exceptions import (
    EntityBusyError,
    EntityNotFoundError,
    SupplyWorkflowError,
    TransactionRolledBackError,
)
from supply_kernel.logging_config import LogContext, get_logger
from supply_services.orm import OPEN_SAGA_STATUSES, SagaStatus, WorkflowSagaModel

logger = get_logger("services.transaction_coordinator")

ModelT = TypeVar("ModelT", bound=Base)

T = TypeVar("T")


@dataclass
class _SagaStep:
    saga: WorkflowSagaModel
    action: str
    compensate: Callable[[], Any] | None
    external_completed_at: datetime


@dataclass(frozen=True)
class RecoveryReport:
    """Outcome of one ``recover_stale`` sweep."""

    released: tuple[UUID, ...] = ()
    still_open: tuple[UUID, ...] = ()
    claims_cleared: int = 0


class UnitOfWork:
    """
    State of one coordinated operation.  Created by ``TransactionCoordinator.unit``.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock,
        model: type[Base],
        entity_id: UUID,
        operation: str,
        actor_id: UUID,
    ):
        self._session = session
        self._clock = clock
        self._model = model
        self._entity_id = entity_id
        self.operation = operation
        self.actor_id = actor_id
        self._claims: list[tuple[type[Base], UUID]] = []
        self._sagas: list[_SagaStep] = []
        self._entity = None

    @property
    def entity(self):
        """The primary entity, loaded once after the claim with fresh state."""
        if self._entity is None:
            self._entity = self.load(self._model, self._entity_id)
        return self._entity

    def load(self, model: type[ModelT], entity_id: UUID) -> ModelT:
        """Load ``model`` by id bypassing stale identity-map state."""
        obj = self._session.get(model, entity_id, populate_existing=True)
        if obj is None:
            raise EntityNotFoundError(model.__tablename__, str(entity_id))
        return obj

    # -------------------------------------------------------------------------
    # Claims
    # -------------------------------------------------------------------------

    def claim(self, model: type[Base], entity_id: UUID) -> None:
        """
        Mark ``entity_id`` as busy with this operation and commit.

        Raises:
            EntityBusyError: another operation holds the entity.
            EntityNotFoundError: no such row.
        """
        self._require_clean_session("claim")
        result = self._session.execute(
            update(model)
            .where(model.id == entity_id, model.pending_operation.is_(None))
            .values(
                pending_operation=self.operation,
                pending_since=self._clock.now(),
                version=model.version + 1,
                updated_by_id=self.actor_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self._session.rollback()
            holder = self._session.execute(
                select(model.pending_operation).where(model.id == entity_id)
            ).first()
            self._session.rollback()
            if holder is None:
                raise EntityNotFoundError(model.__tablename__, str(entity_id))
            logger.warning(
                "entity_claim_conflict",
                extra={
                    "entity_type": model.__tablename__,
                    "entity_id": str(entity_id),
                    "operation": self.operation,
                    "held_by_operation": holder[0],
                },
            )
            raise EntityBusyError(model.__tablename__, str(entity_id), self.operation)

        self._session.commit()
        self._expire_claim_columns(model, entity_id)
        self._claims.append((model, entity_id))
        logger.debug(
            "entity_claimed",
            extra={"entity_type": model.__tablename__, "entity_id": str(entity_id)},
        )

    def _expire_claim_columns(self, model: type[Base], entity_id: UUID) -> None:
        obj = self._session.identity_map.get(identity_key(model, entity_id))
        if obj is not None:
            self._session.expire(obj, ["version", "pending_operation", "pending_since"])

    def _release_claims(self) -> None:
        for model, entity_id in self._claims:
            self._session.execute(
                update(model)
                .where(model.id == entity_id, model.pending_operation == self.operation)
                .values(pending_operation=None, pending_since=None)
                .execution_options(synchronize_session=False)
            )

    # -------------------------------------------------------------------------
    # External steps
    # -------------------------------------------------------------------------

    def external(
        self,
        action: str,
        perform: Callable[[], T],
        *,
        compensation: str | None = None,
        compensate: Callable[[], Any] | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> T:
        """
        Run one external side effect under a persisted saga record.

        ``compensation`` names the undo for the recovery sweep;
        ``compensate`` performs it in-process when the unit fails.
        """
        self._require_clean_session(action)
        now = self._clock.now()
        saga = WorkflowSagaModel(
            entity_type=self._model.__tablename__,
            entity_id=self._entity_id,
            operation=self.operation,
            action=action,
            compensation=compensation,
            status=SagaStatus.PENDING_EXTERNAL.value,
            payload={k: str(v) for k, v in (payload or {}).items()},
            started_at=now,
            created_by_id=self.actor_id,
        )
        self._session.add(saga)
        self._session.commit()

        logger.info(
            "saga_external_started",
            extra={"saga_id": str(saga.id), "action": action},
        )
        try:
            result = perform()
        except Exception as exc:
            saga.status = SagaStatus.FAILED.value
            saga.error = str(exc)[:1000]
            saga.completed_at = self._clock.now()
            saga.updated_by_id = self.actor_id
            self._session.commit()
            logger.warning(
                "saga_external_failed",
                extra={
                    "saga_id": str(saga.id),
                    "action": action,
                    "error_type": type(exc).__name__,
                },
            )
            raise

        self._sagas.append(
            _SagaStep(
                saga=saga,
                action=action,
                compensate=compensate,
                external_completed_at=self._clock.now(),
            )
        )
        logger.info(
            "saga_external_succeeded",
            extra={"saga_id": str(saga.id), "action": action},
        )
        return result

    def _require_clean_session(self, step: str) -> None:
        s = self._session
        pending = [
            obj for obj in (*s.new, *s.dirty, *s.deleted)
            if not isinstance(obj, WorkflowSagaModel)
        ]
        if pending:
            raise RuntimeError(
                f"{self.operation}: '{step}' requires no pending local mutations; "
                "mutate local state only after external steps"
            )

    # -------------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------------

    def _finish(self) -> None:
        now = self._clock.now()
        for step in self._sagas:
            step.saga.status = SagaStatus.LOCAL_COMMITTED.value
            step.saga.external_completed_at = step.external_completed_at
            step.saga.completed_at = now
            step.saga.updated_by_id = self.actor_id
        self._session.flush()
        self._release_claims()
        self._session.commit()
        for model, entity_id in self._claims:
            self._expire_claim_columns(model, entity_id)

    def _abort(self) -> bool:
        """Roll back and compensate; True when every compensation succeeded."""
        self._session.rollback()

        all_compensated = True
        for step in reversed(self._sagas):
            if not self._compensate(step):
                all_compensated = False

        if all_compensated:
            try:
                self._release_claims()
                self._session.commit()
            except Exception:
                self._session.rollback()
                logger.error(
                    "claim_release_failed",
                    extra={"claims": self._claim_labels()},
                    exc_info=True,
                )
        else:
            logger.error(
                "claims_retained_for_recovery",
                extra={"claims": self._claim_labels()},
            )
        for model, entity_id in self._claims:
            self._expire_claim_columns(model, entity_id)
        return all_compensated

    def _claim_labels(self) -> list[str]:
        return [f"{model.__tablename__}:{entity_id}" for model, entity_id in self._claims]

    def _compensate(self, step: _SagaStep) -> bool:
        saga = step.saga
        saga.status = SagaStatus.COMPENSATING.value
        saga.external_completed_at = step.external_completed_at
        saga.updated_by_id = self.actor_id
        self._session.commit()

        if step.compensate is not None:
            try:
                step.compensate()
            except Exception as exc:
                saga.error = f"compensation failed: {exc}"[:1000]
                self._session.commit()
                logger.error(
                    "saga_compensation_failed",
                    extra={"saga_id": str(saga.id), "action": step.action},
                    exc_info=True,
                )
                return False

        saga.status = SagaStatus.RELEASED.value
        saga.completed_at = self._clock.now()
        self._session.commit()
        logger.info(
            "saga_compensated",
            extra={"saga_id": str(saga.id), "action": step.action},
        )
        return True


class TransactionCoordinator:
    """
    Factory for coordinated units of work on one session.

    Contract:
        The caller's session must not hold uncommitted changes when a unit
        starts; the coordinator owns every commit and rollback inside it.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    @contextmanager
    def unit(
        self,
        model: type[Base],
        entity_id: UUID,
        operation: str,
        actor_id: UUID,
    ) -> Iterator[UnitOfWork]:
        with LogContext.bind(
            actor_id=actor_id,
            entity_type=model.__tablename__,
            entity_id=entity_id,
            operation=operation,
        ):
            uow = UnitOfWork(self._session, self._clock, model, entity_id, operation, actor_id)
            uow.claim(model, entity_id)
            try:
                yield uow
                uow._finish()
            except Exception as exc:
                logger.warning(
                    "unit_of_work_rolled_back",
                    extra={"error_type": type(exc).__name__},
                )
                uow._abort()
                if isinstance(exc, SupplyWorkflowError):
                    raise
                raise TransactionRolledBackError(
                    entity_type=model.__tablename__,
                    entity_id=str(entity_id),
                    operation=operation,
                    reason=f"{type(exc).__name__}: {exc}",
                ) from exc
            logger.info("unit_of_work_committed")

    # -------------------------------------------------------------------------
    # Recovery sweep
    # -------------------------------------------------------------------------

    def recover_stale(
        self,
        older_than: timedelta,
        compensations: Mapping[str, Callable[[WorkflowSagaModel], Any]],
        actor_id: UUID,
        claimable_models: tuple[type[Base], ...] = (),
    ) -> RecoveryReport:
        """
        Finish sagas left open by a crash or a failed compensation.

        Sagas in PENDING_EXTERNAL or COMPENSATING whose ``started_at`` is
        older than ``older_than`` are compensated with the idempotent
        callable registered under their ``compensation`` name, marked
        RELEASED, and the claim on their entity is cleared.  Afterwards,
        stale claims on ``claimable_models`` with no open saga are cleared
        too (a crash between claim and first external step).
        """
        cutoff = self._clock.now() - older_than
        stale = self._session.execute(
            select(WorkflowSagaModel)
            .where(
                WorkflowSagaModel.status.in_(OPEN_SAGA_STATUSES),
                WorkflowSagaModel.started_at < cutoff,
            )
            .order_by(WorkflowSagaModel.started_at)
        ).scalars().all()

        released: list[UUID] = []
        still_open: list[UUID] = []
        claims_cleared = 0

        for saga in stale:
            handler = compensations.get(saga.compensation) if saga.compensation else None
            if saga.compensation and handler is None:
                logger.error(
                    "saga_recovery_no_handler",
                    extra={"saga_id": str(saga.id), "compensation": saga.compensation},
                )
                still_open.append(saga.id)
                continue

            saga.status = SagaStatus.COMPENSATING.value
            saga.updated_by_id = actor_id
            self._session.commit()
            try:
                if handler is not None:
                    handler(saga)
            except Exception as exc:
                saga.error = f"recovery compensation failed: {exc}"[:1000]
                self._session.commit()
                logger.error(
                    "saga_recovery_failed",
                    extra={"saga_id": str(saga.id)},
                    exc_info=True,
                )
                still_open.append(saga.id)
                continue

            saga.status = SagaStatus.RELEASED.value
            saga.completed_at = self._clock.now()
            claims_cleared += self._clear_claim(saga.entity_type, saga.entity_id, saga.operation)
            self._session.commit()
            released.append(saga.id)
            logger.info(
                "saga_recovered",
                extra={
                    "saga_id": str(saga.id),
                    "entity_type": saga.entity_type,
                    "entity_id": str(saga.entity_id),
                    "compensation": saga.compensation,
                },
            )

        blocked = {
            (row.entity_type, row.entity_id)
            for row in self._session.execute(
                select(WorkflowSagaModel.entity_type, WorkflowSagaModel.entity_id)
                .where(WorkflowSagaModel.status.in_(OPEN_SAGA_STATUSES))
            )
        }
        for model in claimable_models:
            rows = self._session.execute(
                select(model.id, model.pending_operation).where(
                    model.pending_operation.is_not(None),
                    model.pending_since < cutoff,
                )
            ).all()
            for entity_id, operation in rows:
                if (model.__tablename__, entity_id) in blocked:
                    continue
                claims_cleared += self._clear_claim(model.__tablename__, entity_id, operation)
        self._session.commit()

        logger.info(
            "saga_recovery_completed",
            extra={
                "released": len(released),
                "still_open": len(still_open),
                "claims_cleared": claims_cleared,
            },
        )
        return RecoveryReport(
            released=tuple(released),
            still_open=tuple(still_open),
            claims_cleared=claims_cleared,
        )

    def _clear_claim(self, table_name: str, entity_id: UUID, operation: str) -> int:
        table = Base.metadata.tables[table_name]
        result = self._session.execute(
            update(table)
            .where(table.c.id == entity_id, table.c.pending_operation == operation)
            .values(pending_operation=None, pending_since=None)
        )
        if result.rowcount:
            logger.info(
                "stale_claim_cleared",
                extra={"entity_type": table_name, "entity_id": str(entity_id)},
            )
        return result.rowcount
