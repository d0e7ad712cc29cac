"""
SQLAlchemy ORM persistence models for workflow sagas.

Responsibility
--------------
Persist one ``WorkflowSagaModel`` row per external budget-ledger side effect
performed by an orchestrator operation, so that a crash between the
external call and the local commit can be detected and compensated.

Architecture position
---------------------
**Services layer** -- written only by ``TransactionCoordinator``.
Inherits from ``TrackedBase`` (kernel db layer).

Invariants enforced
-------------------
* ``status`` moves PENDING_EXTERNAL -> LOCAL_COMMITTED, or
  PENDING_EXTERNAL -> COMPENSATING -> RELEASED, or PENDING_EXTERNAL -> FAILED.
* ``entity_type`` is the table name of the claimed entity, so recovery can
  address the claim without importing module models.

Audit relevance
---------------
Every reservation, commitment and release the workflow made, with its
outcome, is visible here alongside the actor and timestamps.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from supply_kernel.db.base import TrackedBase


class SagaStatus(str, Enum):
    """Saga record lifecycle."""

    PENDING_EXTERNAL = "PENDING_EXTERNAL"
    LOCAL_COMMITTED = "LOCAL_COMMITTED"
    COMPENSATING = "COMPENSATING"
    RELEASED = "RELEASED"
    FAILED = "FAILED"


OPEN_SAGA_STATUSES = (SagaStatus.PENDING_EXTERNAL.value, SagaStatus.COMPENSATING.value)


class WorkflowSagaModel(TrackedBase):
    """
    One external side effect of one workflow operation.

    Guarantees:
        - ``action`` names the ledger call (``reserve``, ``commit``, ...).
        - ``compensation`` names the idempotent undo (``release_reservation``,
          ``release_commitment``) or is NULL when nothing needs undoing.
        - ``payload`` holds the identifiers the compensation needs.
    """

    __tablename__ = "workflow_sagas"

    __table_args__ = (
        Index("idx_saga_entity", "entity_type", "entity_id"),
        Index("idx_saga_status_started", "status", "started_at"),
    )

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[UUID]
    operation: Mapped[str] = mapped_column(String(50), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    compensation: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=SagaStatus.PENDING_EXTERNAL.value,
    )
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    started_at: Mapped[datetime]
    external_completed_at: Mapped[datetime | None]
    completed_at: Mapped[datetime | None]

    def __repr__(self) -> str:
        return (
            f"<WorkflowSagaModel {self.entity_type}:{self.entity_id} "
            f"{self.operation}/{self.action} [{self.status}]>"
        )
