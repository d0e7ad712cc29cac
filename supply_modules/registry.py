"""
supply_modules.registry -- Composition root for the workflow engine.

Responsibility:
    Builds the process-wide components exactly once (budget ledger client,
    contract pricing cache, collaborators, clock) and binds them to a
    database session as the three orchestrators plus a coordinator.  Also
    owns the named compensations used by the saga recovery sweep.

Architecture position:
    Modules -- top of the dependency graph.  It lives here rather than in
    supply_services because it wires module services and the SQL contract
    catalog, and supply_services must not import supply_modules.

Invariants enforced:
    - Single-instance lifecycle: one pricing cache and one ledger client per
      registry; every bound service set shares them.
    - DI transparency: all wiring is visible in ``__init__`` and ``bind``;
      there is no decorator-based discovery and no module-level singleton.

Usage:
    registry = WorkflowRegistry(
        config=get_active_config(),
        session_factory=get_session_factory(),
        authorization=authz,
        notifier=notifier,
        documents=documents,
    )

    services = registry.bind(session)
    services.requisitions.submit(pr_id, user_id)
    services.purchase_orders.send(po_id, user_id)
    services.receipts.post(receipt_id, user_id)

    # periodic
    registry.recover_stale(session, actor_id=system_user_id)
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from supply_config import get_active_config
from supply_config.schema import SupplyConfig
from supply_engines.budget_control import BudgetControlEvaluator
from supply_kernel.db.engine import get_session_factory, init_engine_from_url
from supply_kernel.domain.clock import Clock, SystemClock
from supply_kernel.logging_config import get_logger
from supply_modules.contracts.catalog import SqlContractCatalog
from supply_modules.inventory.service import InventoryEffectApplier
from supply_modules.procurement.orm import (
    PurchaseOrderModel,
    PurchaseRequestModel,
    ReceiptModel,
)
from supply_modules.procurement.purchase_order_service import PurchaseOrderService
from supply_modules.procurement.receipt_service import ReceiptService
from supply_modules.procurement.requisition_service import RequisitionService
from supply_services.budget_ledger import BudgetLedgerClient
from supply_services.collaborators import (
    ApprovalDocumentProvider,
    AuthorizationProvider,
    ContractCatalog,
    LoggingNotifier,
    Notifier,
)
from supply_services.contract_pricing import ContractPricingCache
from supply_services.orm import WorkflowSagaModel
from supply_services.transaction_coordinator import RecoveryReport, TransactionCoordinator

logger = get_logger("modules.registry")

DEFAULT_RECOVERY_AGE = timedelta(minutes=15)

CLAIMABLE_MODELS = (PurchaseRequestModel, PurchaseOrderModel, ReceiptModel)


@dataclass(frozen=True)
class WorkflowServices:
    """Orchestrators bound to one session."""

    session: Session
    coordinator: TransactionCoordinator
    requisitions: RequisitionService
    purchase_orders: PurchaseOrderService
    receipts: ReceiptService


class WorkflowRegistry:
    """Process-wide factory for the workflow orchestrators.

    Contract:
        Constructed once at process start.  ``bind`` is cheap and is called
        once per request or job with that unit's session.

    Non-goals:
        - Does NOT own session lifecycles (callers open and close them).
    """

    def __init__(
        self,
        config: SupplyConfig,
        session_factory: sessionmaker[Session],
        authorization: AuthorizationProvider,
        notifier: Notifier | None = None,
        documents: ApprovalDocumentProvider | None = None,
        catalog: ContractCatalog | None = None,
        ledger: BudgetLedgerClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config
        self.clock = clock or SystemClock()
        self.authorization = authorization
        self.notifier = notifier or LoggingNotifier()
        self.documents = documents

        self.ledger = ledger or BudgetLedgerClient(config.budget_ledger)
        self.pricing_cache = ContractPricingCache(
            catalog or SqlContractCatalog(session_factory),
            clock=self.clock,
            ttl_seconds=config.pricing_cache.ttl_seconds,
        )
        self.evaluator = BudgetControlEvaluator()

        logger.info(
            "workflow_registry_initialized",
            extra={
                "config_source": config.source,
                "ledger_base_url": config.budget_ledger.base_url,
                "pricing_ttl_seconds": config.pricing_cache.ttl_seconds,
            },
        )

    @classmethod
    def from_config(
        cls,
        authorization: AuthorizationProvider,
        notifier: Notifier | None = None,
        documents: ApprovalDocumentProvider | None = None,
        config: SupplyConfig | None = None,
    ) -> WorkflowRegistry:
        """Load the active configuration, initialize the engine and build a registry."""
        config = config or get_active_config()
        init_engine_from_url(
            config.database.url,
            echo=config.database.echo,
            pool_size=config.database.pool_size,
        )
        return cls(
            config=config,
            session_factory=get_session_factory(),
            authorization=authorization,
            notifier=notifier,
            documents=documents,
        )

    def bind(self, session: Session) -> WorkflowServices:
        """Orchestrators sharing ``session`` and one coordinator."""
        coordinator = TransactionCoordinator(session, self.clock)
        procurement = self.config.procurement
        requisitions = RequisitionService(
            session,
            ledger=self.ledger,
            authorization=self.authorization,
            config=procurement,
            notifier=self.notifier,
            clock=self.clock,
            evaluator=self.evaluator,
            coordinator=coordinator,
        )
        purchase_orders = PurchaseOrderService(
            session,
            ledger=self.ledger,
            authorization=self.authorization,
            requisitions=requisitions,
            pricing=self.pricing_cache,
            documents=self.documents,
            config=procurement,
            notifier=self.notifier,
            clock=self.clock,
            coordinator=coordinator,
        )
        receipts = ReceiptService(
            session,
            config=procurement,
            notifier=self.notifier,
            clock=self.clock,
            inventory=InventoryEffectApplier(session, self.clock),
            coordinator=coordinator,
        )
        return WorkflowServices(
            session=session,
            coordinator=coordinator,
            requisitions=requisitions,
            purchase_orders=purchase_orders,
            receipts=receipts,
        )

    # -------------------------------------------------------------------------
    # Saga recovery
    # -------------------------------------------------------------------------

    def compensations(self) -> dict[str, Callable[[WorkflowSagaModel], Any]]:
        """Idempotent ledger releases keyed by the saga ``compensation`` name."""

        def release_reservation(saga: WorkflowSagaModel) -> Any:
            return self.ledger.release_reservation(
                purchase_request_id=UUID(saga.payload["purchase_request_id"]),
            )

        def release_commitment(saga: WorkflowSagaModel) -> Any:
            return self.ledger.release_commitment(
                purchase_order_id=UUID(saga.payload["purchase_order_id"]),
            )

        return {
            "release_reservation": release_reservation,
            "release_commitment": release_commitment,
        }

    def recover_stale(
        self,
        session: Session,
        actor_id: UUID,
        older_than: timedelta = DEFAULT_RECOVERY_AGE,
    ) -> RecoveryReport:
        """Run the saga recovery sweep over all orchestrated entity types."""
        return TransactionCoordinator(session, self.clock).recover_stale(
            older_than,
            self.compensations(),
            actor_id,
            claimable_models=CLAIMABLE_MODELS,
        )
