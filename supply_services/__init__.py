"""
supply_services -- Package init and public API.

Responsibility:
    Stateful components that hold sessions, network clients or process-wide
    caches: the budget ledger client, the contract pricing cache, the
    transaction coordinator and the collaborator protocols.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        supply_modules/  -> supply_services/ (allowed)
        supply_services/ -> supply_engines/, supply_kernel/, supply_config/ (allowed)
        supply_services/ -> supply_modules/  (FORBIDDEN)
"""

from supply_services.budget_ledger import (
    AvailabilityResult,
    BudgetLedgerClient,
    CommitmentResult,
    ReleaseResult,
    ReservationResult,
)
from supply_services.collaborators import (
    ApprovalDocumentProvider,
    AuthorizationProvider,
    ContractCatalog,
    LoggingNotifier,
    Notifier,
    notify_safely,
)
from supply_services.contract_pricing import ContractPricingCache
from supply_services.transaction_coordinator import (
    RecoveryReport,
    TransactionCoordinator,
    UnitOfWork,
)

__all__ = [
    "ApprovalDocumentProvider",
    "AuthorizationProvider",
    "AvailabilityResult",
    "BudgetLedgerClient",
    "CommitmentResult",
    "ContractCatalog",
    "ContractPricingCache",
    "LoggingNotifier",
    "Notifier",
    "RecoveryReport",
    "ReleaseResult",
    "ReservationResult",
    "TransactionCoordinator",
    "UnitOfWork",
    "notify_safely",
]
