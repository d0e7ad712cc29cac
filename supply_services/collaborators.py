"""
Collaborator interfaces consumed by the workflow orchestrators.

Authorization, notification delivery, contract lookup and approval
document storage are owned by the surrounding platform.  The orchestrators
depend only on these protocols; ``WorkflowRegistry`` wires concrete
implementations at process start.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

from supply_kernel.logging_config import get_logger

logger = get_logger("services.collaborators")


class AuthorizationProvider(Protocol):
    """Answers permission checks such as ``purchase_request.approve``."""

    def has_permission(self, user_id: UUID, action: str) -> bool: ...


class Notifier(Protocol):
    """Best-effort notification delivery; failures must not affect workflows."""

    def notify(self, event: str, payload: dict[str, Any]) -> None: ...


class ContractCatalog(Protocol):
    """Source of contract prices behind ``ContractPricingCache``."""

    def find_active_price(
        self, vendor_id: UUID, item_id: UUID, on_date: date,
    ) -> Decimal | None: ...


class ApprovalDocumentProvider(Protocol):
    """Tells whether a signed approval document is attached to a PO."""

    def has_approval_document(self, purchase_order_id: UUID) -> bool: ...


class LoggingNotifier:
    """Notifier that only records the event in the structured log."""

    def notify(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("notification_emitted", extra={"event": event, "payload": payload})


def notify_safely(notifier: Notifier | None, event: str, payload: dict[str, Any]) -> None:
    """Deliver a notification without letting a failure escape."""
    if notifier is None:
        return
    try:
        notifier.notify(event, payload)
    except Exception:
        logger.warning(
            "notification_failed",
            extra={"event": event},
            exc_info=True,
        )
