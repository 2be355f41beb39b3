"""
Outbound ledger events.

Events are handed to the notifier only after the ledger transaction has
committed. A failing notifier is logged and never undoes ledger state.
"""

from decimal import Decimal
from enum import Enum
from typing import Callable, Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.orm import Session

from .db import after_commit
from .logging_config import get_logger

logger = get_logger(__name__)


class EventKind(str, Enum):
    EARNING_CONFIRMED = "earning_confirmed"
    PAYOUT_APPROVED = "payout_approved"
    PAYOUT_FLAGGED_FOR_REVIEW = "payout_flagged_for_review"


class LedgerEvent(BaseModel):
    kind: EventKind
    agent_id: UUID
    entity_id: UUID
    amount: Decimal
    summary: str


Notifier = Callable[[LedgerEvent], None]


def log_notifier(event: LedgerEvent) -> None:
    logger.info(
        "ledger_event",
        kind=event.kind.value,
        agent_id=str(event.agent_id),
        entity_id=str(event.entity_id),
        amount=str(event.amount),
        summary=event.summary,
    )


class NotificationDispatcher:
    def __init__(self, notifier: Optional[Notifier] = None):
        self.notifier = notifier or log_notifier

    def publish(self, session: Session, event: LedgerEvent) -> None:
        """Queue ``event`` for delivery after the session's transaction commits."""
        after_commit(session, lambda: self.deliver(event))

    def deliver(self, event: LedgerEvent) -> bool:
        try:
            self.notifier(event)
            return True
        except Exception as e:
            logger.warning(
                "notification_delivery_failed",
                kind=event.kind.value,
                agent_id=str(event.agent_id),
                entity_id=str(event.entity_id),
                error=str(e),
                exc_info=True,
            )
            return False
