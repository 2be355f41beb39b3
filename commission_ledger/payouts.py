"""
Payout workflow.

pending -> approved | review, review -> approved | pending,
approved -> review. There is no rejected state: a rejected request goes
back to pending.

Funds leave ``available_balance`` when the payout is requested
(reservation ``held``). Approval consumes the reservation. Sending a
reviewed payout back to pending releases a held reservation exactly once;
a consumed one is never restored. A released payout that is approved
later reserves its amount again.
"""

import re
from decimal import Decimal
from typing import Any, Optional, Union
from uuid import UUID

import pydantic
from sqlalchemy.orm import Session

from .balances import BalanceAggregator
from .datetime_utils import utc_now
from .db import Database
from .earnings import EarningsLedger
from .errors import InsufficientBalance, LedgerError, ValidationError
from .logging_config import get_logger
from .models import (
    AgentStatus,
    BulkItemFailure,
    BulkPayoutAction,
    BulkResult,
    IndividualReviewMessage,
    PaymentDetails,
    PayoutMethod,
    PayoutRead,
    PayoutStatus,
    Reservation,
)
from .money import ZERO, to_money
from .notifications import EventKind, LedgerEvent, NotificationDispatcher
from .repository import BaseRepository
from .settings import settings
from .tables import Agent, Payout
from .transitions import ensure_transition

logger = get_logger(__name__)

MOBILE_PATTERN = re.compile(r"^\+\d{8,15}$")

BLOCKED_AGENT_STATUSES = frozenset({AgentStatus.INACTIVE.value, AgentStatus.SUSPENDED.value})


def validate_payment_details(
    method: PayoutMethod, details: Union[PaymentDetails, dict, None]
) -> dict[str, Any]:
    """Check the details required by ``method``; returns them as stored JSON."""
    try:
        parsed = PaymentDetails.model_validate(details or {})
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid payment details: {e.errors()[0]['msg']}")

    if method == PayoutMethod.BANK_TRANSFER:
        if parsed.bank_account is None:
            raise ValidationError("Bank account details are required for bank transfers")
        return {"bank_account": parsed.bank_account.model_dump(exclude_none=True)}

    credit = parsed.planettalk_credit
    if credit is None:
        raise ValidationError("PlanetTalk mobile number is required for PlanetTalk credit")
    mobile = credit.planettalk_mobile.replace(" ", "")
    if not MOBILE_PATTERN.match(mobile):
        raise ValidationError(
            f"PlanetTalk mobile number must be in international format (+ and 8-15 digits): "
            f"{credit.planettalk_mobile}"
        )
    return {"planettalk_credit": {**credit.model_dump(exclude_none=True), "planettalk_mobile": mobile}}


class PayoutWorkflow:
    def __init__(
        self,
        db: Database,
        balances: BalanceAggregator,
        earnings: EarningsLedger,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.db = db
        self.balances = balances
        self.earnings = earnings
        self.dispatcher = dispatcher or NotificationDispatcher()

    def request(
        self,
        agent_id: UUID,
        amount: Decimal,
        method: PayoutMethod = PayoutMethod.BANK_TRANSFER,
        payment_details: Union[PaymentDetails, dict, None] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PayoutRead:
        """Reserve ``amount`` from the available balance and open a pending payout."""
        amount = to_money(amount)
        if amount < settings.payout_min_amount:
            raise ValidationError(f"Minimum payout amount is {settings.payout_min_amount}")
        if amount > settings.payout_max_amount:
            raise ValidationError(f"Maximum payout amount is {settings.payout_max_amount}")
        details = validate_payment_details(method, payment_details)

        def work(session: Session) -> PayoutRead:
            payouts = BaseRepository(Payout, session, "payout")
            if idempotency_key:
                existing = payouts.get_by(idempotency_key=idempotency_key)
                if existing is not None:
                    return PayoutRead.model_validate(existing)

            agent = BaseRepository(Agent, session, "agent").lock(agent_id)
            if agent.status in BLOCKED_AGENT_STATUSES:
                raise ValidationError(
                    f"Agent {agent_id} cannot request payouts in status {agent.status}",
                    entity="agent",
                    entity_id=agent_id,
                    status=agent.status,
                    attempted="request_payout",
                )
            if agent.available_balance < amount:
                raise InsufficientBalance(
                    f"Insufficient balance: requested {amount}, available {agent.available_balance}",
                    entity="agent",
                    entity_id=agent_id,
                    attempted="request_payout",
                )

            self.balances.apply_payout_reserved(session, agent_id, amount)
            payout = payouts.add(
                agent_id=agent_id,
                status=PayoutStatus.PENDING.value,
                method=method.value,
                reservation=Reservation.HELD.value,
                amount=amount,
                fees=ZERO,
                net_amount=amount,
                currency=settings.currency,
                description=description,
                payment_details=details,
                idempotency_key=idempotency_key,
                requested_at=utc_now(),
            )
            logger.info(
                "payout_requested",
                payout_id=str(payout.id),
                agent_id=str(agent_id),
                amount=str(amount),
                method=method.value,
            )
            return PayoutRead.model_validate(payout)

        return self.db.run(work)

    def approve(
        self,
        payout_id: UUID,
        staff_id: UUID,
        fees: Optional[Decimal] = None,
        admin_notes: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> PayoutRead:
        fees = ZERO if fees is None else to_money(fees, "fees")
        if fees < ZERO:
            raise ValidationError("fees must not be negative")

        def work(session: Session) -> PayoutRead:
            payouts = BaseRepository(Payout, session, "payout")
            payout = self._lock(session, payout_id)
            current = PayoutStatus(payout.status)
            ensure_transition("payout", payout_id, current, PayoutStatus.APPROVED)
            if fees > payout.amount:
                raise ValidationError(
                    f"Fees {fees} exceed the payout amount {payout.amount}",
                    entity="payout",
                    entity_id=payout_id,
                )

            reservation = Reservation(payout.reservation)
            if reservation == Reservation.CONSUMED:
                # Approved before review; the original settlement stands
                payouts.compare_and_set(
                    payout,
                    {"status": current.value, "reservation": reservation.value},
                    status=PayoutStatus.APPROVED.value,
                    admin_notes=admin_notes if admin_notes is not None else payout.admin_notes,
                )
                logger.info(
                    "payout_reapproved",
                    payout_id=str(payout_id),
                    agent_id=str(payout.agent_id),
                    previous=current.value,
                    staff_id=str(staff_id),
                )
                return PayoutRead.model_validate(payout)
            if reservation == Reservation.RELEASED:
                self.balances.apply_payout_reserved(session, payout.agent_id, payout.amount)

            payouts.compare_and_set(
                payout,
                {"status": current.value, "reservation": reservation.value},
                status=PayoutStatus.APPROVED.value,
                reservation=Reservation.CONSUMED.value,
                fees=fees,
                net_amount=payout.amount - fees,
                admin_notes=admin_notes if admin_notes is not None else payout.admin_notes,
                transaction_id=transaction_id if transaction_id is not None else payout.transaction_id,
                processed_by=staff_id,
                approved_at=utc_now(),
            )
            self.balances.apply_payout_completed(session, payout.agent_id, payout.amount)
            settled = self.earnings.settle_paid(session, payout.agent_id)

            logger.info(
                "payout_approved",
                payout_id=str(payout_id),
                agent_id=str(payout.agent_id),
                previous=current.value,
                reservation=reservation.value,
                amount=str(payout.amount),
                fees=str(fees),
                earnings_settled=len(settled),
                staff_id=str(staff_id),
            )
            self._publish(session, payout, EventKind.PAYOUT_APPROVED,
                          f"Payout of {payout.net_amount} {payout.currency} approved")
            return PayoutRead.model_validate(payout)

        return self.db.run(work)

    def flag_for_review(
        self,
        payout_id: UUID,
        review_message: str,
        staff_id: Optional[UUID] = None,
        admin_notes: Optional[str] = None,
    ) -> PayoutRead:
        """pending/approved -> review. The reservation is left as it is."""
        if not review_message or not review_message.strip():
            raise ValidationError("A review message is required")

        def work(session: Session) -> PayoutRead:
            payouts = BaseRepository(Payout, session, "payout")
            payout = self._lock(session, payout_id)
            current = PayoutStatus(payout.status)
            ensure_transition("payout", payout_id, current, PayoutStatus.REVIEW)

            values: dict[str, Any] = {
                "status": PayoutStatus.REVIEW.value,
                "review_message": review_message.strip(),
            }
            if staff_id is not None:
                values["processed_by"] = staff_id
            if admin_notes is not None:
                values["admin_notes"] = admin_notes
            payouts.compare_and_set(payout, {"status": current.value}, **values)

            logger.info(
                "payout_flagged_for_review",
                payout_id=str(payout_id),
                agent_id=str(payout.agent_id),
                previous=current.value,
                reservation=payout.reservation,
            )
            self._publish(session, payout, EventKind.PAYOUT_FLAGGED_FOR_REVIEW,
                          f"Payout of {payout.amount} {payout.currency} needs attention: {payout.review_message}")
            return PayoutRead.model_validate(payout)

        return self.db.run(work)

    def return_to_pending(self, payout_id: UUID, staff_id: Optional[UUID] = None) -> PayoutRead:
        """review -> pending, restoring a held reservation to the available balance."""
        def work(session: Session) -> PayoutRead:
            payouts = BaseRepository(Payout, session, "payout")
            payout = self._lock(session, payout_id)
            current = PayoutStatus(payout.status)
            ensure_transition("payout", payout_id, current, PayoutStatus.PENDING)

            reservation = Reservation(payout.reservation)
            values: dict[str, Any] = {"status": PayoutStatus.PENDING.value}
            if reservation == Reservation.HELD:
                values["reservation"] = Reservation.RELEASED.value
            if staff_id is not None:
                values["processed_by"] = staff_id
            payouts.compare_and_set(
                payout, {"status": current.value, "reservation": reservation.value}, **values
            )
            if reservation == Reservation.HELD:
                self.balances.apply_payout_released(session, payout.agent_id, payout.amount)

            logger.info(
                "payout_returned_to_pending",
                payout_id=str(payout_id),
                agent_id=str(payout.agent_id),
                reservation=payout.reservation,
                restored=str(payout.amount) if reservation == Reservation.HELD else "0.00",
            )
            return PayoutRead.model_validate(payout)

        return self.db.run(work)

    def bulk_process(
        self,
        payout_ids: list[UUID],
        action: BulkPayoutAction,
        staff_id: UUID,
        admin_notes: Optional[str] = None,
        review_message: Optional[str] = None,
        individual_messages: Optional[list[IndividualReviewMessage]] = None,
    ) -> BulkResult:
        """Approve or flag each payout in its own transaction."""
        messages = {m.payout_id: m.review_message for m in individual_messages or []}
        result = BulkResult()
        for payout_id in payout_ids:
            try:
                if action == BulkPayoutAction.APPROVE:
                    self.approve(payout_id, staff_id, admin_notes=admin_notes)
                else:
                    message = messages.get(payout_id) or review_message
                    if not message:
                        raise ValidationError(f"No review message for payout {payout_id}")
                    self.flag_for_review(payout_id, message, staff_id=staff_id, admin_notes=admin_notes)
                result.succeeded.append(payout_id)
            except LedgerError as e:
                result.failed.append(BulkItemFailure(id=payout_id, error=str(e)))
        logger.info(
            "payouts_bulk_processed",
            action=action.value,
            succeeded=len(result.succeeded),
            failed=len(result.failed),
        )
        return result

    def _lock(self, session: Session, payout_id: UUID) -> Payout:
        # Agent first, then payout: the same order as earnings transitions
        payouts = BaseRepository(Payout, session, "payout")
        agent_id = payouts.get_or_raise(payout_id).agent_id
        BaseRepository(Agent, session, "agent").lock(agent_id)
        return payouts.lock(payout_id)

    def _publish(self, session: Session, payout: Payout, kind: EventKind, summary: str) -> None:
        self.dispatcher.publish(session, LedgerEvent(
            kind=kind,
            agent_id=payout.agent_id,
            entity_id=payout.id,
            amount=payout.amount,
            summary=summary,
        ))

    def get(self, payout_id: UUID) -> PayoutRead:
        with self.db.session() as session:
            return PayoutRead.model_validate(BaseRepository(Payout, session, "payout").get_or_raise(payout_id))

    def list_for_agent(self, agent_id: UUID, status: Optional[PayoutStatus] = None) -> list[PayoutRead]:
        filters = {"agent_id": agent_id}
        if status is not None:
            filters["status"] = status.value
        with self.db.session() as session:
            rows = BaseRepository(Payout, session, "payout").find_all(
                order_by=Payout.requested_at.desc(), **filters
            )
            return [PayoutRead.model_validate(r) for r in rows]

    def list(
        self,
        status: Optional[PayoutStatus] = None,
        method: Optional[PayoutMethod] = None,
        page: int = 1,
        limit: int = 20,
    ) -> list[PayoutRead]:
        filters = {}
        if status is not None:
            filters["status"] = status.value
        if method is not None:
            filters["method"] = method.value
        with self.db.session() as session:
            rows = BaseRepository(Payout, session, "payout").find_all(
                order_by=Payout.requested_at.desc(),
                limit=limit,
                offset=(max(page, 1) - 1) * limit,
                **filters,
            )
            return [PayoutRead.model_validate(r) for r in rows]
