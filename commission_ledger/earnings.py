"""
Earnings ledger.

Entries are never deleted; only ``status`` moves, and every move goes
through the transition table and applies its balance delta in the same
transaction.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .balances import BalanceAggregator
from .datetime_utils import as_utc, utc_now
from .db import Database
from .errors import (
    BalanceUnderflow,
    InsufficientBalance,
    InvalidTransition,
    LedgerError,
    NotFoundError,
    ValidationError,
)
from .logging_config import get_logger
from .models import (
    AdjustmentKind,
    AgentEarningsRead,
    BulkItemFailure,
    BulkResult,
    BulkUploadResult,
    EarningStatus,
    EarningType,
    EarningUploadEntry,
    Reservation,
    UploadRowResult,
    UploadRowStatus,
    UsageStatus,
)
from .money import ZERO, to_money
from .notifications import EventKind, LedgerEvent, NotificationDispatcher
from .repository import BaseRepository
from .settings import settings
from .tables import Agent, AgentEarnings, Payout, ReferralCode, ReferralUsage
from .transitions import ensure_transition

logger = get_logger(__name__)

# Only these types may carry a negative amount, and only when created confirmed
DEDUCTION_TYPES = frozenset({EarningType.PENALTY, EarningType.ADJUSTMENT})

ADJUSTMENT_TYPES = {
    AdjustmentKind.BONUS: EarningType.BONUS,
    AdjustmentKind.PENALTY: EarningType.PENALTY,
}


class EarningsLedger:
    def __init__(
        self,
        db: Database,
        balances: BalanceAggregator,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.db = db
        self.balances = balances
        self.dispatcher = dispatcher or NotificationDispatcher()

    # Creation

    def create(
        self,
        agent_id: UUID,
        type: EarningType,
        amount: Decimal,
        status: EarningStatus = EarningStatus.PENDING,
        source_usage_id: Optional[UUID] = None,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> AgentEarningsRead:
        amount = to_money(amount)

        def work(session: Session) -> AgentEarningsRead:
            if idempotency_key:
                existing = BaseRepository(AgentEarnings, session, "earning").get_by(
                    idempotency_key=idempotency_key
                )
                if existing is not None:
                    if existing.agent_id != agent_id:
                        raise ValidationError(
                            f"Idempotency key {idempotency_key} belongs to another agent",
                            entity="earning",
                            entity_id=existing.id,
                        )
                    return AgentEarningsRead.model_validate(existing)
            earning = self.create_entry(
                session,
                agent_id=agent_id,
                type=type,
                amount=amount,
                status=status,
                referral_usage_id=source_usage_id,
                description=description,
                reference_id=reference_id,
                idempotency_key=idempotency_key,
                on_underflow=InsufficientBalance,
            )
            return AgentEarningsRead.model_validate(earning)

        return self.db.run(work)

    def create_adjustment(
        self,
        agent_id: UUID,
        amount: Decimal,
        kind: AdjustmentKind,
        reason: str,
        notes: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> AgentEarningsRead:
        """Staff adjustment, created confirmed. Deductions need enough available balance."""
        amount = to_money(amount)
        if amount == ZERO:
            raise ValidationError("Adjustment amount must not be zero")
        earning_type = ADJUSTMENT_TYPES.get(kind, EarningType.ADJUSTMENT)
        if earning_type == EarningType.BONUS and amount < ZERO:
            raise ValidationError("A bonus adjustment must be positive")

        def work(session: Session) -> AgentEarningsRead:
            earning = self.create_entry(
                session,
                agent_id=agent_id,
                type=earning_type,
                amount=amount,
                status=EarningStatus.CONFIRMED,
                description=reason,
                reference_id=reference_id,
                metadata={"adjustment_kind": kind.value, "reason": reason, "notes": notes},
                on_underflow=InsufficientBalance,
            )
            return AgentEarningsRead.model_validate(earning)

        return self.db.run(work)

    def create_entry(
        self,
        session: Session,
        *,
        agent_id: UUID,
        type: EarningType,
        amount: Decimal,
        status: EarningStatus = EarningStatus.PENDING,
        referral_usage_id: Optional[UUID] = None,
        commission_rate: Optional[Decimal] = None,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        earned_at: Optional[datetime] = None,
        on_underflow: Callable[..., LedgerError] = BalanceUnderflow,
    ) -> AgentEarnings:
        """Insert an entry and apply its creation delta inside ``session``."""
        if status not in (EarningStatus.PENDING, EarningStatus.CONFIRMED):
            raise ValidationError(f"Earnings can only be created pending or confirmed, not {status.value}")
        if amount < ZERO and (type not in DEDUCTION_TYPES or status != EarningStatus.CONFIRMED):
            raise ValidationError(
                "Negative amounts are only allowed for confirmed penalty or adjustment entries"
            )

        agent = BaseRepository(Agent, session, "agent").lock(agent_id)
        if agent.earnings_suspended and amount > ZERO:
            raise ValidationError(
                f"Earnings are suspended for agent {agent_id}",
                entity="agent",
                entity_id=agent_id,
                attempted="create_earning",
            )
        if referral_usage_id is not None:
            self._check_usage_link(session, referral_usage_id, agent_id)

        now = utc_now()
        earning = BaseRepository(AgentEarnings, session, "earning").add(
            agent_id=agent_id,
            referral_usage_id=referral_usage_id,
            type=type.value,
            status=status.value,
            amount=amount,
            currency=settings.currency,
            commission_rate=commission_rate,
            description=description,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
            metadata_json=metadata,
            earned_at=as_utc(earned_at).astimezone(timezone.utc) if earned_at else now,
            confirmed_at=now if status == EarningStatus.CONFIRMED else None,
        )
        self.balances.apply_earning_created(
            session, agent_id, amount,
            confirmed=status == EarningStatus.CONFIRMED,
            on_underflow=on_underflow,
        )
        logger.info(
            "earning_created",
            earning_id=str(earning.id),
            agent_id=str(agent_id),
            type=type.value,
            status=status.value,
            amount=str(amount),
        )
        if status == EarningStatus.CONFIRMED:
            self._publish_confirmed(session, earning)
        return earning

    def _check_usage_link(self, session: Session, usage_id: UUID, agent_id: UUID) -> None:
        """A commission may only point at a confirmed usage of the agent's own code, once."""
        usage = BaseRepository(ReferralUsage, session, "referral_usage").get_or_raise(usage_id)
        code = BaseRepository(ReferralCode, session, "referral_code").get_or_raise(usage.referral_code_id)
        if code.agent_id != agent_id:
            raise ValidationError(
                f"Usage {usage_id} belongs to another agent's referral code",
                entity="referral_usage",
                entity_id=usage_id,
            )
        if usage.status != UsageStatus.CONFIRMED.value:
            raise InvalidTransition(
                f"Usage {usage_id} is {usage.status}; only confirmed usages earn commission",
                entity="referral_usage",
                entity_id=usage_id,
                status=usage.status,
                attempted="create_earning",
            )
        linked = BaseRepository(AgentEarnings, session, "earning").get_by(referral_usage_id=usage_id)
        if linked is not None:
            raise ValidationError(
                f"Usage {usage_id} already has earning {linked.id}",
                entity="referral_usage",
                entity_id=usage_id,
            )

    # Transitions

    def confirm(self, earning_id: UUID) -> AgentEarningsRead:
        return self._transition(earning_id, EarningStatus.CONFIRMED)

    def cancel(self, earning_id: UUID, reason: Optional[str] = None) -> AgentEarningsRead:
        return self._transition(earning_id, EarningStatus.CANCELLED, reason)

    def dispute(self, earning_id: UUID, reason: Optional[str] = None) -> AgentEarningsRead:
        return self._transition(earning_id, EarningStatus.DISPUTED, reason)

    def reinstate(self, earning_id: UUID, reason: Optional[str] = None) -> AgentEarningsRead:
        """Resolve a dispute in the agent's favour: disputed -> confirmed."""
        return self._transition(earning_id, EarningStatus.CONFIRMED, reason, expected=EarningStatus.DISPUTED)

    def mark_paid(self, earning_id: UUID) -> AgentEarningsRead:
        """
        confirmed -> paid. Idempotent: an already paid earning is returned as is.

        Only succeeds while the agent's approved payouts still cover it.
        """
        def work(session: Session) -> AgentEarningsRead:
            earnings = BaseRepository(AgentEarnings, session, "earning")
            agent_id = earnings.get_or_raise(earning_id).agent_id
            BaseRepository(Agent, session, "agent").lock(agent_id)
            earning = earnings.lock(earning_id)
            if earning.status == EarningStatus.PAID.value:
                return AgentEarningsRead.model_validate(earning)
            ensure_transition("earning", earning_id, EarningStatus(earning.status), EarningStatus.PAID)
            if earning.amount > self.unsettled_payout_total(session, agent_id):
                raise InvalidTransition(
                    f"Earning {earning_id} is not covered by an approved payout",
                    entity="earning",
                    entity_id=earning_id,
                    status=earning.status,
                    attempted=EarningStatus.PAID.value,
                )
            self._set_paid(earnings, earning)
            return AgentEarningsRead.model_validate(earning)

        return self.db.run(work)

    def _transition(
        self,
        earning_id: UUID,
        target: EarningStatus,
        reason: Optional[str] = None,
        expected: Optional[EarningStatus] = None,
    ) -> AgentEarningsRead:
        def work(session: Session) -> AgentEarningsRead:
            earnings = BaseRepository(AgentEarnings, session, "earning")
            agent_id = earnings.get_or_raise(earning_id).agent_id
            BaseRepository(Agent, session, "agent").lock(agent_id)
            earning = earnings.lock(earning_id)

            current = EarningStatus(earning.status)
            if expected is not None and current != expected:
                raise InvalidTransition(
                    f"Earning {earning_id} is {current.value}, expected {expected.value}",
                    entity="earning",
                    entity_id=earning_id,
                    status=current.value,
                    attempted=target.value,
                )
            if target == EarningStatus.PAID:
                raise InvalidTransition(
                    "Earnings are marked paid by payout approval",
                    entity="earning",
                    entity_id=earning_id,
                    status=current.value,
                    attempted=target.value,
                )
            ensure_transition("earning", earning_id, current, target)

            values: dict[str, Any] = {"status": target.value}
            if reason is not None:
                values["status_reason"] = reason
            if target == EarningStatus.CONFIRMED and earning.confirmed_at is None:
                values["confirmed_at"] = utc_now()
            earnings.compare_and_set(earning, {"status": current.value}, **values)

            self._apply_balance(session, earning, current, target)
            logger.info(
                "earning_status_changed",
                earning_id=str(earning_id),
                agent_id=str(agent_id),
                previous=current.value,
                status=target.value,
                amount=str(earning.amount),
                reason=reason,
            )
            if target == EarningStatus.CONFIRMED:
                self._publish_confirmed(session, earning)
            return AgentEarningsRead.model_validate(earning)

        return self.db.run(work)

    def _apply_balance(
        self, session: Session, earning: AgentEarnings, current: EarningStatus, target: EarningStatus
    ) -> None:
        agent_id, amount = earning.agent_id, earning.amount
        if current == EarningStatus.PENDING and target == EarningStatus.CONFIRMED:
            self.balances.apply_earning_confirmed(session, agent_id, amount)
        elif current == EarningStatus.DISPUTED and target == EarningStatus.CONFIRMED:
            self.balances.apply_earning_reinstated(
                session, agent_id, amount, on_underflow=InsufficientBalance
            )
        elif current == EarningStatus.DISPUTED:
            # Already reversed when it was disputed
            pass
        elif target in (EarningStatus.CANCELLED, EarningStatus.DISPUTED):
            self.balances.apply_earning_reversed(
                session, agent_id, amount, from_pending=current == EarningStatus.PENDING
            )

    # Payout settlement

    def unsettled_payout_total(self, session: Session, agent_id: UUID) -> Decimal:
        """Approved payout money not yet matched by paid earnings."""
        consumed = session.execute(
            select(func.sum(Payout.amount)).where(
                Payout.agent_id == agent_id,
                Payout.reservation == Reservation.CONSUMED.value,
            )
        ).scalar()
        paid = session.execute(
            select(func.sum(AgentEarnings.amount)).where(
                AgentEarnings.agent_id == agent_id,
                AgentEarnings.status == EarningStatus.PAID.value,
            )
        ).scalar()
        return (consumed or ZERO) - (paid or ZERO)

    def settle_paid(self, session: Session, agent_id: UUID) -> list[AgentEarnings]:
        """
        Mark confirmed earnings paid, oldest first, while approved payouts cover them.

        Runs inside the approving transaction with the agent row locked.
        Stops at the first earning that does not fit, so entries settle in
        ``earned_at`` order. Running it again settles nothing new.
        """
        capacity = self.unsettled_payout_total(session, agent_id)
        earnings = BaseRepository(AgentEarnings, session, "earning")
        candidates = earnings.find_all(
            AgentEarnings.amount > ZERO,
            order_by=AgentEarnings.earned_at,
            agent_id=agent_id,
            status=EarningStatus.CONFIRMED.value,
        )
        settled = []
        for earning in candidates:
            if earning.amount > capacity:
                break
            self._set_paid(earnings, earning)
            capacity -= earning.amount
            settled.append(earning)
        if settled:
            logger.info(
                "earnings_settled",
                agent_id=str(agent_id),
                count=len(settled),
                amount=str(sum((e.amount for e in settled), ZERO)),
            )
        return settled

    def _set_paid(self, earnings: BaseRepository[AgentEarnings], earning: AgentEarnings) -> None:
        earnings.compare_and_set(
            earning,
            {"status": EarningStatus.CONFIRMED.value},
            status=EarningStatus.PAID.value,
            paid_at=utc_now(),
        )

    # Bulk

    def bulk_confirm(self, earning_ids: list[UUID]) -> BulkResult:
        return self._bulk(earning_ids, self.confirm)

    def bulk_cancel(self, earning_ids: list[UUID], reason: Optional[str] = None) -> BulkResult:
        return self._bulk(earning_ids, lambda earning_id: self.cancel(earning_id, reason))

    def _bulk(self, earning_ids: list[UUID], action: Callable[[UUID], Any]) -> BulkResult:
        result = BulkResult()
        for earning_id in earning_ids:
            try:
                action(earning_id)
                result.succeeded.append(earning_id)
            except LedgerError as e:
                result.failed.append(BulkItemFailure(id=earning_id, error=str(e)))
        logger.info("earnings_bulk_processed", succeeded=len(result.succeeded), failed=len(result.failed))
        return result

    def bulk_upload(
        self,
        entries: list[EarningUploadEntry],
        auto_confirm: bool = False,
        batch_description: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> BulkUploadResult:
        """
        Feed externally computed earnings by agent code, one transaction per row.

        Rows whose ``reference_id`` already appeared earlier in the batch or
        exists in the ledger are skipped. Unknown agent codes and rejected
        rows are reported as failed without stopping the batch.
        """
        result = BulkUploadResult(
            batch_id=f"BATCH-{uuid4().hex[:12].upper()}",
            total_processed=len(entries),
        )
        batch_metadata = {
            **(metadata or {}),
            "batch_id": result.batch_id,
            "batch_description": batch_description,
        }
        status = EarningStatus.CONFIRMED if auto_confirm else EarningStatus.PENDING
        seen_references: set[str] = set()

        for row, entry in enumerate(entries, start=1):
            detail = UploadRowResult(
                row=row, agent_code=entry.agent_code, status=UploadRowStatus.FAILED, amount=entry.amount
            )
            result.details.append(detail)
            if entry.reference_id and entry.reference_id in seen_references:
                self._skip(result, detail, entry.reference_id, "Duplicate reference id in this batch")
                continue
            if entry.reference_id:
                seen_references.add(entry.reference_id)

            try:
                earning = self.db.run(lambda session: self._upload_row(session, entry, status, batch_metadata))
            except NotFoundError as e:
                detail.error = e.message
                result.failed += 1
                if entry.agent_code not in result.invalid_agent_codes:
                    result.invalid_agent_codes.append(entry.agent_code)
                continue
            except LedgerError as e:
                detail.error = e.message
                result.failed += 1
                continue

            if earning is None:
                self._skip(result, detail, entry.reference_id, "Reference id already exists in the ledger")
                continue
            detail.status = UploadRowStatus.SUCCESS
            detail.earning_id = earning.id
            result.successful += 1
            result.total_amount += earning.amount
            agent_code = entry.agent_code.strip().upper()
            if agent_code not in result.updated_agents:
                result.updated_agents.append(agent_code)

        logger.info(
            "earnings_uploaded",
            batch_id=result.batch_id,
            successful=result.successful,
            skipped=result.skipped,
            failed=result.failed,
            total_amount=str(result.total_amount),
        )
        return result

    def _upload_row(
        self,
        session: Session,
        entry: EarningUploadEntry,
        status: EarningStatus,
        metadata: dict[str, Any],
    ) -> Optional[AgentEarnings]:
        agent = BaseRepository(Agent, session, "agent").get_by(agent_code=entry.agent_code.strip().upper())
        if agent is None:
            raise NotFoundError(f"Agent code {entry.agent_code} not found", entity="agent")
        if entry.reference_id and BaseRepository(AgentEarnings, session, "earning").count(
            reference_id=entry.reference_id
        ):
            return None
        return self.create_entry(
            session,
            agent_id=agent.id,
            type=entry.type,
            amount=to_money(entry.amount),
            status=status,
            commission_rate=entry.commission_rate,
            description=entry.description,
            reference_id=entry.reference_id,
            metadata=metadata,
            earned_at=entry.earned_at,
        )

    @staticmethod
    def _skip(result: BulkUploadResult, detail: UploadRowResult, reference_id: str, reason: str) -> None:
        detail.status = UploadRowStatus.SKIPPED
        detail.error = reason
        result.skipped += 1
        result.duplicate_references.append(reference_id)

    # Queries

    def get(self, earning_id: UUID) -> AgentEarningsRead:
        with self.db.session() as session:
            return AgentEarningsRead.model_validate(
                BaseRepository(AgentEarnings, session, "earning").get_or_raise(earning_id)
            )

    def list_for_agent(
        self,
        agent_id: UUID,
        status: Optional[EarningStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AgentEarningsRead]:
        filters = {"agent_id": agent_id}
        if status is not None:
            filters["status"] = status.value
        with self.db.session() as session:
            rows = BaseRepository(AgentEarnings, session, "earning").find_all(
                order_by=AgentEarnings.earned_at.desc(), limit=limit, offset=offset, **filters
            )
            return [AgentEarningsRead.model_validate(r) for r in rows]

    def _publish_confirmed(self, session: Session, earning: AgentEarnings) -> None:
        self.dispatcher.publish(session, LedgerEvent(
            kind=EventKind.EARNING_CONFIRMED,
            agent_id=earning.agent_id,
            entity_id=earning.id,
            amount=earning.amount,
            summary=f"{earning.type} earning of {earning.amount} {earning.currency} confirmed",
        ))
