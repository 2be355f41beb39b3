"""
Balance aggregator.

The only writer of ``Agent.total_earnings``, ``pending_balance`` and
``available_balance``. Every delta runs inside the caller's ledger
transaction as a single guarded UPDATE, so a balance can never be driven
negative and two writers can never lose each other's update.

Invariant kept per agent:

    total_earnings == pending_balance + available_balance
                      + sum(payouts whose reservation is held or consumed)
"""

from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .db import Database
from .errors import BalanceUnderflow, InsufficientBalance, IntegrityViolation, LedgerError
from .logging_config import get_logger
from .models import (
    AgentBalance,
    BalanceMismatch,
    EarningStatus,
    ReconciliationReport,
    Reservation,
)
from .money import ZERO
from .repository import BaseRepository
from .tables import Agent, AgentEarnings, Payout

logger = get_logger(__name__)

BALANCE_FIELDS = ("total_earnings", "pending_balance", "available_balance")


class BalanceAggregator:
    def __init__(self, db: Database):
        self.db = db

    # Ledger event deltas

    def apply_earning_created(
        self,
        session: Session,
        agent_id: UUID,
        amount: Decimal,
        confirmed: bool = False,
        on_underflow: Callable[..., LedgerError] = BalanceUnderflow,
    ) -> Agent:
        """New earning: into pending (or straight into available for confirmed entries).

        Deductions (negative confirmed amounts) raise ``on_underflow`` when
        they exceed the available balance.
        """
        bucket = "available_balance" if confirmed else "pending_balance"
        return self._apply(
            session, agent_id, "earning_created",
            {"total_earnings": amount, bucket: amount},
            on_underflow=on_underflow,
        )

    def apply_earning_confirmed(self, session: Session, agent_id: UUID, amount: Decimal) -> Agent:
        """pending -> available; total unchanged."""
        return self._apply(
            session, agent_id, "earning_confirmed",
            {"pending_balance": -amount, "available_balance": amount},
        )

    def apply_earning_reversed(
        self, session: Session, agent_id: UUID, amount: Decimal, from_pending: bool
    ) -> Agent:
        """Cancel/dispute: remove from whichever bucket holds it, and from total."""
        bucket = "pending_balance" if from_pending else "available_balance"
        return self._apply(
            session, agent_id, "earning_reversed",
            {"total_earnings": -amount, bucket: -amount},
        )

    def apply_earning_reinstated(
        self,
        session: Session,
        agent_id: UUID,
        amount: Decimal,
        on_underflow: Callable[..., LedgerError] = BalanceUnderflow,
    ) -> Agent:
        """A disputed earning resolved in the agent's favour."""
        return self._apply(
            session, agent_id, "earning_reinstated",
            {"total_earnings": amount, "available_balance": amount},
            on_underflow=on_underflow,
        )

    def apply_payout_reserved(self, session: Session, agent_id: UUID, amount: Decimal) -> Agent:
        return self._apply(
            session, agent_id, "payout_reserved",
            {"available_balance": -amount},
            on_underflow=InsufficientBalance,
        )

    def apply_payout_released(self, session: Session, agent_id: UUID, amount: Decimal) -> Agent:
        return self._apply(
            session, agent_id, "payout_released",
            {"available_balance": amount},
        )

    def apply_payout_completed(self, session: Session, agent_id: UUID, amount: Decimal) -> Agent:
        """Reserved funds are disbursed; they already left available_balance."""
        agent = BaseRepository(Agent, session, "agent").get_or_raise(agent_id)
        logger.info("balance_payout_completed", agent_id=str(agent_id), amount=str(amount))
        return agent

    def _apply(
        self,
        session: Session,
        agent_id: UUID,
        event: str,
        deltas: dict[str, Decimal],
        on_underflow: Callable[..., LedgerError] = BalanceUnderflow,
    ) -> Agent:
        agents = BaseRepository(Agent, session, "agent")
        guards = []
        values = {}
        for field, delta in deltas.items():
            if delta == ZERO:
                continue
            column = getattr(Agent, field)
            values[field] = column + delta
            if delta < ZERO:
                guards.append(column >= -delta)

        if values and not agents.guarded_update(agent_id, guards, **values):
            agent = agents.get_or_raise(agent_id)
            agents.reload(agent)
            snapshot = {f: str(getattr(agent, f)) for f in BALANCE_FIELDS}
            if on_underflow is BalanceUnderflow:
                logger.error(
                    "integrity_alert",
                    reason="balance_underflow",
                    ledger_event=event,
                    agent_id=str(agent_id),
                    deltas={k: str(v) for k, v in deltas.items()},
                    **snapshot,
                )
            raise on_underflow(
                f"{event} for agent {agent_id} would make a balance negative "
                f"(available={agent.available_balance}, pending={agent.pending_balance}, "
                f"total={agent.total_earnings})",
                entity="agent",
                entity_id=agent_id,
                attempted=event,
            )

        agent = agents.get_or_raise(agent_id)
        agents.reload(agent)
        logger.info(
            "balance_updated",
            ledger_event=event,
            agent_id=str(agent_id),
            **{f: str(getattr(agent, f)) for f in BALANCE_FIELDS},
        )
        return agent

    # Queries and reconciliation

    def get_balance(self, agent_id: UUID) -> AgentBalance:
        with self.db.session() as session:
            agent = BaseRepository(Agent, session, "agent").get_or_raise(agent_id)
            return AgentBalance(
                agent_id=agent.id,
                total_earnings=agent.total_earnings,
                pending_balance=agent.pending_balance,
                available_balance=agent.available_balance,
            )

    def reconcile(self, agent_id: UUID) -> ReconciliationReport:
        """Recompute balances from the ledgers and compare with the materialized columns."""
        with self.db.session() as session:
            return self.reconcile_in(session, agent_id)

    def reconcile_in(self, session: Session, agent_id: UUID) -> ReconciliationReport:
        agent = BaseRepository(Agent, session, "agent").get_or_raise(agent_id)

        earnings = _sums_by(session, AgentEarnings.status, AgentEarnings.amount, AgentEarnings.agent_id == agent_id)
        payouts = _sums_by(session, Payout.reservation, Payout.amount, Payout.agent_id == agent_id)

        pending = earnings.get(EarningStatus.PENDING.value, ZERO)
        confirmed = earnings.get(EarningStatus.CONFIRMED.value, ZERO)
        paid = earnings.get(EarningStatus.PAID.value, ZERO)
        held = payouts.get(Reservation.HELD.value, ZERO)
        consumed = payouts.get(Reservation.CONSUMED.value, ZERO)

        expected = AgentBalance(
            agent_id=agent_id,
            total_earnings=pending + confirmed + paid,
            pending_balance=pending,
            available_balance=confirmed + paid - held - consumed,
        )
        actual = AgentBalance(
            agent_id=agent_id,
            total_earnings=agent.total_earnings,
            pending_balance=agent.pending_balance,
            available_balance=agent.available_balance,
        )

        mismatches = [
            BalanceMismatch(field=f, expected=getattr(expected, f), actual=getattr(actual, f))
            for f in BALANCE_FIELDS
            if getattr(expected, f) != getattr(actual, f)
        ]
        mismatches.extend(
            BalanceMismatch(field=f, expected=ZERO, actual=getattr(actual, f))
            for f in BALANCE_FIELDS
            if getattr(actual, f) < ZERO
        )
        if paid > consumed:
            mismatches.append(BalanceMismatch(field="paid_earnings", expected=consumed, actual=paid))

        report = ReconciliationReport(
            agent_id=agent_id,
            expected=expected,
            actual=actual,
            paid_earnings=paid,
            reserved_payouts=held,
            consumed_payouts=consumed,
            mismatches=mismatches,
        )
        for mismatch in mismatches:
            logger.error(
                "integrity_alert",
                reason="reconciliation_mismatch",
                agent_id=str(agent_id),
                field=mismatch.field,
                expected=str(mismatch.expected),
                actual=str(mismatch.actual),
            )
        return report

    def assert_consistent(self, agent_id: UUID) -> ReconciliationReport:
        report = self.reconcile(agent_id)
        if not report.is_consistent:
            fields = ", ".join(m.field for m in report.mismatches)
            raise IntegrityViolation(
                f"Balances for agent {agent_id} do not match the ledger: {fields}",
                entity="agent",
                entity_id=agent_id,
            )
        return report

    def reconcile_all(self, limit: Optional[int] = None) -> list[ReconciliationReport]:
        """Check every agent; returns only the inconsistent reports."""
        with self.db.session() as session:
            agent_ids = list(session.execute(select(Agent.id).order_by(Agent.created_at).limit(limit)).scalars())
            reports = [self.reconcile_in(session, agent_id) for agent_id in agent_ids]
        failed = [r for r in reports if not r.is_consistent]
        logger.info("reconciliation_finished", agents=len(reports), inconsistent=len(failed))
        return failed


def _sums_by(session: Session, key_column, amount_column, *criteria) -> dict[str, Decimal]:
    stmt = select(key_column, func.sum(amount_column)).where(*criteria).group_by(key_column)
    return {key: total if total is not None else ZERO for key, total in session.execute(stmt).all()}
