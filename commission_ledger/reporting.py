"""Read-only aggregate queries over earnings and payouts."""

from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .datetime_utils import as_utc
from .db import Database
from .models import (
    AgentBalance,
    AgentEarningsRead,
    AmountBreakdown,
    EarningsSummary,
    PayoutStats,
    PayoutStatus,
    SystemEarningsSummary,
)
from .money import ZERO
from .repository import BaseRepository
from .tables import Agent, AgentEarnings, Payout

RECENT_EARNINGS = 10


def _breakdown(session: Session, key_column, amount_column, *criteria) -> list[AmountBreakdown]:
    stmt = (
        select(key_column, func.count(), func.sum(amount_column))
        .where(*criteria)
        .group_by(key_column)
        .order_by(key_column)
    )
    return [
        AmountBreakdown(key=key, count=count, amount=amount if amount is not None else ZERO)
        for key, count, amount in session.execute(stmt).all()
    ]


class LedgerReports:
    def __init__(self, db: Database):
        self.db = db

    def earnings_summary(self, agent_id: UUID) -> EarningsSummary:
        with self.db.session() as session:
            agent = BaseRepository(Agent, session, "agent").get_or_raise(agent_id)
            recent = BaseRepository(AgentEarnings, session, "earning").find_all(
                order_by=AgentEarnings.earned_at.desc(), limit=RECENT_EARNINGS, agent_id=agent_id
            )
            return EarningsSummary(
                agent_id=agent_id,
                balance=AgentBalance.model_validate({
                    "agent_id": agent.id,
                    "total_earnings": agent.total_earnings,
                    "pending_balance": agent.pending_balance,
                    "available_balance": agent.available_balance,
                }),
                by_type=_breakdown(session, AgentEarnings.type, AgentEarnings.amount, AgentEarnings.agent_id == agent_id),
                by_status=_breakdown(session, AgentEarnings.status, AgentEarnings.amount, AgentEarnings.agent_id == agent_id),
                recent=[AgentEarningsRead.model_validate(e) for e in recent],
            )

    def payout_stats(self) -> PayoutStats:
        with self.db.session() as session:
            by_status = _breakdown(session, Payout.status, Payout.amount)
            by_method = _breakdown(session, Payout.method, Payout.amount)
            approved = session.execute(
                select(Payout.requested_at, Payout.approved_at).where(
                    Payout.status == PayoutStatus.APPROVED.value,
                    Payout.approved_at.is_not(None),
                )
            ).all()

        average: Optional[float] = None
        if approved:
            seconds = [(as_utc(done) - as_utc(started)).total_seconds() for started, done in approved]
            average = sum(seconds) / len(seconds)
        return PayoutStats(
            total_count=sum(b.count for b in by_status),
            total_amount=sum((b.amount for b in by_status), ZERO),
            by_status=by_status,
            by_method=by_method,
            average_approval_seconds=average,
        )

    def system_earnings_summary(self) -> SystemEarningsSummary:
        with self.db.session() as session:
            agents, total, pending, available = session.execute(
                select(
                    func.count(Agent.id),
                    func.sum(Agent.total_earnings),
                    func.sum(Agent.pending_balance),
                    func.sum(Agent.available_balance),
                )
            ).one()
            return SystemEarningsSummary(
                agents=agents,
                total_earnings=_or_zero(total),
                pending_balance=_or_zero(pending),
                available_balance=_or_zero(available),
                by_status=_breakdown(session, AgentEarnings.status, AgentEarnings.amount),
                by_type=_breakdown(session, AgentEarnings.type, AgentEarnings.amount),
            )


def _or_zero(value: Optional[Decimal]) -> Decimal:
    return ZERO if value is None else value
