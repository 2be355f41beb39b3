"""Database models for the commission and payout ledger."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .datetime_utils import utc_now
from .db_types import FixedDecimal, UUIDType
from .models import (
    AgentStatus,
    AgentTier,
    EarningStatus,
    EarningType,
    PayoutMethod,
    PayoutStatus,
    ReferralCodeStatus,
    ReferralCodeType,
    Reservation,
    UsageStatus,
)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )


class Agent(TimestampMixin, Base):
    """Referral-program participant.

    The three balance columns are a materialized projection of the earnings
    and payout ledgers, written only by the balance aggregator.
    """

    __tablename__ = "agents"

    id: Mapped[UUID] = mapped_column(UUIDType, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(UUIDType, unique=True, nullable=False)
    agent_code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), default=AgentStatus.ACTIVE.value, nullable=False
    )
    tier: Mapped[str] = mapped_column(
        String(16), default=AgentTier.BRONZE.value, nullable=False
    )
    commission_rate: Mapped[Decimal] = mapped_column(FixedDecimal(2), nullable=False)

    # Balances
    total_earnings: Mapped[Decimal] = mapped_column(
        FixedDecimal(2), default=Decimal("0.00"), nullable=False
    )
    pending_balance: Mapped[Decimal] = mapped_column(
        FixedDecimal(2), default=Decimal("0.00"), nullable=False
    )
    available_balance: Mapped[Decimal] = mapped_column(
        FixedDecimal(2), default=Decimal("0.00"), nullable=False
    )

    # Counters
    total_referrals: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active_referrals: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    earnings_suspended: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    metadata_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    referral_codes: Mapped[list["ReferralCode"]] = relationship(back_populates="agent")

    def __repr__(self) -> str:
        return f"<Agent(code={self.agent_code}, available={self.available_balance})>"


class ReferralCode(TimestampMixin, Base):
    __tablename__ = "referral_codes"

    id: Mapped[UUID] = mapped_column(UUIDType, primary_key=True, default=uuid4)
    agent_id: Mapped[UUID] = mapped_column(
        UUIDType, ForeignKey("agents.id"), nullable=False, index=True
    )
    code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), default=ReferralCodeStatus.ACTIVE.value, nullable=False
    )
    type: Mapped[str] = mapped_column(
        String(16), default=ReferralCodeType.STANDARD.value, nullable=False
    )
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    bonus_commission_rate: Mapped[Optional[Decimal]] = mapped_column(FixedDecimal(2), nullable=True)
    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # None = unlimited
    current_uses: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    agent: Mapped[Agent] = relationship(back_populates="referral_codes")

    def __repr__(self) -> str:
        return f"<ReferralCode(code={self.code}, uses={self.current_uses}/{self.max_uses})>"


class ReferralUsage(Base):
    __tablename__ = "referral_usages"

    id: Mapped[UUID] = mapped_column(UUIDType, primary_key=True, default=uuid4)
    referral_code_id: Mapped[UUID] = mapped_column(
        UUIDType, ForeignKey("referral_codes.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(16), default=UsageStatus.PENDING.value, nullable=False
    )
    referred_user_id: Mapped[Optional[UUID]] = mapped_column(UUIDType, nullable=True, index=True)
    referred_user_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    referred_user_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    referred_user_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Snapshot of the agent rate (plus code bonus) at time of use
    commission_rate: Mapped[Decimal] = mapped_column(FixedDecimal(2), nullable=False)
    commission_earned: Mapped[Optional[Decimal]] = mapped_column(FixedDecimal(2), nullable=True)

    idempotency_key: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False, index=True
    )


class AgentEarnings(TimestampMixin, Base):
    """Earnings ledger entry. Never deleted; only the status moves."""

    __tablename__ = "agent_earnings"
    __table_args__ = (
        Index("ix_agent_earnings_agent_status", "agent_id", "status"),
    )

    id: Mapped[UUID] = mapped_column(UUIDType, primary_key=True, default=uuid4)
    agent_id: Mapped[UUID] = mapped_column(UUIDType, ForeignKey("agents.id"), nullable=False)
    # One earning per usage at most
    referral_usage_id: Mapped[Optional[UUID]] = mapped_column(
        UUIDType, ForeignKey("referral_usages.id"), unique=True, nullable=True
    )
    type: Mapped[str] = mapped_column(
        String(32), default=EarningType.REFERRAL_COMMISSION.value, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(16), default=EarningStatus.PENDING.value, nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(FixedDecimal(2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    commission_rate: Mapped[Optional[Decimal]] = mapped_column(FixedDecimal(2), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reference_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    status_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)
    metadata_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    earned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class Payout(TimestampMixin, Base):
    __tablename__ = "payouts"
    __table_args__ = (
        Index("ix_payouts_agent_status", "agent_id", "status"),
    )

    id: Mapped[UUID] = mapped_column(UUIDType, primary_key=True, default=uuid4)
    agent_id: Mapped[UUID] = mapped_column(UUIDType, ForeignKey("agents.id"), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), default=PayoutStatus.PENDING.value, nullable=False
    )
    method: Mapped[str] = mapped_column(
        String(32), default=PayoutMethod.BANK_TRANSFER.value, nullable=False
    )
    # Whether the amount is currently held out of available_balance
    reservation: Mapped[str] = mapped_column(
        String(16), default=Reservation.HELD.value, nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(FixedDecimal(2), nullable=False)
    fees: Mapped[Decimal] = mapped_column(FixedDecimal(2), default=Decimal("0.00"), nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(FixedDecimal(2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    review_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_by: Mapped[Optional[UUID]] = mapped_column(UUIDType, nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)

    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False, index=True
    )
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Payout(id={self.id}, status={self.status}, amount={self.amount})>"
