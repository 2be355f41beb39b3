"""
Usage recorder.

Turns a referred-user action on a code into a ``ReferralUsage`` and, on
confirmation, into exactly one pending commission earning.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from .datetime_utils import utc_now
from .db import Database
from .earnings import EarningsLedger
from .errors import ValidationError
from .logging_config import get_logger
from .models import (
    AgentEarningsRead,
    EarningStatus,
    EarningType,
    ReferralUsageRead,
    ReferredUser,
    UsageConfirmation,
    UsageStatus,
)
from .money import HUNDRED, ZERO, commission, to_money
from .registry import ReferralCodeRegistry
from .repository import BaseRepository
from .tables import Agent, AgentEarnings, ReferralCode, ReferralUsage
from .transitions import ensure_transition

logger = get_logger(__name__)


class UsageRecorder:
    def __init__(self, db: Database, registry: ReferralCodeRegistry, earnings: EarningsLedger):
        self.db = db
        self.registry = registry
        self.earnings = earnings

    def record(
        self,
        code: str,
        referred_user: Optional[ReferredUser] = None,
        idempotency_key: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ReferralUsageRead:
        """
        Consume one use of ``code`` and record who used it.

        A repeated ``idempotency_key`` returns the usage already recorded
        under it without consuming another slot.
        """
        referred_user = referred_user or ReferredUser()

        def work(session: Session) -> ReferralUsageRead:
            usages = BaseRepository(ReferralUsage, session, "referral_usage")
            if idempotency_key:
                existing = usages.get_by(idempotency_key=idempotency_key)
                if existing is not None:
                    logger.info("usage_idempotent_return", usage_id=str(existing.id))
                    return ReferralUsageRead.model_validate(existing)

            referral_code = self.registry.record_use(session, code)
            agent = referral_code.agent
            rate = min(agent.commission_rate + (referral_code.bonus_commission_rate or ZERO), HUNDRED)

            now = utc_now()
            usage = usages.add(
                referral_code_id=referral_code.id,
                status=UsageStatus.PENDING.value,
                referred_user_id=referred_user.user_id,
                referred_user_name=referred_user.name,
                referred_user_email=referred_user.email,
                referred_user_phone=referred_user.phone,
                commission_rate=rate,
                idempotency_key=idempotency_key,
                ip_address=ip_address,
                user_agent=user_agent,
                used_at=now,
            )
            BaseRepository(Agent, session, "agent").guarded_update(
                agent.id, [],
                total_referrals=Agent.total_referrals + 1,
                last_activity_at=now,
            )
            logger.info(
                "usage_recorded",
                usage_id=str(usage.id),
                code=referral_code.code,
                agent_id=str(agent.id),
                commission_rate=str(rate),
            )
            return ReferralUsageRead.model_validate(usage)

        return self.db.run(work)

    def confirm(self, usage_id: UUID, reference_amount: Decimal) -> UsageConfirmation:
        """
        pending -> confirmed, creating the commission earning.

        Confirming an already confirmed usage returns the earning created the
        first time.
        """
        reference_amount = to_money(reference_amount, "reference_amount")
        if reference_amount < ZERO:
            raise ValidationError("reference_amount must not be negative")

        def work(session: Session) -> UsageConfirmation:
            usages = BaseRepository(ReferralUsage, session, "referral_usage")
            usage = usages.lock(usage_id)
            current = UsageStatus(usage.status)

            if current == UsageStatus.CONFIRMED:
                earning = BaseRepository(AgentEarnings, session, "earning").get_by(
                    referral_usage_id=usage.id
                )
                if earning is not None:
                    return UsageConfirmation(
                        usage=ReferralUsageRead.model_validate(usage),
                        earning=AgentEarningsRead.model_validate(earning),
                        message="Usage already confirmed (idempotent return)",
                    )
            ensure_transition("referral_usage", usage_id, current, UsageStatus.CONFIRMED)

            amount = commission(reference_amount, usage.commission_rate)
            now = utc_now()
            usages.compare_and_set(
                usage,
                {"status": current.value},
                status=UsageStatus.CONFIRMED.value,
                commission_earned=amount,
                confirmed_at=now,
            )

            agent_id = self._agent_id(session, usage)
            BaseRepository(Agent, session, "agent").guarded_update(
                agent_id, [],
                active_referrals=Agent.active_referrals + 1,
                last_activity_at=now,
            )
            earning = self.earnings.create_entry(
                session,
                agent_id=agent_id,
                type=EarningType.REFERRAL_COMMISSION,
                amount=amount,
                status=EarningStatus.PENDING,
                referral_usage_id=usage.id,
                commission_rate=usage.commission_rate,
                description=f"Referral commission for usage {usage.id}",
            )
            logger.info(
                "usage_confirmed",
                usage_id=str(usage.id),
                earning_id=str(earning.id),
                reference_amount=str(reference_amount),
                commission=str(amount),
            )
            return UsageConfirmation(
                usage=ReferralUsageRead.model_validate(usage),
                earning=AgentEarningsRead.model_validate(earning),
                message="Usage confirmed",
            )

        return self.db.run(work)

    def cancel(self, usage_id: UUID) -> ReferralUsageRead:
        return self._close(usage_id, UsageStatus.CANCELLED)

    def expire(self, usage_id: UUID) -> ReferralUsageRead:
        return self._close(usage_id, UsageStatus.EXPIRED)

    def _close(self, usage_id: UUID, target: UsageStatus) -> ReferralUsageRead:
        # Only pending usages close; a confirmed one already produced an earning
        def work(session: Session) -> ReferralUsageRead:
            usages = BaseRepository(ReferralUsage, session, "referral_usage")
            usage = usages.lock(usage_id)
            current = UsageStatus(usage.status)
            ensure_transition("referral_usage", usage_id, current, target)
            usages.compare_and_set(usage, {"status": current.value}, status=target.value)
            logger.info("usage_closed", usage_id=str(usage_id), status=target.value)
            return ReferralUsageRead.model_validate(usage)

        return self.db.run(work)

    def get(self, usage_id: UUID) -> ReferralUsageRead:
        with self.db.session() as session:
            return ReferralUsageRead.model_validate(
                BaseRepository(ReferralUsage, session, "referral_usage").get_or_raise(usage_id)
            )

    def _agent_id(self, session: Session, usage: ReferralUsage) -> UUID:
        return BaseRepository(ReferralCode, session, "referral_code").get_or_raise(
            usage.referral_code_id
        ).agent_id
