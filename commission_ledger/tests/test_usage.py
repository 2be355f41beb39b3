"""
Unit Tests for the Usage Recorder

Tests cover:
1. Rate snapshot at time of use
2. Idempotent recording and confirmation
3. Commission rounding
4. Terminal cancel/expire transitions
"""

import threading
from decimal import Decimal

import pytest

from commission_ledger.errors import InvalidTransition, LedgerError, ValidationError
from commission_ledger.models import (
    CodeOptions,
    EarningStatus,
    EarningType,
    ReferredUser,
    UsageStatus,
)


@pytest.fixture
def code(service, agent):
    return service.registry.issue(agent.id)


class TestRecord:
    """Tests for recording a referral use."""

    def test_record_creates_pending_usage(self, service, agent, code):
        """A use creates a pending usage and bumps the counters."""
        usage = service.usage.record(
            code.code,
            ReferredUser(name="Jane Referred", email="jane@example.com", phone="+263771234567"),
        )

        assert usage.status == UsageStatus.PENDING
        assert usage.commission_rate == Decimal("10.00")
        assert usage.referred_user_email == "jane@example.com"
        assert service.registry.get_by_code(code.code).current_uses == 1
        assert service.agents.get(agent.id).total_referrals == 1

    def test_rate_snapshot_includes_code_bonus(self, service, agent):
        """The usage keeps agent rate plus code bonus, even if the agent rate changes later."""
        code = service.registry.issue(agent.id, CodeOptions(bonus_commission_rate=Decimal("2.50")))
        usage = service.usage.record(code.code)

        service.agents.set_commission_rate(agent.id, Decimal("20.00"))
        confirmation = service.usage.confirm(usage.id, Decimal("100.00"))

        assert usage.commission_rate == Decimal("12.50")
        assert confirmation.earning.amount == Decimal("12.50")

    def test_idempotency_key_returns_original(self, service, code):
        """Replaying a use with the same key does not consume another slot."""
        first = service.usage.record(code.code, idempotency_key="signup-42")
        second = service.usage.record(code.code, idempotency_key="signup-42")

        assert first.id == second.id
        assert service.registry.get_by_code(code.code).current_uses == 1


class TestConfirm:
    """Tests for confirming usages into earnings."""

    def test_confirm_creates_pending_earning(self, service, agent, code):
        """Confirmation creates one pending referral commission and adds it to pending."""
        usage = service.usage.record(code.code)

        confirmation = service.usage.confirm(usage.id, Decimal("250.00"))

        assert confirmation.usage.status == UsageStatus.CONFIRMED
        assert confirmation.usage.confirmed_at is not None
        assert confirmation.usage.commission_earned == Decimal("25.00")
        assert confirmation.earning.type == EarningType.REFERRAL_COMMISSION
        assert confirmation.earning.status == EarningStatus.PENDING
        assert confirmation.earning.referral_usage_id == usage.id

        balance = service.balances.get_balance(agent.id)
        assert balance.pending_balance == Decimal("25.00")
        assert balance.total_earnings == Decimal("25.00")
        assert balance.available_balance == Decimal("0.00")
        assert service.agents.get(agent.id).active_referrals == 1

    def test_confirm_twice_creates_one_earning(self, service, agent, code):
        """Confirming an already confirmed usage returns the first earning."""
        usage = service.usage.record(code.code)

        first = service.usage.confirm(usage.id, Decimal("100.00"))
        second = service.usage.confirm(usage.id, Decimal("100.00"))

        assert first.earning.id == second.earning.id
        assert "idempotent" in second.message
        assert len(service.earnings.list_for_agent(agent.id)) == 1
        assert service.balances.get_balance(agent.id).pending_balance == Decimal("10.00")
        assert service.agents.get(agent.id).active_referrals == 1

    def test_concurrent_confirms_create_one_earning(self, service, agent, code):
        """Three simultaneous confirms of one usage all return the same earning."""
        usage = service.usage.record(code.code)
        barrier = threading.Barrier(3)
        results, errors = [], []

        def confirm():
            barrier.wait()
            try:
                results.append(service.usage.confirm(usage.id, Decimal("100.00")))
            except LedgerError as e:
                errors.append(e)

        threads = [threading.Thread(target=confirm) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        assert len(results) == 3
        assert len({r.earning.id for r in results}) == 1
        assert len(service.earnings.list_for_agent(agent.id)) == 1
        assert service.balances.get_balance(agent.id).pending_balance == Decimal("10.00")
        assert service.agents.get(agent.id).active_referrals == 1

    def test_commission_rounds_half_up(self, service, code):
        """10% of 0.05 is 0.005, which rounds up to 0.01."""
        usage = service.usage.record(code.code)

        confirmation = service.usage.confirm(usage.id, Decimal("0.05"))

        assert confirmation.earning.amount == Decimal("0.01")

    def test_zero_reference_amount(self, service, code):
        """A zero reference amount still records a 0.00 earning."""
        usage = service.usage.record(code.code)

        confirmation = service.usage.confirm(usage.id, Decimal("0"))

        assert confirmation.earning.amount == Decimal("0.00")

    def test_reference_amount_precision(self, service, code):
        """Reference amounts with more than two decimals are rejected."""
        usage = service.usage.record(code.code)

        with pytest.raises(ValidationError):
            service.usage.confirm(usage.id, Decimal("10.001"))


class TestCancelAndExpire:
    """Tests for closing usages without earnings."""

    def test_cancel_pending(self, service, agent, code):
        """Cancelling a pending usage creates no earning."""
        usage = service.usage.record(code.code)

        cancelled = service.usage.cancel(usage.id)

        assert cancelled.status == UsageStatus.CANCELLED
        assert service.earnings.list_for_agent(agent.id) == []

    def test_cancel_after_confirm_rejected(self, service, code):
        """A confirmed usage already has an earning and cannot be cancelled."""
        usage = service.usage.record(code.code)
        service.usage.confirm(usage.id, Decimal("100.00"))

        with pytest.raises(InvalidTransition) as exc_info:
            service.usage.cancel(usage.id)
        assert exc_info.value.status == "confirmed"

    def test_expired_cannot_be_confirmed(self, service, code):
        """Expired usages are terminal."""
        usage = service.usage.record(code.code)
        service.usage.expire(usage.id)

        with pytest.raises(InvalidTransition):
            service.usage.confirm(usage.id, Decimal("100.00"))
