"""
Unit Tests for Ledger Reports
"""

from decimal import Decimal
from uuid import uuid4

from commission_ledger.models import EarningType, PayoutMethod

BANK_DETAILS = {
    "bank_account": {
        "bank_name": "First Bank",
        "account_name": "Agent One",
        "account_number_or_iban": "GB29NWBK60161331926819",
    }
}


class TestEarningsSummary:
    def test_totals_by_type_and_status(self, service, agent, fund):
        """Summary groups the agent's entries and lists the most recent first."""
        fund(agent.id, "50.00")
        pending = service.earnings.create(agent.id, EarningType.REFERRAL_COMMISSION, Decimal("12.00"))

        summary = service.reports.earnings_summary(agent.id)

        assert summary.balance.available_balance == Decimal("50.00")
        assert {b.key: b.amount for b in summary.by_status} == {
            "confirmed": Decimal("50.00"),
            "pending": Decimal("12.00"),
        }
        assert {b.key: b.count for b in summary.by_type} == {"bonus": 1, "referral_commission": 1}
        assert summary.recent[0].id == pending.id


class TestPayoutStats:
    def test_counts_and_approval_time(self, service, funded_agent):
        approved = service.payouts.request(funded_agent.id, Decimal("30.00"), PayoutMethod.BANK_TRANSFER, BANK_DETAILS)
        service.payouts.request(funded_agent.id, Decimal("25.00"), PayoutMethod.BANK_TRANSFER, BANK_DETAILS)
        service.payouts.approve(approved.id, uuid4())

        stats = service.reports.payout_stats()

        assert stats.total_count == 2
        assert stats.total_amount == Decimal("55.00")
        assert {b.key: b.count for b in stats.by_status} == {"approved": 1, "pending": 1}
        assert stats.average_approval_seconds is not None
        assert stats.average_approval_seconds >= 0

    def test_no_payouts(self, service):
        stats = service.reports.payout_stats()

        assert stats.total_count == 0
        assert stats.average_approval_seconds is None


class TestSystemSummary:
    def test_sums_every_agent(self, service, fund):
        first = service.agents.register(uuid4())
        second = service.agents.register(uuid4())
        fund(first.id, "20.00")
        fund(second.id, "30.00")

        summary = service.reports.system_earnings_summary()

        assert summary.agents == 2
        assert summary.total_earnings == Decimal("50.00")
        assert summary.available_balance == Decimal("50.00")
