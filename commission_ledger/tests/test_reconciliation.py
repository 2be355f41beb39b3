"""
Unit Tests for Balance Reconciliation

Materialized agent balances are recomputed from the earnings and payout
ledgers and compared field by field.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import update

from commission_ledger.errors import IntegrityViolation
from commission_ledger.models import EarningType, PayoutMethod
from commission_ledger.tables import Agent

BANK_DETAILS = {
    "bank_account": {
        "bank_name": "First Bank",
        "account_name": "Agent One",
        "account_number_or_iban": "GB29NWBK60161331926819",
    }
}


class TestReconcile:
    """Tests for per-agent reconciliation."""

    def test_consistent_after_full_flow(self, service, agent):
        """Use, confirm, earn, withdraw and review all keep the ledger consistent."""
        code = service.registry.issue(agent.id)
        usage = service.usage.record(code.code)
        confirmation = service.usage.confirm(usage.id, Decimal("500.00"))
        service.earnings.confirm(confirmation.earning.id)
        service.earnings.create(agent.id, EarningType.BONUS, Decimal("15.00"))

        payout = service.payouts.request(agent.id, Decimal("30.00"), PayoutMethod.BANK_TRANSFER, BANK_DETAILS)
        service.payouts.flag_for_review(payout.id, "Confirm IBAN")
        service.payouts.return_to_pending(payout.id)
        service.payouts.approve(payout.id, uuid4())

        report = service.balances.reconcile(agent.id)

        assert report.is_consistent
        assert report.actual.total_earnings == Decimal("65.00")
        assert report.actual.pending_balance == Decimal("15.00")
        assert report.actual.available_balance == Decimal("20.00")
        assert report.consumed_payouts == Decimal("30.00")
        assert report.paid_earnings == Decimal("0.00")

    def test_tampered_balance_is_reported(self, service, db, funded_agent):
        """A balance written outside the ledger shows up as a mismatch."""
        with db.session() as session:
            session.execute(
                update(Agent).where(Agent.id == funded_agent.id).values(available_balance=Decimal("150.00"))
            )

        report = service.balances.reconcile(funded_agent.id)

        assert not report.is_consistent
        assert [m.field for m in report.mismatches] == ["available_balance"]
        assert report.mismatches[0].expected == Decimal("100.00")
        assert report.mismatches[0].actual == Decimal("150.00")

    def test_assert_consistent_raises(self, service, db, funded_agent):
        with db.session() as session:
            session.execute(
                update(Agent).where(Agent.id == funded_agent.id).values(total_earnings=Decimal("0.00"))
            )

        with pytest.raises(IntegrityViolation):
            service.balances.assert_consistent(funded_agent.id)


class TestReconcileAll:
    """Tests for the all-agents sweep."""

    def test_returns_only_inconsistent_agents(self, service, db, fund):
        clean = service.agents.register(uuid4())
        broken = service.agents.register(uuid4())
        fund(clean.id, "40.00")
        fund(broken.id, "40.00")
        with db.session() as session:
            session.execute(
                update(Agent).where(Agent.id == broken.id).values(pending_balance=Decimal("5.00"))
            )

        reports = service.balances.reconcile_all()

        assert [r.agent_id for r in reports] == [broken.id]
