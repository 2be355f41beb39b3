"""
Unit Tests for the Referral Code Registry

Tests cover:
1. Code issuance and uniqueness
2. Usability checks with specific reasons
3. Status changes
4. Atomic use of the last slot under concurrency
"""

import threading
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select, update

from commission_ledger.datetime_utils import utc_now
from commission_ledger.errors import (
    CodeExhausted,
    CodeExpired,
    CodeNotUsable,
    DuplicateCodeError,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from commission_ledger.models import AgentStatus, CodeOptions, ReferralCodeStatus, UnusableReason
from commission_ledger.tables import ReferralCode, ReferralUsage


class TestIssue:
    """Tests for issuing referral codes."""

    def test_generated_code_format(self, service, agent):
        """Generated codes are the prefix plus six upper-case characters."""
        code = service.registry.issue(agent.id)

        assert code.code.startswith("REF")
        assert len(code.code) == 9
        assert code.code == code.code.upper()
        assert code.status == ReferralCodeStatus.ACTIVE
        assert code.current_uses == 0
        assert code.remaining_uses is None

    def test_custom_code_is_upper_cased(self, service, agent):
        """Custom codes are stored upper-case."""
        code = service.registry.issue(agent.id, CodeOptions(code="spring24"))

        assert code.code == "SPRING24"
        assert service.registry.get_by_code("Spring24").id == code.id

    def test_duplicate_is_case_insensitive(self, service, agent):
        """A code differing only in case is a duplicate."""
        service.registry.issue(agent.id, CodeOptions(code="SUMMER"))

        with pytest.raises(DuplicateCodeError):
            service.registry.issue(agent.id, CodeOptions(code="summer"))

    def test_agent_must_be_active(self, service):
        """Agents still applying cannot hold codes."""
        applicant = service.agents.register(uuid4(), status=AgentStatus.PENDING_APPLICATION)

        with pytest.raises(ValidationError):
            service.registry.issue(applicant.id)

    def test_expiry_must_be_in_future(self, service, agent):
        """Issuing an already-expired code is rejected."""
        with pytest.raises(ValidationError):
            service.registry.issue(agent.id, CodeOptions(expires_at=utc_now() - timedelta(hours=1)))

    def test_unknown_agent(self, service):
        """Issuing for a missing agent raises NotFoundError."""
        with pytest.raises(NotFoundError):
            service.registry.issue(uuid4())


class TestValidate:
    """Tests for usability checks."""

    def test_valid_code(self, service, agent):
        """An active, unexpired, uncapped code is valid."""
        code = service.registry.issue(agent.id)

        result = service.registry.validate(code.code.lower())

        assert result.valid is True
        assert result.reason is None
        assert result.referral_code.id == code.id

    def test_unknown_code(self, service):
        """Missing codes report 'unknown'."""
        result = service.registry.validate("NOPE123")

        assert result.valid is False
        assert result.reason == UnusableReason.UNKNOWN

    def test_suspended_code(self, service, agent):
        """Suspended codes report 'suspended' and cannot be used."""
        code = service.registry.issue(agent.id)
        service.registry.change_status(code.code, ReferralCodeStatus.SUSPENDED)

        assert service.registry.validate(code.code).reason == UnusableReason.SUSPENDED
        with pytest.raises(CodeNotUsable) as exc_info:
            service.usage.record(code.code)
        assert exc_info.value.reason == "suspended"

    def test_expired_by_date(self, service, db, agent):
        """A code past its expiry is expired even while its status is active."""
        code = service.registry.issue(agent.id, CodeOptions(expires_at=utc_now() + timedelta(days=1)))
        with db.session() as session:
            session.execute(
                update(ReferralCode)
                .where(ReferralCode.id == code.id)
                .values(expires_at=utc_now() - timedelta(minutes=1))
            )

        assert service.registry.validate(code.code).reason == UnusableReason.EXPIRED
        with pytest.raises(CodeExpired):
            service.usage.record(code.code)

    def test_exhausted_code(self, service, agent):
        """A capped code with no remaining uses is exhausted."""
        code = service.registry.issue(agent.id, CodeOptions(max_uses=1))
        service.usage.record(code.code)

        result = service.registry.validate(code.code)
        assert result.reason == UnusableReason.EXHAUSTED
        assert result.referral_code.remaining_uses == 0
        with pytest.raises(CodeExhausted):
            service.usage.record(code.code)

    def test_inactive_agent(self, service, agent):
        """Codes of a deactivated agent cannot be used."""
        code = service.registry.issue(agent.id)
        service.agents.set_status(agent.id, AgentStatus.INACTIVE)

        assert service.registry.validate(code.code).reason == UnusableReason.AGENT_INACTIVE


class TestChangeStatus:
    """Tests for referral code status transitions."""

    def test_suspend_and_reactivate(self, service, agent):
        """active -> suspended -> active is allowed."""
        code = service.registry.issue(agent.id)

        suspended = service.registry.change_status(code.code, ReferralCodeStatus.SUSPENDED)
        assert suspended.status == ReferralCodeStatus.SUSPENDED

        active = service.registry.change_status(code.code, ReferralCodeStatus.ACTIVE)
        assert active.status == ReferralCodeStatus.ACTIVE

    def test_expired_is_terminal(self, service, agent):
        """Expired codes cannot be reactivated."""
        code = service.registry.issue(agent.id)
        service.registry.change_status(code.code, ReferralCodeStatus.EXPIRED)

        with pytest.raises(InvalidTransition) as exc_info:
            service.registry.change_status(code.code, ReferralCodeStatus.ACTIVE)
        assert exc_info.value.status == "expired"
        assert exc_info.value.attempted == "active"

    def test_list_for_agent(self, service, agent):
        """Codes are listed per agent, optionally by status."""
        service.registry.issue(agent.id)
        second = service.registry.issue(agent.id)
        service.registry.change_status(second.code, ReferralCodeStatus.INACTIVE)

        assert len(service.registry.list_for_agent(agent.id)) == 2
        inactive = service.registry.list_for_agent(agent.id, ReferralCodeStatus.INACTIVE)
        assert [c.id for c in inactive] == [second.id]


class TestConcurrentUse:
    """Tests for atomic use of capped codes."""

    def test_last_slot_goes_to_exactly_one_caller(self, service, db, agent):
        """Two simultaneous uses of a single-use code: one succeeds, one is exhausted."""
        code = service.registry.issue(agent.id, CodeOptions(max_uses=1))
        barrier = threading.Barrier(2)
        results, errors = [], []

        def use():
            barrier.wait()
            try:
                results.append(service.usage.record(code.code))
            except CodeNotUsable as e:
                errors.append(e)

        threads = [threading.Thread(target=use) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(results) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], CodeExhausted)

        with db.session() as session:
            uses = session.execute(select(ReferralCode.current_uses).where(ReferralCode.id == code.id)).scalar()
            usages = session.execute(select(func.count()).select_from(ReferralUsage)).scalar()
        assert uses == 1
        assert usages == 1

    def test_uses_never_exceed_cap(self, service, agent):
        """N+1 sequential attempts on N slots: the last fails."""
        code = service.registry.issue(agent.id, CodeOptions(max_uses=3))
        for _ in range(3):
            service.usage.record(code.code)

        with pytest.raises(CodeExhausted):
            service.usage.record(code.code)
        assert service.registry.get_by_code(code.code).current_uses == 3
