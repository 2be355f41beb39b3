"""Transition tables for every status-bearing ledger entity."""

from enum import Enum
from typing import Any

from .errors import InvalidTransition
from .models import (
    EarningStatus,
    PayoutStatus,
    ReferralCodeStatus,
    UsageStatus,
)

CODE_TRANSITIONS: dict[ReferralCodeStatus, frozenset[ReferralCodeStatus]] = {
    ReferralCodeStatus.ACTIVE: frozenset({
        ReferralCodeStatus.INACTIVE, ReferralCodeStatus.SUSPENDED, ReferralCodeStatus.EXPIRED,
    }),
    ReferralCodeStatus.INACTIVE: frozenset({
        ReferralCodeStatus.ACTIVE, ReferralCodeStatus.SUSPENDED, ReferralCodeStatus.EXPIRED,
    }),
    ReferralCodeStatus.SUSPENDED: frozenset({
        ReferralCodeStatus.ACTIVE, ReferralCodeStatus.EXPIRED,
    }),
    ReferralCodeStatus.EXPIRED: frozenset(),
}

USAGE_TRANSITIONS: dict[UsageStatus, frozenset[UsageStatus]] = {
    UsageStatus.PENDING: frozenset({UsageStatus.CONFIRMED, UsageStatus.CANCELLED, UsageStatus.EXPIRED}),
    UsageStatus.CONFIRMED: frozenset(),
    UsageStatus.CANCELLED: frozenset(),
    UsageStatus.EXPIRED: frozenset(),
}

EARNING_TRANSITIONS: dict[EarningStatus, frozenset[EarningStatus]] = {
    EarningStatus.PENDING: frozenset({
        EarningStatus.CONFIRMED, EarningStatus.CANCELLED, EarningStatus.DISPUTED,
    }),
    EarningStatus.CONFIRMED: frozenset({
        EarningStatus.PAID, EarningStatus.DISPUTED, EarningStatus.CANCELLED,
    }),
    EarningStatus.DISPUTED: frozenset({EarningStatus.CONFIRMED, EarningStatus.CANCELLED}),
    EarningStatus.PAID: frozenset(),
    EarningStatus.CANCELLED: frozenset(),
}

PAYOUT_TRANSITIONS: dict[PayoutStatus, frozenset[PayoutStatus]] = {
    PayoutStatus.PENDING: frozenset({PayoutStatus.APPROVED, PayoutStatus.REVIEW}),
    PayoutStatus.REVIEW: frozenset({PayoutStatus.APPROVED, PayoutStatus.PENDING}),
    PayoutStatus.APPROVED: frozenset({PayoutStatus.REVIEW}),
}

_TABLES: dict[str, dict] = {
    "referral_code": CODE_TRANSITIONS,
    "referral_usage": USAGE_TRANSITIONS,
    "earning": EARNING_TRANSITIONS,
    "payout": PAYOUT_TRANSITIONS,
}


def ensure_transition(entity: str, entity_id: Any, current: Enum, target: Enum) -> None:
    """Raise InvalidTransition unless ``current -> target`` is in the table."""
    allowed = _TABLES[entity][current]
    if target not in allowed:
        options = ", ".join(sorted(s.value for s in allowed)) or "none (final state)"
        raise InvalidTransition(
            f"Cannot move {entity} {entity_id} from {current.value} to {target.value}. "
            f"Allowed transitions: {options}",
            entity=entity,
            entity_id=entity_id,
            status=current.value,
            attempted=target.value,
        )
