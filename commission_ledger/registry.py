"""
Referral code registry.

Owns code uniqueness, the activation window and usage caps. ``record_use``
is the only writer of ``ReferralCode.current_uses``; it re-checks usability
and increments in one guarded UPDATE, so a capped code can never be oversold.
"""

import secrets
import string
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .datetime_utils import as_utc, utc_now
from .db import Database
from .errors import (
    CodeExhausted,
    CodeExpired,
    CodeNotUsable,
    ConcurrencyConflict,
    DuplicateCodeError,
    NotFoundError,
    ValidationError,
)
from .logging_config import get_logger
from .models import (
    AgentStatus,
    CodeOptions,
    CodeValidation,
    ReferralCodeRead,
    ReferralCodeStatus,
    UnusableReason,
)
from .repository import BaseRepository
from .settings import settings
from .tables import Agent, ReferralCode
from .transitions import ensure_transition

logger = get_logger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_CODE_LENGTH = 20
GENERATION_ATTEMPTS = 10

# Agent statuses allowed to hold and use codes
ISSUABLE_AGENT_STATUSES = frozenset({
    AgentStatus.ACTIVE.value,
    AgentStatus.CODE_GENERATED.value,
    AgentStatus.CREDENTIALS_SENT.value,
})

_MESSAGES = {
    UnusableReason.UNKNOWN: "Referral code does not exist",
    UnusableReason.INACTIVE: "Referral code is inactive",
    UnusableReason.SUSPENDED: "Referral code is suspended",
    UnusableReason.EXPIRED: "Referral code has expired",
    UnusableReason.EXHAUSTED: "Referral code has reached its usage limit",
    UnusableReason.AGENT_INACTIVE: "The agent who owns this code is not active",
}


def generate_code(prefix: str, length: int) -> str:
    """Random code: ``prefix`` followed by ``length`` upper-case letters/digits."""
    return prefix + "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    normalized = (code or "").strip().upper()
    if not normalized:
        raise ValidationError("Referral code must not be empty")
    if len(normalized) > MAX_CODE_LENGTH or not normalized.isalnum():
        raise ValidationError(
            f"Referral code must be 1-{MAX_CODE_LENGTH} letters or digits: {code!r}"
        )
    return normalized


def unusable_reason(code: ReferralCode, agent: Agent, now: datetime) -> Optional[UnusableReason]:
    """Why ``code`` cannot be used right now, or None when it can."""
    if code.status == ReferralCodeStatus.INACTIVE.value:
        return UnusableReason.INACTIVE
    if code.status == ReferralCodeStatus.SUSPENDED.value:
        return UnusableReason.SUSPENDED
    if code.status == ReferralCodeStatus.EXPIRED.value:
        return UnusableReason.EXPIRED
    expires_at = as_utc(code.expires_at)
    if expires_at is not None and now >= expires_at:
        return UnusableReason.EXPIRED
    if code.max_uses is not None and code.current_uses >= code.max_uses:
        return UnusableReason.EXHAUSTED
    if agent.status not in ISSUABLE_AGENT_STATUSES:
        return UnusableReason.AGENT_INACTIVE
    return None


def not_usable_error(code: str, reason: UnusableReason, status: Optional[str] = None) -> CodeNotUsable:
    message = f"{_MESSAGES[reason]}: {code}"
    kwargs = {"entity": "referral_code", "entity_id": code, "status": status, "attempted": "use"}
    if reason == UnusableReason.EXPIRED:
        return CodeExpired(message, **kwargs)
    if reason == UnusableReason.EXHAUSTED:
        return CodeExhausted(message, **kwargs)
    return CodeNotUsable(message, reason=reason.value, **kwargs)


class ReferralCodeRegistry:
    def __init__(self, db: Database):
        self.db = db

    def issue(self, agent_id: UUID, options: Optional[CodeOptions] = None) -> ReferralCodeRead:
        """Create a code for an agent; custom codes are checked case-insensitively."""
        options = options or CodeOptions()
        expires_at = None
        if options.expires_at is not None:
            # SQLite drops the offset, so store UTC
            expires_at = as_utc(options.expires_at).astimezone(timezone.utc)
            if expires_at <= utc_now():
                raise ValidationError("expires_at must be in the future")

        def work(session: Session) -> ReferralCodeRead:
            agent = BaseRepository(Agent, session, "agent").get_or_raise(agent_id)
            if agent.status not in ISSUABLE_AGENT_STATUSES:
                raise ValidationError(
                    f"Agent {agent_id} cannot be issued referral codes in status {agent.status}",
                    entity="agent",
                    entity_id=agent_id,
                    status=agent.status,
                    attempted="issue_code",
                )

            codes = BaseRepository(ReferralCode, session, "referral_code")
            if options.code:
                code = normalize_code(options.code)
                if codes.get_by(code=code) is not None:
                    raise DuplicateCodeError(
                        f"Referral code {code} already exists",
                        entity="referral_code",
                        entity_id=code,
                    )
            else:
                code = self._unique_code(codes)

            row = codes.add(
                agent_id=agent.id,
                code=code,
                status=options.status.value,
                type=options.type.value,
                description=options.description,
                bonus_commission_rate=options.bonus_commission_rate,
                max_uses=options.max_uses,
                current_uses=0,
                expires_at=expires_at,
            )
            logger.info(
                "referral_code_issued",
                agent_id=str(agent.id),
                code=code,
                max_uses=options.max_uses,
            )
            return ReferralCodeRead.model_validate(row)

        return self.db.run(work)

    def _unique_code(self, codes: BaseRepository[ReferralCode]) -> str:
        for _ in range(GENERATION_ATTEMPTS):
            code = generate_code(settings.referral_code_prefix, settings.referral_code_length)
            if codes.get_by(code=code) is None:
                return code
        raise ConcurrencyConflict("Could not generate a unique referral code", entity="referral_code")

    def get_by_code(self, code: str) -> ReferralCodeRead:
        normalized = normalize_code(code)
        with self.db.session() as session:
            return ReferralCodeRead.model_validate(self._find_or_raise(session, normalized))

    def list_for_agent(
        self, agent_id: UUID, status: Optional[ReferralCodeStatus] = None
    ) -> list[ReferralCodeRead]:
        filters = {"agent_id": agent_id}
        if status is not None:
            filters["status"] = status.value
        with self.db.session() as session:
            rows = BaseRepository(ReferralCode, session, "referral_code").find_all(
                order_by=ReferralCode.created_at, **filters
            )
            return [ReferralCodeRead.model_validate(r) for r in rows]

    def validate(self, code: str) -> CodeValidation:
        """Read-only usability check with the specific reason on failure."""
        try:
            normalized = normalize_code(code)
        except ValidationError:
            return CodeValidation(
                valid=False, code=code, reason=UnusableReason.UNKNOWN,
                message=_MESSAGES[UnusableReason.UNKNOWN],
            )

        with self.db.session() as session:
            row = BaseRepository(ReferralCode, session, "referral_code").get_by(code=normalized)
            if row is None:
                return CodeValidation(
                    valid=False, code=normalized, reason=UnusableReason.UNKNOWN,
                    message=_MESSAGES[UnusableReason.UNKNOWN],
                )
            reason = unusable_reason(row, row.agent, utc_now())
            read = ReferralCodeRead.model_validate(row)

        if reason is not None:
            return CodeValidation(
                valid=False, code=normalized, reason=reason,
                message=_MESSAGES[reason], referral_code=read,
            )
        return CodeValidation(valid=True, code=normalized, message="Referral code is valid", referral_code=read)

    def record_use(self, session: Session, code: str) -> ReferralCode:
        """
        Consume one use of ``code`` inside the caller's transaction.

        The usability checks are repeated in the UPDATE's WHERE clause, so of
        two concurrent uses on the last slot exactly one matches a row.
        """
        normalized = normalize_code(code)
        codes = BaseRepository(ReferralCode, session, "referral_code")
        row = codes.get_by(code=normalized)
        if row is None:
            raise not_usable_error(normalized, UnusableReason.UNKNOWN)

        now = utc_now()
        reason = unusable_reason(row, row.agent, now)
        if reason is not None:
            raise not_usable_error(normalized, reason, row.status)

        guards = [
            ReferralCode.status == ReferralCodeStatus.ACTIVE.value,
            or_(ReferralCode.expires_at.is_(None), ReferralCode.expires_at > now),
            or_(ReferralCode.max_uses.is_(None), ReferralCode.current_uses < ReferralCode.max_uses),
        ]
        if not codes.guarded_update(
            row.id, guards, current_uses=ReferralCode.current_uses + 1, last_used_at=now
        ):
            codes.reload(row)
            reason = unusable_reason(row, row.agent, now)
            if reason is None:
                raise ConcurrencyConflict(
                    f"Referral code {normalized} changed concurrently",
                    entity="referral_code",
                    entity_id=normalized,
                )
            logger.info("referral_code_rejected", code=normalized, reason=reason.value)
            raise not_usable_error(normalized, reason, row.status)

        codes.reload(row)
        logger.info(
            "referral_code_used",
            code=normalized,
            current_uses=row.current_uses,
            max_uses=row.max_uses,
        )
        return row

    def change_status(self, code: str, status: ReferralCodeStatus) -> ReferralCodeRead:
        normalized = normalize_code(code)

        def work(session: Session) -> ReferralCodeRead:
            codes = BaseRepository(ReferralCode, session, "referral_code")
            row = self._find_or_raise(session, normalized)
            current = ReferralCodeStatus(row.status)
            if current == status:
                return ReferralCodeRead.model_validate(row)
            ensure_transition("referral_code", normalized, current, status)
            codes.compare_and_set(row, {"status": current.value}, status=status.value)
            logger.info(
                "referral_code_status_changed",
                code=normalized,
                previous=current.value,
                status=status.value,
            )
            return ReferralCodeRead.model_validate(row)

        return self.db.run(work)

    def _find_or_raise(self, session: Session, normalized: str) -> ReferralCode:
        row = BaseRepository(ReferralCode, session, "referral_code").get_by(code=normalized)
        if row is None:
            raise NotFoundError(
                f"Referral code {normalized} not found",
                entity="referral_code",
                entity_id=normalized,
            )
        return row
