"""Agent directory: registration, commission rate and status."""

from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from .datetime_utils import utc_now
from .db import Database
from .errors import ConcurrencyConflict, NotFoundError, ValidationError
from .logging_config import get_logger
from .models import AgentRead, AgentStatus, AgentTier
from .money import HUNDRED, ZERO, to_money
from .registry import GENERATION_ATTEMPTS, generate_code
from .repository import BaseRepository
from .settings import settings
from .tables import Agent

logger = get_logger(__name__)

AGENT_CODE_PREFIX = "AGT"
AGENT_CODE_LENGTH = 6


def check_rate(rate: Decimal, field: str = "commission_rate") -> Decimal:
    rate = to_money(rate, field)
    if rate < ZERO or rate > HUNDRED:
        raise ValidationError(f"{field} must be between 0 and 100: {rate}")
    return rate


class AgentDirectory:
    def __init__(self, db: Database):
        self.db = db

    def register(
        self,
        user_id: UUID,
        commission_rate: Optional[Decimal] = None,
        tier: AgentTier = AgentTier.BRONZE,
        status: AgentStatus = AgentStatus.ACTIVE,
    ) -> AgentRead:
        rate = check_rate(settings.default_commission_rate if commission_rate is None else commission_rate)

        def work(session: Session) -> AgentRead:
            agents = BaseRepository(Agent, session, "agent")
            if agents.get_by(user_id=user_id) is not None:
                raise ValidationError(
                    f"User {user_id} is already registered as an agent",
                    entity="agent",
                    entity_id=user_id,
                )
            agent = agents.add(
                user_id=user_id,
                agent_code=self._unique_agent_code(agents),
                status=status.value,
                tier=tier.value,
                commission_rate=rate,
                total_earnings=ZERO,
                pending_balance=ZERO,
                available_balance=ZERO,
            )
            logger.info("agent_registered", agent_id=str(agent.id), agent_code=agent.agent_code)
            return AgentRead.model_validate(agent)

        return self.db.run(work)

    def _unique_agent_code(self, agents: BaseRepository[Agent]) -> str:
        for _ in range(GENERATION_ATTEMPTS):
            code = generate_code(AGENT_CODE_PREFIX, AGENT_CODE_LENGTH)
            if agents.get_by(agent_code=code) is None:
                return code
        raise ConcurrencyConflict("Could not generate a unique agent code", entity="agent")

    def get(self, agent_id: UUID) -> AgentRead:
        with self.db.session() as session:
            return AgentRead.model_validate(BaseRepository(Agent, session, "agent").get_or_raise(agent_id))

    def get_by_user(self, user_id: UUID) -> AgentRead:
        with self.db.session() as session:
            agent = BaseRepository(Agent, session, "agent").get_by(user_id=user_id)
            if agent is None:
                raise NotFoundError(f"No agent for user {user_id}", entity="agent", entity_id=user_id)
            return AgentRead.model_validate(agent)

    def set_commission_rate(self, agent_id: UUID, rate: Decimal) -> AgentRead:
        """New rate applies to usages recorded from now on; existing snapshots keep theirs."""
        rate = check_rate(rate)
        return self._update(agent_id, "commission_rate_changed", commission_rate=rate)

    def set_status(self, agent_id: UUID, status: AgentStatus) -> AgentRead:
        return self._update(agent_id, "agent_status_changed", status=status.value)

    def suspend_earnings(self, agent_id: UUID, reason: str, admin_notes: Optional[str] = None) -> AgentRead:
        suspension = {
            "reason": reason,
            "admin_notes": admin_notes,
            "suspended_at": utc_now().isoformat(),
        }
        return self._update(
            agent_id, "earnings_suspended", earnings_suspended=True,
            metadata={"earnings_suspension": suspension},
        )

    def resume_earnings(self, agent_id: UUID, reason: Optional[str] = None) -> AgentRead:
        return self._update(
            agent_id, "earnings_resumed", earnings_suspended=False,
            metadata={"earnings_suspension": None, "earnings_resumed": {
                "reason": reason, "resumed_at": utc_now().isoformat(),
            }},
        )

    def _update(self, agent_id: UUID, event: str, metadata: Optional[dict] = None, **values) -> AgentRead:
        def work(session: Session) -> AgentRead:
            agents = BaseRepository(Agent, session, "agent")
            agent = agents.lock(agent_id)
            for key, value in values.items():
                setattr(agent, key, value)
            if metadata is not None:
                agent.metadata_json = {**(agent.metadata_json or {}), **metadata}
            session.flush()
            logger.info(event, agent_id=str(agent_id), **{k: str(v) for k, v in values.items()})
            return AgentRead.model_validate(agent)

        return self.db.run(work)

    def list(
        self, status: Optional[AgentStatus] = None, limit: int = 50, offset: int = 0
    ) -> list[AgentRead]:
        filters = {} if status is None else {"status": status.value}
        with self.db.session() as session:
            rows = BaseRepository(Agent, session, "agent").find_all(
                order_by=Agent.created_at, limit=limit, offset=offset, **filters
            )
            return [AgentRead.model_validate(r) for r in rows]

