"""Shared fixtures: a file-backed SQLite ledger per test."""

from decimal import Decimal
from uuid import uuid4

import pytest

from commission_ledger.db import Database
from commission_ledger.models import EarningStatus, EarningType
from commission_ledger.service import LedgerService


@pytest.fixture
def db(tmp_path):
    database = Database(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        max_attempts=5,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
    )
    database.create_tables()
    yield database
    database.dispose()


@pytest.fixture
def events():
    """Every event the notifier received, in delivery order."""
    return []


@pytest.fixture
def service(db, events):
    return LedgerService(db, notifier=events.append)


@pytest.fixture
def agent(service):
    return service.agents.register(uuid4(), commission_rate=Decimal("10.00"))


@pytest.fixture
def fund(service):
    """Credit a confirmed bonus so the agent has available balance."""
    def _fund(agent_id, amount):
        return service.earnings.create(
            agent_id, EarningType.BONUS, Decimal(amount), status=EarningStatus.CONFIRMED
        )
    return _fund


@pytest.fixture
def funded_agent(service, agent, fund):
    """Agent with 100.00 available."""
    fund(agent.id, "100.00")
    return service.agents.get(agent.id)
