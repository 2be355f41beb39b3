from typing import Optional

from .agents import AgentDirectory
from .balances import BalanceAggregator
from .db import Database
from .earnings import EarningsLedger
from .notifications import NotificationDispatcher, Notifier
from .payouts import PayoutWorkflow
from .registry import ReferralCodeRegistry
from .reporting import LedgerReports
from .usage import UsageRecorder


class LedgerService:
    """
    Wires the ledger components to one database and one notifier.

    Example:
        service = LedgerService(Database("sqlite:///ledger.db"))
        service.db.create_tables()
        agent = service.agents.register(user_id)
        code = service.registry.issue(agent.id)
        usage = service.usage.record(code.code)
    """

    def __init__(self, db: Optional[Database] = None, notifier: Optional[Notifier] = None):
        self.db = db or Database()
        self.dispatcher = NotificationDispatcher(notifier)
        self.balances = BalanceAggregator(self.db)
        self.agents = AgentDirectory(self.db)
        self.registry = ReferralCodeRegistry(self.db)
        self.earnings = EarningsLedger(self.db, self.balances, self.dispatcher)
        self.usage = UsageRecorder(self.db, self.registry, self.earnings)
        self.payouts = PayoutWorkflow(self.db, self.balances, self.earnings, self.dispatcher)
        self.reports = LedgerReports(self.db)
