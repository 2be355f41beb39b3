"""
Ledger error taxonomy.

Every error carries enough context (entity, id, current status, attempted
transition) for the caller to render an actionable message.
"""

from typing import Any, Optional


class LedgerError(Exception):
    def __init__(
        self,
        message: str,
        *,
        entity: Optional[str] = None,
        entity_id: Any = None,
        status: Optional[str] = None,
        attempted: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.entity = entity
        self.entity_id = entity_id
        self.status = status
        self.attempted = attempted

    def context(self) -> dict:
        data = {
            "entity": self.entity,
            "entity_id": str(self.entity_id) if self.entity_id is not None else None,
            "status": self.status,
            "attempted": self.attempted,
        }
        return {k: v for k, v in data.items() if v is not None}


class ValidationError(LedgerError):
    pass


class DuplicateCodeError(ValidationError):
    pass


class NotFoundError(LedgerError):
    pass


class CodeNotUsable(LedgerError):
    reason = "unusable"

    def __init__(self, message: str, *, reason: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if reason:
            self.reason = reason


class CodeExpired(CodeNotUsable):
    reason = "expired"


class CodeExhausted(CodeNotUsable):
    reason = "exhausted"


class InvalidTransition(LedgerError):
    pass


class InsufficientBalance(LedgerError):
    pass


class ConcurrencyConflict(LedgerError):
    pass


class IntegrityViolation(LedgerError):
    pass


class BalanceUnderflow(IntegrityViolation):
    pass
