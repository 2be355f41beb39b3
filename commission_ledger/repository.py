"""
Base repository.

Generic row access shared by the ledger components.
"""

from typing import Any, Generic, Optional, TypeVar
from uuid import UUID

from sqlalchemy import ColumnElement, func, select, update
from sqlalchemy.orm import Session

from .errors import ConcurrencyConflict, NotFoundError
from .tables import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """
    Row access for one model inside a caller-owned session.

    Example:
        payouts = BaseRepository(Payout, session, "payout")
        payout = payouts.lock(payout_id)
    """

    def __init__(self, model: type[ModelType], session: Session, entity: str) -> None:
        self.model = model
        self.session = session
        self.entity = entity

    def get(self, id: UUID) -> Optional[ModelType]:
        return self.session.get(self.model, id)

    def get_or_raise(self, id: UUID) -> ModelType:
        row = self.get(id)
        if row is None:
            raise NotFoundError(f"{self.entity.capitalize()} {id} not found", entity=self.entity, entity_id=id)
        return row

    def get_by(self, **filters: Any) -> Optional[ModelType]:
        stmt = select(self.model).filter_by(**filters)
        return self.session.execute(stmt).scalar_one_or_none()

    def lock(self, id: UUID) -> ModelType:
        """
        Load a row with SELECT ... FOR UPDATE.

        Backends without row locks (SQLite) ignore the clause; the guarded
        updates below keep those correct.
        """
        stmt = (
            select(self.model)
            .where(self.model.id == id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = self.session.execute(stmt).scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"{self.entity.capitalize()} {id} not found", entity=self.entity, entity_id=id)
        return row

    def find_all(
        self,
        *criteria: ColumnElement[bool],
        order_by: Any = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        **filters: Any,
    ) -> list[ModelType]:
        stmt = select(self.model).filter_by(**filters).where(*criteria)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        if offset:
            stmt = stmt.offset(offset)
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars().all())

    def count(self, **filters: Any) -> int:
        stmt = select(func.count()).select_from(self.model).filter_by(**filters)
        return self.session.execute(stmt).scalar() or 0

    def add(self, **data: Any) -> ModelType:
        entity = self.model(**data)
        self.session.add(entity)
        self.session.flush()
        return entity

    def guarded_update(self, id: UUID, guards: list[ColumnElement[bool]], **values: Any) -> bool:
        """
        UPDATE ... WHERE id = :id AND <guards>; True when exactly one row changed.

        The guard is evaluated by the database against the committed row, so
        check-and-write is one atomic step.
        """
        stmt = (
            update(self.model)
            .where(self.model.id == id, *guards)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def compare_and_set(self, row: ModelType, expected: dict[str, Any], **values: Any) -> ModelType:
        """
        Move ``row`` to ``values`` only if its columns still hold ``expected``.

        Raises ConcurrencyConflict when another transaction changed the row
        first; ``Database.run`` retries and the caller re-validates.
        """
        guards = [getattr(self.model, column) == value for column, value in expected.items()]
        if not self.guarded_update(row.id, guards, **values):
            raise ConcurrencyConflict(
                f"{self.entity.capitalize()} {row.id} changed concurrently",
                entity=self.entity,
                entity_id=row.id,
            )
        self.session.refresh(row)
        return row

    def reload(self, row: ModelType) -> ModelType:
        self.session.refresh(row)
        return row
