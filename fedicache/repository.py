"""Generic repository for type-safe record operations inside a transaction.

Repositories never commit: they run inside the transaction opened by
``DatabaseManager.write`` so a whole merge either lands or rolls back.

Reference:
    - Repository Pattern: https://martinfowler.com/eaaCatalog/repository.html

Example:
    >>> from fedicache.repository import Repository
    >>> from fedicache.models import StatusRecord
    >>>
    >>> statuses = Repository[StatusRecord](session, StatusRecord)
    >>> statuses.upsert(StatusRecord.from_pydantic(status))
    >>> statuses.delete_where(StatusRecord.id.not_in(kept_ids))
"""

from collections.abc import Iterable, Sequence
from typing import Any, Generic, TypeVar

from sqlalchemy import delete, func
from sqlmodel import Session, SQLModel, select

T = TypeVar("T", bound=SQLModel)


def id_order(column: Any, descending: bool = True) -> tuple[Any, Any]:
    """ORDER BY clauses sorting opaque ids by (length, value).

    Mirrors ``fedicache.utils.id_sort_key`` in SQL.
    """
    if descending:
        return func.length(column).desc(), column.desc()
    return func.length(column).asc(), column.asc()


class Repository(Generic[T]):
    """Generic repository implementation for SQLModel records.

    Args:
        session: Session bound to the current transaction
        model: SQLModel table class (e.g. StatusRecord, AccountRecord)
    """

    def __init__(self, session: Session, model: type[T]):
        self.session = session
        self.model = model

    def get(self, entity_id: Any) -> T | None:
        """Get record by primary key (scalar or tuple for composite keys)."""
        return self.session.get(self.model, entity_id)

    def exists(self, entity_id: Any) -> bool:
        return self.get(entity_id) is not None

    def upsert(self, entity: T) -> T:
        """Insert or overwrite the record with the same primary key.

        Same key, same row: calling this twice with equal data leaves the
        store unchanged.
        """
        return self.session.merge(entity)

    def upsert_all(self, entities: Iterable[T]) -> list[T]:
        return [self.upsert(entity) for entity in entities]

    def insert_if_absent(self, entity: T, entity_id: Any) -> bool:
        """Add ``entity`` unless a record with ``entity_id`` exists.

        Returns:
            True if the record was added
        """
        if self.exists(entity_id):
            return False
        self.session.add(entity)
        return True

    def find_by(self, *conditions: Any, order_by: Sequence[Any] = ()) -> Sequence[T]:
        """Find records matching SQL expression ``conditions``."""
        stmt = select(self.model)
        for condition in conditions:
            stmt = stmt.where(condition)
        if order_by:
            stmt = stmt.order_by(*order_by)
        return self.session.exec(stmt).all()

    def scalars(self, column: Any, *conditions: Any, order_by: Sequence[Any] = ()) -> list[Any]:
        """Select a single column of matching records."""
        stmt = select(column)
        for condition in conditions:
            stmt = stmt.where(condition)
        if order_by:
            stmt = stmt.order_by(*order_by)
        return list(self.session.exec(stmt).all())

    def delete_where(self, *conditions: Any) -> int:
        """Delete records matching ``conditions`` (all records when none given).

        Returns:
            Number of deleted rows
        """
        self.session.flush()
        stmt = delete(self.model)
        for condition in conditions:
            stmt = stmt.where(condition)
        result = self.session.exec(stmt)  # type: ignore[call-overload]
        return result.rowcount or 0

    def count(self, *conditions: Any) -> int:
        stmt = select(func.count()).select_from(self.model)
        for condition in conditions:
            stmt = stmt.where(condition)
        return self.session.exec(stmt).one()


class RepositoryFactory:
    """Factory for creating repositories bound to one session.

    Example:
        >>> repos = RepositoryFactory(session)
        >>> repos.for_entity(StatusRecord).get("109")
    """

    def __init__(self, session: Session):
        self.session = session

    def for_entity(self, model: type[T]) -> Repository[T]:
        return Repository[T](self.session, model)


__all__ = ["Repository", "RepositoryFactory", "id_order"]
