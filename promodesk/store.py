"""Record store used by the roster session.

Each call runs in its own short-lived database session and returns plain
column dicts, so results can be handed across threads and kept after the
session is gone.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Mapping, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from promodesk import crud

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """A select/insert/update/upsert against the store failed."""

    def __init__(self, operation: str, table: str, message: str) -> None:
        super().__init__(message)
        self.operation = operation
        self.table = table
        self.message = message


class RecordStore:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def _run(self, operation: str, table: str, action: Callable[[Session], Any]) -> Any:
        session = self.session_factory()
        try:
            return action(session)
        except (SQLAlchemyError, ValueError) as exc:
            try:
                session.rollback()
            except SQLAlchemyError:
                logger.exception("[store] rollback failed after %s on %s", operation, table)
            message = str(getattr(exc, "orig", None) or exc)
            logger.warning("[store] %s on %s failed: %s", operation, table, message)
            raise StoreError(operation, table, message) from exc
        finally:
            session.close()

    def select(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        in_filters: Mapping[str, Iterable[Any]] | None = None,
        order_by: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        def action(db: Session) -> list[dict[str, Any]]:
            rows = crud.select_rows(db, table, filters, in_filters, order_by)
            return [crud.row_to_dict(row) for row in rows]

        return self._run("select", table, action)

    def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        return self._run(
            "insert", table, lambda db: crud.row_to_dict(crud.insert_row(db, table, row))
        )

    def update(
        self,
        table: str,
        values: Mapping[str, Any],
        filters: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        def action(db: Session) -> list[dict[str, Any]]:
            rows = crud.update_rows(db, table, values, filters)
            return [crud.row_to_dict(row) for row in rows]

        return self._run("update", table, action)

    def upsert(
        self,
        table: str,
        row: Mapping[str, Any],
        conflict_columns: Sequence[str],
    ) -> dict[str, Any]:
        return self._run(
            "upsert",
            table,
            lambda db: crud.row_to_dict(crud.upsert_row(db, table, row, conflict_columns)),
        )
