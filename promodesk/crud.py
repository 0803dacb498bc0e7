"""Database access helpers."""
from __future__ import annotations

from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from promodesk.models import Group, LoginAttempt, MonthlyRecord, Promoter
from promodesk.schemas import GroupCreate

TABLES: dict[str, type] = {
    "groups": Group,
    "promoters": Promoter,
    "monthly_records": MonthlyRecord,
}


def model_for_table(table: str) -> type:
    try:
        return TABLES[table]
    except KeyError:
        raise ValueError(f"Unknown table {table!r}.") from None


def _column(model: type, name: str):
    columns = model.__table__.columns
    if name not in columns:
        raise ValueError(f"Unknown column {name!r} on {model.__tablename__}.")
    return getattr(model, name)


def row_to_dict(instance: Any) -> dict[str, Any]:
    """Plain column values of an ORM instance."""

    return {column.key: getattr(instance, column.key) for column in instance.__table__.columns}


def _check_columns(model: type, values: Mapping[str, Any]) -> None:
    for name in values:
        _column(model, name)


def select_rows(
    db: Session,
    table: str,
    filters: Mapping[str, Any] | None = None,
    in_filters: Mapping[str, Iterable[Any]] | None = None,
    order_by: Sequence[str] | None = None,
) -> Sequence[Any]:
    model = model_for_table(table)
    stmt = select(model)

    for name, value in (filters or {}).items():
        stmt = stmt.where(_column(model, name) == value)

    for name, values in (in_filters or {}).items():
        stmt = stmt.where(_column(model, name).in_(list(values)))

    for name in order_by or ("id",):
        stmt = stmt.order_by(_column(model, name))

    return db.execute(stmt).scalars().all()


def insert_row(db: Session, table: str, values: Mapping[str, Any]) -> Any:
    model = model_for_table(table)
    _check_columns(model, values)
    instance = model(**values)
    db.add(instance)
    db.commit()
    db.refresh(instance)
    return instance


def update_rows(
    db: Session,
    table: str,
    values: Mapping[str, Any],
    filters: Mapping[str, Any],
) -> Sequence[Any]:
    if not filters:
        raise ValueError("Refusing to update without a filter.")
    model = model_for_table(table)
    _check_columns(model, values)
    instances = select_rows(db, table, filters)
    for instance in instances:
        for key, value in values.items():
            setattr(instance, key, value)
        db.add(instance)
    db.commit()
    for instance in instances:
        db.refresh(instance)
    return instances


def _find_for_upsert(
    db: Session,
    model: type,
    values: Mapping[str, Any],
    conflict_columns: Sequence[str],
) -> Any | None:
    """Row an upsert should update, or None.

    A row found by ``id`` is used only when its conflict columns equal the
    incoming values; an existing row is never moved to another key.
    """
    if values.get("id") is not None:
        existing = db.get(model, values["id"])
        if existing is not None and all(
            getattr(existing, name) == values[name] for name in conflict_columns
        ):
            return existing
    stmt = select(model)
    for name in conflict_columns:
        stmt = stmt.where(_column(model, name) == values[name])
    return db.execute(stmt).scalars().first()


def upsert_row(
    db: Session,
    table: str,
    values: Mapping[str, Any],
    conflict_columns: Sequence[str],
) -> Any:
    """Insert ``values`` or update the row sharing its conflict columns.

    An explicit ``id`` is matched first when it belongs to the same key. If
    a concurrent writer inserts the same key between our lookup and insert,
    the unique constraint rejects ours and the write is retried once as an
    update.
    """

    model = model_for_table(table)
    _check_columns(model, values)
    missing = [name for name in conflict_columns if name not in values]
    if missing:
        raise ValueError(f"Upsert on {table} requires {', '.join(missing)}.")

    for attempt in range(2):
        existing = _find_for_upsert(db, model, values, conflict_columns)
        if existing is not None:
            for key, value in values.items():
                if key != "id":
                    setattr(existing, key, value)
            db.add(existing)
            db.commit()
            db.refresh(existing)
            return existing

        instance = model(**{key: value for key, value in values.items() if key != "id"})
        db.add(instance)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            if attempt:
                raise
            continue
        db.refresh(instance)
        return instance

    raise RuntimeError("unreachable")  # pragma: no cover


def list_groups(db: Session) -> Sequence[Group]:
    stmt = select(Group).order_by(Group.name, Group.id)
    return db.execute(stmt).scalars().all()


def create_group(db: Session, payload: GroupCreate) -> Group:
    group = Group(**payload.model_dump())
    db.add(group)
    db.commit()
    db.refresh(group)
    return group


def reset_application_data(db: Session) -> None:
    """Delete all domain rows, keeping user accounts."""

    db.query(MonthlyRecord).delete(synchronize_session=False)
    db.query(Promoter).delete(synchronize_session=False)
    db.query(Group).delete(synchronize_session=False)
    db.query(LoginAttempt).delete(synchronize_session=False)
    db.commit()
