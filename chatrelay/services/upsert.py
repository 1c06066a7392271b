from typing import Any, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatrelay.logging_config import get_logger

logger = get_logger("upsert")


def first_or_create(db: Session, model, lookup: dict[str, Any], defaults: dict[str, Any]) -> Tuple[Any, bool]:
    """Find a row by its unique key or insert it. Returns (row, created)."""
    instance = db.query(model).filter_by(**lookup).first()
    if instance is not None:
        return instance, False
    return create_or_fetch(db, model, lookup, defaults)


def create_or_fetch(db: Session, model, lookup: dict[str, Any], defaults: dict[str, Any]) -> Tuple[Any, bool]:
    """Insert inside a savepoint; if a concurrent writer won the race, return its row."""
    instance = model(**lookup, **defaults)
    try:
        with db.begin_nested():
            db.add(instance)
            db.flush()
        return instance, True
    except IntegrityError:
        existing = db.query(model).filter_by(**lookup).first()
        if existing is None:
            raise
        logger.info(
            "Concurrent insert detected, using existing row",
            extra={"context": {"table": model.__tablename__, **{k: str(v) for k, v in lookup.items()}}},
        )
        return existing, False
