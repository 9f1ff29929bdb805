"""Dialect-aware ``INSERT ... ON CONFLICT`` construction."""

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session


def insert_for(db: Session, model):
    """Return an insert construct that supports ``on_conflict_do_*`` for the bound dialect."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Upserts are not supported on {dialect}")
