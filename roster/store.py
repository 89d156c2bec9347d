from __future__ import annotations
import logging
import uuid
from typing import Any, Dict, Optional, Tuple, Type, Union
import sqlalchemy as sa
from sqlalchemy import create_engine, event, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from .models import Base
from .utils import database_url

logger = logging.getLogger(__name__)

# dialects with INSERT ... ON CONFLICT DO NOTHING
_INSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": pg_insert,
}


def _enable_sqlite_foreign_keys(dbapi_conn, _record) -> None:
    cur = dbapi_conn.cursor()
    cur.execute("PRAGMA foreign_keys=ON")
    cur.close()


def make_engine(url: Optional[str] = None, **kwargs: Any) -> Engine:
    url = url or database_url()
    engine = create_engine(url, **kwargs)
    if engine.dialect.name not in _INSERTS:
        raise ValueError(f"unsupported database dialect: {engine.dialect.name}")
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    logger.debug("database engine: %s", engine.url.render_as_string(hide_password=True))
    return engine


def create_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def session_factory(bind: Union[Engine, sessionmaker]) -> sessionmaker:
    if isinstance(bind, sessionmaker):
        return bind
    return sessionmaker(bind=bind, expire_on_commit=False)


# =========================
# Natural-key operations (run inside the caller's transaction)
# =========================
def find_id(session: Session, model: Type[Base], key: Dict[str, Any]) -> Optional[str]:
    table = model.__table__
    stmt = select(table.c.id).where(*[table.c[k] == v for k, v in key.items()])
    return session.connection().execute(stmt).scalar_one_or_none()


def get_row(session: Session, model: Type[Base], row_id: str) -> Optional[sa.Row]:
    table = model.__table__
    return session.connection().execute(select(table).where(table.c.id == row_id)).one_or_none()


def insert_row(session: Session, model: Type[Base], values: Dict[str, Any]) -> str:
    # plain insert, for rows that have no natural key
    table = model.__table__
    row_id = values.get("id") or str(uuid.uuid4())
    session.connection().execute(sa.insert(table).values(**{**values, "id": row_id}))
    return row_id


def upsert(
    session: Session,
    model: Type[Base],
    key: Dict[str, Any],
    values: Optional[Dict[str, Any]] = None,
) -> Tuple[str, bool]:
    """
    Create-if-absent by natural key. Returns (id, created).
    Relies on the model's unique constraint over `key`, so concurrent imports
    converge on one row instead of racing a select-then-insert.
    """
    conn = session.connection()
    table = model.__table__
    insert = _INSERTS[conn.dialect.name]
    stmt = insert(table).values({**(values or {}), **key}).on_conflict_do_nothing(index_elements=list(key))
    created = conn.execute(stmt).rowcount == 1
    row_id = find_id(session, model, key)
    if row_id is None:
        raise LookupError(f"{table.name}: no row for {key} after upsert")
    return row_id, created


def update_row(session: Session, model: Type[Base], row_id: str, values: Dict[str, Any]) -> None:
    if not values:
        return
    table = model.__table__
    session.connection().execute(sa.update(table).where(table.c.id == row_id).values(**values))
