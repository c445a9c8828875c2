from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from deptportal.errors import UnsupportedDialect
from deptportal.settings import settings


def make_engine(url: str) -> Engine:
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, future=True, connect_args=connect_args)


def make_sessionmaker(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, future=True)


engine = make_engine(settings.database_url)
SessionLocal = make_sessionmaker(engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def insert_ignore(db: Session, model, values: dict):
    """INSERT ... ON CONFLICT DO NOTHING RETURNING id for the session's dialect.

    Returns the new row id, or None when a unique constraint swallowed the row.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model)
    else:
        raise UnsupportedDialect(f"insert-or-ignore not supported for dialect {dialect!r}")
    stmt = stmt.values(**values).on_conflict_do_nothing().returning(model.id)
    return db.execute(stmt).scalar_one_or_none()
