import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import String, event, func
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    from sqlalchemy import create_engine

    eng = create_engine(settings.database_url, connect_args=connect_args)
    if settings.database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if value is not None else None


@event.listens_for(Engine, "connect")
def _register_sqlite_functions(dbapi_conn, _record):
    # SQLite lower() only folds ASCII letters.
    if isinstance(dbapi_conn, sqlite3.Connection):
        dbapi_conn.create_function("casefold", 1, _casefold, deterministic=True)


def casefold(session: Session, expr):
    """Case-insensitive form of a SQL text expression on the session's backend."""
    if session.get_bind().dialect.name == "sqlite":
        return func.casefold(expr, type_=String)
    return func.lower(expr)


def casefold_text(session: Session, value: str) -> str:
    if session.get_bind().dialect.name == "sqlite":
        return value.casefold()
    return value.lower()


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def init_db(bind: Optional[Engine] = None) -> None:
    """Create any missing tables. Migrations remain the source of truth."""
    Base.metadata.create_all(bind or engine)


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def unit_of_work(session: Session) -> Iterator[Session]:
    """Run a block of repository calls atomically on an existing session.

    Everything flushed inside the block is committed together when it exits
    cleanly; any exception rolls the whole block back and propagates.
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
