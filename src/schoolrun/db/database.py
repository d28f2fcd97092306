"""Database engine initialization and connection management."""

from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .schema import Base, StoreMetadata

SCHEMA_VERSION = "1.1.0"


def _enable_sqlite_immediate_transactions(engine: Engine) -> None:
    """Start every SQLite transaction with BEGIN IMMEDIATE.

    pysqlite defers BEGIN until the first write, so two connections that
    both read before writing can fail with "database is locked" instead of
    waiting on the busy timeout. Taking the write lock up front serialises
    writers, which is what the compare-and-swap updates rely on.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_store_engine(url: str) -> Engine:
    """Create an engine for a database URL or a bare SQLite file path."""
    if "://" not in url:
        Path(url).parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{url}"
    elif url.startswith("sqlite:///") and url != "sqlite:///:memory:":
        Path(url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _enable_sqlite_immediate_transactions(engine)
        return engine

    return create_engine(url, echo=False, pool_pre_ping=True)


def init_database(url: str) -> sessionmaker[Any]:
    """Initialize database and return session factory."""
    engine = create_store_engine(url)
    Base.metadata.create_all(engine)

    session_maker = sessionmaker(bind=engine, expire_on_commit=False)

    with session_maker() as session:
        schema_version = session.get(StoreMetadata, "schema_version")
        if not schema_version:
            session.add(StoreMetadata(key="schema_version", value=SCHEMA_VERSION))
            session.commit()

    return session_maker
