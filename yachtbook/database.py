from __future__ import annotations

import os
from functools import lru_cache

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from .models import Base

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./yachtbook.db")


def build_engine(url: str) -> Engine:
    """
    Create an engine and its tables.

    In-memory SQLite shares one connection across threads (StaticPool), so
    sessions on such an engine must be closed before the next one begins.
    """
    kwargs: dict = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs["connect_args"] = {"check_same_thread": False}
            kwargs["poolclass"] = StaticPool
        else:
            kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}

    eng = create_engine(url, **kwargs)
    if eng.url.get_backend_name() == "sqlite":
        _serialize_sqlite_writers(eng)
    Base.metadata.create_all(eng)
    return eng


def _serialize_sqlite_writers(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write, which lets two readers
    # both pass a check and then race to write. Take the write lock up front
    # instead; this stands in for SELECT ... FOR UPDATE on SQLite.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


@lru_cache(maxsize=8)
def engine_for(url: str) -> Engine:
    return build_engine(url)


def get_engine() -> Engine:
    return engine_for(DATABASE_URL)
