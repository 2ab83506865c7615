from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from sqlalchemy.orm import DeclarativeBase

from orchestrator.settings import settings

def build_engine(url: str, **kwargs: Any) -> AsyncEngine:
    """
    Creates the async engine.

    SQLite gets BEGIN IMMEDIATE transactions so that writers serialize on the
    database lock the same way Postgres row locks serialize claimers.
    """
    backend = make_url(url).get_backend_name()
    if backend == "sqlite":
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("timeout", 30)
        engine = create_async_engine(url, echo=False, connect_args=connect_args, **kwargs)

        @event.listens_for(engine.sync_engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_async_engine(url, echo=False, pool_pre_ping=True, **kwargs)

def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

engine = build_engine(settings.SQLALCHEMY_DATABASE_URI)

AsyncSessionLocal = build_sessionmaker(engine)

class Base(DeclarativeBase):
    pass

def is_postgres(session: AsyncSession) -> bool:
    return session.get_bind().dialect.name == "postgresql"
