from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from typing import Generator
from sqlalchemy.orm import Session
from credit_ledger.core.config import settings


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # Busy timeout (seconds): writers queue on the database lock instead of failing.
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"pool_pre_ping": True}  # checks stale connections


def configure_sqlite_locking(engine: Engine) -> Engine:
    """
    SQLite ignores SELECT ... FOR UPDATE. Start every transaction with
    BEGIN IMMEDIATE so the write lock is taken up front and concurrent balance
    updates serialize the way row locks serialize them on PostgreSQL.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):  # noqa: ARG001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


engine = create_engine(settings.database_url, **_engine_kwargs(settings.database_url))
if engine.dialect.name == "sqlite":
    configure_sqlite_locking(engine)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
