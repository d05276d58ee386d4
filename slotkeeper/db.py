from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import settings


def build_engine(database_url: str) -> Engine:
    """Create an engine; SQLite writers are serialized with BEGIN IMMEDIATE."""
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=False, pool_pre_ping=True)

    engine = create_engine(
        database_url,
        echo=False,
        connect_args={
            "check_same_thread": False,
            "timeout": max(1, int(settings.SQLITE_BUSY_TIMEOUT_SECONDS)),
        },
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        # pysqlite must not emit its own BEGIN; the "begin" hook below does.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def begin_immediate(conn):
        # SQLite has no SELECT ... FOR UPDATE; take the write lock up front.
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


def init_db(bind: Engine | None = None) -> None:
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
