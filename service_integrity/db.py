import functools
from typing import Optional

from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
import structlog

from .config import settings
from .errors import InternalError


logger = structlog.get_logger(__name__)


def make_engine(database_url: str, busy_timeout: Optional[float] = None):
    if database_url.startswith("sqlite"):
        if busy_timeout is None:
            busy_timeout = settings.sqlite_busy_timeout
        engine = create_engine(
            database_url,
            future=True,
            connect_args={"check_same_thread": False, "timeout": busy_timeout},
        )

        # pysqlite defers BEGIN until the first DML statement; emit it ourselves so
        # row reads, SAVEPOINTs and writes share one transaction like on PostgreSQL.
        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        # SQLite ignores FOR UPDATE; IMMEDIATE takes the database write lock up front,
        # so a second transaction waits (up to busy_timeout seconds) until the first ends.
        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    # Configure connection pool for better performance
    return create_engine(
        database_url,
        future=True,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,  # Recycle connections after 1 hour
    )


engine = make_engine(settings.database_url)

# IMPORTANT: do not use scoped_session with async frameworks; create a fresh Session per request
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def commit_or_raise(db: Session, operation: str) -> None:
    """Commit the session's transaction; on failure roll back and raise InternalError."""
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("commit_failed", operation=operation, error=str(e))
        raise InternalError(f"Datastore failure during {operation}") from e


def datastore_operation(operation: str):
    """
    Wrap a component method taking `(self, db, ...)`.

    Any SQLAlchemyError raised inside it (lock timeout, failed flush, lost
    race) rolls the session back and surfaces as InternalError.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, db: Session, *args, **kwargs):
            try:
                return func(self, db, *args, **kwargs)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("datastore_failed", operation=operation, error=str(e))
                raise InternalError(f"Datastore failure during {operation}") from e

        return wrapper

    return decorator
