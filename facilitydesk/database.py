# FacilityDesk - School Facility Equipment Checkout System
# Copyright (C) 2025 Oleg Tokmakov
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""Database setup and connection management."""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from facilitydesk.config import get_settings

logger = logging.getLogger(__name__)

# Base class for all models
Base = declarative_base()

# Global engine and session factory
_engine = None
_SessionLocal = None

# Execution option marking a transaction that must hold the write lock
WRITE_LOCK_OPTION = "facilitydesk_write_lock"


def get_database_url() -> str:
    """Get the database URL from settings."""
    settings = get_settings()

    if settings.database.url:
        return settings.database.url

    db_path = settings.database.path

    # Ensure directory exists
    db_dir = Path(db_path).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    return f"sqlite:///{db_path}"


def _configure_sqlite(engine) -> None:
    """Enable foreign keys and WAL, and control how transactions begin.

    pysqlite's own transaction handling is disabled so the BEGIN is ours.
    Ordinary transactions are deferred and, under WAL, never block writers.
    Transactions opened through ``write_transaction`` start with
    BEGIN IMMEDIATE, so the write lock is held from the first availability
    read until commit and check-and-create sequences are atomic across
    connections.
    """

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        if conn.get_execution_options().get(WRITE_LOCK_OPTION):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


def init_engine():
    """Initialize the database engine."""
    global _engine, _SessionLocal

    settings = get_settings()
    database_url = get_database_url()

    if _engine is not None:
        _engine.dispose()

    if database_url.startswith("sqlite"):
        _engine = create_engine(
            database_url,
            connect_args={
                "check_same_thread": False,  # Needed for SQLite
                "timeout": settings.database.busy_timeout_seconds,
            },
            echo=settings.app.debug,
        )
        _configure_sqlite(_engine)
    else:
        _engine = create_engine(database_url, echo=settings.app.debug, pool_pre_ping=True)

    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)

    return _engine


def get_engine():
    """Get the database engine, initializing if needed."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_local():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


def dispose_engine() -> None:
    """Close all pooled connections and forget the engine."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_db() -> Generator[Session, None, None]:
    """Dependency to get database session."""
    SessionLocal = get_session_local()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def write_transaction(db: Session) -> Iterator[Session]:
    """Run a read-then-write unit of work, committing on success.

    On SQLite the transaction opens with BEGIN IMMEDIATE. A transaction
    already open on the session is committed first so the write lock is
    taken before anything is read. Any error rolls back and propagates.
    """
    if db.in_transaction():
        db.commit()
    db.connection(execution_options={WRITE_LOCK_OPTION: True})
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def create_tables():
    """Create all database tables."""
    # Import all models to ensure they're registered
    from facilitydesk.models import checkout, event as event_models, inventory, notification  # noqa: F401

    engine = get_engine()
    Base.metadata.create_all(bind=engine)


def init_database():
    """Initialize database tables."""
    create_tables()
    logger.info("Database initialized at %s", get_database_url())
