"""Database connection management for the Update Center.

Provides synchronous database access using SQLAlchemy. SQLite is the
default store; any SQLAlchemy URL works through DATABASE_URL or the
``database.url`` config key.

Usage:
    from update_center.db.connection import init_db, session_scope

    init_db()  # Create tables
    with session_scope() as db:
        batch = db.query(BatchRequest).first()

Background workers (the progress reconciler) receive a session factory
and open one short-lived session per unit of work.
"""

import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from update_center.db.models import Base


# Configuration
def get_database_url(configured_url: str = "") -> str:
    """Get database URL from config, environment, or default SQLite.

    Precedence:
    1. configured_url (from the loaded config file)
    2. DATABASE_URL (canonical)
    3. UPDATE_CENTER_DB_PATH (converted to sqlite URL)
    4. sqlite:///<platform data dir>/update_center.db
    """
    if configured_url.strip():
        return configured_url.strip()

    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    db_path = os.environ.get("UPDATE_CENTER_DB_PATH", "").strip()
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{db_path}"

    from update_center.utils.paths import ensure_data_dir, get_default_db_path

    ensure_data_dir()
    return f"sqlite:///{get_default_db_path()}"


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine with SQLite pragmas applied on connect.

    Args:
        url: SQLAlchemy database URL.
        echo: Log all SQL statements.

    Returns:
        Configured SQLAlchemy Engine.
    """
    is_sqlite = url.startswith("sqlite")
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False} if is_sqlite else {},
        echo=echo,
    )

    if is_sqlite:

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
            """Configure SQLite pragmas for correctness and concurrency.

            Enables:
            - foreign_keys=ON: Referential integrity (off by default in SQLite).
            - journal_mode=WAL: Concurrent readers alongside the single
              writer, so status reads don't block the reconciler.
            - synchronous=NORMAL: Durable after WAL fsync.
            """
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if ":memory:" not in url:
                cursor.execute("PRAGMA journal_mode=WAL;")
                cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.close()

    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Build a session factory bound to the given engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def configure(url: str = "", echo: bool = False) -> sessionmaker[Session]:
    """(Re)configure the process-wide engine and session factory.

    Args:
        url: Database URL; empty resolves via get_database_url().
        echo: Log all SQL statements.

    Returns:
        The process-wide session factory.
    """
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = create_db_engine(get_database_url(url), echo=echo)
    _session_factory = create_session_factory(_engine)
    return _session_factory


def get_session_factory() -> sessionmaker[Session]:
    """Return the process-wide session factory, configuring it on first use."""
    if _session_factory is None:
        return configure()
    return _session_factory


@contextmanager
def session_scope(
    factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Transactional scope: commit on success, roll back on error.

    Args:
        factory: Session factory to use (defaults to the process-wide one).

    Usage:
        with session_scope(factory) as db:
            store = BatchStore(db)
    """
    db = (factory or get_session_factory())()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(engine: Engine | None = None) -> None:
    """Create all tables if they don't exist.

    Args:
        engine: Engine to initialise (defaults to the process-wide one).
    """
    if engine is None:
        get_session_factory()
        engine = _engine
    Base.metadata.create_all(bind=engine)
