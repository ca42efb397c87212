"""Database engine and session factory."""

from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from estate_sync.config import settings
from estate_sync.db.models import Base


def get_engine(db_url=None, db_path=None):
    """Create a SQLAlchemy engine for the configured database.

    Args:
        db_url: Optional database URL (PostgreSQL, SQLite, etc.)
        db_path: Optional SQLite database path

    Returns:
        SQLAlchemy engine

    Note:
        If db_url is provided, it takes precedence over db_path.
        If neither is provided, uses settings.db_url or settings.db_path.
    """
    url = db_url or settings.db_url
    path = db_path or settings.db_path

    if url and (url.startswith("postgresql://") or url.startswith("postgres://")):
        return create_engine(url, echo=False, pool_pre_ping=True)

    if url and url.startswith("sqlite"):
        return create_engine(url, echo=False)

    if path:
        path.parent.mkdir(parents=True, exist_ok=True)
        return create_engine(f"sqlite:///{path}", echo=False)

    return create_engine("sqlite:///:memory:", echo=False)


_engine = None
_SessionLocal = None


def _get_default_engine():
    """Return the lazily-initialised default engine (singleton)."""
    global _engine
    if _engine is None:
        _engine = get_engine()
    return _engine


def get_session_factory() -> sessionmaker:
    """Return the lazily-initialised session factory (singleton)."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(bind=_get_default_engine(), expire_on_commit=False)
    return _SessionLocal


def reset_engine() -> None:
    """Dispose the cached engine so the next access reconnects."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def init_db() -> None:
    """Create all tables (useful for quick bootstrapping without migrations)."""
    Base.metadata.create_all(bind=_get_default_engine())


def clear_db(engine=None) -> None:
    """Delete every row from every table, children first."""
    engine = engine or _get_default_engine()
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


def get_db() -> Generator[Session, None, None]:
    """Yield a database session, closing it when done."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
