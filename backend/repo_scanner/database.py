from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

from repo_scanner.config import settings
from repo_scanner.core.error_handling.exceptions import DatabaseException
from repo_scanner.core.logging.structured_logger import get_logger, EventType

logger = get_logger(__name__)

Base = declarative_base()

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def create_db_engine(database_url: str) -> Engine:
    """Engine with pooling suited to the backend (queue pool, or a static pool for in-memory SQLite)"""
    if database_url.startswith("sqlite"):
        engine_args = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            engine_args["poolclass"] = StaticPool
        return create_engine(database_url, **engine_args)

    return create_engine(
        database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def configure_database(database_url: Optional[str] = None) -> sessionmaker:
    """(Re)bind the module-level engine and session factory"""
    global _engine, _session_factory
    _engine = create_db_engine(database_url or settings.database_url)
    _session_factory = create_session_factory(_engine)
    return _session_factory


def get_engine() -> Engine:
    if _engine is None:
        configure_database()
    return _engine


def get_session_factory() -> sessionmaker:
    if _session_factory is None:
        configure_database()
    return _session_factory


def init_db(engine: Optional[Engine] = None):
    """Create all tables"""
    from repo_scanner.models import scan  # noqa: F401 - registers the models

    Base.metadata.create_all(bind=engine or get_engine())
    logger.info("Database tables initialized successfully", event_type=EventType.DATABASE_QUERY)


@contextmanager
def session_scope(session_factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """One transaction: commit on success, rollback and wrap on database errors"""
    session = (session_factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Database session error", error=e, event_type=EventType.ERROR_OCCURRED)
        raise DatabaseException(f"Database session error: {e}", cause=e) from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db():
    """FastAPI dependency yielding a session"""
    with session_scope() as session:
        yield session
