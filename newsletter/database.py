from typing import Generator

from sqlalchemy import create_engine, inspect
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

# Import centralized configuration
from newsletter.config import settings
from newsletter.obs.logging import get_logger

logger = get_logger(__name__)

DATABASE_URL = settings.database_url()


def _engine_options(url: str) -> dict:
    """Connection pool options for the configured backend."""
    if url.startswith("sqlite"):
        # Request handlers run in a threadpool; SQLite connections must be shareable
        return {"connect_args": {"check_same_thread": False}}
    # Production-ready connection pool configuration
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 2,  # Fail fast instead of queueing behind a dead store
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def build_engine(url: str, echo: bool = False):
    """Create an engine for ``url`` with the pool settings used by the service."""
    return create_engine(url, echo=echo, **_engine_options(url))


engine = build_engine(DATABASE_URL, echo=settings.DEBUG_SQL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Database session dependency for request handlers."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def dialect_insert(db: Session, table):
    """
    Build an INSERT for ``table`` that supports ``on_conflict_do_nothing()``.

    Both PostgreSQL and SQLite implement ``ON CONFLICT DO NOTHING``; the
    statement has to be built from the dialect-specific construct.
    """
    dialect_name = db.get_bind().dialect.name
    if dialect_name == "postgresql":
        return postgresql.insert(table)
    if dialect_name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"ON CONFLICT DO NOTHING is not supported for dialect {dialect_name!r}")


# Create tables
def init_db(bind=None):
    # Import all models here so that Base knows about them
    from newsletter.models import idempotency, issue_delivery_queue, newsletter_issue, subscription  # noqa: F401

    bind = bind or engine

    # Catch duplicate index/table errors (common when migrations have already run)
    # SQLite raises OperationalError, PostgreSQL raises ProgrammingError
    try:
        Base.metadata.create_all(bind=bind)
    except (ProgrammingError, OperationalError) as e:
        error_msg = str(e.orig) if hasattr(e, 'orig') else str(e)
        if "already exists" not in error_msg.lower() and "duplicate" not in error_msg.lower():
            raise
        logger.info(f"Some tables already exist (expected if migrations ran): {error_msg[:100]}")

    tables = sorted(inspect(bind).get_table_names())
    logger.info(f"Database initialized with tables: {', '.join(tables)}")
