"""
Database configuration and session management.

This module provides the SQLAlchemy engines, session factory and declarative
base used by the ingestion pipeline.

Two engines exist:
- ``engine``: the fact store. Each load runs in one transaction on a session
  bound to this engine.
- ``reference_engine``: where codes, payers and plans are resolved. Reference
  rows are committed on their own, outside any load transaction. It is the same
  engine as ``engine`` unless REFERENCE_DATABASE_URL is set. SQLite requires
  it to be set; see ``check_database_layout``.

Configuration (see ``pricetool.config.settings``):
- DATABASE_URL: PostgreSQL connection string; SQLite is accepted for development
- DATABASE_POOL_SIZE / DATABASE_MAX_OVERFLOW / DATABASE_POOL_TIMEOUT
- SQLITE_BUSY_TIMEOUT: seconds a SQLite writer waits for the file lock
"""
from typing import List, Optional

from dotenv import load_dotenv
from sqlalchemy import Column, DateTime, Engine, create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.sql import func

from pricetool.config.settings import get_settings
from pricetool.utils.errors import ConfigurationError
from pricetool.utils.logger import get_logger

# Load .env file before reading settings
load_dotenv()

logger = get_logger(__name__)

# Base class for models (must be created before models are imported)
Base = declarative_base()


class TimestampMixin:
    """Adds created_at/updated_at columns maintained by the database."""

    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


def is_sqlite_url(database_url: str) -> bool:
    return make_url(database_url).get_backend_name() == "sqlite"


def _install_sqlite_transaction_hooks(engine: Engine) -> None:
    # pysqlite defers BEGIN and breaks SAVEPOINT; take over transaction control.
    # IMMEDIATE grabs the write lock up front so concurrent writers queue on
    # the busy timeout instead of failing on lock upgrade.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_database_engine(
    database_url: Optional[str] = None,
    pool_size: Optional[int] = None,
    max_overflow: Optional[int] = None,
    pool_timeout: Optional[float] = None,
    pool_pre_ping: bool = True,
    echo: bool = False,
) -> Engine:
    """
    Create SQLAlchemy database engine with connection pooling.

    Args:
        database_url: Database connection URL (defaults to DATABASE_URL)
        pool_size: Connection pool size (defaults to DATABASE_POOL_SIZE)
        max_overflow: Maximum pool overflow (defaults to DATABASE_MAX_OVERFLOW)
        pool_timeout: Seconds to wait for a pooled connection
        pool_pre_ping: Enable connection health checks (default: True)
        echo: Enable SQL query logging (default: False)

    Returns:
        Configured SQLAlchemy Engine instance
    """
    settings = get_settings()
    url = database_url or settings.database_url

    if is_sqlite_url(url):
        engine = create_engine(
            url,
            connect_args={
                "check_same_thread": False,
                "timeout": settings.sqlite_busy_timeout,
            },
            echo=echo,
        )
        _install_sqlite_transaction_hooks(engine)
        return engine

    return create_engine(
        url,
        pool_size=pool_size or settings.database_pool_size,
        max_overflow=max_overflow if max_overflow is not None else settings.database_max_overflow,
        pool_timeout=pool_timeout or settings.database_pool_timeout,
        pool_pre_ping=pool_pre_ping,
        echo=echo,
    )


def _sqlite_database(bind) -> Optional[str]:
    url = getattr(bind, "url", None)
    if url is None or url.get_backend_name() != "sqlite":
        return None
    return url.database or ":memory:"


def check_database_layout(fact_bind: Optional[Engine], reference_bind: Optional[Engine]) -> None:
    """
    Reject store layouts loads cannot run on.

    A load holds the SQLite write lock on the fact database for its whole
    transaction while the resolver commits codes, payers and plans, so on
    SQLite the two must be different files. With separate files the fact
    tables' foreign keys to reference rows are not enforced; that layout is
    for development only.

    Raises:
        ConfigurationError: If SQLite facts and references share one database
    """
    fact_database = _sqlite_database(fact_bind)
    if fact_database is None:
        return
    shared = reference_bind is fact_bind or (
        fact_database != ":memory:" and _sqlite_database(reference_bind) == fact_database
    )
    if shared:
        raise ConfigurationError(
            "SQLite DATABASE_URL requires REFERENCE_DATABASE_URL pointing at a separate file",
            details={"database": fact_database},
        )
    logger.info(
        "SQLite references kept in a separate database; reference foreign keys are not enforced",
        database=fact_database,
        reference_database=_sqlite_database(reference_bind),
    )


def create_session_factory(engine: Optional[Engine] = None) -> sessionmaker:
    """Create a session factory; sessions never autoflush."""
    return sessionmaker(autoflush=False, bind=engine or _engine)


_engine = create_database_engine()
engine = _engine

_reference_url = get_settings().reference_database_url
reference_engine = create_database_engine(_reference_url) if _reference_url else _engine

SessionLocal = create_session_factory(_engine)


def get_all_models() -> List[type]:
    """Import all models so they register with Base.metadata."""
    from pricetool.models.core import Code, Payer, Plan
    from pricetool.models.database import (
        Hospital,
        ItemCode,
        Modifier,
        ModifierPayerInfo,
        PayerCharge,
        StandardCharge,
        StandardChargeItem,
    )

    return [
        Code,
        Payer,
        Plan,
        Hospital,
        StandardChargeItem,
        ItemCode,
        StandardCharge,
        PayerCharge,
        Modifier,
        ModifierPayerInfo,
    ]


def init_db(bind: Optional[Engine] = None, reference_bind: Optional[Engine] = None) -> None:
    """
    Create all tables if they do not exist.

    When the reference engine is separate, the full schema is created on both
    so foreign key targets exist on each side.
    """
    get_all_models()
    targets = [bind or engine]
    reference_target = reference_bind or (reference_engine if bind is None else None)
    if reference_target is not None and reference_target is not targets[0]:
        targets.append(reference_target)

    try:
        for target in targets:
            Base.metadata.create_all(bind=target)
        logger.info("Database initialized successfully", engines=len(targets))
    except Exception as e:
        logger.error("Failed to initialize database", error=str(e))
        raise
