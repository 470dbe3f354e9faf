"""Pytest configuration and shared fixtures."""
import os
from typing import Generator

import pytest
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

# Set test environment variables BEFORE any pricetool imports
os.environ["TESTING"] = "true"
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = os.getenv("TEST_DATABASE_URL", "sqlite:///./test.db")
os.environ.pop("REFERENCE_DATABASE_URL", None)
os.environ.pop("SENTRY_DSN", None)
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"

from pricetool.config.database import create_database_engine, create_session_factory, init_db  # noqa: E402
from pricetool.config.settings import IngestionSettings  # noqa: E402
from pricetool.services.ingestion.resolver import ReferenceResolver  # noqa: E402

# Import factories and configure them
from tests.factories import CodeFactory, HospitalFactory, PayerFactory, PlanFactory  # noqa: E402


# Test database setup
#
# Facts and reference entities live in two SQLite files, as they would with
# REFERENCE_DATABASE_URL set: the resolver commits codes, payers and plans
# while a load's transaction holds the fact database's write lock.
#
# SQLite engines begin transactions with BEGIN IMMEDIATE, so a test must not
# keep a session transaction open on the fact database while a load runs.
# Use tests.utils.db_helpers or commit/rollback first.
@pytest.fixture(scope="function")
def fact_engine(tmp_path) -> Generator[Engine, None, None]:
    """SQLite fact database in a temporary directory."""
    engine = create_database_engine(f"sqlite:///{tmp_path / 'facts.db'}")
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def reference_engine(tmp_path) -> Generator[Engine, None, None]:
    """SQLite reference database in a temporary directory."""
    engine = create_database_engine(f"sqlite:///{tmp_path / 'reference.db'}")
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def databases(fact_engine: Engine, reference_engine: Engine):
    """Create all tables on both test databases."""
    init_db(bind=fact_engine, reference_bind=reference_engine)
    return fact_engine, reference_engine


@pytest.fixture(scope="function")
def session_factory(databases, fact_engine: Engine) -> sessionmaker:
    """Session factory bound to the fact database."""
    return create_session_factory(fact_engine)


@pytest.fixture(scope="function")
def db_session(databases, fact_engine: Engine) -> Generator[Session, None, None]:
    """Fact database session; factories commit through it."""
    session = sessionmaker(bind=fact_engine, autoflush=False, expire_on_commit=False)()
    HospitalFactory._meta.sqlalchemy_session = session
    yield session
    session.rollback()
    session.close()


@pytest.fixture(scope="function")
def reference_session(databases, reference_engine: Engine) -> Generator[Session, None, None]:
    """Reference database session; code/payer/plan factories commit through it."""
    session = sessionmaker(bind=reference_engine, autoflush=False, expire_on_commit=False)()
    CodeFactory._meta.sqlalchemy_session = session
    PayerFactory._meta.sqlalchemy_session = session
    PlanFactory._meta.sqlalchemy_session = session
    yield session
    session.rollback()
    session.close()


@pytest.fixture(scope="function")
def resolver(databases, reference_engine: Engine) -> ReferenceResolver:
    """Resolver over the reference database, without retry delays."""
    return ReferenceResolver.for_engine(reference_engine, backoff_seconds=0)


@pytest.fixture(scope="function")
def settings() -> IngestionSettings:
    """Settings with small batches so tests cross flush thresholds."""
    return IngestionSettings(
        item_code_batch_size=3,
        charge_batch_size=4,
        payer_charge_batch_size=5,
        modifier_batch_size=2,
        extract_buffer_size=8,
        csv_chunk_size=10,
        max_workers=3,
        writer_backoff_seconds=0,
        resolver_backoff_seconds=0,
        resolution_failure_threshold=0.5,
        resolution_failure_min_rows=10,
        progress_log_interval=25,
        load_timeout_seconds=None,
    )
