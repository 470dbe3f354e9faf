"""
Celery task definitions for asynchronous hospital file ingestion.

Each worker process keeps one ReferenceResolver, created on first use, so
concurrent tasks in a process share its code/payer/plan cache. The load
itself runs through IngestionCoordinator exactly as it does from the CLI.

Tasks:
- ingest_hospital_file: Load one machine-readable file into the store
"""
import os
import threading
from typing import Any, Dict, Optional

from celery import Task
from celery.exceptions import SoftTimeLimitExceeded

from pricetool.config.celery import celery_app
from pricetool.config.database import SessionLocal, check_database_layout, reference_engine
from pricetool.config.sentry import add_breadcrumb
from pricetool.config.settings import get_settings
from pricetool.services.ingestion.coordinator import IngestionCoordinator
from pricetool.services.ingestion.resolver import ReferenceResolver
from pricetool.utils.logger import get_logger

logger = get_logger(__name__)

_resolver: Optional[ReferenceResolver] = None
_resolver_lock = threading.Lock()


def get_resolver() -> ReferenceResolver:
    """Return this process's shared resolver."""
    global _resolver
    with _resolver_lock:
        if _resolver is None:
            settings = get_settings()
            _resolver = ReferenceResolver.for_engine(
                reference_engine,
                max_attempts=settings.resolver_max_attempts,
                backoff_seconds=settings.resolver_backoff_seconds,
            )
        return _resolver


@celery_app.task(bind=True, name="ingest_hospital_file")
def ingest_hospital_file(self: Task, file_path: str, supersede: bool = False) -> Dict[str, Any]:
    """
    Ingest one hospital price transparency file.

    The file must be readable by the worker. Load failures (bad file,
    failed writes, too many unresolvable rows) are returned in the result
    rather than raised, so they are not retried.

    Returns:
        LoadResult.to_dict() for the load

    Raises:
        FileNotFoundError: If the worker cannot see the file
        ConfigurationError: If SQLite facts and references share one database
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"File not found: {file_path}")

    logger.info(
        "Ingesting hospital file",
        file_path=file_path,
        supersede=supersede,
        task_id=self.request.id,
    )
    add_breadcrumb(
        "Ingestion task started",
        category="celery",
        data={"task_id": self.request.id, "file_path": file_path},
    )

    resolver = get_resolver()
    check_database_layout(SessionLocal.kw.get("bind"), getattr(resolver, "engine", None))
    coordinator = IngestionCoordinator(
        file_path,
        resolver=resolver,
        session_factory=SessionLocal,
        supersede=supersede,
    )
    result = coordinator.run()
    if result.error_type == SoftTimeLimitExceeded.__name__:
        # The soft limit interrupts the load like a cancellation; it was rolled back
        logger.warning("Ingestion task hit its soft time limit", file_path=file_path, task_id=self.request.id)

    payload = result.to_dict()
    payload["task_id"] = self.request.id
    return payload
