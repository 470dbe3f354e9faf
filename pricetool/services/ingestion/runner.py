"""
Concurrent ingestion of many hospital files.

Loads run on a bounded thread pool and share one ReferenceResolver. Each load
has its own session and transaction, so one load failing or being cancelled
never affects the others.
"""
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Iterable, List, Optional

from sqlalchemy.orm import sessionmaker

from pricetool.config.settings import IngestionSettings, get_settings
from pricetool.models.enums import LoadStatus
from pricetool.services.ingestion.coordinator import IngestionCoordinator, LoadResult
from pricetool.services.ingestion.resolver import ReferenceResolver
from pricetool.utils.logger import get_logger

logger = get_logger(__name__)


class IngestionRunner:
    """Runs file loads on a worker pool of at most ``max_workers`` threads."""

    def __init__(
        self,
        resolver: ReferenceResolver,
        session_factory: Optional[sessionmaker] = None,
        settings: Optional[IngestionSettings] = None,
        max_workers: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        prefetch: bool = True,
    ):
        """
        Loads without a session factory use the default fact database.

        Raises:
            ConfigurationError: If SQLite facts and references share one database
        """
        from pricetool.config.database import SessionLocal, check_database_layout

        session_factory = session_factory or SessionLocal
        fact_bind = getattr(session_factory, "kw", {}).get("bind")
        check_database_layout(fact_bind, getattr(resolver, "engine", None))
        self.resolver = resolver
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.max_workers = max(1, max_workers or self.settings.max_workers)
        self.timeout_seconds = timeout_seconds
        self.prefetch = prefetch
        self._cancel_event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Ask every running and queued load to stop and roll back."""
        logger.warning("Cancelling ingestion run")
        self._cancel_event.set()

    def _coordinator(self, file_path: str, supersede: bool) -> IngestionCoordinator:
        return IngestionCoordinator(
            file_path,
            resolver=self.resolver,
            session_factory=self.session_factory,
            settings=self.settings,
            supersede=supersede,
            cancel_event=self._cancel_event,
            timeout_seconds=self.timeout_seconds,
            prefetch=self.prefetch,
        )

    def run_one(self, file_path: str, supersede: bool = False) -> LoadResult:
        return self._coordinator(file_path, supersede).run()

    def run(self, file_paths: Iterable[str], supersede: bool = False) -> List[LoadResult]:
        """
        Load every file and return one result per file, in input order.

        Individual load failures are reported in their results; this method
        does not raise for them.
        """
        paths = [str(path) for path in file_paths]
        results: List[Optional[LoadResult]] = [None] * len(paths)
        logger.info("Ingestion run started", files=len(paths), workers=self.max_workers)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="ingest") as executor:
            futures = {
                executor.submit(self.run_one, path, supersede): index for index, path in enumerate(paths)
            }
            try:
                for future in as_completed(futures):
                    index = futures[future]
                    try:
                        results[index] = future.result()
                    except Exception as e:
                        # Coordinator.run records its own failures; this is a bug guard
                        logger.error("Load crashed", file_path=paths[index], error=str(e), exc_info=True)
                        results[index] = LoadResult(
                            file_path=paths[index],
                            status=LoadStatus.FAILED,
                            error_type=type(e).__name__,
                            error_message=str(e),
                        )
            except KeyboardInterrupt:
                # Let running loads roll back before the pool shuts down
                self.cancel()
                raise

        final = [result for result in results if result is not None]
        committed = sum(1 for result in final if result.succeeded)
        logger.info(
            "Ingestion run finished",
            files=len(final),
            committed=committed,
            failed=len(final) - committed,
            resolver_cache_size=self.resolver.cache_size(),
            resolver_hits=self.resolver.hits,
            resolver_misses=self.resolver.misses,
        )
        return final
