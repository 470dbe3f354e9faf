"""
Ingestion coordinator.

Owns one hospital file load end to end:

    PENDING -> EXTRACTING -> NORMALIZING -> WRITING -> COMMITTED
    any non-terminal state -> FAILED (rolled back)

EXTRACTING reads the file header and creates the hospital row. NORMALIZING
streams the data rows through normalize -> resolve -> stage; the writer
flushes full batches as it goes, all inside the load transaction. WRITING
flushes what is left and commits.

Row-level errors (ValidationError, ResolutionError) skip the row. Anything
else rolls back the whole load. Reference entities created by the resolver
are committed on their own and survive a rollback.
"""
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from pricetool.config.sentry import add_breadcrumb, capture_exception
from pricetool.config.settings import IngestionSettings, get_settings
from pricetool.models.database import (
    Hospital,
    ItemCode,
    Modifier,
    ModifierPayerInfo,
    PayerCharge,
    StandardCharge,
    StandardChargeItem,
)
from pricetool.models.enums import LoadStatus
from pricetool.services.ingestion.extractors.source import BoundedPrefetch, open_extractor
from pricetool.services.ingestion.normalizer import RowNormalizer, hospital_mapping
from pricetool.services.ingestion.resolver import ReferenceResolver
from pricetool.services.ingestion.writer import BulkWriter
from pricetool.utils.errors import (
    DecodeError,
    IngestionError,
    LoadAbortedError,
    LoadCancelledError,
    ResolutionError,
    TransactionError,
    ValidationError,
)
from pricetool.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class LoadResult:
    """Outcome of one file load."""

    file_path: str
    status: LoadStatus = LoadStatus.PENDING
    hospital_id: Optional[int] = None
    hospital_name: Optional[str] = None
    source_format: Optional[str] = None
    rows_read: int = 0
    items_written: int = 0
    rows_skipped: int = 0
    validation_failures: int = 0
    resolution_failures: int = 0
    soft_issues: int = 0
    charges: int = 0
    payer_charges: int = 0
    modifiers: int = 0
    modifiers_skipped: int = 0
    superseded_hospitals: int = 0
    duration_seconds: float = 0.0
    error_type: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == LoadStatus.COMMITTED

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


class InvalidTransitionError(RuntimeError):
    """A load tried to move to a state its current state does not allow."""


@contextmanager
def load_transaction(session_factory: Callable[[], Session]) -> Iterator[Session]:
    """
    Session for one load's transaction.

    The caller commits. Leaving the block any other way, including through
    cancellation, rolls the transaction back; the session is always closed.
    """
    session = session_factory()
    try:
        yield session
    except BaseException:
        try:
            session.rollback()
        except SQLAlchemyError as e:
            logger.error("Rollback failed", error=str(e))
        raise
    finally:
        session.close()


def delete_hospital_facts(session: Session, hospital_name: str) -> int:
    """
    Delete every hospital row with this name and all of its fact rows.

    Children are deleted before parents so the statements do not depend on
    ON DELETE CASCADE. Reference entities are never deleted.

    Returns:
        Number of hospital rows removed
    """
    hospital_ids = select(Hospital.id).where(Hospital.name == hospital_name)
    item_ids = select(StandardChargeItem.id).where(StandardChargeItem.hospital_id.in_(hospital_ids))
    charge_ids = select(StandardCharge.id).where(StandardCharge.item_id.in_(item_ids))
    modifier_ids = select(Modifier.id).where(Modifier.hospital_id.in_(hospital_ids))

    session.execute(delete(PayerCharge).where(PayerCharge.standard_charge_id.in_(charge_ids)))
    session.execute(delete(StandardCharge).where(StandardCharge.item_id.in_(item_ids)))
    session.execute(delete(ItemCode).where(ItemCode.item_id.in_(item_ids)))
    session.execute(delete(StandardChargeItem).where(StandardChargeItem.hospital_id.in_(hospital_ids)))
    session.execute(delete(ModifierPayerInfo).where(ModifierPayerInfo.modifier_id.in_(modifier_ids)))
    session.execute(delete(Modifier).where(Modifier.hospital_id.in_(hospital_ids)))
    result = session.execute(delete(Hospital).where(Hospital.name == hospital_name))
    return result.rowcount or 0


class IngestionCoordinator:
    """
    Runs one hospital file load.

    A coordinator is single use. The resolver is shared with other loads; the
    session, writer and normalizer belong to this load only.
    """

    def __init__(
        self,
        file_path: str,
        resolver: ReferenceResolver,
        session_factory: Optional[sessionmaker] = None,
        settings: Optional[IngestionSettings] = None,
        supersede: bool = False,
        cancel_event: Optional[threading.Event] = None,
        timeout_seconds: Optional[float] = None,
        prefetch: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.file_path = str(file_path)
        self.resolver = resolver
        self.settings = settings or get_settings()
        if session_factory is None:
            from pricetool.config.database import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory
        self.supersede = supersede
        self.cancel_event = cancel_event or threading.Event()
        if timeout_seconds is None:
            timeout_seconds = self.settings.load_timeout_seconds
        self.timeout_seconds = timeout_seconds
        self.prefetch = prefetch
        self._clock = clock
        self._deadline: Optional[float] = None

        self.normalizer = RowNormalizer(placeholder_threshold=self.settings.placeholder_amount_threshold)
        self.result = LoadResult(file_path=self.file_path)
        self.history: List[LoadStatus] = [LoadStatus.PENDING]

    @property
    def status(self) -> LoadStatus:
        return self.result.status

    def _transition(self, target: LoadStatus) -> None:
        current = self.result.status
        if not current.can_transition_to(target):
            raise InvalidTransitionError(f"Cannot move load from {current.value} to {target.value}")
        self.result.status = target
        self.history.append(target)
        logger.debug("Load state changed", file_path=self.file_path, status=target.value)

    def cancel(self) -> None:
        self.cancel_event.set()

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise LoadCancelledError("cancelled")
        if self._deadline is not None and self._clock() >= self._deadline:
            raise LoadCancelledError("timed out")

    def _check_failure_rate(self) -> None:
        seen = self.result.rows_read
        failed = self.result.resolution_failures
        if seen < self.settings.resolution_failure_min_rows:
            return
        if failed / seen > self.settings.resolution_failure_threshold:
            raise LoadAbortedError(failed, seen, self.settings.resolution_failure_threshold)

    def _new_writer(self, session: Session) -> BulkWriter:
        s = self.settings
        return BulkWriter(
            session,
            item_code_batch_size=s.item_code_batch_size,
            charge_batch_size=s.charge_batch_size,
            payer_charge_batch_size=s.payer_charge_batch_size,
            modifier_batch_size=s.modifier_batch_size,
            max_attempts=s.writer_max_attempts,
            backoff_seconds=s.writer_backoff_seconds,
        )

    def _stream(self, rows: Iterator[Any], name: str):
        if self.prefetch and self.settings.extract_buffer_size > 0:
            return BoundedPrefetch(rows, maxsize=self.settings.extract_buffer_size, name=name)
        return None

    def _process_rows(self, extractor, writer: BulkWriter, hospital_id: int) -> None:
        interval = self.settings.progress_log_interval
        prefetch = self._stream(extractor.iter_rows(), name=f"extract-{hospital_id}")
        rows = prefetch if prefetch is not None else extractor.iter_rows()
        try:
            for raw in rows:
                self._check_cancelled()
                self.result.rows_read += 1
                try:
                    row = self.normalizer.normalize(raw, hospital_id)
                    refs = self.resolver.resolve_references(
                        codes=row.codes, payers=row.payer_names(), plans=row.plan_names()
                    )
                    writer.stage(row, refs)
                except ValidationError as e:
                    self.result.rows_skipped += 1
                    self.result.validation_failures += 1
                    logger.warning("Row skipped: validation failed", error=e.message, **raw.log_context())
                    continue
                except ResolutionError as e:
                    self.result.rows_skipped += 1
                    self.result.resolution_failures += 1
                    logger.warning(
                        "Row skipped: reference resolution failed",
                        error=e.message,
                        kind=e.kind,
                        **raw.log_context(),
                    )
                    self._check_failure_rate()
                    continue

                self.result.soft_issues += row.soft_issues

                if interval and self.result.rows_read % interval == 0:
                    logger.info(
                        "Load progress",
                        file_path=self.file_path,
                        hospital_id=hospital_id,
                        rows_read=self.result.rows_read,
                        rows_skipped=self.result.rows_skipped,
                        items=writer.counts["items"],
                        payer_charges=writer.counts["payer_charges"],
                    )
        finally:
            if prefetch is not None:
                prefetch.close()

    def _process_modifiers(self, extractor, writer: BulkWriter, hospital_id: int) -> None:
        for raw in extractor.iter_modifiers():
            self._check_cancelled()
            try:
                modifier = self.normalizer.normalize_modifier(raw, hospital_id)
                refs = self.resolver.resolve_references(
                    payers=modifier.payer_names(), plans=modifier.plan_names()
                )
                writer.stage_modifier(modifier, refs)
            except (ValidationError, ResolutionError) as e:
                self.result.modifiers_skipped += 1
                logger.warning("Modifier skipped", error=e.message, row_number=raw.row_number, code=raw.code)

    def _collect_counts(self, writer: BulkWriter) -> None:
        self.result.items_written = writer.counts["items"]
        self.result.charges = writer.counts["charges"]
        self.result.payer_charges = writer.counts["payer_charges"]
        self.result.modifiers = writer.counts["modifiers"]

    def _load(self) -> None:
        self._transition(LoadStatus.EXTRACTING)
        with open_extractor(self.file_path, csv_chunk_size=self.settings.csv_chunk_size) as extractor:
            header = extractor.read_header()
            self.result.hospital_name = header.name
            self.result.source_format = extractor.format.value if extractor.format else None
            self._check_cancelled()

            with load_transaction(self.session_factory) as session:
                writer = self._new_writer(session)
                try:
                    if self.supersede:
                        self.result.superseded_hospitals = delete_hospital_facts(session, header.name.strip())
                        if self.result.superseded_hospitals:
                            logger.info(
                                "Superseding prior loads",
                                hospital_name=header.name,
                                hospitals=self.result.superseded_hospitals,
                            )
                    hospital_id = writer.insert_hospital(hospital_mapping(header, source_file=self.file_path))
                    self.result.hospital_id = hospital_id
                    add_breadcrumb(
                        "Hospital load started",
                        data={"hospital_id": hospital_id, "file_path": self.file_path},
                    )

                    self._transition(LoadStatus.NORMALIZING)
                    self._process_rows(extractor, writer, hospital_id)
                    self._process_modifiers(extractor, writer, hospital_id)

                    self._transition(LoadStatus.WRITING)
                    self._check_cancelled()
                    writer.flush()
                except BaseException:
                    writer.discard()
                    raise

                try:
                    session.commit()
                except SQLAlchemyError as e:
                    raise TransactionError(
                        f"Commit failed: {e}", details={"hospital_id": self.result.hospital_id}
                    ) from e
                self._collect_counts(writer)

        self._transition(LoadStatus.COMMITTED)

    def run(self) -> LoadResult:
        """
        Run the load and report its outcome.

        Failures are recorded on the returned LoadResult instead of being
        raised, so one bad file never takes down a batch of loads.
        """
        if self.result.status != LoadStatus.PENDING:
            raise InvalidTransitionError("A coordinator runs exactly one load")

        started = self._clock()
        if self.timeout_seconds:
            self._deadline = started + self.timeout_seconds
        logger.info("Load started", file_path=self.file_path, supersede=self.supersede)

        try:
            self._load()
        except Exception as e:
            self._fail(e)
        finally:
            self.result.duration_seconds = round(self._clock() - started, 3)

        if self.result.succeeded:
            logger.info(
                "Load committed",
                file_path=self.file_path,
                hospital_id=self.result.hospital_id,
                rows_read=self.result.rows_read,
                items=self.result.items_written,
                rows_skipped=self.result.rows_skipped,
                charges=self.result.charges,
                payer_charges=self.result.payer_charges,
                modifiers=self.result.modifiers,
                soft_issues=self.result.soft_issues,
                duration_seconds=self.result.duration_seconds,
            )
        return self.result

    def _fail(self, error: Exception) -> None:
        if not self.result.status.is_terminal:
            self.result.status = LoadStatus.FAILED
            self.history.append(LoadStatus.FAILED)
        self.result.hospital_id = None
        self.result.error_type = type(error).__name__
        self.result.error_message = str(error)
        self.result.error_code = getattr(error, "code", None) if isinstance(error, IngestionError) else None

        log = logger.warning if isinstance(error, LoadCancelledError) else logger.error
        log(
            "Load failed and was rolled back",
            file_path=self.file_path,
            error_type=self.result.error_type,
            error=self.result.error_message,
            rows_read=self.result.rows_read,
        )

        if not isinstance(error, (LoadCancelledError, DecodeError)):
            capture_exception(
                error,
                context={"load": {"file_path": self.file_path, "rows_read": self.result.rows_read}},
                tags={"component": "ingestion", "error_type": self.result.error_type},
            )
