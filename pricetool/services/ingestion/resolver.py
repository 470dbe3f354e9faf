"""
Reference entity resolution.

Codes, payers and plans are shared by every hospital load. ``ReferenceResolver``
maps natural keys to surrogate ids through a process-wide cache backed by a
``ReferenceStore``. The store's uniqueness constraints decide correctness: the
cache only remembers ids the store has returned.

Reference rows are committed by the store in their own short transactions, so
they survive a failed load and are visible to concurrent loads immediately.
"""
import threading
import time
from typing import Callable, Dict, Hashable, Iterable, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import Engine, Table, insert, select, tuple_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from pricetool.models.core import Code, Payer, Plan
from pricetool.models.enums import ReferenceKind
from pricetool.services.ingestion.records import CodeKey, RowReferences
from pricetool.utils.errors import ResolutionError
from pricetool.utils.logger import get_logger
from pricetool.utils.retry import TRANSIENT_ERRORS, is_transient, retry_transient

logger = get_logger(__name__)

NaturalKey = Tuple[str, ...]

_TABLES: Dict[ReferenceKind, Tuple[Table, Tuple[str, ...]]] = {
    ReferenceKind.CODE: (Code.__table__, ("code", "code_type")),
    ReferenceKind.PAYER: (Payer.__table__, ("name",)),
    ReferenceKind.PLAN: (Plan.__table__, ("name",)),
}

# Keeps IN lists and multi-row inserts under driver parameter limits
LOOKUP_CHUNK_SIZE = 400


class ReferenceStore(Protocol):
    """Insert-if-absent lookup against shared storage."""

    def get_or_create(self, kind: ReferenceKind, keys: Sequence[NaturalKey]) -> Dict[NaturalKey, int]:
        ...


def _chunks(items: Sequence, size: int) -> Iterable[Sequence]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class SqlReferenceStore:
    """
    ReferenceStore over a SQLAlchemy engine.

    PostgreSQL and SQLite use ``INSERT ... ON CONFLICT DO NOTHING`` followed by
    a lookup, so a concurrent creator of the same key never causes an error.
    Other dialects insert row by row inside savepoints and treat an integrity
    error as "someone else created it".
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def _select(self, conn, table: Table, columns: Tuple[str, ...], keys: Sequence[NaturalKey]) -> Dict[NaturalKey, int]:
        found: Dict[NaturalKey, int] = {}
        cols = [table.c[name] for name in columns]
        for chunk in _chunks(list(keys), LOOKUP_CHUNK_SIZE):
            if len(cols) == 1:
                condition = cols[0].in_([key[0] for key in chunk])
            else:
                condition = tuple_(*cols).in_(list(chunk))
            for row in conn.execute(select(table.c.id, *cols).where(condition)):
                found[tuple(row[1:])] = row[0]
        return found

    def _insert_missing(self, conn, table: Table, columns: Tuple[str, ...], keys: Sequence[NaturalKey]) -> None:
        rows = [dict(zip(columns, key)) for key in keys]
        dialect = conn.dialect.name
        if dialect in ("postgresql", "sqlite"):
            dialect_insert = pg_insert if dialect == "postgresql" else sqlite_insert
            for chunk in _chunks(rows, LOOKUP_CHUNK_SIZE):
                stmt = dialect_insert(table).on_conflict_do_nothing(index_elements=list(columns))
                conn.execute(stmt, list(chunk))
            return

        for row in rows:
            savepoint = conn.begin_nested()
            try:
                conn.execute(insert(table), row)
                savepoint.commit()
            except IntegrityError:
                # Lost a creation race; the lookup below finds the winner's row
                savepoint.rollback()

    def get_or_create(self, kind: ReferenceKind, keys: Sequence[NaturalKey]) -> Dict[NaturalKey, int]:
        table, columns = _TABLES[kind]
        with self.engine.begin() as conn:
            found = self._select(conn, table, columns, keys)
            missing = [key for key in keys if key not in found]
            if missing:
                self._insert_missing(conn, table, columns, missing)
                found.update(self._select(conn, table, columns, missing))
        if missing:
            logger.debug("Reference entities created", kind=kind.value, count=len(missing))
        return found


class ReferenceResolver:
    """
    Thread-safe natural key -> id resolver shared by concurrent loads.

    Lookup order: local cache, then the store. Transient store errors are
    retried with bounded backoff; exhausted retries and store rejections raise
    ResolutionError for the caller's row.
    """

    def __init__(
        self,
        store: ReferenceStore,
        max_attempts: int = 3,
        backoff_seconds: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._cache: Dict[Tuple[ReferenceKind, NaturalKey], int] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @classmethod
    def for_engine(cls, engine: Engine, **kwargs) -> "ReferenceResolver":
        return cls(SqlReferenceStore(engine), **kwargs)

    @staticmethod
    def _key(kind: ReferenceKind, natural_key: Hashable) -> NaturalKey:
        parts = natural_key if isinstance(natural_key, tuple) else (natural_key,)
        expected = len(_TABLES[kind][1])
        if len(parts) != expected:
            raise ValueError(f"{kind.value} keys have {expected} part(s), got {natural_key!r}")
        return tuple("" if part is None else str(part).strip() for part in parts)

    def cached(self, kind: ReferenceKind, natural_key: Hashable) -> Optional[int]:
        with self._lock:
            return self._cache.get((kind, self._key(kind, natural_key)))

    def resolve(self, kind: ReferenceKind, natural_key: Hashable) -> int:
        """Return the id for one natural key, creating the entity if absent."""
        key = self._key(kind, natural_key)
        return self.resolve_many(kind, [key])[key]

    def resolve_code(self, code: str, code_type: str) -> int:
        return self.resolve(ReferenceKind.CODE, (code, code_type))

    def resolve_payer(self, name: str) -> int:
        return self.resolve(ReferenceKind.PAYER, name)

    def resolve_plan(self, name: str) -> int:
        return self.resolve(ReferenceKind.PLAN, name)

    def resolve_many(self, kind: ReferenceKind, natural_keys: Iterable[Hashable]) -> Dict[NaturalKey, int]:
        """
        Resolve several keys of one kind with at most one store round trip.

        Returns a mapping keyed by the trimmed natural key tuples.

        Raises:
            ResolutionError: If any key cannot be resolved
        """
        keys = list(dict.fromkeys(self._key(kind, k) for k in natural_keys))
        resolved: Dict[NaturalKey, int] = {}
        missing: List[NaturalKey] = []
        with self._lock:
            for key in keys:
                ident = self._cache.get((kind, key))
                if ident is None:
                    missing.append(key)
                else:
                    resolved[key] = ident
            self.hits += len(resolved)
            self.misses += len(missing)

        if not missing:
            return resolved

        try:
            stored = retry_transient(
                lambda: self._store.get_or_create(kind, missing),
                max_attempts=self._max_attempts,
                backoff_seconds=self._backoff_seconds,
                description=f"resolve {kind.value}",
                sleep=self._sleep,
            )
        except TRANSIENT_ERRORS as e:
            logger.warning(
                "Reference resolution failed",
                kind=kind.value,
                keys=len(missing),
                transient=is_transient(e),
                error=str(e),
            )
            raise ResolutionError(kind.value, missing[0], f"Failed to resolve {kind.value}: {e}") from e
        except SQLAlchemyError as e:
            logger.warning("Reference resolution rejected by store", kind=kind.value, error=str(e))
            raise ResolutionError(kind.value, missing[0], f"Failed to resolve {kind.value}: {e}") from e

        unresolved = [key for key in missing if key not in stored]
        if unresolved:
            raise ResolutionError(kind.value, unresolved[0])

        with self._lock:
            for key in missing:
                # Concurrent resolvers may race here; both got the same id from the store
                resolved[key] = self._cache.setdefault((kind, key), stored[key])
        return resolved

    def resolve_references(
        self,
        codes: Iterable[CodeKey] = (),
        payers: Iterable[str] = (),
        plans: Iterable[str] = (),
    ) -> RowReferences:
        """
        Resolve everything one row refers to.

        Raises:
            ResolutionError: If any of the row's references cannot be resolved
        """
        refs = RowReferences()
        codes = list(codes)
        if codes:
            refs.codes = dict(self.resolve_many(ReferenceKind.CODE, codes))
        payers = list(payers)
        if payers:
            refs.payers = {key[0]: ident for key, ident in self.resolve_many(ReferenceKind.PAYER, payers).items()}
        plans = list(plans)
        if plans:
            refs.plans = {key[0]: ident for key, ident in self.resolve_many(ReferenceKind.PLAN, plans).items()}
        return refs

    def cache_size(self) -> int:
        with self._lock:
            return len(self._cache)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self.hits = 0
            self.misses = 0
