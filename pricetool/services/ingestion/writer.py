"""
Bulk writer for one hospital load.

All writes go through the load's session and therefore its transaction.
Parent rows are written before children:

    hospital -> item -> item codes
                     -> charges -> payer charges
    hospital -> modifier -> modifier payer info

Hospitals, items and modifiers are inserted one at a time because their ids
are needed straight away. Item codes, charges, payer charges and modifier
payer info are buffered and flushed in batches. A payer charge waits with its
parent charge until the charge batch is written and has ids; only then does it
move to the payer charge buffer.
"""
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import insert
from sqlalchemy.exc import DataError, SQLAlchemyError
from sqlalchemy.orm import Session

from pricetool.models.database import (
    Hospital,
    ItemCode,
    Modifier,
    ModifierPayerInfo,
    PayerCharge,
    StandardCharge,
    StandardChargeItem,
)
from pricetool.services.ingestion.records import NormalizedModifier, NormalizedRow, RowReferences
from pricetool.utils.errors import ValidationError, WriteError
from pricetool.utils.logger import get_logger
from pricetool.utils.retry import is_transient, retry_transient

logger = get_logger(__name__)


class BulkWriter:
    """Buffers fact rows for one load and writes them in dependency order."""

    def __init__(
        self,
        session: Session,
        item_code_batch_size: int = 1000,
        charge_batch_size: int = 500,
        payer_charge_batch_size: int = 5000,
        modifier_batch_size: int = 500,
        max_attempts: int = 3,
        backoff_seconds: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session
        self.item_code_batch_size = item_code_batch_size
        self.charge_batch_size = charge_batch_size
        self.payer_charge_batch_size = payer_charge_batch_size
        self.modifier_batch_size = modifier_batch_size
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

        self._item_codes: List[Dict[str, Any]] = []
        # (charge mapping, payer charge mappings waiting for the charge id)
        self._charges: List[Tuple[Dict[str, Any], List[Dict[str, Any]]]] = []
        self._waiting_payer_charges = 0
        self._payer_charges: List[Dict[str, Any]] = []
        self._modifier_payer_info: List[Dict[str, Any]] = []

        self.counts = {
            "items": 0,
            "item_codes": 0,
            "charges": 0,
            "payer_charges": 0,
            "modifiers": 0,
            "modifier_payer_info": 0,
            "batches": 0,
        }

    def _execute(self, table: str, operation: Callable[[], Any], row_number: Optional[int] = None) -> Any:
        """
        Run one write inside a savepoint, retrying transient failures.

        The savepoint makes a retry start from a clean state without touching
        anything written earlier in the load.

        Raises:
            ValidationError: If the store rejects a value of a single-row write
                made for ``row_number``; the load can skip that row
            WriteError: If the write fails permanently or retries are exhausted
        """

        def attempt():
            with self.session.begin_nested():
                return operation()

        try:
            return retry_transient(
                attempt,
                max_attempts=self.max_attempts,
                backoff_seconds=self.backoff_seconds,
                description=f"write {table}",
                sleep=self._sleep,
            )
        except SQLAlchemyError as e:
            if isinstance(e, DataError) and row_number is not None:
                raise ValidationError(
                    f"Value rejected by {table}: {e.orig}", row_number=row_number, details={"table": table}
                ) from e
            if is_transient(e):
                raise WriteError(
                    f"Write to {table} failed: {e}", table=table, attempts=self.max_attempts
                ) from e
            raise WriteError(f"Write to {table} rejected: {e}", table=table, attempts=1) from e

    def _insert_one(self, model, mapping: Dict[str, Any], row_number: Optional[int] = None) -> int:
        table = model.__table__
        result = self._execute(
            table.name, lambda: self.session.execute(insert(table).values(**mapping)), row_number=row_number
        )
        return result.inserted_primary_key[0]

    def insert_hospital(self, mapping: Dict[str, Any]) -> int:
        hospital_id = self._insert_one(Hospital, mapping)
        logger.info("Hospital row created", hospital_id=hospital_id, name=mapping.get("name"))
        return hospital_id

    def stage(self, row: NormalizedRow, refs: RowReferences) -> int:
        """
        Write a normalized row's item and buffer its dependent rows.

        Returns:
            The new item id

        Raises:
            ValidationError: If the store rejects a value of the item itself
        """
        item_id = self._insert_one(StandardChargeItem, row.item, row_number=row.row_number)
        self.counts["items"] += 1

        for code_key in row.codes:
            self._item_codes.append({"item_id": item_id, "code_id": refs.codes[code_key]})

        waiting: List[List[Dict[str, Any]]] = [[] for _ in row.charges]
        for payer_charge in row.payer_charges:
            waiting[payer_charge.charge_index].append(
                {
                    "payer_id": refs.payers[payer_charge.payer_name],
                    "plan_id": refs.plans[payer_charge.plan_name],
                    **payer_charge.values,
                }
            )
        for charge, payer_charges in zip(row.charges, waiting):
            self._charges.append(({"item_id": item_id, **charge}, payer_charges))
            self._waiting_payer_charges += len(payer_charges)

        if len(self._item_codes) >= self.item_code_batch_size:
            self.flush_item_codes()
        if (
            len(self._charges) >= self.charge_batch_size
            or self._waiting_payer_charges >= self.payer_charge_batch_size
        ):
            self.flush_charges()
        return item_id

    def stage_modifier(self, modifier: NormalizedModifier, refs: RowReferences) -> int:
        modifier_id = self._insert_one(Modifier, modifier.modifier, row_number=modifier.row_number)
        self.counts["modifiers"] += 1
        for info in modifier.payer_info:
            self._modifier_payer_info.append(
                {
                    "modifier_id": modifier_id,
                    "payer_id": refs.payers[info["payer_name"]],
                    "plan_id": refs.plans[info["plan_name"]],
                    "description": info["description"],
                }
            )
        if len(self._modifier_payer_info) >= self.modifier_batch_size:
            self.flush_modifier_payer_info()
        return modifier_id

    def flush_item_codes(self) -> None:
        if not self._item_codes:
            return
        rows = self._item_codes
        self._execute(ItemCode.__tablename__, lambda: self.session.bulk_insert_mappings(ItemCode, rows))
        self.counts["item_codes"] += len(rows)
        self.counts["batches"] += 1
        self._item_codes = []

    def flush_charges(self) -> None:
        """Write buffered charges, then hand their payer charges the new ids."""
        if not self._charges:
            return
        pending = self._charges
        rows = [charge for charge, _ in pending]

        def write():
            for row in rows:
                row.pop("id", None)
            self.session.bulk_insert_mappings(StandardCharge, rows, return_defaults=True)

        self._execute(StandardCharge.__tablename__, write)
        self.counts["charges"] += len(rows)
        self.counts["batches"] += 1
        self._charges = []
        self._waiting_payer_charges = 0

        for charge, payer_charges in pending:
            for payer_charge in payer_charges:
                payer_charge["standard_charge_id"] = charge["id"]
            self._payer_charges.extend(payer_charges)
            if len(self._payer_charges) >= self.payer_charge_batch_size:
                self.flush_payer_charges()

    def flush_payer_charges(self) -> None:
        if not self._payer_charges:
            return
        rows = self._payer_charges
        self._execute(PayerCharge.__tablename__, lambda: self.session.bulk_insert_mappings(PayerCharge, rows))
        self.counts["payer_charges"] += len(rows)
        self.counts["batches"] += 1
        self._payer_charges = []
        logger.debug("Payer charge batch written", rows=len(rows), total=self.counts["payer_charges"])

    def flush_modifier_payer_info(self) -> None:
        if not self._modifier_payer_info:
            return
        rows = self._modifier_payer_info
        self._execute(
            ModifierPayerInfo.__tablename__,
            lambda: self.session.bulk_insert_mappings(ModifierPayerInfo, rows),
        )
        self.counts["modifier_payer_info"] += len(rows)
        self.counts["batches"] += 1
        self._modifier_payer_info = []

    def flush(self) -> None:
        """Write every buffer, parents first."""
        self.flush_item_codes()
        self.flush_charges()
        self.flush_payer_charges()
        self.flush_modifier_payer_info()

    @property
    def pending(self) -> int:
        return (
            len(self._item_codes)
            + len(self._charges)
            + self._waiting_payer_charges
            + len(self._payer_charges)
            + len(self._modifier_payer_info)
        )

    def discard(self) -> None:
        """Drop buffered rows after a failed load."""
        self._item_codes = []
        self._charges = []
        self._waiting_payer_charges = 0
        self._payer_charges = []
        self._modifier_payer_info = []
