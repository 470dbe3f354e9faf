"""Tests for the bulk writer."""
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import DataError, OperationalError

from pricetool.models.database import (
    Hospital,
    ItemCode,
    Modifier,
    ModifierPayerInfo,
    PayerCharge,
    StandardCharge,
    StandardChargeItem,
)
from pricetool.services.ingestion.records import (
    NormalizedModifier,
    NormalizedPayerCharge,
    NormalizedRow,
    RowReferences,
)
from pricetool.services.ingestion.writer import BulkWriter
from pricetool.utils.errors import ValidationError, WriteError
from tests.utils.db_helpers import count_rows, fetch_all

REFS = RowReferences(
    codes={("99213", "CPT"): 1, ("0510", "RC"): 2},
    payers={"Aetna": 10, "Cigna": 11},
    plans={"PPO": 20, "HMO": 21},
)


def payer_charge(index, payer, plan, **values):
    base = {
        "methodology": "fee schedule",
        "standard_charge_dollar": Decimal("100"),
        "standard_charge_percentage": None,
        "standard_charge_algorithm": None,
    }
    base.update(values)
    return NormalizedPayerCharge(charge_index=index, payer_name=payer, plan_name=plan, values=base)


def normalized_row(hospital_id, n, payer_charges=None):
    return NormalizedRow(
        row_number=n,
        item={"hospital_id": hospital_id, "description": f"Item {n}", "drug_unit": None, "drug_unit_type": None},
        codes=[("99213", "CPT"), ("0510", "RC")],
        charges=[
            {"setting": "inpatient", "gross_charge": Decimal(n), "modifier_codes": []},
            {"setting": "outpatient", "gross_charge": Decimal(n) / 2, "modifier_codes": ["26"]},
        ],
        payer_charges=payer_charges
        if payer_charges is not None
        else [
            payer_charge(0, "Aetna", "PPO"),
            payer_charge(1, "Aetna", "PPO"),
            payer_charge(1, "Cigna", "HMO", standard_charge_dollar=None, standard_charge_percentage=Decimal("60")),
        ],
    )


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def hospital_id(session):
    writer = BulkWriter(session)
    return writer.insert_hospital({"name": "General Hospital", "addresses": [], "location_names": [], "npis": []})


@pytest.mark.integration
class TestBulkWriter:
    """Test dependency-ordered batch writes."""

    def test_rows_written_with_parent_ids(self, session, hospital_id, fact_engine):
        """Test every child row points at the parent written for it."""
        writer = BulkWriter(session, item_code_batch_size=3, charge_batch_size=2, payer_charge_batch_size=4)
        item_ids = [writer.stage(normalized_row(hospital_id, n), REFS) for n in range(1, 6)]
        writer.flush()
        session.commit()

        assert writer.pending == 0
        assert writer.counts["items"] == 5
        assert writer.counts["item_codes"] == 10
        assert writer.counts["charges"] == 10
        assert writer.counts["payer_charges"] == 15

        charges = fetch_all(fact_engine, StandardCharge)
        assert len(charges) == 10
        assert {c.item_id for c in charges} == set(item_ids)
        charge_items = {c.id: c.item_id for c in charges}
        charge_settings = {c.id: c.setting for c in charges}

        payer_charges = fetch_all(fact_engine, PayerCharge)
        assert len(payer_charges) == 15
        for pc in payer_charges:
            assert pc.standard_charge_id in charge_items
        per_setting = [charge_settings[pc.standard_charge_id] for pc in payer_charges]
        assert per_setting.count("inpatient") == 5
        assert per_setting.count("outpatient") == 10

        item_codes = fetch_all(fact_engine, ItemCode)
        assert {ic.code_id for ic in item_codes} == {1, 2}
        assert count_rows(fact_engine, StandardChargeItem, StandardChargeItem.hospital_id == hospital_id) == 5

    def test_flush_thresholds(self, session, hospital_id):
        """Test buffers flush when they reach their batch size."""
        writer = BulkWriter(session, item_code_batch_size=4, charge_batch_size=100, payer_charge_batch_size=100)
        writer.stage(normalized_row(hospital_id, 1), REFS)
        assert writer.counts["item_codes"] == 0
        writer.stage(normalized_row(hospital_id, 2), REFS)
        assert writer.counts["item_codes"] == 4
        assert writer.counts["charges"] == 0
        # Four charges and six payer charges waiting for their ids
        assert writer.pending == 10

    def test_waiting_payer_charges_trigger_charge_flush(self, session, hospital_id):
        """Test many payer charges on few charges still flush."""
        writer = BulkWriter(session, charge_batch_size=100, payer_charge_batch_size=3)
        writer.stage(normalized_row(hospital_id, 1), REFS)
        assert writer.counts["charges"] == 2
        assert writer.counts["payer_charges"] == 3
        assert writer.pending == 2

    def test_modifiers(self, session, hospital_id, fact_engine):
        """Test modifiers and their payer info."""
        writer = BulkWriter(session, modifier_batch_size=2)
        modifier = NormalizedModifier(
            row_number=1,
            modifier={"hospital_id": hospital_id, "code": "50", "description": "Bilateral", "setting": None},
            payer_info=[
                {"payer_name": "Aetna", "plan_name": "PPO", "description": "150%"},
                {"payer_name": "Cigna", "plan_name": "HMO", "description": "140%"},
            ],
        )
        modifier_id = writer.stage_modifier(modifier, REFS)
        assert writer.counts["modifier_payer_info"] == 2
        writer.flush()
        session.commit()
        assert count_rows(fact_engine, Modifier) == 1
        info = fetch_all(fact_engine, ModifierPayerInfo)
        assert {(i.modifier_id, i.payer_id, i.plan_id) for i in info} == {(modifier_id, 10, 20), (modifier_id, 11, 21)}

    def test_rollback_discards_everything(self, session, hospital_id, fact_engine):
        """Test nothing survives a rolled back transaction."""
        writer = BulkWriter(session, charge_batch_size=1)
        writer.stage(normalized_row(hospital_id, 1), REFS)
        writer.flush()
        assert session.scalar(select(func.count()).select_from(PayerCharge)) == 3
        session.rollback()
        writer.discard()
        assert writer.pending == 0
        assert count_rows(fact_engine, Hospital) == 0
        assert count_rows(fact_engine, PayerCharge) == 0


@pytest.mark.integration
class TestBulkWriterErrors:
    """Test write failures."""

    def test_constraint_violation_is_write_error(self, session, hospital_id):
        """Test a payer charge with two rates is rejected by the store."""
        bad = payer_charge(0, "Aetna", "PPO", standard_charge_percentage=Decimal("50"))
        writer = BulkWriter(session, max_attempts=3, backoff_seconds=0)
        writer.stage(normalized_row(hospital_id, 1, payer_charges=[bad]), REFS)
        with pytest.raises(WriteError) as exc_info:
            writer.flush()
        assert exc_info.value.table == "payer_charges"
        assert exc_info.value.attempts == 1

    def test_transient_error_retried(self, session, hospital_id, mocker):
        """Test a locked database is retried inside a fresh savepoint."""
        writer = BulkWriter(session, backoff_seconds=0.25, sleep=mocker.Mock())
        writer.stage(normalized_row(hospital_id, 1, payer_charges=[]), REFS)
        original = session.bulk_insert_mappings
        calls = []

        def flaky(mapper, mappings, **kwargs):
            calls.append(mapper)
            if len(calls) == 1:
                raise OperationalError("INSERT INTO item_codes", {}, Exception("database is locked"))
            return original(mapper, mappings, **kwargs)

        mocker.patch.object(session, "bulk_insert_mappings", side_effect=flaky)
        writer.flush_item_codes()
        assert calls == [ItemCode, ItemCode]
        writer._sleep.assert_called_once_with(0.25)
        assert writer.counts["item_codes"] == 2
        assert session.scalar(select(func.count()).select_from(ItemCode)) == 2

    def test_retries_exhausted(self, session, hospital_id, mocker):
        """Test a write that stays locked fails with the attempt count."""
        writer = BulkWriter(session, max_attempts=2, backoff_seconds=0)
        writer.stage(normalized_row(hospital_id, 1, payer_charges=[]), REFS)
        mocker.patch.object(
            session,
            "bulk_insert_mappings",
            side_effect=OperationalError("INSERT", {}, Exception("database is locked")),
        )
        with pytest.raises(WriteError) as exc_info:
            writer.flush_item_codes()
        assert exc_info.value.attempts == 2
        assert exc_info.value.table == "item_codes"

    def test_rejected_item_value_is_validation_error(self, session, hospital_id, fact_engine, mocker):
        """Test a value the store refuses on an item skips that item and leaves the writer usable."""
        writer = BulkWriter(session, backoff_seconds=0)
        original = session.execute
        calls = []

        def overflow(statement, *args, **kwargs):
            calls.append(statement)
            if len(calls) == 1:
                raise DataError("INSERT INTO standard_charge_items", {}, Exception("numeric field overflow"))
            return original(statement, *args, **kwargs)

        mocker.patch.object(session, "execute", side_effect=overflow)
        with pytest.raises(ValidationError) as exc_info:
            writer.stage(normalized_row(hospital_id, 7), REFS)
        assert exc_info.value.row_number == 7
        assert exc_info.value.details["table"] == "standard_charge_items"
        assert writer.counts["items"] == 0
        assert len(calls) == 1

        writer.stage(normalized_row(hospital_id, 8), REFS)
        writer.flush()
        session.commit()
        assert count_rows(fact_engine, StandardChargeItem) == 1
        assert fetch_all(fact_engine, StandardChargeItem)[0].description == "Item 8"
