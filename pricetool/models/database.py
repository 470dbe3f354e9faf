"""
SQLAlchemy models for hospital price transparency facts.

Reference entities (Code, Payer, Plan) live in pricetool.models.core.

Facts written by a load, all scoped to one Hospital row:
- Hospital: one row per load of a machine-readable file
- StandardChargeItem: a billable item or service (description, drug unit)
- ItemCode: association between an item and each of its codes
- StandardCharge: the charge for an item in one care setting
- PayerCharge: a payer/plan specific negotiated rate for a standard charge
- Modifier / ModifierPayerInfo: modifier descriptions and their payer notes

Payer and plan names never appear on fact rows; facts hold foreign keys only.
Monetary columns are NUMERIC and round-trip as Decimal.
"""
from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from pricetool.config.database import Base, TimestampMixin
from pricetool.models.core import Code, Payer, Plan

# Unconstrained NUMERIC keeps decimals exactly as published
AMOUNT = Numeric()
PERCENT = Numeric()


class Hospital(Base, TimestampMixin):
    """
    Hospital header from a machine-readable file.

    Every successful load creates a new row. Loads with ``supersede`` delete
    earlier rows for the same hospital name in the same transaction.
    """

    __tablename__ = "hospitals"

    id = Column(Integer, primary_key=True)
    name = Column(String(500), nullable=False, index=True)
    addresses = Column(JSON, nullable=False, default=list)
    location_names = Column(JSON, nullable=False, default=list)
    npis = Column(JSON, nullable=False, default=list)
    license_number = Column(String(100))
    license_state = Column(String(10))
    version = Column(String(50))
    last_updated_on = Column(Date)
    attester_name = Column(String(255))
    financial_aid_policy = Column(Text)
    general_contract_provisions = Column(Text)
    source_file = Column(String(1000))

    items = relationship("StandardChargeItem", back_populates="hospital", passive_deletes=True)
    modifiers = relationship("Modifier", back_populates="hospital", passive_deletes=True)


class StandardChargeItem(Base):
    """Item or service described by one source row."""

    __tablename__ = "standard_charge_items"

    id = Column(Integer, primary_key=True)
    hospital_id = Column(Integer, ForeignKey("hospitals.id", ondelete="CASCADE"), nullable=False, index=True)
    description = Column(Text, nullable=False)
    drug_unit = Column(Numeric())
    drug_unit_type = Column(String(20))
    created_at = Column(DateTime, default=func.now(), nullable=False)

    hospital = relationship("Hospital", back_populates="items")
    codes = relationship(Code, secondary="item_codes", viewonly=True)
    charges = relationship("StandardCharge", back_populates="item", passive_deletes=True)


class ItemCode(Base):
    """Association of an item with one of its codes."""

    __tablename__ = "item_codes"
    __table_args__ = (UniqueConstraint("item_id", "code_id", name="uq_item_codes_item_code"),)

    id = Column(Integer, primary_key=True)
    item_id = Column(
        Integer, ForeignKey("standard_charge_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    code_id = Column(Integer, ForeignKey("codes.id"), nullable=False, index=True)


class StandardCharge(Base):
    """Setting-specific charge for an item."""

    __tablename__ = "standard_charges"

    id = Column(Integer, primary_key=True)
    item_id = Column(
        Integer, ForeignKey("standard_charge_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    setting = Column(String(50), nullable=False)
    gross_charge = Column(AMOUNT)
    discounted_cash = Column(AMOUNT)
    minimum = Column(AMOUNT)
    maximum = Column(AMOUNT)
    modifier_codes = Column(JSON, nullable=False, default=list)
    additional_notes = Column(Text)

    item = relationship("StandardChargeItem", back_populates="charges")
    payer_charges = relationship("PayerCharge", back_populates="standard_charge", passive_deletes=True)


class PayerCharge(Base):
    """
    Negotiated rate for one payer/plan on a standard charge.

    At most one of dollar, percentage or algorithm is set.
    """

    __tablename__ = "payer_charges"
    __table_args__ = (
        CheckConstraint(
            "(CASE WHEN standard_charge_dollar IS NULL THEN 0 ELSE 1 END"
            " + CASE WHEN standard_charge_percentage IS NULL THEN 0 ELSE 1 END"
            " + CASE WHEN standard_charge_algorithm IS NULL THEN 0 ELSE 1 END) <= 1",
            name="ck_payer_charges_single_rate",
        ),
    )

    id = Column(Integer, primary_key=True)
    standard_charge_id = Column(
        Integer, ForeignKey("standard_charges.id", ondelete="CASCADE"), nullable=False, index=True
    )
    payer_id = Column(Integer, ForeignKey("payers.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False, index=True)
    methodology = Column(String(100), nullable=False, default="")
    standard_charge_dollar = Column(AMOUNT)
    standard_charge_percentage = Column(PERCENT)
    standard_charge_algorithm = Column(Text)
    estimated_amount = Column(AMOUNT)
    median_amount = Column(AMOUNT)
    percentile_10th = Column(AMOUNT)
    percentile_90th = Column(AMOUNT)
    count = Column(Text)
    additional_notes = Column(Text)

    standard_charge = relationship("StandardCharge", back_populates="payer_charges")
    payer = relationship(Payer)
    plan = relationship(Plan)


class Modifier(Base):
    """Modifier code described by the hospital."""

    __tablename__ = "modifiers"

    id = Column(Integer, primary_key=True)
    hospital_id = Column(Integer, ForeignKey("hospitals.id", ondelete="CASCADE"), nullable=False, index=True)
    code = Column(String(50), nullable=False)
    description = Column(Text, nullable=False)
    setting = Column(String(50))

    hospital = relationship("Hospital", back_populates="modifiers")
    payer_info = relationship("ModifierPayerInfo", back_populates="modifier", passive_deletes=True)


class ModifierPayerInfo(Base):
    """Payer/plan specific note on how a modifier changes the charge."""

    __tablename__ = "modifier_payer_info"

    id = Column(Integer, primary_key=True)
    modifier_id = Column(Integer, ForeignKey("modifiers.id", ondelete="CASCADE"), nullable=False, index=True)
    payer_id = Column(Integer, ForeignKey("payers.id"), nullable=False)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    description = Column(Text, nullable=False, default="")

    modifier = relationship("Modifier", back_populates="payer_info")
    payer = relationship(Payer)
    plan = relationship(Plan)
