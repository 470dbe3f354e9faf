"""
Reference entity models.

Codes, payers and plans are shared across every hospital load. Each has a
natural-key uniqueness constraint; rows are inserted on first sight and never
updated or deleted by a load.
"""
from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from pricetool.config.database import Base


class Code(Base):
    """
    Billing code (CPT, HCPCS, MS-DRG, NDC, RC, ...).

    Attributes:
        code: Code value as published by the hospital (trimmed)
        code_type: Code system; "UNKNOWN" when the file omits it
    """

    __tablename__ = "codes"
    __table_args__ = (UniqueConstraint("code", "code_type", name="uq_codes_code_type"),)

    id = Column(Integer, primary_key=True)
    code = Column(String(100), nullable=False)
    code_type = Column(String(50), nullable=False)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Code {self.code_type}:{self.code}>"


class Payer(Base):
    """Payer keyed by its published name."""

    __tablename__ = "payers"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime, default=func.now(), nullable=False)


class Plan(Base):
    """Plan keyed by its published name; not scoped to a payer."""

    __tablename__ = "plans"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime, default=func.now(), nullable=False)
