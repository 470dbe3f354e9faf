"""
Database models package.

    from pricetool.models import Hospital, PayerCharge
    from pricetool.models.core import Code
    from pricetool.models.enums import LoadStatus
"""

from pricetool.models.enums import LoadStatus, ReferenceKind, SourceFormat
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

__all__ = [
    "LoadStatus",
    "ReferenceKind",
    "SourceFormat",
    "Code",
    "Payer",
    "Plan",
    "Hospital",
    "StandardChargeItem",
    "ItemCode",
    "StandardCharge",
    "PayerCharge",
    "Modifier",
    "ModifierPayerInfo",
]
