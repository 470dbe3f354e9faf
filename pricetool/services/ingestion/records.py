"""
Records passed between ingestion stages.

Extractors produce ``HospitalHeader``, ``RawRow`` and ``RawModifier`` values
holding source text more or less as found. The normalizer turns a ``RawRow``
into a ``NormalizedRow`` whose item, charges and payer charges are plain
mappings ready for bulk insertion; reference entities are carried by natural
key until the resolver assigns ids.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

# Field names carried by a payer/plan group, independent of source layout
PAYER_GROUP_FIELDS = (
    "dollar",
    "percentage",
    "algorithm",
    "methodology",
    "estimated_amount",
    "median_amount",
    "percentile_10th",
    "percentile_90th",
    "count",
    "notes",
)

CodeKey = Tuple[str, str]


@dataclass
class HospitalHeader:
    """Institution header fields read before any data row."""

    name: str
    addresses: List[str] = field(default_factory=list)
    location_names: List[str] = field(default_factory=list)
    npis: List[str] = field(default_factory=list)
    license_number: Optional[str] = None
    license_state: Optional[str] = None
    version: Optional[str] = None
    last_updated_on: Optional[str] = None
    attester_name: Optional[str] = None
    financial_aid_policy: Optional[str] = None
    general_contract_provisions: Optional[str] = None


@dataclass(frozen=True)
class PayerGroupDescriptor:
    """
    A payer/plan column group discovered while decoding a file header.

    ``columns`` maps group field names (see PAYER_GROUP_FIELDS) to source
    column positions. Formats that carry payer data inline (JSON, tall CSV)
    produce descriptors without columns.
    """

    payer_name: str
    plan_name: str
    columns: Tuple[Tuple[str, int], ...] = ()

    @property
    def key(self) -> Tuple[str, str]:
        return (self.payer_name, self.plan_name)


@dataclass
class PayerGroup:
    """One payer/plan group's raw values for one charge."""

    descriptor: PayerGroupDescriptor
    values: Dict[str, Any] = field(default_factory=dict)

    @property
    def payer_name(self) -> str:
        return self.descriptor.payer_name

    @property
    def plan_name(self) -> str:
        return self.descriptor.plan_name

    def get(self, name: str) -> Any:
        return self.values.get(name)

    def has_data(self) -> bool:
        for value in self.values.values():
            if value is None:
                continue
            if isinstance(value, str) and not value.strip():
                continue
            return True
        return False


@dataclass
class RawCode:
    code: Optional[str]
    code_type: Optional[str] = None


@dataclass
class RawCharge:
    """Charge fields for one care setting, with its payer groups."""

    setting: Optional[str] = None
    gross_charge: Any = None
    discounted_cash: Any = None
    minimum: Any = None
    maximum: Any = None
    modifier_codes: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    payer_groups: List[PayerGroup] = field(default_factory=list)


@dataclass
class RawRow:
    """
    One item as decoded from the source.

    ``row_number`` is the 1-based source row (CSV line, or JSON array index + 1)
    where the item starts.
    """

    row_number: int
    description: Optional[str] = None
    codes: List[RawCode] = field(default_factory=list)
    drug_unit: Any = None
    drug_unit_type: Optional[str] = None
    charges: List[RawCharge] = field(default_factory=list)

    def log_context(self) -> Dict[str, Any]:
        """Fields that locate the row in the source file."""
        first_code = self.codes[0] if self.codes else None
        return {
            "row_number": self.row_number,
            "description": (self.description or "")[:120],
            "code": first_code.code if first_code else None,
            "code_type": first_code.code_type if first_code else None,
        }


@dataclass
class RawModifierPayer:
    payer_name: Optional[str]
    plan_name: Optional[str]
    description: Optional[str]


@dataclass
class RawModifier:
    row_number: int
    code: Optional[str]
    description: Optional[str]
    setting: Optional[str] = None
    payer_info: List[RawModifierPayer] = field(default_factory=list)


@dataclass
class NormalizedPayerCharge:
    """Payer charge awaiting payer/plan ids and its parent charge id."""

    charge_index: int
    payer_name: str
    plan_name: str
    values: Dict[str, Any]


@dataclass
class NormalizedRow:
    """Canonical entity set for one source row."""

    row_number: int
    item: Dict[str, Any]
    codes: List[CodeKey]
    charges: List[Dict[str, Any]]
    payer_charges: List[NormalizedPayerCharge]
    soft_issues: int = 0

    def payer_names(self) -> List[str]:
        return list(dict.fromkeys(pc.payer_name for pc in self.payer_charges))

    def plan_names(self) -> List[str]:
        return list(dict.fromkeys(pc.plan_name for pc in self.payer_charges))


@dataclass
class NormalizedModifier:
    row_number: int
    modifier: Dict[str, Any]
    payer_info: List[Dict[str, Any]]

    def payer_names(self) -> List[str]:
        return list(dict.fromkeys(info["payer_name"] for info in self.payer_info))

    def plan_names(self) -> List[str]:
        return list(dict.fromkeys(info["plan_name"] for info in self.payer_info))


@dataclass
class RowReferences:
    """Surrogate ids for the reference entities a row mentions."""

    codes: Dict[CodeKey, int] = field(default_factory=dict)
    payers: Dict[str, int] = field(default_factory=dict)
    plans: Dict[str, int] = field(default_factory=dict)
