"""
Row normalization.

Maps decoded source rows to the canonical entity set: one item, its codes,
one charge per distinct setting/price combination and one payer charge per
populated payer/plan group. Reference entities stay as natural keys here;
the resolver assigns their ids afterwards.

Only the hospital id, the item description and at least one code are
mandatory. Everything else is optional and problems with optional fields are
counted as soft issues instead of rejecting the row.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from pricetool.models.core import Code, Payer, Plan
from pricetool.models.database import Hospital, Modifier, PayerCharge, StandardCharge, StandardChargeItem
from pricetool.services.ingestion.records import (
    HospitalHeader,
    NormalizedModifier,
    NormalizedPayerCharge,
    NormalizedRow,
    PayerGroup,
    RawCharge,
    RawModifier,
    RawRow,
)
from pricetool.utils.decimal_utils import (
    DEFAULT_PLACEHOLDER_THRESHOLD,
    fits_numeric,
    is_blank,
    parse_amount,
    parse_percentage,
)
from pricetool.utils.errors import ValidationError
from pricetool.utils.logger import get_logger

logger = get_logger(__name__)

UNKNOWN_CODE_TYPE = "UNKNOWN"
DEFAULT_SETTING = "unspecified"
DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y", "%Y/%m/%d")

RATE_FIELDS = ("standard_charge_dollar", "standard_charge_percentage", "standard_charge_algorithm")
AMOUNT_FIELDS = {
    "estimated_amount": "estimated_amount",
    "median_amount": "median_amount",
    "percentile_10th": "percentile_10th",
    "percentile_90th": "percentile_90th",
}


def _max_length(column) -> Optional[int]:
    return getattr(column.type, "length", None)


# String column limits; longer values would be rejected by the store
CODE_LENGTH = _max_length(Code.__table__.c.code)
CODE_TYPE_LENGTH = _max_length(Code.__table__.c.code_type)
PAYER_NAME_LENGTH = _max_length(Payer.__table__.c.name)
PLAN_NAME_LENGTH = _max_length(Plan.__table__.c.name)
DRUG_UNIT_TYPE_LENGTH = _max_length(StandardChargeItem.__table__.c.drug_unit_type)
SETTING_LENGTH = _max_length(StandardCharge.__table__.c.setting)
METHODOLOGY_LENGTH = _max_length(PayerCharge.__table__.c.methodology)
MODIFIER_CODE_LENGTH = _max_length(Modifier.__table__.c.code)
MODIFIER_SETTING_LENGTH = _max_length(Modifier.__table__.c.setting)
HOSPITAL_NAME_LENGTH = _max_length(Hospital.__table__.c.name)
HOSPITAL_TEXT_FIELDS = ("license_number", "license_state", "version", "attester_name", "source_file")


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _fits(text: Optional[str], limit: Optional[int]) -> bool:
    return text is None or limit is None or len(text) <= limit


def parse_last_updated(value: Optional[str], today: Optional[date] = None) -> date:
    """
    Parse a header date.

    Accepts ISO dates (optionally with a time part) and US month/day/year.
    Unparseable or missing values fall back to today.
    """
    text = _clean(value)
    if text:
        candidate = text[:10] if len(text) > 10 and text[4:5] == "-" else text
        for fmt in DATE_FORMATS:
            try:
                return datetime.strptime(candidate, fmt).date()
            except ValueError:
                continue
        logger.warning("Unparseable last_updated_on, using today", value=text)
    return today or date.today()


def hospital_mapping(header: HospitalHeader, source_file: Optional[str] = None) -> Dict[str, Any]:
    """
    Column mapping for the Hospital row of a load.

    Optional header values too long for their columns are dropped with a
    warning.

    Raises:
        ValidationError: If the hospital name is too long to store
    """
    name = header.name.strip()
    if not _fits(name, HOSPITAL_NAME_LENGTH):
        raise ValidationError(
            "Hospital name is too long", details={"length": len(name), "limit": HOSPITAL_NAME_LENGTH}
        )

    mapping = {
        "name": name,
        "addresses": list(header.addresses),
        "location_names": list(header.location_names),
        "npis": list(header.npis),
        "license_number": header.license_number,
        "license_state": header.license_state,
        "version": header.version,
        "last_updated_on": parse_last_updated(header.last_updated_on),
        "attester_name": header.attester_name,
        "financial_aid_policy": header.financial_aid_policy,
        "general_contract_provisions": header.general_contract_provisions,
        "source_file": source_file,
    }
    for field in HOSPITAL_TEXT_FIELDS:
        limit = _max_length(Hospital.__table__.c[field])
        if not _fits(mapping[field], limit):
            logger.warning("Hospital header value too long, dropped", field=field, length=len(mapping[field]))
            mapping[field] = None
    return mapping


class RowNormalizer:
    """Turns RawRow/RawModifier values into bulk-insert mappings."""

    def __init__(self, placeholder_threshold: Optional[Decimal] = DEFAULT_PLACEHOLDER_THRESHOLD):
        self.placeholder_threshold = placeholder_threshold

    def normalize(self, raw: RawRow, hospital_id: int) -> NormalizedRow:
        """
        Normalize one raw row.

        Raises:
            ValidationError: If the hospital id, description or every
                storable code is missing
        """
        if hospital_id is None:
            raise ValidationError("Row has no hospital id", row_number=raw.row_number)

        description = _clean(raw.description)
        if not description:
            raise ValidationError(
                "Row has no description", row_number=raw.row_number, details=raw.log_context()
            )

        codes, soft_issues = self._codes(raw)
        if not codes:
            raise ValidationError("Row has no code", row_number=raw.row_number, details=raw.log_context())

        drug_unit = self._amount(raw.drug_unit, threshold=None)
        if drug_unit is None and not is_blank(raw.drug_unit):
            soft_issues += 1
        elif drug_unit is not None and not fits_numeric(drug_unit):
            drug_unit = None
            soft_issues += 1

        drug_unit_type = _clean(raw.drug_unit_type) or None
        if not _fits(drug_unit_type, DRUG_UNIT_TYPE_LENGTH):
            drug_unit_type = None
            soft_issues += 1

        item = {
            "hospital_id": hospital_id,
            "description": description,
            "drug_unit": drug_unit,
            "drug_unit_type": drug_unit_type,
        }

        charges: List[Dict[str, Any]] = []
        charge_index: Dict[Tuple, int] = {}
        payer_charges: List[NormalizedPayerCharge] = []

        for raw_charge in raw.charges:
            charge, issues = self._charge(raw_charge)
            soft_issues += issues
            key = (
                charge["setting"],
                charge["gross_charge"],
                charge["discounted_cash"],
                charge["minimum"],
                charge["maximum"],
                tuple(charge["modifier_codes"]),
                charge["additional_notes"],
            )
            index = charge_index.get(key)
            if index is None:
                index = len(charges)
                charge_index[key] = index
                charges.append(charge)

            for group in raw_charge.payer_groups:
                payer_charge, issues = self._payer_charge(index, group)
                soft_issues += issues
                if payer_charge is not None:
                    payer_charges.append(payer_charge)

        if soft_issues:
            logger.debug("Row normalized with soft issues", soft_issues=soft_issues, **raw.log_context())

        return NormalizedRow(
            row_number=raw.row_number,
            item=item,
            codes=codes,
            charges=charges,
            payer_charges=payer_charges,
            soft_issues=soft_issues,
        )

    def normalize_modifier(self, raw: RawModifier, hospital_id: int) -> NormalizedModifier:
        """
        Normalize one modifier entry.

        Raises:
            ValidationError: If the modifier code or description is missing,
                or the code is too long to store
        """
        code = _clean(raw.code)
        description = _clean(raw.description)
        if hospital_id is None or not code or not description:
            raise ValidationError(
                "Modifier needs a code and a description",
                row_number=raw.row_number,
                details={"code": code or None},
            )
        if not _fits(code, MODIFIER_CODE_LENGTH):
            raise ValidationError(
                "Modifier code is too long",
                row_number=raw.row_number,
                details={"code": code[:MODIFIER_CODE_LENGTH]},
            )

        payer_info = []
        for info in raw.payer_info:
            payer_name = _clean(info.payer_name)
            plan_name = _clean(info.plan_name)
            if not payer_name or not _fits(payer_name, PAYER_NAME_LENGTH) or not _fits(plan_name, PLAN_NAME_LENGTH):
                continue
            payer_info.append(
                {
                    "payer_name": payer_name,
                    "plan_name": plan_name,
                    "description": _clean(info.description),
                }
            )

        setting = _clean(raw.setting).lower() or None
        if not _fits(setting, MODIFIER_SETTING_LENGTH):
            setting = None

        return NormalizedModifier(
            row_number=raw.row_number,
            modifier={
                "hospital_id": hospital_id,
                "code": code,
                "description": description,
                "setting": setting,
            },
            payer_info=payer_info,
        )

    def _codes(self, raw: RawRow) -> Tuple[List[Tuple[str, str]], int]:
        codes = []
        issues = 0
        for raw_code in raw.codes:
            code = _clean(raw_code.code)
            if not code:
                continue
            code_type = _clean(raw_code.code_type) or UNKNOWN_CODE_TYPE
            if not _fits(code, CODE_LENGTH) or not _fits(code_type, CODE_TYPE_LENGTH):
                issues += 1
                continue
            key = (code, code_type)
            if key not in codes:
                codes.append(key)
        return codes, issues

    def _amount(self, value: Any, threshold: Optional[Decimal] = DEFAULT_PLACEHOLDER_THRESHOLD) -> Optional[Decimal]:
        return parse_amount(value, placeholder_threshold=threshold)

    def _is_placeholder(self, value: Any) -> bool:
        """Numeric, but at or above the placeholder threshold."""
        return (
            self.placeholder_threshold is not None
            and parse_amount(value, placeholder_threshold=None) is not None
            and parse_amount(value, placeholder_threshold=self.placeholder_threshold) is None
        )

    def _optional_amount(self, value: Any) -> Tuple[Optional[Decimal], int]:
        amount = self._amount(value, self.placeholder_threshold)
        if amount is None and not is_blank(value) and not self._is_placeholder(value):
            return None, 1
        if amount is not None and not fits_numeric(amount):
            return None, 1
        return amount, 0

    def _charge(self, raw: RawCharge) -> Tuple[Dict[str, Any], int]:
        issues = 0
        amounts = {}
        for field in ("gross_charge", "discounted_cash", "minimum", "maximum"):
            amounts[field], issue = self._optional_amount(getattr(raw, field))
            issues += issue

        setting = _clean(raw.setting).lower() or DEFAULT_SETTING
        if not _fits(setting, SETTING_LENGTH):
            setting = DEFAULT_SETTING
            issues += 1

        charge = {
            "setting": setting,
            "modifier_codes": [m for m in (_clean(code) for code in raw.modifier_codes) if m],
            "additional_notes": _clean(raw.notes) or None,
            **amounts,
        }
        return charge, issues

    def _rate(self, group: PayerGroup, methodology: str) -> Tuple[Dict[str, Any], int]:
        """
        Pick the single rate of a payer group.

        Text found where a dollar amount or percentage was expected moves to
        the algorithm field when that field is empty. Numbers too large to
        store are dropped. When more than one rate is present one is kept:
        percentage for percent-of-charges methodologies, otherwise dollar,
        then percentage, then algorithm.
        """
        issues = 0
        algorithm = _clean(group.get("algorithm")) or None

        dollar_raw = group.get("dollar")
        dollar = self._amount(dollar_raw, self.placeholder_threshold)
        if dollar is None and not is_blank(dollar_raw) and not self._is_placeholder(dollar_raw):
            if algorithm is None:
                algorithm = _clean(dollar_raw)
            else:
                issues += 1
        elif dollar is not None and not fits_numeric(dollar):
            dollar = None
            issues += 1

        percentage_raw = group.get("percentage")
        percentage = parse_percentage(percentage_raw)
        if percentage is None and not is_blank(percentage_raw):
            if algorithm is None:
                algorithm = _clean(percentage_raw)
            else:
                issues += 1
        elif percentage is not None and not fits_numeric(percentage):
            percentage = None
            issues += 1

        rates = {
            "standard_charge_dollar": dollar,
            "standard_charge_percentage": percentage,
            "standard_charge_algorithm": algorithm,
        }
        present = [name for name in RATE_FIELDS if rates[name] is not None]
        if len(present) > 1:
            issues += 1
            if "percent" in methodology.lower() and percentage is not None:
                keep = "standard_charge_percentage"
            else:
                keep = present[0]
            rates = {name: (rates[name] if name == keep else None) for name in RATE_FIELDS}
        return rates, issues

    def _payer_charge(self, charge_index: int, group: PayerGroup) -> Tuple[Optional[NormalizedPayerCharge], int]:
        payer_name = _clean(group.payer_name)
        plan_name = _clean(group.plan_name)
        if not payer_name:
            return None, 1
        if not _fits(payer_name, PAYER_NAME_LENGTH) or not _fits(plan_name, PLAN_NAME_LENGTH):
            return None, 1

        issues = 0
        methodology = _clean(group.get("methodology"))
        if not _fits(methodology, METHODOLOGY_LENGTH):
            methodology = ""
            issues += 1

        rates, rate_issues = self._rate(group, methodology)
        issues += rate_issues
        if all(rates[name] is None for name in RATE_FIELDS):
            # Group has data but nothing usable as a rate
            return None, issues + 1

        values: Dict[str, Any] = {"methodology": methodology, **rates}
        for source, column in AMOUNT_FIELDS.items():
            values[column], issue = self._optional_amount(group.get(source))
            issues += issue
        values["count"] = _clean(group.get("count")) or None
        values["additional_notes"] = _clean(group.get("notes")) or None

        return (
            NormalizedPayerCharge(
                charge_index=charge_index,
                payer_name=payer_name,
                plan_name=plan_name,
                values=values,
            ),
            issues,
        )
