"""
JSON extractor for hospital standard charge files (CMS V2 and V3 schemas).

The file is one object: small header fields plus two potentially huge arrays,
``standard_charge_information`` and ``modifier_information``. Both arrays are
streamed element by element with ijson; only one element is in memory at a
time.
"""
import codecs
from typing import Any, Dict, Iterator, List, Optional

import ijson
from ijson.common import ObjectBuilder

from pricetool.models.enums import SourceFormat
from pricetool.services.ingestion.records import (
    HospitalHeader,
    PayerGroup,
    PayerGroupDescriptor,
    RawCharge,
    RawCode,
    RawModifier,
    RawModifierPayer,
    RawRow,
)
from pricetool.utils.errors import DecodeError
from pricetool.utils.logger import get_logger

logger = get_logger(__name__)

CHARGES_KEY = "standard_charge_information"
MODIFIERS_KEY = "modifier_information"

HEADER_KEYS = {
    "hospital_name",
    "hospital_address",
    "last_updated_on",
    "version",
    "location_name",
    "hospital_location",
    "type_2_npi",
    "license_information",
    "attestation",
    "affirmation",
    "financial_aid_policy",
    "general_contract_provisions",
}

# payers_information field -> PayerGroup field
PAYER_FIELDS = {
    "standard_charge_dollar": "dollar",
    "standard_charge_percentage": "percentage",
    "standard_charge_algorithm": "algorithm",
    "methodology": "methodology",
    "estimated_amount": "estimated_amount",
    "median_amount": "median_amount",
    "10th_percentile": "percentile_10th",
    "90th_percentile": "percentile_90th",
    "count": "count",
    "additional_payer_notes": "notes",
}


def _str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [text for text in (_str(v) for v in value) if text]
    text = _str(value)
    return [text] if text else []


def parse_header_object(fields: Dict[str, Any]) -> HospitalHeader:
    """Build the hospital header from top-level JSON fields."""
    license_info = fields.get("license_information") or {}
    if not isinstance(license_info, dict):
        license_info = {}
    attestation = fields.get("attestation") or fields.get("affirmation") or {}
    if not isinstance(attestation, dict):
        attestation = {}

    return HospitalHeader(
        name=_str(fields.get("hospital_name")) or "",
        addresses=_str_list(fields.get("hospital_address")),
        location_names=_str_list(fields.get("location_name") or fields.get("hospital_location")),
        npis=_str_list(fields.get("type_2_npi")),
        license_number=_str(license_info.get("license_number")),
        license_state=(_str(license_info.get("state")) or "").upper() or None,
        version=_str(fields.get("version")),
        last_updated_on=_str(fields.get("last_updated_on")),
        attester_name=_str(attestation.get("attester_name")),
        financial_aid_policy=_str(fields.get("financial_aid_policy")),
        general_contract_provisions=_str(fields.get("general_contract_provisions")),
    )


def build_raw_row(row_number: int, element: Dict[str, Any]) -> RawRow:
    """Convert one standard_charge_information element into a RawRow."""
    if not isinstance(element, dict):
        return RawRow(row_number=row_number)

    drug = element.get("drug_information") or {}
    if not isinstance(drug, dict):
        drug = {}

    codes = []
    for info in element.get("code_information") or []:
        if isinstance(info, dict):
            codes.append(RawCode(code=_str(info.get("code")), code_type=_str(info.get("type"))))

    charges = []
    for sc in element.get("standard_charges") or []:
        if not isinstance(sc, dict):
            continue
        gross = sc.get("gross_charge")
        if gross is None:
            # V2 publishes gross charges as a string under a plural key
            gross = sc.get("gross_charges")
        charge = RawCharge(
            setting=_str(sc.get("setting")),
            gross_charge=gross,
            discounted_cash=sc.get("discounted_cash"),
            minimum=sc.get("minimum"),
            maximum=sc.get("maximum"),
            modifier_codes=_str_list(sc.get("modifier_code")),
            notes=_str(sc.get("additional_generic_notes")),
        )
        for payer in sc.get("payers_information") or []:
            if not isinstance(payer, dict):
                continue
            descriptor = PayerGroupDescriptor(
                payer_name=_str(payer.get("payer_name")) or "",
                plan_name=_str(payer.get("plan_name")) or "",
            )
            group = PayerGroup(
                descriptor=descriptor,
                values={target: payer.get(source) for source, target in PAYER_FIELDS.items()},
            )
            if group.has_data() or descriptor.payer_name:
                charge.payer_groups.append(group)
        charges.append(charge)

    return RawRow(
        row_number=row_number,
        description=_str(element.get("description")),
        codes=codes,
        drug_unit=drug.get("unit"),
        drug_unit_type=_str(drug.get("type")),
        charges=charges,
    )


def build_raw_modifier(row_number: int, element: Dict[str, Any]) -> RawModifier:
    """Convert one modifier_information element into a RawModifier."""
    if not isinstance(element, dict):
        return RawModifier(row_number=row_number, code=None, description=None)
    payer_info = []
    for info in element.get("modifier_payer_information") or []:
        if isinstance(info, dict):
            payer_info.append(
                RawModifierPayer(
                    payer_name=_str(info.get("payer_name")),
                    plan_name=_str(info.get("plan_name")),
                    description=_str(info.get("description")),
                )
            )
    return RawModifier(
        row_number=row_number,
        code=_str(element.get("code")),
        description=_str(element.get("description")),
        setting=_str(element.get("setting")),
        payer_info=payer_info,
    )


class Utf8ReplacingReader:
    """
    Binary reader that hands ijson valid UTF-8 only.

    Invalid byte sequences become U+FFFD and a leading BOM is dropped, the
    same way CSV files are decoded.
    """

    def __init__(self, raw):
        self.raw = raw
        self.replacements = 0
        self._decoder = codecs.getincrementaldecoder("utf-8-sig")(errors="replace")

    def read(self, size: int = -1) -> bytes:
        if size == 0:
            return b""
        while True:
            data = self.raw.read(size)
            text = self._decoder.decode(data, final=not data)
            # A chunk ending inside a multi-byte sequence can decode to nothing
            if text or not data:
                self.replacements += text.count("\ufffd")
                return text.encode("utf-8")

    def close(self) -> None:
        self.raw.close()


class JsonExtractor:
    """Streams RawRow and RawModifier values from a hospital JSON file."""

    format = SourceFormat.JSON

    def __init__(self, file_path: str):
        self.file_path = str(file_path)
        self.payer_groups: List[PayerGroupDescriptor] = []
        self._header: Optional[HospitalHeader] = None
        self._handles = []

    def _open(self) -> Utf8ReplacingReader:
        f = Utf8ReplacingReader(open(self.file_path, "rb"))
        self._handles.append(f)
        return f

    def read_header(self) -> HospitalHeader:
        """
        Read top-level header fields.

        Parsing stops at the charge array once the hospital name has been seen;
        header fields placed after the arrays are still found when the name
        itself comes later.

        Raises:
            DecodeError: If the file is not a JSON object, lacks hospital_name
                or lacks standard_charge_information
        """
        if self._header is not None:
            return self._header

        fields: Dict[str, Any] = {}
        seen_charges = False
        key = None
        builder = None
        depth = 0
        f = self._open()
        try:
            for prefix, event, value in ijson.parse(f):
                if prefix == "" and event == "map_key":
                    key = value
                    builder = ObjectBuilder() if key in HEADER_KEYS else None
                    depth = 0
                    if key == CHARGES_KEY:
                        seen_charges = True
                        if "hospital_name" in fields:
                            break
                    continue
                if prefix == "" and event in ("start_array", "string", "number", "boolean", "null"):
                    raise DecodeError("JSON document is not an object", details={"file_path": self.file_path})
                if builder is not None:
                    builder.event(event, value)
                    if event in ("start_map", "start_array"):
                        depth += 1
                    elif event in ("end_map", "end_array"):
                        depth -= 1
                    if depth == 0:
                        fields[key] = builder.value
                        builder = None
        except ijson.JSONError as e:
            raise DecodeError(f"Invalid JSON: {e}", details={"file_path": self.file_path}) from e
        finally:
            f.close()
            self._handles.remove(f)

        if not seen_charges:
            raise DecodeError(f"JSON has no {CHARGES_KEY} array", details={"file_path": self.file_path})
        header = parse_header_object(fields)
        if not header.name:
            raise DecodeError("JSON has no hospital_name", details={"file_path": self.file_path})

        logger.info(
            "JSON header read",
            file_path=self.file_path,
            version=header.version,
            hospital_name=header.name,
        )
        self._header = header
        return header

    def _iter_array(self, key: str) -> Iterator[Any]:
        f = self._open()
        index = 0
        try:
            for element in ijson.items(f, f"{key}.item"):
                index += 1
                yield element
            if f.replacements:
                logger.warning(
                    "Invalid UTF-8 replaced", file_path=self.file_path, key=key, replacements=f.replacements
                )
        except ijson.JSONError as e:
            raise DecodeError(
                f"Invalid JSON in {key} element {index + 1}: {e}",
                details={"file_path": self.file_path, "row_number": index + 1},
            ) from e
        finally:
            f.close()
            if f in self._handles:
                self._handles.remove(f)

    def iter_rows(self) -> Iterator[RawRow]:
        self.read_header()
        for row_number, element in enumerate(self._iter_array(CHARGES_KEY), start=1):
            yield build_raw_row(row_number, element)

    def iter_modifiers(self) -> Iterator[RawModifier]:
        self.read_header()
        for row_number, element in enumerate(self._iter_array(MODIFIERS_KEY), start=1):
            yield build_raw_modifier(row_number, element)

    def close(self) -> None:
        for f in list(self._handles):
            f.close()
        self._handles.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
