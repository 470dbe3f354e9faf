"""
CSV extractor for hospital standard charge files.

Layout (CMS template, tall and wide variants):
- Row 1: hospital header field names
- Row 2: hospital header values
- Row 3: data column headers
- Row 4+: one line per item/setting (wide) or per item/setting/payer/plan (tall)

Consecutive lines describing the same item (same description, codes and drug
unit) are merged into one RawRow; lines for different care settings become
separate charges of that row.
"""
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import pandas as pd

from pricetool.models.enums import SourceFormat
from pricetool.services.ingestion.extractors.format_detector import (
    detect_csv_layout,
    list_code_columns,
    normalize_header,
    split_wide_column,
)
from pricetool.services.ingestion.records import (
    HospitalHeader,
    PayerGroup,
    PayerGroupDescriptor,
    RawCharge,
    RawCode,
    RawModifier,
    RawRow,
)
from pricetool.utils.errors import DecodeError
from pricetool.utils.logger import get_logger

logger = get_logger(__name__)

HEADER_ROWS = 3

CHARGE_COLUMNS = {
    "setting": "setting",
    "gross_charge": "standard_charge|gross",
    "discounted_cash": "standard_charge|discounted_cash",
    "minimum": "standard_charge|min",
    "maximum": "standard_charge|max",
    "notes": "additional_generic_notes",
    "modifiers": "modifiers",
}

# Tall files name payer fields in fixed columns; later template versions
# dropped the standard_charge| prefix on some of them
TALL_PAYER_COLUMNS = {
    "dollar": ("standard_charge|negotiated_dollar",),
    "percentage": ("standard_charge|negotiated_percentage",),
    "algorithm": ("standard_charge|negotiated_algorithm",),
    "methodology": ("standard_charge|methodology", "methodology"),
    "estimated_amount": ("estimated_amount", "standard_charge|estimated_amount"),
    "median_amount": ("median_amount", "standard_charge|median_amount"),
    "percentile_10th": ("10th_percentile", "standard_charge|10th_percentile"),
    "percentile_90th": ("90th_percentile", "standard_charge|90th_percentile"),
    "count": ("count", "standard_charge|count"),
    "notes": ("additional_payer_notes",),
}

WIDE_FIELDS = {
    "negotiated_dollar": "dollar",
    "negotiated_percentage": "percentage",
    "negotiated_algorithm": "algorithm",
    "methodology": "methodology",
    "estimated_amount": "estimated_amount",
    "median_amount": "median_amount",
    "10th_percentile": "percentile_10th",
    "90th_percentile": "percentile_90th",
    "count": "count",
    "additional_payer_notes": "notes",
}


def _text(value: Any) -> str:
    """Cell value as a stripped string; missing cells become ""."""
    if value is None or isinstance(value, float):
        # pandas pads short lines with NaN
        return ""
    return str(value).strip()


def _split_pipe(value: str) -> List[str]:
    return [part.strip() for part in value.split("|") if part.strip()]


def parse_header_rows(names: Sequence[Any], values: Sequence[Any]) -> HospitalHeader:
    """Build the hospital header from CSV rows 1 and 2."""
    header = HospitalHeader(name="")
    for position, raw_name in enumerate(names):
        name = normalize_header(_text(raw_name))
        lowered = name.lower()
        value = _text(values[position]) if position < len(values) else ""

        if lowered == "hospital_name":
            header.name = value
        elif lowered == "last_updated_on":
            header.last_updated_on = value or None
        elif lowered == "version":
            header.version = value or None
        elif lowered in ("hospital_location", "location_name"):
            header.location_names = _split_pipe(value)
        elif lowered == "hospital_address":
            header.addresses = _split_pipe(value)
        elif lowered == "type_2_npi":
            header.npis = _split_pipe(value)
        elif lowered.startswith("license_number|"):
            header.license_number = value or None
            header.license_state = name.split("|", 1)[1].strip().upper() or None
        elif lowered == "license_number":
            header.license_number = value or None
        elif lowered == "attester_name":
            header.attester_name = value or None
        elif lowered == "financial_aid_policy":
            header.financial_aid_policy = value or None
        elif lowered == "general_contract_provisions":
            header.general_contract_provisions = value or None
    return header


class CsvExtractor:
    """Streams RawRow values from a tall or wide CSV file."""

    def __init__(self, file_path: str, chunk_size: int = 5000, encoding: str = "utf-8-sig"):
        self.file_path = str(file_path)
        self.chunk_size = chunk_size
        self.encoding = encoding
        self.format: Optional[SourceFormat] = None
        self.headers: List[str] = []
        self.payer_groups: List[PayerGroupDescriptor] = []
        self.truncated_lines = 0
        self._columns: Dict[str, int] = {}
        self._code_columns: List[Tuple[int, Optional[int]]] = []
        self._header: Optional[HospitalHeader] = None

    def _read_csv(self, **kwargs):
        return pd.read_csv(
            self.file_path,
            dtype=str,
            keep_default_na=False,
            engine="python",
            encoding=self.encoding,
            encoding_errors="replace",
            on_bad_lines=self._truncate_line,
            **kwargs,
        )

    def _truncate_line(self, line: List[str]) -> List[str]:
        if not self.headers:
            # Header rows: pandas drops the extra fields itself
            return line
        self.truncated_lines += 1
        if self.truncated_lines <= 10:
            logger.warning(
                "CSV line has more fields than headers, extra fields dropped",
                file_path=self.file_path,
                fields=len(line),
                headers=len(self.headers),
            )
        return line[: len(self.headers)]

    def read_header(self) -> HospitalHeader:
        """
        Read rows 1-3, detect the layout and discover payer/plan groups.

        Raises:
            DecodeError: If the header rows are unreadable or mandatory columns are missing
        """
        if self._header is not None:
            return self._header

        try:
            meta = self._read_csv(header=None, nrows=2, skip_blank_lines=False)
            columns = self._read_csv(header=HEADER_ROWS - 1, nrows=0)
        except (pd.errors.ParserError, pd.errors.EmptyDataError, ValueError, OSError) as e:
            raise DecodeError(
                f"Unable to read CSV header rows: {e}",
                details={"file_path": self.file_path},
            ) from e

        if len(meta.index) < 2:
            raise DecodeError("CSV file is missing hospital header rows", details={"file_path": self.file_path})

        header = parse_header_rows(list(meta.iloc[0]), list(meta.iloc[1]))
        if not header.name:
            raise DecodeError("CSV header has no hospital_name", details={"file_path": self.file_path})

        self.headers = [normalize_header(str(c)) for c in columns.columns]
        self._columns = {}
        for position, name in enumerate(self.headers):
            self._columns.setdefault(name.lower(), position)

        if "description" not in self._columns:
            raise DecodeError("CSV has no description column", details={"file_path": self.file_path})
        self._code_columns = list_code_columns(self.headers)
        if not self._code_columns:
            raise DecodeError("CSV has no code|N columns", details={"file_path": self.file_path})

        self.format = detect_csv_layout(self.headers)
        if self.format == SourceFormat.CSV_WIDE:
            self.payer_groups = self._discover_payer_groups()

        logger.info(
            "CSV header read",
            file_path=self.file_path,
            layout=self.format.value,
            columns=len(self.headers),
            payer_groups=len(self.payer_groups),
            hospital_name=header.name,
        )
        self._header = header
        return header

    def _discover_payer_groups(self) -> List[PayerGroupDescriptor]:
        groups: Dict[Tuple[str, str], Dict[str, int]] = {}
        for position, name in enumerate(self.headers):
            parts = split_wide_column(name)
            if parts is None:
                continue
            payer, plan, field = parts
            target = WIDE_FIELDS.get(field)
            if target is None:
                logger.warning("Unrecognized payer column ignored", file_path=self.file_path, column=name)
                continue
            key = (payer.replace("_", " ").strip(), plan.replace("_", " ").strip())
            groups.setdefault(key, {}).setdefault(target, position)
        return [
            PayerGroupDescriptor(payer_name=payer, plan_name=plan, columns=tuple(columns.items()))
            for (payer, plan), columns in groups.items()
        ]

    def _cell(self, values: Sequence[Any], column: str) -> str:
        position = self._columns.get(column)
        if position is None or position >= len(values):
            return ""
        return _text(values[position])

    def _first_cell(self, values: Sequence[Any], columns: Sequence[str]) -> str:
        for column in columns:
            if column in self._columns:
                return self._cell(values, column)
        return ""

    def _codes(self, values: Sequence[Any]) -> List[RawCode]:
        codes = []
        for code_position, type_position in self._code_columns:
            code = _text(values[code_position]) if code_position < len(values) else ""
            if not code:
                continue
            code_type = ""
            if type_position is not None and type_position < len(values):
                code_type = _text(values[type_position])
            codes.append(RawCode(code=code, code_type=code_type or None))
        return codes

    def _charge(self, values: Sequence[Any]) -> RawCharge:
        return RawCharge(
            setting=self._cell(values, CHARGE_COLUMNS["setting"]) or None,
            gross_charge=self._cell(values, CHARGE_COLUMNS["gross_charge"]),
            discounted_cash=self._cell(values, CHARGE_COLUMNS["discounted_cash"]),
            minimum=self._cell(values, CHARGE_COLUMNS["minimum"]),
            maximum=self._cell(values, CHARGE_COLUMNS["maximum"]),
            modifier_codes=_split_pipe(self._cell(values, CHARGE_COLUMNS["modifiers"])),
            notes=self._cell(values, CHARGE_COLUMNS["notes"]) or None,
        )

    def _wide_groups(self, values: Sequence[Any]) -> List[PayerGroup]:
        groups = []
        for descriptor in self.payer_groups:
            group = PayerGroup(
                descriptor=descriptor,
                values={
                    field: _text(values[position]) if position < len(values) else ""
                    for field, position in descriptor.columns
                },
            )
            if group.has_data():
                groups.append(group)
        return groups

    def _tall_group(self, values: Sequence[Any]) -> Optional[PayerGroup]:
        payer_name = self._cell(values, "payer_name")
        if not payer_name:
            return None
        descriptor = PayerGroupDescriptor(payer_name=payer_name, plan_name=self._cell(values, "plan_name"))
        return PayerGroup(
            descriptor=descriptor,
            values={field: self._first_cell(values, columns) for field, columns in TALL_PAYER_COLUMNS.items()},
        )

    def _item_key(self, values: Sequence[Any], codes: List[RawCode]) -> Tuple:
        return (
            self._cell(values, "description"),
            tuple((c.code, c.code_type) for c in codes),
            self._cell(values, "drug_unit_of_measurement"),
            self._cell(values, "drug_type_of_measurement"),
        )

    @staticmethod
    def _charge_key(charge: RawCharge) -> Tuple:
        return (
            charge.setting,
            charge.gross_charge,
            charge.discounted_cash,
            charge.minimum,
            charge.maximum,
            tuple(charge.modifier_codes),
            charge.notes,
        )

    def _lines(self) -> Iterator[Tuple[int, Tuple[Any, ...]]]:
        """Yield (source row number, cell values) for each non-blank data line."""
        row_number = HEADER_ROWS
        try:
            with self._read_csv(
                header=HEADER_ROWS - 1,
                chunksize=self.chunk_size,
                skip_blank_lines=False,
            ) as reader:
                for chunk in reader:
                    for values in chunk.itertuples(index=False, name=None):
                        row_number += 1
                        if any(_text(v) for v in values):
                            yield row_number, values
        except (pd.errors.ParserError, ValueError, OSError) as e:
            raise DecodeError(
                f"CSV decoding failed near row {row_number}: {e}",
                details={"file_path": self.file_path, "row_number": row_number},
            ) from e

    def iter_rows(self) -> Iterator[RawRow]:
        """Yield one RawRow per item, merging consecutive lines for the same item."""
        self.read_header()
        wide = self.format == SourceFormat.CSV_WIDE

        current: Optional[RawRow] = None
        current_key = None
        charges: Dict[Tuple, RawCharge] = {}

        for row_number, values in self._lines():
            codes = self._codes(values)
            key = self._item_key(values, codes)
            if current is None or key != current_key:
                if current is not None:
                    yield current
                current = RawRow(
                    row_number=row_number,
                    description=self._cell(values, "description") or None,
                    codes=codes,
                    drug_unit=self._cell(values, "drug_unit_of_measurement"),
                    drug_unit_type=self._cell(values, "drug_type_of_measurement") or None,
                )
                current_key = key
                charges = {}

            line_charge = self._charge(values)
            charge = charges.get(self._charge_key(line_charge))
            if charge is None:
                charge = line_charge
                charges[self._charge_key(line_charge)] = charge
                current.charges.append(charge)

            if wide:
                charge.payer_groups.extend(self._wide_groups(values))
            else:
                group = self._tall_group(values)
                if group is not None:
                    charge.payer_groups.append(group)

        if current is not None:
            yield current

    def iter_modifiers(self) -> Iterator[RawModifier]:
        """CSV files carry modifiers inline on charges only."""
        return iter(())

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
