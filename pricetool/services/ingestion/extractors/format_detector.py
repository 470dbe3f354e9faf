"""Source format detection for hospital machine-readable files."""
import re
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from pricetool.models.enums import SourceFormat
from pricetool.utils.errors import DecodeError
from pricetool.utils.logger import get_logger

logger = get_logger(__name__)

UTF8_BOM = b"\xef\xbb\xbf"

# standard_charge|<payer>|<plan>|<field>
WIDE_RATE_PREFIX = "standard_charge"
# estimated_amount|<payer>|<plan>, additional_payer_notes|<payer>|<plan>, ...
WIDE_PAYER_PREFIXES = {
    "estimated_amount",
    "additional_payer_notes",
    "median_amount",
    "10th_percentile",
    "90th_percentile",
    "count",
}


def normalize_header(header: Optional[str]) -> str:
    """Trim whitespace around each pipe-separated segment of a column header."""
    if header is None:
        return ""
    return "|".join(segment.strip() for segment in str(header).lstrip("\ufeff").split("|"))


def detect_source_format(file_path: str) -> SourceFormat:
    """
    Decide between JSON and CSV for a source file.

    CSV files are refined into tall or wide layouts once their column headers
    are read (see ``detect_csv_layout``); this returns CSV_TALL as a placeholder.

    Raises:
        DecodeError: If the file is missing or empty
    """
    path = Path(file_path)
    if not path.is_file():
        raise DecodeError(f"Source file not found: {file_path}", details={"file_path": str(file_path)})

    if path.suffix.lower() == ".json":
        return SourceFormat.JSON

    with open(path, "rb") as f:
        head = f.read(4096)
    if head.startswith(UTF8_BOM):
        head = head[len(UTF8_BOM):]
    head = head.lstrip()
    if not head:
        raise DecodeError(f"Source file is empty: {file_path}", details={"file_path": str(file_path)})
    if head[:1] == b"{":
        return SourceFormat.JSON
    return SourceFormat.CSV_TALL


def detect_csv_layout(headers: Iterable[str]) -> SourceFormat:
    """
    Classify CSV column headers as tall or wide.

    Tall files name the payer and plan in ``payer_name``/``plan_name`` columns.
    Wide files encode them in column headers such as
    ``standard_charge|Aetna|PPO|negotiated_dollar``. Files with neither carry
    no payer data and are read as tall.
    """
    normalized = [normalize_header(h).lower() for h in headers]
    for header in normalized:
        if header in ("payer_name", "plan_name"):
            return SourceFormat.CSV_TALL
    for header in normalized:
        if header.startswith(WIDE_RATE_PREFIX + "|") and split_wide_column(header):
            return SourceFormat.CSV_WIDE
    return SourceFormat.CSV_TALL


def split_wide_column(header: str) -> Optional[Tuple[str, str, str]]:
    """
    Split a wide payer column header into (payer, plan, field).

    The payer is the segment after the prefix. Plan names may themselves
    contain pipes: for ``standard_charge|...`` columns the field is the last
    segment and the plan is everything between payer and field, for
    ``estimated_amount|...`` style columns the plan is everything after the
    payer.

    Returns None for headers that are not payer columns. Payer and plan keep
    their original case; ``field`` is lower-cased.
    """
    parts = normalize_header(header).split("|")
    prefix = parts[0].lower()
    if prefix == WIDE_RATE_PREFIX and len(parts) >= 4:
        payer, plan, field = parts[1], "|".join(parts[2:-1]), parts[-1].lower()
    elif prefix in WIDE_PAYER_PREFIXES and len(parts) >= 3:
        payer, plan, field = parts[1], "|".join(parts[2:]), prefix
    else:
        return None
    if not payer or not plan or not field:
        return None
    return payer, plan, field


def list_code_columns(headers: List[str]) -> List[Tuple[int, Optional[int]]]:
    """
    Find ``code|N`` columns and their ``code|N|type`` partners.

    Returns (code position, type position or None) pairs ordered by N.
    """
    lowered = [normalize_header(h).lower() for h in headers]
    positions = {name: i for i, name in reversed(list(enumerate(lowered)))}
    found = []
    for name, position in positions.items():
        match = re.match(r"^code\|(\d+)$", name)
        if match:
            number = int(match.group(1))
            found.append((number, position, positions.get(f"code|{match.group(1)}|type")))
    found.sort()
    return [(code_pos, type_pos) for _, code_pos, type_pos in found]
