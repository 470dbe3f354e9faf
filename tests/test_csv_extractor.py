"""Tests for the CSV extractor."""
import pytest

from pricetool.models.enums import SourceFormat
from pricetool.services.ingestion.extractors.csv_extractor import CsvExtractor, parse_header_rows
from pricetool.utils.errors import DecodeError
from tests.utils.sample_files import HOSPITAL_META, wide_row, write_tall_csv, write_wide_csv


@pytest.mark.unit
class TestParseHeaderRows:
    """Test hospital header parsing from rows 1 and 2."""

    def test_parse_header_rows(self):
        """Test every recognised header field."""
        header = parse_header_rows(list(HOSPITAL_META.keys()), list(HOSPITAL_META.values()))
        assert header.name == "General Hospital"
        assert header.last_updated_on == "2024-07-01"
        assert header.version == "2.0.0"
        assert header.location_names == ["Main Campus", "North Clinic"]
        assert header.addresses == ["1 Main St, Springfield, IL"]
        assert header.license_number == "12345"
        assert header.license_state == "IL"
        assert header.npis == ["1234567890"]

    def test_parse_header_rows_case_insensitive(self):
        """Test header names are matched case-insensitively."""
        header = parse_header_rows(["Hospital_Name", " Version "], ["St. Mary", "3.0"])
        assert header.name == "St. Mary"
        assert header.version == "3.0"


@pytest.mark.unit
class TestWideCsv:
    """Test wide layout extraction."""

    def test_read_header_discovers_payer_groups(self, tmp_path):
        """Test payer/plan groups come from the column headers in order."""
        path = write_wide_csv(tmp_path / "wide.csv", [wide_row(1)])
        with CsvExtractor(str(path)) as extractor:
            header = extractor.read_header()
            assert header.name == "General Hospital"
            assert extractor.format == SourceFormat.CSV_WIDE
            keys = [group.key for group in extractor.payer_groups]
            assert keys == [("Aetna", "PPO"), ("Blue Cross", "HMO Gold"), ("Cigna", "Open Access")]
            fields = dict(extractor.payer_groups[0].columns)
            assert set(fields) == {"dollar", "percentage", "algorithm", "estimated_amount", "methodology"}

    def test_iter_rows_populated_groups_only(self, tmp_path):
        """Test only groups with data in a row are emitted."""
        path = write_wide_csv(tmp_path / "wide.csv", [wide_row(1)])
        rows = list(CsvExtractor(str(path)).iter_rows())
        assert len(rows) == 1
        row = rows[0]
        assert row.row_number == 4
        assert row.description == "Procedure 1"
        assert [(c.code, c.code_type) for c in row.codes] == [("10001", "CPT")]
        assert len(row.charges) == 1
        groups = row.charges[0].payer_groups
        assert [g.payer_name for g in groups] == ["Aetna", "Blue Cross"]
        assert groups[0].get("dollar") == "51.00"
        assert groups[1].get("percentage") == "45"

    def test_iter_rows_merges_settings(self, tmp_path):
        """Test consecutive lines for one item become one row with a charge per setting."""
        path = write_wide_csv(
            tmp_path / "wide.csv",
            [wide_row(1, setting="inpatient"), wide_row(1, setting="outpatient"), wide_row(2)],
        )
        rows = list(CsvExtractor(str(path), chunk_size=1).iter_rows())
        assert [r.description for r in rows] == ["Procedure 1", "Procedure 2"]
        assert [c.setting for c in rows[0].charges] == ["inpatient", "outpatient"]
        assert rows[1].row_number == 6

    def test_multiple_codes(self, tmp_path):
        """Test several code columns on one line."""
        path = write_wide_csv(
            tmp_path / "wide.csv",
            [wide_row(1, **{"code|2": "0450", "code|2|type": "RC"})],
        )
        row = next(iter(CsvExtractor(str(path)).iter_rows()))
        assert [(c.code, c.code_type) for c in row.codes] == [("10001", "CPT"), ("0450", "RC")]

    def test_plan_name_with_pipe(self, tmp_path):
        """Test a plan name containing a pipe keeps its payer columns."""
        payers = [("Aetna", "PPO|Gold")]
        path = write_wide_csv(
            tmp_path / "wide.csv",
            [
                wide_row(
                    1,
                    **{
                        "standard_charge|Aetna|PPO|Gold|negotiated_dollar": "55.00",
                        "estimated_amount|Aetna|PPO|Gold": "60.00",
                    },
                )
            ],
            payers=payers,
        )
        extractor = CsvExtractor(str(path))
        rows = list(extractor.iter_rows())

        assert [group.key for group in extractor.payer_groups] == [("Aetna", "PPO|Gold")]
        groups = rows[0].charges[0].payer_groups
        assert len(groups) == 1
        assert groups[0].plan_name == "PPO|Gold"
        assert groups[0].get("dollar") == "55.00"
        assert groups[0].get("estimated_amount") == "60.00"

    def test_modifiers_split_on_pipes(self, tmp_path):
        """Test the modifiers cell is pipe separated."""
        path = write_wide_csv(tmp_path / "wide.csv", [wide_row(1, modifiers="26 | TC")])
        row = next(iter(CsvExtractor(str(path)).iter_rows()))
        assert row.charges[0].modifier_codes == ["26", "TC"]

    def test_blank_lines_skipped(self, tmp_path):
        """Test empty lines do not produce rows but still count toward row numbers."""
        path = write_wide_csv(tmp_path / "wide.csv", [wide_row(1), {}, wide_row(2)])
        rows = list(CsvExtractor(str(path)).iter_rows())
        assert [r.row_number for r in rows] == [4, 6]

    def test_long_lines_truncated(self, tmp_path):
        """Test lines with extra fields are cut to the header width."""
        path = write_wide_csv(tmp_path / "wide.csv", [wide_row(1)])
        with open(path, "a", encoding="utf-8") as f:
            f.write("Procedure 2,10002,CPT" + "," * 40 + ",extra,extra\n")
        extractor = CsvExtractor(str(path))
        rows = list(extractor.iter_rows())
        assert [r.description for r in rows] == ["Procedure 1", "Procedure 2"]
        assert extractor.truncated_lines == 1


@pytest.mark.unit
class TestTallCsv:
    """Test tall layout extraction."""

    def _line(self, payer, plan, dollar="", setting="outpatient", **extra):
        line = {
            "description": "MRI brain",
            "code|1": "70551",
            "code|1|type": "CPT",
            "setting": setting,
            "standard_charge|gross": "1500",
            "payer_name": payer,
            "plan_name": plan,
            "standard_charge|negotiated_dollar": dollar,
            "standard_charge|methodology": "fee schedule",
        }
        line.update(extra)
        return line

    def test_tall_lines_grouped_into_one_row(self, tmp_path):
        """Test one line per payer/plan merges into one row and charge."""
        path = write_tall_csv(
            tmp_path / "tall.csv",
            [
                self._line("Aetna", "PPO", "900"),
                self._line("Cigna", "HMO", "850"),
                self._line("United", "Choice", "", **{"standard_charge|negotiated_algorithm": "70% of billed"}),
            ],
        )
        extractor = CsvExtractor(str(path))
        rows = list(extractor.iter_rows())
        assert extractor.format == SourceFormat.CSV_TALL
        assert len(rows) == 1
        assert len(rows[0].charges) == 1
        groups = rows[0].charges[0].payer_groups
        assert [(g.payer_name, g.plan_name) for g in groups] == [
            ("Aetna", "PPO"),
            ("Cigna", "HMO"),
            ("United", "Choice"),
        ]
        assert groups[2].get("algorithm") == "70% of billed"

    def test_tall_settings_become_charges(self, tmp_path):
        """Test lines with different settings become separate charges."""
        path = write_tall_csv(
            tmp_path / "tall.csv",
            [
                self._line("Aetna", "PPO", "900", setting="inpatient"),
                self._line("Aetna", "PPO", "700", setting="outpatient"),
            ],
        )
        row = next(iter(CsvExtractor(str(path)).iter_rows()))
        assert [c.setting for c in row.charges] == ["inpatient", "outpatient"]
        assert [len(c.payer_groups) for c in row.charges] == [1, 1]

    def test_tall_line_without_payer(self, tmp_path):
        """Test a line with no payer name contributes only the charge."""
        path = write_tall_csv(tmp_path / "tall.csv", [self._line("", "")])
        row = next(iter(CsvExtractor(str(path)).iter_rows()))
        assert len(row.charges) == 1
        assert row.charges[0].payer_groups == []


@pytest.mark.unit
class TestCsvDecodeErrors:
    """Test file-level CSV problems."""

    def test_missing_hospital_name(self, tmp_path):
        """Test a header without hospital_name."""
        meta = dict(HOSPITAL_META)
        meta["hospital_name"] = ""
        path = write_wide_csv(tmp_path / "wide.csv", [wide_row(1)], meta=meta)
        with pytest.raises(DecodeError, match="hospital_name"):
            CsvExtractor(str(path)).read_header()

    def test_missing_description_column(self, tmp_path):
        """Test data headers without description."""
        path = tmp_path / "bad.csv"
        path.write_text("hospital_name\nGeneral Hospital\ncode|1,setting\n123,outpatient\n")
        with pytest.raises(DecodeError, match="description"):
            CsvExtractor(str(path)).read_header()

    def test_missing_code_columns(self, tmp_path):
        """Test data headers without code|N."""
        path = tmp_path / "bad.csv"
        path.write_text("hospital_name\nGeneral Hospital\ndescription,setting\nMRI,outpatient\n")
        with pytest.raises(DecodeError, match="code"):
            CsvExtractor(str(path)).read_header()

    def test_missing_header_rows(self, tmp_path):
        """Test a file with only one line."""
        path = tmp_path / "bad.csv"
        path.write_text("hospital_name\n")
        with pytest.raises(DecodeError):
            CsvExtractor(str(path)).read_header()
