"""Tests for the command line interface."""
import json
import sys
from unittest.mock import patch

import pytest
import structlog

from pricetool.cli import build_parser, main
from pricetool.models.database import Hospital
from tests.utils.db_helpers import count_rows
from tests.utils.sample_files import json_item, write_json


@pytest.fixture
def cli_databases(session_factory, reference_engine):
    """Point the CLI at the test databases and keep log lines off stdout."""
    previous = structlog.get_config()
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(sys.stderr), cache_logger_on_first_use=False)
    try:
        with patch("pricetool.config.database.SessionLocal", session_factory), patch(
            "pricetool.config.database.reference_engine", reference_engine
        ), patch("pricetool.cli.configure_logging"):
            yield
    finally:
        structlog.configure(**previous)


@pytest.mark.unit
class TestParser:
    """Tests for argument parsing."""

    def test_ingest_arguments(self):
        """Test ingest options."""
        args = build_parser().parse_args(
            ["--log-format", "console", "ingest", "a.csv", "b.json", "--workers", "3", "--supersede", "--timeout", "60"]
        )
        assert args.command == "ingest"
        assert args.files == ["a.csv", "b.json"]
        assert args.workers == 3
        assert args.supersede is True
        assert args.timeout == 60.0
        assert args.log_format == "console"
        assert args.no_prefetch is False

    def test_command_required(self):
        """Test a subcommand must be given."""
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


@pytest.mark.integration
class TestMain:
    """Tests for main()."""

    def test_ingest_success(self, cli_databases, tmp_path, fact_engine, capsys):
        """Test a successful run exits 0 and prints a summary line per file."""
        path = write_json(tmp_path / "h.json", [json_item("Office visit")])
        assert main(["ingest", str(path), "--summary"]) == 0

        lines = capsys.readouterr().out.strip().splitlines()
        assert len(lines) == 1
        summary = json.loads(lines[0])
        assert summary["status"] == "committed"
        assert summary["items_written"] == 1
        assert count_rows(fact_engine, Hospital) == 1

    def test_ingest_failure_exit_code(self, cli_databases, tmp_path):
        """Test any failed load makes the exit status 1."""
        good = write_json(tmp_path / "h.json", [json_item("Office visit")])
        assert main(["ingest", str(good), str(tmp_path / "missing.csv")]) == 1

    def test_ingest_interrupted(self, cli_databases, tmp_path):
        """Test Ctrl-C cancels the run and exits 130."""
        path = write_json(tmp_path / "h.json", [json_item("Office visit")])
        with patch("pricetool.services.ingestion.runner.IngestionRunner.run", side_effect=KeyboardInterrupt):
            assert main(["ingest", str(path)]) == 130

    def test_sqlite_without_reference_database(self, session_factory, fact_engine, tmp_path, capsys):
        """Test one SQLite file for facts and references exits 2 without loading."""
        path = write_json(tmp_path / "h.json", [json_item("Office visit")])
        with patch("pricetool.config.database.SessionLocal", session_factory), patch(
            "pricetool.config.database.reference_engine", fact_engine
        ), patch("pricetool.cli.configure_logging"):
            assert main(["ingest", str(path)]) == 2

        assert "REFERENCE_DATABASE_URL" in capsys.readouterr().err
        assert count_rows(fact_engine, Hospital) == 0

    def test_init_db(self):
        """Test init-db creates the schema."""
        with patch("pricetool.config.database.init_db") as mock_init_db, patch("pricetool.cli.configure_logging"):
            assert main(["init-db"]) == 0
        mock_init_db.assert_called_once_with()
