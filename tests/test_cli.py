"""
Tests for the CLI interface.
"""
import os
import shutil
import tempfile

import yaml
from typer.testing import CliRunner

from zenlock.cli.main import app, EXIT_CODE_OK, EXIT_CODE_FAIL
from zenlock.core.days import previous_month
from zenlock.core.service import UsageService

runner = CliRunner()


class TestCLI:
    """Test CLI commands against a temporary database."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "cli.db")

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def invoke(self, *args):
        return runner.invoke(app, ["--db", self.db_path, *args])

    def test_no_command_prints_hint(self):
        """Running without a command prints usage help."""
        result = self.invoke()
        assert result.exit_code == EXIT_CODE_OK
        assert "Use --help" in result.output

    def test_init_applies_configured_limits(self):
        """init creates the database and stores configured limits."""
        config_path = os.path.join(self.temp_dir, "zenlock.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump({"limits": {"com.example.social": {"daily_limit_minutes": 30}}}, f)

        result = runner.invoke(app, ["--db", self.db_path, "--config", config_path, "init"])

        assert result.exit_code == EXIT_CODE_OK
        assert "1 limits applied" in result.output
        with UsageService(self.db_path) as service:
            assert service.get_limit("com.example.social").daily_limit_ms == 30 * 60_000

    def test_invalid_config_fails(self):
        """A broken configuration exits with the failure code."""
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump({"unknown": 1}, f)

        result = runner.invoke(app, ["--db", self.db_path, "--config", config_path, "init"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid configuration" in result.output

    def test_unknown_timezone_fails(self):
        """An unknown time zone is reported as a configuration error."""
        config_path = os.path.join(self.temp_dir, "zenlock.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump({"timezone": "Mars/Olympus"}, f)

        result = runner.invoke(app, ["--db", self.db_path, "--config", config_path, "status"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown timezone: Mars/Olympus" in result.output

    def test_start_with_empty_app_fails(self):
        """An empty app identifier is an error, not a crash."""
        result = self.invoke("start", "")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "app_identifier cannot be empty" in result.output

    def test_limit_with_empty_app_fails(self):
        """Limits need an app identifier."""
        result = self.invoke("limit", "", "--minutes", "30")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "app_identifier cannot be empty" in result.output

    def test_start_end_and_status(self):
        """A recorded session shows up in the status table."""
        assert self.invoke("limit", "com.example.social", "--minutes", "60").exit_code == EXIT_CODE_OK

        result = self.invoke("start", "com.example.social", "--at", "2024-01-15T09:00:00+00:00")
        assert result.exit_code == EXIT_CODE_OK
        assert "Session 1 started" in result.output

        result = self.invoke("end", "1", "--at", "2024-01-15T09:30:00+00:00")
        assert result.exit_code == EXIT_CODE_OK
        assert "30m" in result.output

        result = self.invoke("status")
        assert result.exit_code == EXIT_CODE_OK
        assert "com.example.social" in result.output
        assert "1h 0m" in result.output

    def test_overlapping_start_fails(self):
        """Starting twice without ending exits with the failure code."""
        self.invoke("start", "com.example.social")
        result = self.invoke("start", "com.example.social")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "already has an open session" in result.output

    def test_end_unknown_session_fails(self):
        """Ending an unknown session exits with the failure code."""
        result = self.invoke("end", "77")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown session: 77" in result.output

    def test_status_without_limits(self):
        """Status with no limits says so."""
        result = self.invoke("status")
        assert result.exit_code == EXIT_CODE_OK
        assert "No limits configured" in result.output

    def test_negative_minutes_rejected(self):
        """Negative limits are rejected before touching storage."""
        result = self.invoke("limit", "com.example.social", "--minutes", "-1")
        assert result.exit_code == EXIT_CODE_FAIL

    def test_usage_chart(self):
        """The usage chart prints one row per day."""
        self.invoke("start", "com.example.social")
        self.invoke("end", "1")

        result = self.invoke("usage", "com.example.social", "--days", "3")

        assert result.exit_code == EXIT_CODE_OK
        assert "Daily usage: com.example.social" in result.output
        dated_rows = [line for line in result.output.splitlines() if line[:4].isdigit()]
        assert len(dated_rows) == 3

    def test_week_summary(self):
        """The week command prints the weekly total."""
        result = self.invoke("week", "com.example.social")
        assert result.exit_code == EXIT_CODE_OK
        assert "Total: 0s" in result.output

    def test_purge(self):
        """purge reports the number of removed sessions."""
        result = self.invoke("purge")
        assert result.exit_code == EXIT_CODE_OK
        assert "Purged 0 sessions" in result.output

    def test_month_summary(self):
        """The month command prints the monthly totals."""
        with UsageService(self.db_path) as service:
            day = service.today()
        result = self.invoke("month", "com.example.social")

        assert result.exit_code == EXIT_CODE_OK
        assert f"Month {day.strftime('%Y-%m')}: com.example.social" in result.output
        assert "Active days:" in result.output

    def test_previous_month_summary(self):
        """--previous summarizes the month before this one."""
        with UsageService(self.db_path) as service:
            last_month = previous_month(service.today())

        result = self.invoke("month", "com.example.social", "--previous")

        assert result.exit_code == EXIT_CODE_OK
        assert f"Month {last_month.strftime('%Y-%m')}" in result.output
        assert "Total: 0s" in result.output
