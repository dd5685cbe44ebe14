"""
Tests for the CLI interface.
"""
import os
import shutil
import tempfile
from decimal import Decimal
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from ai_credit_meter.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from ai_credit_meter.storage.models import AIUsageLogEntry
from ai_credit_meter.storage.repository import (
    BalanceStore,
    initialize_schema,
    insert_usage_log,
    utc_now,
)

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep the CLI from reconfiguring global logging during tests."""
    with patch('ai_credit_meter.cli.main.configure_logging') as mock:
        yield mock


class TestCLI:
    """Test CLI commands."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _run(self, *args):
        return runner.invoke(app, ["--db", self.db_path, *args])

    def test_init_creates_database(self):
        result = self._run("init")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert os.path.exists(self.db_path)

    def test_grant_and_balance(self):
        self._run("init")

        result = self._run("grant", "u1", "50", "--source", "purchase")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Balance: 50" in result.output

        result = self._run("balance", "u1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "u1: 50 credits" in result.output

    def test_grant_idempotency_key(self):
        self._run("init")
        self._run("grant", "u1", "50", "-k", "order-1")
        self._run("grant", "u1", "50", "-k", "order-1")

        assert BalanceStore(self.db_path).get_balance("u1") == 50

    def test_grant_invalid_source(self):
        self._run("init")
        result = self._run("grant", "u1", "50", "--source", "usage")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid grant source" in result.output

    def test_charge_success(self):
        self._run("init")
        self._run("grant", "u1", "50")

        result = self._run("charge", "u1", "resume_enhancement")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Charged 15 credits" in result.output
        assert BalanceStore(self.db_path).get_balance("u1") == 35

    def test_charge_insufficient_credits(self):
        self._run("init")
        self._run("grant", "u1", "12")

        result = self._run("charge", "u1", "resume_enhancement")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "need 15, have 12" in result.output
        assert BalanceStore(self.db_path).get_balance("u1") == 12

    def test_refund(self):
        self._run("init")
        self._run("grant", "u1", "50")
        self._run("charge", "u1", "job_match")

        result = self._run("refund", "u1", "10", "--reason", "provider timeout")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Balance: 50" in result.output
        latest = BalanceStore(self.db_path).list_transactions("u1")[0]
        assert latest.description == "Refund: provider timeout"

    def test_ledger(self):
        self._run("init")
        self._run("grant", "u1", "50")
        self._run("charge", "u1", "job_match")

        result = self._run("ledger", "u1")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Ledger sum: 40" in result.output

    def test_ledger_empty(self):
        self._run("init")
        result = self._run("ledger", "nobody")
        assert "No transactions found" in result.output

    def test_costs(self):
        result = self._run("costs")

        assert result.exit_code == EXIT_CODE_PASS
        assert "job_match" in result.output
        assert "$4.99" in result.output

    def test_usage(self):
        initialize_schema(self.db_path)
        insert_usage_log(
            AIUsageLogEntry(
                user_id="u1",
                endpoint="job_match",
                model="gpt-4o-mini",
                token_count=150,
                cost_usd=Decimal("0.000045"),
                created_at=utc_now(),
            ),
            self.db_path,
        )

        result = self._run("usage", "--days", "7")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Requests: 1" in result.output
        assert "Tokens: 150" in result.output

    def test_usage_empty(self):
        initialize_schema(self.db_path)
        result = self._run("usage")
        assert "No AI usage recorded" in result.output

    def test_config_file_changes_costs(self):
        config_path = os.path.join(self.temp_dir, "meter.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump({'credits': {'features': {'job_match': 3}}}, f)
        self._run("init")
        self._run("grant", "u1", "10")

        result = runner.invoke(app, ["--db", self.db_path, "--config", config_path, "charge", "u1", "job_match"])

        assert result.exit_code == EXIT_CODE_PASS
        assert BalanceStore(self.db_path).get_balance("u1") == 7

    def test_missing_config_file(self):
        result = runner.invoke(app, ["--config", os.path.join(self.temp_dir, "nope.yaml"), "costs"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error loading config" in result.output

    def test_verbose_enables_debug_logging(self, quiet_logging):
        import logging
        runner.invoke(app, ["--db", self.db_path, "-v", "costs"])
        quiet_logging.assert_called_once_with(logging.DEBUG)
