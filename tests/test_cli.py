"""Tests for the command line interface."""

import pytest
from typer.testing import CliRunner

from split_ledger.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def database_path(tmp_path, monkeypatch):
    """Point the CLI at a temporary database."""
    path = tmp_path / "cli.db"
    monkeypatch.setenv("SPLIT_LEDGER_DATABASE_PATH", str(path))
    return path


class TestSplitPreview:
    """Test previewing splits."""

    def test_equal_split_remainder(self):
        result = runner.invoke(app, ["split", "100", "alice", "bob", "carol"])

        assert result.exit_code == 0
        assert "33.34" in result.output
        assert "33.33" in result.output

    def test_invalid_split_exits_1(self):
        result = runner.invoke(
            app, ["split", "100", "alice", "bob", "--percent", "60", "--percent", "50"]
        )

        assert result.exit_code == 1
        assert "Validation failed" in result.output

    def test_unusable_amount_exits_1(self):
        result = runner.invoke(app, ["split", "Infinity", "alice", "bob"])

        assert result.exit_code == 1
        assert "Invalid amount" in result.output


class TestLedgerCommands:
    """Test recording expenses and reading balances."""

    def test_balance_needs_current_user(self):
        result = runner.invoke(app, ["balance", "bob"])

        assert result.exit_code == 1
        assert "No current user" in result.output

    def test_expense_then_balance(self):
        assert runner.invoke(app, ["use", "alice"]).exit_code == 0

        added = runner.invoke(app, ["expense", "add", "60", "alice", "bob", "-d", "Dinner"])
        assert added.exit_code == 0
        assert "Recorded expense #1" in added.output

        balance = runner.invoke(app, ["balance", "bob"])
        assert balance.exit_code == 0
        assert "bob owes you" in balance.output
        assert "30.00" in balance.output

        as_bob = runner.invoke(app, ["balance", "alice", "--user", "bob"])
        assert "You owe alice" in as_bob.output

    def test_simplify_needs_participants(self):
        result = runner.invoke(app, ["simplify", "alice"])

        assert result.exit_code == 1
