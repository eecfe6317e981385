"""Tests for the command line entry point.

These tests verify:
- Parser wiring of the subcommands
- main() returns 1 without a command and on domain errors
- company / import / review / audit round trips through a temporary database
"""

from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path

import pytest

from cashledger.runner.main import create_cli, main
from cashledger.state_store import StateStore


@pytest.fixture
def db_path(tmp_path, monkeypatch) -> Path:
    path = tmp_path / "cli.db"
    monkeypatch.setenv("CASHLEDGER_DB_PATH", str(path))
    return path


@pytest.fixture
def missing_config(tmp_path) -> str:
    """Path of a config file that does not exist (defaults apply)."""
    return str(tmp_path / "absent.yaml")


class TestParser:
    def test_audit_arguments(self):
        parsed = create_cli().parse_args(["audit", "3", "--fix", "--as-of", "2024-03-31"])
        assert parsed.command == "audit"
        assert parsed.company_id == 3
        assert parsed.fix is True
        assert parsed.as_of == "2024-03-31"

    def test_bulk_approve_ids(self):
        parsed = create_cli().parse_args(["review", "bulk-approve", "1", "4", "5", "6"])
        assert parsed.action == "bulk-approve"
        assert parsed.txn_ids == [4, 5, 6]


class TestMain:
    def test_no_command(self, capsys):
        assert main([]) == 1

    def test_company_create(self, db_path, missing_config, capsys):
        assert main(["-c", missing_config, "company", "create", "Acme Labs", "--cash", "2500"]) == 0
        assert "Created company 1" in capsys.readouterr().out

        company = StateStore(db_path).get_company(1)
        assert company.name == "Acme Labs"
        assert company.cash_balance == Decimal("2500")

    def test_config_file_sets_database(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CASHLEDGER_DB_PATH", raising=False)
        db = tmp_path / "from_yaml.db"
        config_file = tmp_path / "config.yaml"
        config_file.write_text(f"state_db_path: {db}\n")

        assert main(["-c", str(config_file), "company", "create", "Globex"]) == 0
        assert StateStore(db).get_company(1).name == "Globex"

    def test_unknown_company_is_an_error(self, db_path, missing_config, capsys):
        assert main(["-c", missing_config, "company", "show", "99"]) == 1
        assert "❌" in capsys.readouterr().out

    def test_import_review_and_audit(self, db_path, missing_config, tmp_path, capsys):
        main(["-c", missing_config, "company", "create", "Acme Labs", "--cash", "100000"])
        rows = tmp_path / "rows.json"
        rows.write_text(
            json.dumps(
                [
                    {"date": "2024-03-01", "description": "AWS Cloud Services", "debit": "15000"},
                    {"date": "2024-03-02", "description": "Zxqv Holdings", "debit": "999"},
                ]
            )
        )

        assert main(["-c", missing_config, "import", "1", str(rows)]) == 0
        assert "New transactions:    2" in capsys.readouterr().out

        store = StateStore(db_path)
        assert store.get_company(1).cash_balance == Decimal("84001")
        pending = [t for t in store.list_transactions(1) if t.needs_review]
        assert len(pending) == 2

        assert main(["-c", missing_config, "review", "approve", "1", str(pending[0].id)]) == 0
        assert "is now approved" in capsys.readouterr().out

        assert main(["-c", missing_config, "audit", "1", "--as-of", "2024-03-31"]) == 0
        assert "Integrity: pass" in capsys.readouterr().out

    def test_import_rejects_non_list(self, db_path, missing_config, tmp_path):
        main(["-c", missing_config, "company", "create", "Acme Labs"])
        rows = tmp_path / "rows.json"
        rows.write_text(json.dumps({"date": "2024-03-01"}))
        assert main(["-c", missing_config, "import", "1", str(rows)]) == 1
