"""Tests for nudge.main -- the command line entry point.

Covers:
- run-reminders for a given date, live and dry run
- Exit code 1 on send failures and bad arguments
- backfill-templates with and without --dry-run
"""

import pytest
import yaml

from nudge.main import build_parser, main


@pytest.fixture
def config_file(tmp_path, config):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "database": {"path": config.database.path},
        "delivery": {"backend": "log"},
    }), encoding="utf-8")
    return str(path)


class TestParser:
    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_run_reminders_flags(self):
        args = build_parser().parse_args(["run-reminders", "--dry-run", "--date", "2024-06-30"])
        assert args.dry_run is True
        assert args.date == "2024-06-30"


class TestRunReminders:
    def test_sends_due_reminder(self, config_file, seed_invoice, store, capsys):
        doc = seed_invoice()
        assert main(["--config", config_file, "run-reminders", "--date", "2024-06-23"]) == 0

        out = capsys.readouterr().out
        assert "Reminders sent      : 1" in out
        assert f"{doc['id']}  reminder1" in out
        assert store.get("invoices", doc["id"])["reminders_sent"][0]["slot_id"] == "reminder1"
        assert len(store.get_batch_runs()) == 1

    def test_dry_run_records_nothing(self, config_file, seed_invoice, store, capsys):
        doc = seed_invoice()
        assert main(["--config", config_file, "run-reminders", "--dry-run", "--date", "2024-06-23"]) == 0

        assert "[DRY RUN]" in capsys.readouterr().out
        assert store.get("invoices", doc["id"])["reminders_sent"] == []

    def test_failures_give_exit_code_1(self, config_file, seed_invoice):
        seed_invoice(client_id="0" * 32)
        assert main(["--config", config_file, "run-reminders", "--date", "2024-06-23"]) == 1

    def test_bad_date(self, config_file, capsys):
        assert main(["--config", config_file, "run-reminders", "--date", "June 23"]) == 1
        assert "ERROR" in capsys.readouterr().out


class TestBackfill:
    def test_dry_run_then_real(self, config_file, seed_invoice, store, capsys):
        doc = seed_invoice(templates=[])

        assert main(["--config", config_file, "backfill-templates", "--dry-run"]) == 0
        assert "Would update 1" in capsys.readouterr().out
        assert store.get("invoices", doc["id"])["templates"] == []

        assert main(["--config", config_file, "backfill-templates"]) == 0
        assert "Updated 1" in capsys.readouterr().out
        assert len(store.get("invoices", doc["id"])["templates"]) == 4
