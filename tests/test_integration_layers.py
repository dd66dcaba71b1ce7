"""Integration tests describing the end-to-end tax ledger workflows.

These scenarios run the business logic, runtime and data access layers
together against real journal workbooks, including through the CLI entry
point.
"""

from __future__ import annotations

import json
from decimal import Decimal

import pytest

from tax_ledger import cli, core_logic, data_manager, runtime, setup_journal


def _run(config_path, *argv: str) -> int:
    return cli.main(["--config", str(config_path), *argv])


def _position(capsys, config_path, date: str):
    capsys.readouterr()
    assert _run(config_path, "position", "--date", date) == 0
    return json.loads(capsys.readouterr().out)["taxPosition"]


def test_persist_and_reload_round_trip(runtime_context, sale_payload, payment_payload, amendment_payload):
    """Accepted writes survive a save and reload through the journal workbook."""

    context = runtime_context
    core_logic.ingest(context.ledger, sale_payload())
    core_logic.ingest(context.ledger, payment_payload())
    core_logic.amend(context.ledger, amendment_payload(cost=2500))

    assert runtime.persist_context(context) == 3

    reloaded = runtime.load_runtime_context(context.settings.journal_file.parent / "config.ini")
    position = core_logic.calculate_tax_position(reloaded.ledger, "2024-01-03T12:00:00Z")

    assert position.tax_position == Decimal("400")
    assert reloaded.persisted_entries == 3
    assert [entry.payload for entry in reloaded.ledger.journal] == [
        entry.payload for entry in context.ledger.journal
    ]


def test_persist_only_appends_new_entries(runtime_context, sale_payload, payment_payload):
    """A second persist writes just the entries accepted since the first."""

    context = runtime_context
    core_logic.ingest(context.ledger, sale_payload())
    runtime.persist_context(context)
    core_logic.ingest(context.ledger, payment_payload())

    assert runtime.persist_context(context) == 1
    rows = list(data_manager.iter_journal_rows(data_manager.open_workbook(context.settings.journal_file)))
    assert [row.entry_id for row in rows] == [1, 2]


def test_reset_context_clears_workbook_journal(runtime_context, sale_payload):
    """After a persisted reset, a reload starts from an empty ledger."""

    context = runtime_context
    core_logic.ingest(context.ledger, sale_payload())
    runtime.persist_context(context)

    runtime.reset_context(context)
    runtime.persist_context(context)

    reloaded = runtime.load_runtime_context(context.settings.journal_file.parent / "config.ini")
    assert len(reloaded.ledger.events) == 0
    assert reloaded.ledger.journal == []


def test_cli_sale_payment_and_position_flow(config_factory, capsys):
    """Each CLI invocation replays the journal written by the previous ones."""

    bundle = config_factory()
    assert _run(
        bundle.config_path,
        "sale",
        "--invoice-id",
        "INV001",
        "--date",
        "2024-01-01T12:00:00Z",
        "--item",
        "ITEM1:1000:0.2",
    ) == 0
    assert _run(bundle.config_path, "payment", "--date", "2024-01-02T12:00:00Z", "--amount", "100") == 0

    assert _position(capsys, bundle.config_path, "2024-01-03T12:00:00Z") == 100
    assert _position(capsys, bundle.config_path, "2024-01-01T00:00:00Z") == 0


def test_cli_amendment_flow(config_factory, capsys):
    """Amendments recorded through the CLI apply from their effective date."""

    bundle = config_factory()
    _run(bundle.config_path, "sale", "--invoice-id", "INV001", "--date", "2024-01-01T12:00:00Z", "--item", "ITEM1:1000:0.2")
    _run(
        bundle.config_path,
        "amend",
        "--date",
        "2024-01-02T12:00:00Z",
        "--invoice-id",
        "INV001",
        "--item-id",
        "ITEM1",
        "--cost",
        "2000",
        "--tax-rate",
        "0.2",
    )

    assert _position(capsys, bundle.config_path, "2024-01-03T12:00:00Z") == 400
    assert _position(capsys, bundle.config_path, "2024-01-01T23:00:00Z") == 200


def test_cli_duplicate_sale_is_rejected_and_not_persisted(config_factory):
    """A duplicate exits with code 2 and leaves the journal unchanged."""

    bundle = config_factory()
    argv = ("sale", "--invoice-id", "INV001", "--date", "2024-01-01T12:00:00Z", "--item", "ITEM1:1000:0.2")

    assert _run(bundle.config_path, *argv) == 0
    assert _run(bundle.config_path, *argv) == 2

    rows = list(data_manager.iter_journal_rows(data_manager.open_workbook(bundle.journal_path)))
    assert len(rows) == 1


def test_cli_rejects_invalid_query_date(config_factory):
    """An unparseable query date maps to the ledger error exit code."""

    bundle = config_factory()
    assert _run(bundle.config_path, "position", "--date", "not-a-date") == 2


def test_cli_reset_flow(config_factory, capsys):
    """reset --yes empties the persisted journal."""

    bundle = config_factory()
    _run(bundle.config_path, "payment", "--date", "2024-01-02T12:00:00Z", "--amount", "100")

    assert _run(bundle.config_path, "reset") == 1
    assert _position(capsys, bundle.config_path, "2024-01-03") == -100

    assert _run(bundle.config_path, "reset", "--yes") == 0
    assert _position(capsys, bundle.config_path, "2024-01-03") == 0


def test_cli_position_rounds_when_configured(config_factory, capsys):
    """RoundToMinorUnit switches the CLI output to whole minor units."""

    bundle = config_factory(round_to_minor_unit=True)
    _run(bundle.config_path, "sale", "--invoice-id", "INV001", "--date", "2024-01-01", "--item", "X:333:0.175")

    assert _position(capsys, bundle.config_path, "2024-01-02") == 58


def test_cli_log_reports_journal(config_factory, capsys):
    """log prints the journal in the order operations were accepted."""

    bundle = config_factory()
    _run(bundle.config_path, "sale", "--invoice-id", "INV001", "--date", "2024-01-01", "--item", "A:1:0.1", "--item", "B:2:0.1")
    _run(bundle.config_path, "amend", "--date", "2024-01-02", "--invoice-id", "INV001", "--item-id", "B", "--cost", "3", "--tax-rate", "0.1")
    capsys.readouterr()

    assert _run(bundle.config_path, "log") == 0
    entries = json.loads(capsys.readouterr().out)

    assert [entry["operation"] for entry in entries] == ["INGEST", "AMEND"]
    assert [item["itemId"] for item in entries[0]["payload"]["items"]] == ["A", "B"]


def test_cli_schema_mismatch_is_refused(config_factory):
    """A journal declared for another schema version cannot be used."""

    bundle = config_factory(schema_version="2.0.0")
    assert _run(bundle.config_path, "log") == 1


# ---------------------------------------------------------------------------
# Journal setup
# ---------------------------------------------------------------------------


def test_setup_creates_journal_from_config(tmp_path):
    """The setup script creates the workbook named in config.ini."""

    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nJournalFile = data/tax_journal.xlsx\n")

    assert setup_journal.main(["--config", str(config_path)]) == 0

    workbook = data_manager.open_workbook(tmp_path / "data" / "tax_journal.xlsx")
    assert workbook.sheetnames == [data_manager.JOURNAL_SHEET]


def test_setup_refuses_to_overwrite_without_force(tmp_path):
    """Existing journals are only replaced with --force."""

    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nJournalFile = tax_journal.xlsx\n")
    setup_journal.main(["--config", str(config_path)])

    assert setup_journal.main(["--config", str(config_path)]) == 1
    assert setup_journal.main(["--config", str(config_path), "--force"]) == 0


def test_setup_reports_missing_config(tmp_path):
    """A missing configuration file is reported with a non-zero exit code."""

    assert setup_journal.main(["--config", str(tmp_path / "missing.ini")]) == 1


def test_setup_load_settings_requires_journal_entry(tmp_path):
    """load_settings raises KeyError without a JournalFile entry."""

    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nBusinessName = Shop\n")

    with pytest.raises(KeyError):
        setup_journal.load_settings(config_path)
