"""Data access layer for the tax ledger journal workbook.

This module reads and writes ``tax_journal.xlsx``, the workbook that keeps the
ordered record of accepted write operations. The business layer never touches
it; the CLI replays the journal into a fresh ledger on every run.

The public API covers three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Journal operations: converting journal entries to worksheet rows and back.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import EventType, JournalOperation, SheetName
from .core_logic import JournalEntry


CONFIG_FILE_NAME = "config.ini"
JOURNAL_SHEET = SheetName.JOURNAL.value
JOURNAL_COLUMNS = (
    "EntryID",
    "Operation",
    "EventType",
    "Date",
    "InvoiceID",
    "ItemID",
    "Cost",
    "TaxRate",
    "Amount",
)


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    journal_file: Path
    business_name: str
    schema_version: str
    round_to_minor_unit: bool = False


@dataclass(frozen=True)
class JournalRow:
    """In-memory view of a row from the ``Journal`` sheet.

    A sale spans one row per item, all sharing ``entry_id``.
    """

    entry_id: int
    operation: str
    event_type: Optional[str]
    date_iso: str
    invoice_id: Optional[str]
    item_id: Optional[str]
    cost: Optional[Decimal]
    tax_rate: Optional[Decimal]
    amount: Optional[Decimal]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the data layer.

    An explicit path is returned unchanged. Otherwise the search walks up from
    the current working directory and returns the first ``CONFIG_FILE_NAME``
    it finds.

    Args:
        explicit_path (Path | None): Optional path to use instead of searching.

    Returns:
        Path: The caller's path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``JournalFile`` entries are anchored to ``base_path`` (or the
    current working directory) and resolved. The ``[Reporting]`` section is
    optional.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used for relative journal paths.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``RoundToMinorUnit`` is not a recognised boolean.
    """

    try:
        journal_file_raw = parser.get("System", "JournalFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    round_to_minor_unit = parser.getboolean("Reporting", "RoundToMinorUnit", fallback=False)

    journal_path = Path(journal_file_raw)
    if not journal_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        journal_path = (base_path / journal_path).resolve()

    return ConfigSettings(
        journal_file=journal_path,
        business_name=business_name,
        schema_version=schema_version,
        round_to_minor_unit=round_to_minor_unit,
    )


def open_workbook(journal_file: Path) -> Workbook:
    """Open the journal workbook.

    Raises:
        FileNotFoundError: If ``journal_file`` does not exist after expansion
            and resolution.
    """

    journal_file = Path(journal_file).expanduser().resolve()
    if not journal_file.exists():
        raise FileNotFoundError(f"Workbook not found: {journal_file}")

    return openpyxl.load_workbook(journal_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook at ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def iter_journal_rows(workbook: Workbook) -> Iterator[JournalRow]:
    """Yield typed rows from the ``Journal`` sheet, skipping blank rows."""

    sheet = workbook[JOURNAL_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_journal_row(raw)


def iter_journal_entries(workbook: Workbook) -> Iterator[JournalEntry]:
    """Group consecutive journal rows into :class:`JournalEntry` objects.

    Rows are grouped by ``EntryID`` in sheet order, so a sale written as
    several item rows comes back as a single ``INGEST`` entry with its items
    in their original order.

    Args:
        workbook (Workbook): Workbook containing the ``Journal`` sheet.

    Yields:
        JournalEntry: Entries in the order they were recorded.
    """

    group: List[JournalRow] = []
    for row in iter_journal_rows(workbook):
        if group and row.entry_id != group[0].entry_id:
            yield rows_to_entry(group)
            group = []
        group.append(row)
    if group:
        yield rows_to_entry(group)


def append_journal_entry(workbook: Workbook, entry: JournalEntry) -> None:
    """Append every row that represents ``entry`` to the ``Journal`` sheet."""

    sheet = workbook[JOURNAL_SHEET]
    for row in entry_to_rows(entry):
        sheet.append(serialize_journal_row(row))


def clear_journal(workbook: Workbook) -> int:
    """Delete every data row from the ``Journal`` sheet, keeping the header.

    Returns:
        int: Number of rows removed.
    """

    sheet = workbook[JOURNAL_SHEET]
    removed = max(sheet.max_row - 1, 0)
    if removed:
        sheet.delete_rows(2, removed)
    log.debug("Cleared %d journal rows", removed)
    return removed


def entry_to_rows(entry: JournalEntry) -> List[JournalRow]:
    """Flatten a journal entry into worksheet rows.

    Raises:
        ValueError: If the entry's operation or event type is unsupported.
    """

    payload = entry.payload
    if entry.operation is JournalOperation.AMEND:
        return [
            JournalRow(
                entry_id=entry.sequence,
                operation=JournalOperation.AMEND.value,
                event_type=None,
                date_iso=str(payload["date"]),
                invoice_id=str(payload["invoiceId"]),
                item_id=str(payload["itemId"]),
                cost=_to_decimal(payload["cost"]),
                tax_rate=_to_decimal(payload["taxRate"]),
                amount=None,
            )
        ]

    if entry.operation is not JournalOperation.INGEST:
        raise ValueError(f"Unsupported journal operation: {entry.operation}")

    event_type = payload.get("eventType")
    if event_type == EventType.TAX_PAYMENT.value:
        return [
            JournalRow(
                entry_id=entry.sequence,
                operation=JournalOperation.INGEST.value,
                event_type=EventType.TAX_PAYMENT.value,
                date_iso=str(payload["date"]),
                invoice_id=None,
                item_id=None,
                cost=None,
                tax_rate=None,
                amount=_to_decimal(payload["amount"]),
            )
        ]
    if event_type == EventType.SALES.value:
        return [
            JournalRow(
                entry_id=entry.sequence,
                operation=JournalOperation.INGEST.value,
                event_type=EventType.SALES.value,
                date_iso=str(payload["date"]),
                invoice_id=str(payload["invoiceId"]),
                item_id=str(item["itemId"]),
                cost=_to_decimal(item["cost"]),
                tax_rate=_to_decimal(item["taxRate"]),
                amount=None,
            )
            for item in payload["items"]
        ]
    raise ValueError(f"Unsupported event type in journal entry: {event_type!r}")


def rows_to_entry(rows: Sequence[JournalRow]) -> JournalEntry:
    """Rebuild a journal entry from the rows sharing one ``EntryID``.

    Raises:
        ValueError: If ``rows`` is empty or describes an unknown operation.
    """

    if not rows:
        raise ValueError("Cannot build a journal entry from zero rows")
    first = rows[0]
    operation = JournalOperation(first.operation)

    payload: Dict[str, Any]
    if operation is JournalOperation.AMEND:
        payload = {
            "date": first.date_iso,
            "invoiceId": first.invoice_id,
            "itemId": first.item_id,
            "cost": first.cost,
            "taxRate": first.tax_rate,
        }
    elif first.event_type == EventType.TAX_PAYMENT.value:
        payload = {
            "eventType": EventType.TAX_PAYMENT.value,
            "date": first.date_iso,
            "amount": first.amount,
        }
    else:
        payload = {
            "eventType": first.event_type,
            "invoiceId": first.invoice_id,
            "date": first.date_iso,
            "items": [
                {"itemId": row.item_id, "cost": row.cost, "taxRate": row.tax_rate}
                for row in rows
            ],
        }
    return JournalEntry(sequence=first.entry_id, operation=operation, payload=payload)


def serialize_journal_row(record: JournalRow) -> list[object]:
    """Convert a journal row into the worksheet column ordering.

    Decimal values are written as text and read back exactly.
    """

    return [
        record.entry_id,
        record.operation,
        record.event_type,
        record.date_iso,
        record.invoice_id,
        record.item_id,
        _decimal_text(record.cost),
        _decimal_text(record.tax_rate),
        _decimal_text(record.amount),
    ]


def deserialize_journal_row(raw_row: Sequence[object]) -> JournalRow:
    """Convert a raw worksheet row into a strongly typed journal row."""

    (
        entry_id,
        operation,
        event_type,
        date_iso,
        invoice_id,
        item_id,
        cost_raw,
        tax_rate_raw,
        amount_raw,
    ) = tuple(raw_row)[: len(JOURNAL_COLUMNS)]

    return JournalRow(
        entry_id=int(entry_id),
        operation=str(operation),
        event_type=(str(event_type) if event_type is not None else None),
        date_iso=str(date_iso) if date_iso is not None else "",
        invoice_id=(str(invoice_id) if invoice_id is not None else None),
        item_id=(str(item_id) if item_id is not None else None),
        cost=_to_decimal(cost_raw),
        tax_rate=_to_decimal(tax_rate_raw),
        amount=_to_decimal(amount_raw),
    )


def _to_decimal(raw: object) -> Optional[Decimal]:
    if raw is None or raw == "":
        return None
    return Decimal(str(raw))


def _decimal_text(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None

