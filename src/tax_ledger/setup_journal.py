"""Bootstrap the journal workbook named in ``config.ini``.

Run as ``tax-ledger-setup`` (or ``python -m tax_ledger.setup_journal``). Tests
call :func:`create_journal_workbook` directly so the workbook layout is the
same however it was created.
"""

from __future__ import annotations

import argparse
import configparser
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from . import log
from .data_manager import CONFIG_FILE_NAME, JOURNAL_COLUMNS, JOURNAL_SHEET, read_config

# Wide enough for a millisecond ISO-8601 timestamp.
DATE_COLUMN_WIDTH = 28
DEFAULT_COLUMN_WIDTH = 14


@dataclass(frozen=True)
class SetupSettings:
    """Subset of ``config.ini`` needed to create the journal."""

    journal_file: Path


def load_settings(config_path: Path) -> SetupSettings:
    """Return the journal location configured in ``config_path``.

    Only ``[System] JournalFile`` is required here; a relative value is
    anchored to the config file's directory.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
        KeyError: If ``JournalFile`` is not configured.
    """

    parser = read_config(config_path)
    try:
        raw = parser.get("System", "JournalFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    journal_file = Path(raw).expanduser()
    if not journal_file.is_absolute():
        journal_file = (config_path.expanduser().resolve().parent / journal_file).resolve()
    return SetupSettings(journal_file=journal_file)


def create_journal_workbook(
    destination: Path,
    *,
    columns: Sequence[str] = JOURNAL_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Write an empty ``Journal`` sheet with a bold, frozen header row.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing journal workbook: {destination}")
    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = JOURNAL_SHEET
    sheet.append(list(columns))
    header_font = Font(bold=True)
    for index, name in enumerate(columns, start=1):
        sheet.cell(row=1, column=index).font = header_font
        width = DATE_COLUMN_WIDTH if name == "Date" else DEFAULT_COLUMN_WIDTH
        sheet.column_dimensions[get_column_letter(index)].width = width
    sheet.freeze_panes = "A2"

    workbook.save(destination)
    log.info("Created journal workbook at '%s'", destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the journal workbook configured in ``config_path``."""

    settings = load_settings(config_path)
    return create_journal_workbook(settings.journal_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tax-ledger-setup",
        description="Create the tax ledger journal workbook.",
    )
    parser.add_argument(
        "--config",
        default=CONFIG_FILE_NAME,
        help=f"Path to configuration file (default: {CONFIG_FILE_NAME})",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Replace the journal workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``tax-ledger-setup``; returns a process exit code."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileExistsError as exc:
        print(f"[ERROR] {exc}\nRe-run with --force to replace it.")
        return 1
    except (FileNotFoundError, KeyError) as exc:
        print(f"[ERROR] {exc}")
        return 1
    except OSError as exc:
        print(f"[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"[SUCCESS] Journal workbook ready at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
