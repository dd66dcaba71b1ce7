"""Runtime wiring between the journal workbook and an in-memory ledger.

A :class:`RuntimeContext` bundles the parsed settings, the live workbook and
the ledger rebuilt from it. Front-ends load one per invocation, run ledger
operations against ``context.ledger`` and call :func:`persist_context` to
flush newly accepted journal entries back to disk.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from openpyxl.workbook import Workbook

from . import core_logic, data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION


@dataclass
class RuntimeContext:
    """Container for configuration, workbook and ledger used by front-ends.

    ``persisted_entries`` counts the journal entries already present in the
    workbook so :func:`persist_context` only appends the new ones.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    ledger: core_logic.TaxLedger
    persisted_entries: int = 0
    journal_cleared: bool = False


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load settings, open the journal workbook and replay it into a ledger.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context whose ledger reflects every journal entry.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
        core_logic.TaxLedgerError: If a journal entry no longer replays.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.journal_file)
    ledger = core_logic.replay(data_manager.iter_journal_entries(workbook))
    log.info("Loaded runtime context for journal '%s'", settings.journal_file)
    return RuntimeContext(
        settings=settings,
        workbook=workbook,
        ledger=ledger,
        persisted_entries=len(ledger.journal),
    )


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work with a journal declared for another schema version.

    Raises:
        RuntimeError: If ``SchemaVersion`` in the configuration does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Journal schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Journal schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def reset_context(context: RuntimeContext) -> None:
    """Empty the ledger and mark the workbook journal for clearing."""

    core_logic.reset(context.ledger)
    context.journal_cleared = True
    context.persisted_entries = 0


def persist_context(context: RuntimeContext) -> int:
    """Write journal entries accepted since loading and save the workbook.

    Returns:
        int: Number of journal entries appended to the workbook.
    """

    if context.journal_cleared:
        data_manager.clear_journal(context.workbook)
        context.journal_cleared = False
    pending = context.ledger.journal[context.persisted_entries:]
    for entry in pending:
        data_manager.append_journal_entry(context.workbook, entry)
    data_manager.save_workbook(context.workbook, context.settings.journal_file)
    context.persisted_entries = len(context.ledger.journal)
    log.info(
        "Persisted %d new journal entries to '%s'",
        len(pending),
        context.settings.journal_file,
    )
    return len(pending)


__all__ = [
    "RuntimeContext",
    "load_runtime_context",
    "ensure_schema_version",
    "reset_context",
    "persist_context",
]
