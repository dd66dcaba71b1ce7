"""Shared pytest fixtures and utilities for the tax ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator

import pytest

# Import from src/ when the package is not installed.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from tax_ledger import cli, constants, core_logic, runtime  # noqa: E402
from tax_ledger.setup_journal import create_journal_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "JournalFile = {journal_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Reporting]\n"
    "RoundToMinorUnit = {round_to_minor_unit}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Paths and values written into one generated config.ini."""

    directory: Path
    config_path: Path
    journal_path: Path
    schema_version: str
    business_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Put sys.path back the way it was once the session ends."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def journal_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an empty journal workbook in a temp folder."""

    def _create_journal(*, subdir: str | None = None, filename: str = "tax_journal.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        journal_path = base_dir / filename
        create_journal_workbook(journal_path, overwrite=True)
        return journal_path

    return _create_journal


@pytest.fixture
def journal_path(journal_factory: Callable[..., Path]) -> Path:
    """Return a fresh journal workbook ready for use in a test."""

    return journal_factory(subdir=f"journal_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, journal_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/journal bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Test Trading Ltd",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        round_to_minor_unit: bool = False,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        journal = journal_factory(subdir=bundle_dir_name)
        journal_entry = journal.name if make_relative else str(journal)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                journal_file=journal_entry,
                business_name=business_name,
                schema_version=schema_version,
                round_to_minor_unit="yes" if round_to_minor_unit else "no",
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            journal_path=journal,
            schema_version=schema_version,
            business_name=business_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Path to a valid config.ini whose journal workbook is empty."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> runtime.RuntimeContext:
    """Context loaded from an empty journal, schema already checked."""

    context = runtime.load_runtime_context(config_file)
    runtime.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def ledger() -> core_logic.TaxLedger:
    """Return an empty, isolated ledger."""

    return core_logic.TaxLedger()


@pytest.fixture
def sale_payload() -> Callable[..., Dict[str, Any]]:
    """Build ``SALES`` payloads; defaults describe INV001/ITEM1 at 1000 @ 20%."""

    def _build(
        *,
        invoice_id: str = "INV001",
        date: str = "2024-01-01T12:00:00Z",
        items: list[Dict[str, Any]] | None = None,
    ) -> Dict[str, Any]:
        return {
            "eventType": "SALES",
            "invoiceId": invoice_id,
            "date": date,
            "items": items if items is not None else [{"itemId": "ITEM1", "cost": 1000, "taxRate": 0.2}],
        }

    return _build


@pytest.fixture
def payment_payload() -> Callable[..., Dict[str, Any]]:
    """Build ``TAX_PAYMENT`` payloads."""

    def _build(*, date: str = "2024-01-02T12:00:00Z", amount: Any = 100) -> Dict[str, Any]:
        return {"eventType": "TAX_PAYMENT", "date": date, "amount": amount}

    return _build


@pytest.fixture
def amendment_payload() -> Callable[..., Dict[str, Any]]:
    """Build amendment payloads targeting INV001/ITEM1 by default."""

    def _build(
        *,
        date: str = "2024-01-02T12:00:00Z",
        invoice_id: str = "INV001",
        item_id: str = "ITEM1",
        cost: Any = 2000,
        tax_rate: Any = 0.2,
    ) -> Dict[str, Any]:
        return {
            "date": date,
            "invoiceId": invoice_id,
            "itemId": item_id,
            "cost": cost,
            "taxRate": tax_rate,
        }

    return _build


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Bare parser for exercising sub-command registration."""

    return argparse.ArgumentParser(prog="tax-ledger", description="Tax ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Sub-parser action attached to ``cli_parser``."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Three no-op command specs with distinct names."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
