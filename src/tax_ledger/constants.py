"""Enumerations shared across the tax ledger modules.

Keeps the identifiers used on the wire, in the journal workbook and in the CLI
in one place so the stores, the business logic and the data access layer
agree on their spelling.
"""

from __future__ import annotations

from enum import Enum


# Journal workbook layout version expected by this release.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class EventType(str, Enum):
    """Discriminant values accepted by the ingestion gateway."""

    SALES = "SALES"
    TAX_PAYMENT = "TAX_PAYMENT"


class JournalOperation(str, Enum):
    """Write operations recorded in the replay journal."""

    INGEST = "INGEST"
    AMEND = "AMEND"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    JOURNAL = "Journal"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "EventType",
    "JournalOperation",
    "SheetName",
]
