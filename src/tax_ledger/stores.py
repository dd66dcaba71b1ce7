"""In-memory, append-only stores backing the tax ledger.

The stores hold immutable records only. They know nothing about validation or
duplicate rules; the gateways in :mod:`tax_ledger.core_logic` decide what may
be appended and the stores simply keep it, in order, for the lifetime of the
owning :class:`~tax_ledger.core_logic.TaxLedger`.
"""

from __future__ import annotations

import bisect
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterator, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from .constants import EventType


def format_timestamp(moment: datetime, *, timespec: str = "milliseconds") -> str:
    """Render a UTC ``moment`` as an ISO-8601 string with a ``Z`` suffix."""

    return moment.isoformat(timespec=timespec).replace("+00:00", "Z")


def format_amount(value: Decimal) -> int | float:
    """Convert a ``Decimal`` to the JSON number callers expect on the wire."""

    if value == value.to_integral_value():
        return int(value)
    return float(value)


@dataclass(frozen=True)
class SaleItem:
    """A single line item on an invoice."""

    item_id: str
    cost: Decimal
    tax_rate: Decimal

    def to_payload(self) -> Dict[str, object]:
        return {
            "itemId": self.item_id,
            "cost": self.cost,
            "taxRate": self.tax_rate,
        }


@dataclass(frozen=True)
class SaleEvent:
    """A recorded sale. Never mutated once stored."""

    invoice_id: str
    date: datetime
    items: Tuple[SaleItem, ...]

    def to_payload(self) -> Dict[str, object]:
        return {
            "eventType": EventType.SALES.value,
            "invoiceId": self.invoice_id,
            "date": format_timestamp(self.date, timespec="auto"),
            "items": [item.to_payload() for item in self.items],
        }


@dataclass(frozen=True)
class TaxPaymentEvent:
    """A payment made towards the outstanding tax liability."""

    date: datetime
    amount: Decimal

    def to_payload(self) -> Dict[str, object]:
        return {
            "eventType": EventType.TAX_PAYMENT.value,
            "date": format_timestamp(self.date, timespec="auto"),
            "amount": self.amount,
        }


class AmendmentKey(NamedTuple):
    """Composite identity of an amendable line item."""

    invoice_id: str
    item_id: str


@dataclass(frozen=True)
class Amendment:
    """A dated correction overlaid on a sale line item.

    ``sequence`` is assigned by :class:`AmendmentStore` and records insertion
    order across the whole store.
    """

    key: AmendmentKey
    date: datetime
    cost: Decimal
    tax_rate: Decimal
    sequence: int = 0

    def to_payload(self) -> Dict[str, object]:
        return {
            "date": format_timestamp(self.date, timespec="auto"),
            "invoiceId": self.key.invoice_id,
            "itemId": self.key.item_id,
            "cost": self.cost,
            "taxRate": self.tax_rate,
        }


@dataclass(frozen=True)
class EventSnapshot:
    """Point-in-time copy of the event store used by read-only queries."""

    sales: Tuple[SaleEvent, ...]
    payments: Tuple[TaxPaymentEvent, ...]


class EventStore:
    """Append-only collections of sale and tax payment events."""

    def __init__(self) -> None:
        self._sales: List[SaleEvent] = []
        self._payments: List[TaxPaymentEvent] = []

    @property
    def sales(self) -> Tuple[SaleEvent, ...]:
        return tuple(self._sales)

    @property
    def payments(self) -> Tuple[TaxPaymentEvent, ...]:
        return tuple(self._payments)

    def append_sale(self, event: SaleEvent) -> None:
        self._sales.append(event)

    def append_payment(self, event: TaxPaymentEvent) -> None:
        self._payments.append(event)

    def contains_sale(self, event: SaleEvent) -> bool:
        """Return ``True`` when an identical sale (invoice, date, items) is stored.

        Item comparison is element-wise and order-sensitive: the same items in
        a different order describe a different sale.
        """

        return any(
            stored.invoice_id == event.invoice_id
            and stored.date == event.date
            and stored.items == event.items
            for stored in self._sales
        )

    def contains_payment(self, event: TaxPaymentEvent) -> bool:
        """Return ``True`` when a payment with the same date and amount is stored."""

        return any(
            stored.date == event.date and stored.amount == event.amount
            for stored in self._payments
        )

    def snapshot(self) -> EventSnapshot:
        return EventSnapshot(sales=tuple(self._sales), payments=tuple(self._payments))

    def clear(self) -> None:
        self._sales.clear()
        self._payments.clear()

    def __len__(self) -> int:
        return len(self._sales) + len(self._payments)


def _effective_order(amendment: Amendment) -> Tuple[datetime, int]:
    return (amendment.date, amendment.sequence)


def _amendment_date(amendment: Amendment) -> datetime:
    return amendment.date


def select_effective_amendment(
    timeline: Sequence[Amendment],
    as_of: datetime,
) -> Optional[Amendment]:
    """Pick the amendment in force at ``as_of`` from a date-ordered timeline.

    Args:
        timeline (Sequence[Amendment]): Amendments for one line item sorted by
            ``(date, sequence)``.
        as_of (datetime): Query instant. Amendments dated exactly ``as_of``
            qualify.

    Returns:
        Amendment | None: The amendment with the greatest ``date`` not after
            ``as_of``; among equal dates the most recently appended one.
            ``None`` when nothing qualifies.
    """

    index = bisect.bisect_right(timeline, as_of, key=_amendment_date)
    if index == 0:
        return None
    return timeline[index - 1]


class AmendmentStore:
    """Per line item history of amendments.

    Two views are kept for every key: the insertion-ordered history, which is
    what callers see when auditing corrections, and a timeline sorted by
    effective date used for as-of lookups. Entries sharing an effective date
    keep their insertion order on the timeline.
    """

    def __init__(self) -> None:
        self._history: Dict[AmendmentKey, List[Amendment]] = {}
        self._timelines: Dict[AmendmentKey, List[Amendment]] = {}
        self._next_sequence = 1

    def append(self, key: AmendmentKey, date: datetime, cost: Decimal, tax_rate: Decimal) -> Amendment:
        """Store a new amendment for ``key`` and return the stored record."""

        amendment = Amendment(
            key=key,
            date=date,
            cost=cost,
            tax_rate=tax_rate,
            sequence=self._next_sequence,
        )
        self._next_sequence += 1
        self._history.setdefault(key, []).append(amendment)
        bisect.insort_right(
            self._timelines.setdefault(key, []),
            amendment,
            key=_effective_order,
        )
        return amendment

    def history(self, key: AmendmentKey) -> Tuple[Amendment, ...]:
        return tuple(self._history.get(key, ()))

    def latest_effective(self, key: AmendmentKey, as_of: datetime) -> Optional[Amendment]:
        return select_effective_amendment(self._timelines.get(key, ()), as_of)

    def snapshot(self) -> Mapping[AmendmentKey, Tuple[Amendment, ...]]:
        """Return date-ordered timelines for every key, detached from the store."""

        return {key: tuple(timeline) for key, timeline in self._timelines.items()}

    def keys(self) -> Iterator[AmendmentKey]:
        return iter(list(self._history))

    def clear(self) -> None:
        self._history.clear()
        self._timelines.clear()
        self._next_sequence = 1

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._history.values())


__all__ = [
    "SaleItem",
    "SaleEvent",
    "TaxPaymentEvent",
    "AmendmentKey",
    "Amendment",
    "EventSnapshot",
    "EventStore",
    "AmendmentStore",
    "select_effective_amendment",
    "format_timestamp",
    "format_amount",
]
