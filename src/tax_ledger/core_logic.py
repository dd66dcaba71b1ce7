"""Business logic layer for the tax ledger.

This module owns the rules: which events and amendments may enter the stores,
and how the tax position is derived from them for an arbitrary query date.
Stores are only ever appended to. A query never mutates anything; it takes a
consistent snapshot of both stores and computes the position from it.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from . import log
from .constants import EventType, JournalOperation
from .stores import (
    Amendment,
    AmendmentKey,
    AmendmentStore,
    EventStore,
    SaleEvent,
    SaleItem,
    TaxPaymentEvent,
    format_amount,
    format_timestamp,
    select_effective_amendment,
)
from .tax_calculator import calculate_tax

# Amounts are kept below 10**16 minor units so sums stay inside the decimal context.
MAX_AMOUNT_EXPONENT = 15


class TaxLedgerError(Exception):
    """Base class for every rejection raised by the ledger operations.

    ``code`` is the stable identifier surfaced to callers and ``http_status``
    is the status a transport layer should answer with.
    """

    code = "TaxLedgerError"
    http_status = 400


class InvalidEventType(TaxLedgerError):
    """Raised when an ingested payload carries an unknown or missing tag."""

    code = "InvalidEventType"


class DuplicateSale(TaxLedgerError):
    """Raised when an identical sale event has already been ingested."""

    code = "DuplicateSale"
    http_status = 409


class DuplicateInvoiceOrPayment(TaxLedgerError):
    """Raised when a payment with the same date and amount already exists."""

    code = "DuplicateInvoiceOrPayment"
    http_status = 409


class MissingFields(TaxLedgerError):
    """Raised when a required field is absent from a payload."""

    code = "MissingFields"


class InvalidFieldValue(MissingFields):
    """Raised when a required field is present but unusable (negative, non-numeric).

    Callers see the ``MissingFields`` code; the subclass only sharpens the message.
    """


class InvalidDate(TaxLedgerError):
    """Raised when a timestamp cannot be parsed as an ISO-8601 calendar instant."""

    code = "InvalidDate"


Event = Union[SaleEvent, TaxPaymentEvent]


@dataclass(frozen=True)
class JournalEntry:
    """One accepted write operation, in acceptance order."""

    sequence: int
    operation: JournalOperation
    payload: Mapping[str, Any]


@dataclass(frozen=True)
class EffectiveItem:
    """Values applied to a line item for a particular query date."""

    invoice_id: str
    item_id: str
    cost: Decimal
    tax_rate: Decimal
    tax: Decimal
    amendment: Optional[Amendment] = None


@dataclass(frozen=True)
class TaxPosition:
    """Tax position as of ``date``. Amounts are exact and un-rounded."""

    date: datetime
    sales_tax_due: Decimal
    payments_made: Decimal

    @property
    def tax_position(self) -> Decimal:
        return self.sales_tax_due - self.payments_made

    def as_payload(self) -> Dict[str, Any]:
        return {
            "date": format_timestamp(self.date),
            "taxPosition": format_amount(self.tax_position),
        }


@dataclass
class TaxLedger:
    """State container holding the stores, the journal and the write lock.

    Each instance is an isolated ledger; tests and the CLI construct their own
    rather than sharing process-wide collections.
    """

    events: EventStore = field(default_factory=EventStore)
    amendments: AmendmentStore = field(default_factory=AmendmentStore)
    journal: List[JournalEntry] = field(default_factory=list)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def record(self, operation: JournalOperation, payload: Mapping[str, Any]) -> JournalEntry:
        entry = JournalEntry(sequence=len(self.journal) + 1, operation=operation, payload=payload)
        self.journal.append(entry)
        return entry


def parse_timestamp(raw: Any) -> datetime:
    """Parse an ISO-8601 value into a timezone-aware UTC ``datetime``.

    Args:
        raw (Any): ISO-8601 string, ``datetime`` or ``date``. Values without a
            UTC offset are taken to be UTC; date-only values mean midnight.

    Returns:
        datetime: The parsed instant converted to UTC.

    Raises:
        InvalidDate: If ``raw`` is blank, of an unsupported type, or not a
            valid calendar timestamp.
    """

    if isinstance(raw, datetime):
        moment = raw
    elif isinstance(raw, date):
        moment = datetime.combine(raw, time.min)
    elif isinstance(raw, str) and raw.strip():
        try:
            moment = datetime.fromisoformat(raw.strip())
        except ValueError as exc:
            log.warning("Rejected unparseable timestamp '%s'", raw)
            raise InvalidDate(f"Invalid date format: {raw!r}") from exc
    else:
        log.warning("Rejected timestamp of type %s", type(raw).__name__)
        raise InvalidDate(f"Invalid date format: {raw!r}")

    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    try:
        return moment.astimezone(UTC)
    except OverflowError as exc:
        log.warning("Rejected timestamp outside the UTC range '%s'", raw)
        raise InvalidDate(f"Date out of range: {raw!r}") from exc


def parse_amount(raw: Any, field_name: str) -> Decimal:
    """Convert a wire value into a non-negative ``Decimal``.

    ``bool`` values are refused even though they are ``int`` subclasses, and
    numbers are converted through ``str`` so ``0.2`` stays ``Decimal("0.2")``.

    Raises:
        MissingFields: If ``raw`` is ``None``.
        InvalidFieldValue: If ``raw`` is not a finite, non-negative number.
    """

    if raw is None:
        raise MissingFields(f"Missing required field: {field_name}")
    if isinstance(raw, bool):
        raise InvalidFieldValue(f"Field '{field_name}' must be numeric")
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise InvalidFieldValue(f"Field '{field_name}' must be numeric") from exc
    if not value.is_finite():
        raise InvalidFieldValue(f"Field '{field_name}' must be finite")
    if value < 0:
        raise InvalidFieldValue(f"Field '{field_name}' must be zero or positive")
    if value and value.adjusted() > MAX_AMOUNT_EXPONENT:
        raise InvalidFieldValue(f"Field '{field_name}' is too large")
    return value


def _require_text(payload: Mapping[str, Any], field_name: str) -> str:
    value = payload.get(field_name)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise MissingFields(f"Missing required field: {field_name}")
    return str(value)


def _require_present(payload: Mapping[str, Any], *field_names: str) -> None:
    missing = [
        name
        for name in field_names
        if payload.get(name) is None or (isinstance(payload.get(name), str) and not payload[name].strip())
    ]
    if missing:
        raise MissingFields(f"Missing required fields: {', '.join(missing)}")


def build_sale_event(payload: Mapping[str, Any]) -> SaleEvent:
    """Validate a ``SALES`` payload and materialize a :class:`SaleEvent`.

    Args:
        payload (Mapping[str, Any]): Wire payload with ``invoiceId``, ``date``
            and a non-empty ``items`` list.

    Returns:
        SaleEvent: Immutable event with items in submission order.

    Raises:
        MissingFields: If the invoice id, date or items are absent, or an item
            lacks an id, cost or tax rate.
        InvalidFieldValue: When a cost or tax rate is negative or non-numeric.
        InvalidDate: If ``date`` cannot be parsed.
    """

    _require_present(payload, "invoiceId", "date")
    raw_items = payload.get("items")
    if not raw_items or isinstance(raw_items, (str, bytes, Mapping)):
        raise MissingFields("Sales events require a non-empty items list")

    items: List[SaleItem] = []
    seen_item_ids = set()
    for raw_item in raw_items:
        if not isinstance(raw_item, Mapping):
            raise InvalidFieldValue("Sale items must be objects")
        item_id = _require_text(raw_item, "itemId")
        if item_id in seen_item_ids:
            raise InvalidFieldValue(f"Duplicate itemId '{item_id}' in invoice")
        seen_item_ids.add(item_id)
        items.append(
            SaleItem(
                item_id=item_id,
                cost=parse_amount(raw_item.get("cost"), "cost"),
                tax_rate=parse_amount(raw_item.get("taxRate"), "taxRate"),
            )
        )

    return SaleEvent(
        invoice_id=str(payload["invoiceId"]),
        date=parse_timestamp(payload["date"]),
        items=tuple(items),
    )


def build_tax_payment_event(payload: Mapping[str, Any]) -> TaxPaymentEvent:
    """Validate a ``TAX_PAYMENT`` payload and materialize the event."""

    _require_present(payload, "date", "amount")
    return TaxPaymentEvent(
        date=parse_timestamp(payload["date"]),
        amount=parse_amount(payload["amount"], "amount"),
    )


def _resolve_event_type(payload: Any) -> EventType:
    if not isinstance(payload, Mapping):
        log.warning("Rejected event that is not a mapping: %r", payload)
        raise InvalidEventType("Invalid event type")
    raw = payload.get("eventType")
    try:
        return EventType(raw)
    except ValueError as exc:
        log.warning("Rejected event with invalid type %r", raw)
        raise InvalidEventType("Invalid event type") from exc


def ingest(ledger: TaxLedger, payload: Mapping[str, Any]) -> Event:
    """Validate and append a sale or tax payment event.

    The duplicate check and the append happen under the ledger lock so two
    identical submissions cannot both be accepted.

    Args:
        ledger (TaxLedger): Ledger receiving the event.
        payload (Mapping[str, Any]): Tagged wire payload; ``eventType`` must be
            ``"SALES"`` or ``"TAX_PAYMENT"``.

    Returns:
        SaleEvent | TaxPaymentEvent: The stored event.

    Raises:
        InvalidEventType: If the tag is missing or unknown.
        DuplicateSale: When an identical sale (invoice, date, items) exists.
        DuplicateInvoiceOrPayment: When a payment with the same date and
            amount exists.
        MissingFields: If required fields are absent.
        InvalidFieldValue: When amounts or rates are negative or non-numeric.
        InvalidDate: If the event date cannot be parsed.
    """

    event_type = _resolve_event_type(payload)
    try:
        event = build_sale_event(payload) if event_type is EventType.SALES else build_tax_payment_event(payload)
    except MissingFields as exc:
        log.warning("Rejected %s event: %s", event_type.value, exc)
        raise

    if isinstance(event, SaleEvent):
        sale = event
        with ledger._lock:
            if ledger.events.contains_sale(sale):
                log.warning(
                    "Rejected duplicate sale for invoice '%s' dated %s",
                    sale.invoice_id,
                    format_timestamp(sale.date),
                )
                raise DuplicateSale("Duplicate sale event detected")
            ledger.events.append_sale(sale)
            ledger.record(JournalOperation.INGEST, sale.to_payload())
        log.info(
            "Ingested SALES event for invoice '%s' dated %s (%d items)",
            sale.invoice_id,
            format_timestamp(sale.date),
            len(sale.items),
        )
        return sale

    payment = event
    with ledger._lock:
        if ledger.events.contains_payment(payment):
            log.warning(
                "Rejected duplicate tax payment of %s dated %s",
                payment.amount,
                format_timestamp(payment.date),
            )
            raise DuplicateInvoiceOrPayment("Duplicate tax payment detected")
        ledger.events.append_payment(payment)
        ledger.record(JournalOperation.INGEST, payment.to_payload())
    log.info(
        "Ingested TAX_PAYMENT event of %s dated %s",
        payment.amount,
        format_timestamp(payment.date),
    )
    return payment


def amend(ledger: TaxLedger, payload: Mapping[str, Any]) -> Amendment:
    """Append a dated correction for a sale line item.

    Prior amendments for the same item are kept; resubmitting an identical
    correction is accepted and becomes another history entry. ``cost`` and
    ``tax_rate`` of zero are valid values, only absent values are missing.

    Args:
        ledger (TaxLedger): Ledger receiving the amendment.
        payload (Mapping[str, Any]): ``date``, ``invoiceId``, ``itemId``,
            ``cost`` and ``taxRate``.

    Returns:
        Amendment: The stored amendment including its store sequence number.

    Raises:
        MissingFields: If any of the five fields is absent.
        InvalidFieldValue: When ``cost`` or ``taxRate`` is negative or
            non-numeric.
        InvalidDate: If ``date`` cannot be parsed.
    """

    if not isinstance(payload, Mapping):
        raise MissingFields("Missing required fields")
    try:
        _require_present(payload, "date", "invoiceId", "itemId", "cost", "taxRate")
        key = AmendmentKey(invoice_id=str(payload["invoiceId"]), item_id=str(payload["itemId"]))
        cost = parse_amount(payload["cost"], "cost")
        tax_rate = parse_amount(payload["taxRate"], "taxRate")
    except MissingFields as exc:
        log.warning("Rejected amendment: %s", exc)
        raise
    effective = parse_timestamp(payload["date"])

    with ledger._lock:
        amendment = ledger.amendments.append(key, effective, cost, tax_rate)
        ledger.record(JournalOperation.AMEND, amendment.to_payload())
    log.info(
        "Amended invoice '%s' item '%s' effective %s (cost=%s, tax_rate=%s)",
        key.invoice_id,
        key.item_id,
        format_timestamp(effective),
        cost,
        tax_rate,
    )
    return amendment


def _effective_item(
    invoice_id: str,
    item: SaleItem,
    timelines: Mapping[AmendmentKey, Tuple[Amendment, ...]],
    as_of: datetime,
) -> EffectiveItem:
    key = AmendmentKey(invoice_id=invoice_id, item_id=item.item_id)
    amendment = select_effective_amendment(timelines.get(key, ()), as_of)
    cost = amendment.cost if amendment else item.cost
    tax_rate = amendment.tax_rate if amendment else item.tax_rate
    return EffectiveItem(
        invoice_id=invoice_id,
        item_id=item.item_id,
        cost=cost,
        tax_rate=tax_rate,
        tax=calculate_tax(cost, tax_rate),
        amendment=amendment,
    )


def resolve_effective_item(
    ledger: TaxLedger,
    invoice_id: str,
    item: SaleItem,
    query_date: Union[str, datetime],
) -> EffectiveItem:
    """Return the cost and tax rate that apply to ``item`` at ``query_date``.

    Raises:
        InvalidDate: If ``query_date`` cannot be parsed.
    """

    as_of = parse_timestamp(query_date)
    with ledger._lock:
        timelines = ledger.amendments.snapshot()
    return _effective_item(invoice_id, item, timelines, as_of)


def explain_tax_position(ledger: TaxLedger, query_date: Union[str, datetime]) -> List[EffectiveItem]:
    """List every line item counted in the position at ``query_date``."""

    as_of = parse_timestamp(query_date)
    with ledger._lock:
        events = ledger.events.snapshot()
        timelines = ledger.amendments.snapshot()
    return [
        _effective_item(sale.invoice_id, item, timelines, as_of)
        for sale in events.sales
        if sale.date <= as_of
        for item in sale.items
    ]


def calculate_tax_position(ledger: TaxLedger, query_date: Union[str, datetime]) -> TaxPosition:
    """Compute the tax position as of ``query_date``.

    Sales and payments dated at or before ``query_date`` are counted. Each sale
    item uses the most recent amendment effective at or before
    ``query_date``, falling back to the originally ingested values. The result
    keeps full precision and may be negative when payments exceed tax due.

    Args:
        ledger (TaxLedger): Ledger to query. Never mutated.
        query_date (str | datetime): ISO-8601 timestamp of the as-of instant.

    Returns:
        TaxPosition: Sales tax due, payments made and their difference.

    Raises:
        InvalidDate: If ``query_date`` cannot be parsed.
    """

    as_of = parse_timestamp(query_date)
    with ledger._lock:
        events = ledger.events.snapshot()
        timelines = ledger.amendments.snapshot()

    sales_tax_due = Decimal("0")
    for sale in events.sales:
        if sale.date > as_of:
            continue
        for item in sale.items:
            sales_tax_due += _effective_item(sale.invoice_id, item, timelines, as_of).tax

    payments_made = Decimal("0")
    for payment in events.payments:
        if payment.date <= as_of:
            payments_made += payment.amount

    position = TaxPosition(date=as_of, sales_tax_due=sales_tax_due, payments_made=payments_made)
    log.info(
        "Calculated tax position as of %s: sales_tax=%s payments=%s position=%s",
        format_timestamp(as_of),
        sales_tax_due,
        payments_made,
        position.tax_position,
    )
    return position


def reset(ledger: TaxLedger) -> None:
    """Drop every event, amendment and journal entry held by ``ledger``."""

    with ledger._lock:
        ledger.events.clear()
        ledger.amendments.clear()
        ledger.journal.clear()
    log.info("Ledger reset to its empty initial state")


def apply_journal_entry(ledger: TaxLedger, entry: JournalEntry) -> Union[Event, Amendment]:
    """Re-run the write operation recorded in ``entry`` against ``ledger``."""

    if entry.operation is JournalOperation.INGEST:
        return ingest(ledger, entry.payload)
    if entry.operation is JournalOperation.AMEND:
        return amend(ledger, entry.payload)
    raise ValueError(f"Unsupported journal operation: {entry.operation}")


def replay(entries: Iterable[JournalEntry], ledger: Optional[TaxLedger] = None) -> TaxLedger:
    """Rebuild a ledger by applying journal entries in order.

    Args:
        entries (Iterable[JournalEntry]): Journal entries in their recorded
            order.
        ledger (TaxLedger | None): Target ledger. A fresh one is created when
            omitted.

    Returns:
        TaxLedger: The ledger after every entry has been applied.

    Raises:
        TaxLedgerError: The first rejection raised by a replayed write. Entries
            before it remain applied.
    """

    target = ledger if ledger is not None else TaxLedger()
    count = 0
    for entry in entries:
        apply_journal_entry(target, entry)
        count += 1
    log.info("Replayed %d journal entries", count)
    return target


__all__ = [
    "TaxLedgerError",
    "InvalidEventType",
    "DuplicateSale",
    "DuplicateInvoiceOrPayment",
    "MissingFields",
    "InvalidFieldValue",
    "InvalidDate",
    "JournalEntry",
    "EffectiveItem",
    "TaxPosition",
    "TaxLedger",
    "parse_timestamp",
    "parse_amount",
    "build_sale_event",
    "build_tax_payment_event",
    "ingest",
    "amend",
    "resolve_effective_item",
    "explain_tax_position",
    "calculate_tax_position",
    "reset",
    "apply_journal_entry",
    "replay",
]
