"""Command-line entry points for the tax ledger.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the payloads consumed by the business layer. The
payloads have the same shape a transport layer would receive on the wire, so
the CLI exercises exactly the same validation as any other front-end.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, runtime
from .constants import EventType
from .stores import format_amount
from .tax_calculator import round_to_minor_unit


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[runtime.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="tax-ledger",
        description="Record sales and tax payments and query the tax position.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare commands that append to (or reset) the journal."""
    specs = {
        "sale": register_sale_command(subparsers),
        "payment": register_payment_command(subparsers),
        "amend": register_amend_command(subparsers),
        "reset": register_reset_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only commands."""
    specs = {
        "position": register_position_command(subparsers),
        "explain": register_explain_command(subparsers),
        "log": register_log_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Ingest a sale event."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.add_argument("--date", required=True, help="ISO-8601 timestamp of the sale.")
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item_argument,
            required=True,
            metavar="ITEM_ID:COST:TAX_RATE",
            help="Line item; repeat for each item in invoice order.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale, mutates=True)


def register_payment_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``payment``."""
    name = "payment"
    help_text = "Ingest a tax payment event."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", required=True)
        parser.add_argument("--amount", required=True, help="Amount in minor currency units.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_payment, mutates=True)


def register_amend_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``amend``."""
    name = "amend"
    help_text = "Record a dated correction to a sale line item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", required=True, help="Effective date of the correction.")
        parser.add_argument("--invoice-id", required=True)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--cost", required=True)
        parser.add_argument("--tax-rate", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_amend, mutates=True)


def register_reset_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reset``."""
    name = "reset"
    help_text = "Drop every recorded event and amendment."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--yes", action="store_true", help="Confirm that the journal should be emptied.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reset, mutates=True)


def register_position_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``position``."""
    name = "position"
    help_text = "Display the tax position as of a date."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_position)


def register_explain_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``explain``."""
    name = "explain"
    help_text = "List the effective values of every line item counted at a date."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_explain)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the operation journal."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report)


def load_runtime_context(config_path: Optional[Path] = None) -> runtime.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = runtime.load_runtime_context(target)
    runtime.ensure_schema_version(context)
    return context


def dispatch_command(
    context: runtime.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def parse_item_argument(raw: str) -> Dict[str, str]:
    """Split an ``ITEM_ID:COST:TAX_RATE`` argument into a wire item.

    The item id may itself contain colons; cost and rate are taken from the
    right.
    """
    parts = raw.rsplit(":", 2)
    if len(parts) != 3 or not all(part.strip() for part in parts):
        raise argparse.ArgumentTypeError(f"Expected ITEM_ID:COST:TAX_RATE, got {raw!r}")
    item_id, cost, tax_rate = parts
    return {"itemId": item_id, "cost": cost, "taxRate": tax_rate}


def translate_sale(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into a ``SALES`` payload."""
    return {
        "eventType": EventType.SALES.value,
        "invoiceId": args.invoice_id,
        "date": args.date,
        "items": list(args.items),
    }


def translate_payment(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into a ``TAX_PAYMENT`` payload."""
    return {
        "eventType": EventType.TAX_PAYMENT.value,
        "date": args.date,
        "amount": args.amount,
    }


def translate_amend(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an amendment payload."""
    return {
        "date": args.date,
        "invoiceId": args.invoice_id,
        "itemId": args.item_id,
        "cost": args.cost,
        "taxRate": args.tax_rate,
    }


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return format_amount(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def emit(document: Any) -> None:
    """Print ``document`` as JSON on stdout."""
    print(json.dumps(document, default=_json_default, indent=2))


def run_sale(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Ingest a sale via the BLL."""
    core_logic.ingest(context.ledger, translate_sale(args))
    return 0


def run_payment(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Ingest a tax payment via the BLL."""
    core_logic.ingest(context.ledger, translate_payment(args))
    return 0


def run_amend(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Record an amendment via the BLL."""
    core_logic.amend(context.ledger, translate_amend(args))
    return 0


def run_reset(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Empty the ledger and its journal once confirmed."""
    if not getattr(args, "yes", False):
        log.error("Refusing to reset the journal without --yes")
        return 1
    runtime.reset_context(context)
    return 0


def run_position(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the tax position, rounded when the configuration asks for it."""
    position = core_logic.calculate_tax_position(context.ledger, args.date)
    payload = position.as_payload()
    if context.settings.round_to_minor_unit:
        payload["taxPosition"] = format_amount(round_to_minor_unit(position.tax_position))
    emit(payload)
    return 0


def run_explain(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the effective values of every counted line item."""
    lines: List[Dict[str, Any]] = [
        {
            "invoiceId": line.invoice_id,
            "itemId": line.item_id,
            "cost": line.cost,
            "taxRate": line.tax_rate,
            "tax": line.tax,
            "amended": line.amendment is not None,
        }
        for line in core_logic.explain_tax_position(context.ledger, args.date)
    ]
    emit(lines)
    return 0


def run_log_report(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the operation journal in recorded order."""
    emit(
        [
            {"sequence": entry.sequence, "operation": entry.operation.value, "payload": entry.payload}
            for entry in context.ledger.journal
        ]
    )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.TaxLedgerError):
        log.error("%s: %s", error.code, error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            runtime.persist_context(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
