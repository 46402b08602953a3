"""Command-line entry points for the POS ledger backend.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into request envelopes for :mod:`pos_ledger.api`.
Every command prints the reply envelope as JSON on stdout, so the CLI behaves
exactly like any other front-end talking to the request layer.
"""

from __future__ import annotations

import argparse
import json
import sys
from contextlib import nullcontext
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import api, core_logic, log
from .constants import Action, CashNoteType, ItemType, SheetName
from .errors import BackendError, ValidationError
from .serializer import RequestSerializer, workbook_lock


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutating: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pos-ledger",
        description="Command-line tools for the POS ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the current directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    raw_spec = register_request_command(subparsers)
    raw_spec.register(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values(), raw_spec])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and cash notes."""
    specs = {
        "record-transaction": register_record_transaction_command(subparsers),
        "cash-note": register_cash_note_command(subparsers),
        "save-item": register_save_item_command(subparsers),
        "delete-item": register_delete_item_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as dumps and reports."""
    specs = {
        "initial-data": register_initial_data_command(subparsers),
        "dump": register_dump_command(subparsers),
        "report": register_report_command(subparsers),
        "location": register_location_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_record_transaction_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``record-transaction``."""
    name = "record-transaction"
    help_text = "Commit a cart read from a JSON file (use '-' for stdin)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--cart", required=True, help="Path to the recordTransaction payload.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_record_transaction, mutating=True)


def register_cash_note_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cash-note``."""
    name = "cash-note"
    help_text = "Record money entering or leaving the till."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--type", dest="note_type", choices=[member.value for member in CashNoteType], required=True)
        parser.add_argument("--description", default="")
        parser.add_argument("--amount", required=True)
        parser.add_argument("--datetime", dest="timestamp", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cash_note, mutating=True)


def register_save_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``save-item``."""
    name = "save-item"
    help_text = "Create or update a product or service."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--type",
            dest="item_type",
            choices=[ItemType.PRODUCT.value, ItemType.SERVICE.value],
            required=True,
        )
        parser.add_argument("--id", dest="item_id", default=None, help="Existing identifier to update.")
        parser.add_argument("--name", required=True)
        parser.add_argument("--category", default="")
        parser.add_argument("--price", required=True)
        parser.add_argument("--stock", default=None)
        parser.add_argument("--buy-price", "--cost-price", dest="buy_price", default=None)
        parser.add_argument("--low-stock", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_save_item, mutating=True)


def register_delete_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-item``."""
    name = "delete-item"
    help_text = "Delete a product or service by identifier."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--type",
            dest="item_type",
            choices=[ItemType.PRODUCT.value, ItemType.SERVICE.value],
            required=True,
        )
        parser.add_argument("--id", dest="item_id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_item, mutating=True)


def register_initial_data_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``initial-data``."""
    name = "initial-data"
    help_text = "Print catalog, ledger, customers and cash notes."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_initial_data)


def register_dump_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dump``."""
    name = "dump"
    help_text = "Print the raw rows of one sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sheet", choices=[member.value for member in SheetName], required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dump)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Print transactions or cash notes within a date range."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start", required=True, help="First day (YYYY-MM-DD), inclusive.")
        parser.add_argument("--end", required=True, help="Last day (YYYY-MM-DD), inclusive.")
        parser.add_argument(
            "--sheet",
            choices=[SheetName.TRANSACTIONS.value, SheetName.CASH_NOTES.value],
            default=SheetName.TRANSACTIONS.value,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_report)


def register_location_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``location``."""
    name = "location"
    help_text = "Print the path of the backing workbook."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_location)


def register_request_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``request``."""
    name = "request"
    help_text = "Execute a raw {action, payload} envelope read from a file or stdin."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--file", default="-", help="Path to the envelope (default: stdin).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_request, mutating=True)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(config_path)


def dispatch_command(
    context: core_logic.RuntimeContext,
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


def read_json_source(source: str) -> Any:
    """Load JSON from a file path, or from stdin when ``source`` is ``-``.

    Raises:
        FileNotFoundError: If the path does not exist.
        ValidationError: If the content is not valid JSON.
    """
    text = sys.stdin.read() if source == "-" else Path(source).expanduser().read_text(encoding="utf-8")
    try:
        return json.loads(text)
    except ValueError as exc:
        raise ValidationError(f"{source} does not contain valid JSON: {exc}") from exc


def envelope(action: Action, payload: Any) -> Dict[str, Any]:
    return {"action": action.value, "payload": payload}


def translate_record_transaction(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate CLI args into a recordTransaction envelope."""
    return envelope(Action.RECORD_TRANSACTION, read_json_source(args.cart))


def translate_cash_note(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate CLI args into a recordCashNote envelope."""
    payload: Dict[str, Any] = {
        "type": args.note_type,
        "description": args.description,
        "amount": args.amount,
    }
    if args.timestamp:
        payload["datetime"] = args.timestamp
    return envelope(Action.RECORD_CASH_NOTE, payload)


def translate_save_item(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate CLI args into a saveItem envelope."""
    item_data: Dict[str, Any] = {
        "id": args.item_id,
        "name": args.name,
        "category": args.category,
        "price": args.price,
    }
    if args.item_type == ItemType.PRODUCT.value:
        item_data.update(stock=args.stock, buy_price=args.buy_price, low_stock=args.low_stock)
    return envelope(Action.SAVE_ITEM, {"itemData": item_data, "type": args.item_type})


def translate_delete_item(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate CLI args into a deleteItem envelope."""
    return envelope(Action.DELETE_ITEM, {"id": args.item_id, "type": args.item_type})


def translate_report(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate CLI args into a getFilteredData envelope."""
    return envelope(
        Action.GET_FILTERED_DATA,
        {"startDate": args.start, "endDate": args.end, "sheetName": args.sheet},
    )


def emit_response(
    context: core_logic.RuntimeContext,
    request: Any,
    *,
    serializer: Optional[RequestSerializer] = None,
) -> int:
    """Run ``request`` through the request layer and print the reply envelope.

    Returns:
        int: ``0`` for a success envelope, ``2`` for an error envelope.
    """
    response = api.handle_request(context, request, serializer=serializer)
    print(api.encode_response(response))
    return 0 if response["status"] == "success" else 2


def run_record_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Commit a cart through the request layer."""
    return emit_response(context, translate_record_transaction(args))


def run_cash_note(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return emit_response(context, translate_cash_note(args))


def run_save_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return emit_response(context, translate_save_item(args))


def run_delete_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return emit_response(context, translate_delete_item(args))


def run_initial_data(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return emit_response(context, envelope(Action.GET_INITIAL_DATA, {}))


def run_dump(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return emit_response(context, envelope(Action.GET_SHEET_DATA, {"sheetName": args.sheet}))


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return emit_response(context, translate_report(args))


def run_location(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return emit_response(context, envelope(Action.GET_STORE_LOCATION, {}))


def run_request(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute an envelope exactly as supplied."""
    return emit_response(context, read_json_source(args.file))


def command_lock(args: argparse.Namespace, command_table: Mapping[str, CommandSpec]):
    """Return the guard a command runs under.

    Mutating commands hold the workbook lock from loading the workbook until
    the request layer has saved it. Read-only commands run unguarded.
    """
    spec = command_table.get(getattr(args, "command", None))
    if spec is None or not spec.mutating:
        return nullcontext()
    settings = core_logic.load_settings(getattr(args, "config", None))
    return workbook_lock(settings.data_file, settings.lock_timeout)


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes.

    Backend errors raised outside the request layer (lock timeouts, unreadable
    input) are still printed as an error envelope.
    """
    if isinstance(error, BackendError):
        log.error("%s", error)
        print(api.encode_response(api.error_response(error)))
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
        with command_lock(args, command_table):
            context = load_runtime_context(getattr(args, "config", None))
            return dispatch_command(context, args, command_table)
    except Exception as error:
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
