"""Business logic layer for the point-of-sale backend.

This module holds the transaction commit pipeline. Given a cart it, in this
fixed order:

1. materializes ad-hoc cart entries into permanent product rows,
2. appends one immutable transaction record,
3. decrements tracked stock in a single bulk pass over the product sheet,
4. finds-or-creates the customer spending aggregate.

The workbook offers no multi-row atomicity, so the pipeline must run inside
the request lock (see :mod:`pos_ledger.serializer`). A failing step aborts the
remaining steps; steps already applied are kept, not compensated.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from openpyxl.workbook import Workbook

from . import data_manager, ids, log, set_log_level
from .constants import (
    ANONYMOUS_CUSTOMER,
    CASH_NOTE_ID_PREFIX,
    CUSTOM_ID_MARKER,
    EXPECTED_SCHEMA_VERSION,
    PRODUCT_ID_PREFIX,
    TRANSACTION_ID_PREFIX,
    UNLIMITED_STOCK,
    CashNoteType,
    ItemType,
)
from .errors import ValidationError


STEP_MATERIALIZE = "materialize_custom_items"
STEP_APPEND_LEDGER = "append_transaction_record"
STEP_ADJUST_INVENTORY = "adjust_inventory"
STEP_UPSERT_CUSTOMER = "upsert_customer"

PIPELINE_STEPS: tuple[str, ...] = (
    STEP_MATERIALIZE,
    STEP_APPEND_LEDGER,
    STEP_ADJUST_INVENTORY,
    STEP_UPSERT_CUSTOMER,
)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass
class LineItem:
    """One cart entry.

    Mutable on purpose: materialization rewrites ``id`` and ``type`` in place
    so the recorded transaction references the permanent catalog row.
    """

    id: Optional[str]
    name: str
    type: ItemType
    price: Decimal
    quantity: int
    category: Optional[str] = None

    @property
    def is_adhoc(self) -> bool:
        return self.type is ItemType.CUSTOM or not self.id or self.id.startswith(CUSTOM_ID_MARKER)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "price": self.price,
            "quantity": self.quantity,
            "category": self.category,
        }


@dataclass
class TransactionCommand:
    """User intent for recording a completed sale."""

    items: List[LineItem]
    customer_name: str
    total: Decimal
    payment_method: str
    customer_ref: Optional[str] = None
    subtotal: Optional[Decimal] = None
    discount: Decimal = Decimal("0")
    timestamp: Optional[datetime] = None
    operator: Optional[str] = None


@dataclass(frozen=True)
class CashNoteCommand:
    """User intent for recording a cash movement."""

    note_type: CashNoteType
    description: str
    amount: Decimal
    timestamp: Optional[datetime] = None


@dataclass
class CommitResult:
    """Outcome of :func:`commit_transaction`."""

    transaction: data_manager.TransactionRow
    materialized: List[data_manager.ProductRow]
    stock_changes: Dict[str, int]
    customer: Optional[data_manager.CustomerRow]
    completed_steps: List[str]

    @property
    def transaction_id(self) -> str:
        return self.transaction.transaction_id


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` unchanged, or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_cached_rows(context: RuntimeContext, name: str, loader: Callable[[Workbook], Any]) -> List[Any]:
    bucket = _get_cache_bucket(context, name)
    if "all" not in bucket:
        bucket["all"] = list(loader(context.workbook))
        log.debug("Populated %s cache with %d entries", name, len(bucket["all"]))
    return bucket["all"]


def load_settings(config_path: Optional[Path] = None) -> data_manager.ConfigSettings:
    """Locate and parse ``config.ini`` without opening the workbook."""
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    set_log_level(settings.log_level)
    return settings


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    settings = load_settings(config_path)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook and
            an empty cache.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return cached product rows in sheet order."""
    return list(_ensure_cached_rows(context, "products", data_manager.iter_products))


def list_services(context: RuntimeContext) -> List[data_manager.ServiceRow]:
    """Return cached service rows in sheet order."""
    return list(_ensure_cached_rows(context, "services", data_manager.iter_services))


def list_transactions(context: RuntimeContext) -> List[data_manager.TransactionRow]:
    """Return the append-only transaction ledger in sheet order."""
    return list(_ensure_cached_rows(context, "transactions", data_manager.iter_transactions))


def list_customers(context: RuntimeContext) -> List[data_manager.CustomerRow]:
    """Return customer aggregates in sheet order."""
    return list(_ensure_cached_rows(context, "customers", data_manager.iter_customers))


def list_cash_notes(context: RuntimeContext) -> List[data_manager.CashNoteRow]:
    """Return cash notes in sheet order."""
    return list(_ensure_cached_rows(context, "cash_notes", data_manager.iter_cash_notes))


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


def first_present(payload: Mapping[str, Any], *keys: str) -> Any:
    """Return the value of the first key in ``keys`` that is set and non-blank.

    Lets a payload field be sent under its wire name or a longer alias.
    """
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_money(raw: object, field_name: str) -> Decimal:
    """Parse a monetary payload value.

    Raises:
        ValidationError: If ``raw`` is missing or not a finite number.
    """
    if raw is None or isinstance(raw, bool) or raw == "":
        raise ValidationError(f"Missing numeric field: {field_name}")
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid number for {field_name}: {raw!r}") from exc
    if not value.is_finite():
        raise ValidationError(f"Invalid number for {field_name}: {raw!r}")
    return value


def parse_timestamp(raw: object, field_name: str = "datetime") -> Optional[datetime]:
    """Parse an optional ISO-8601 timestamp from a payload."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    try:
        return datetime.fromisoformat(str(raw))
    except ValueError as exc:
        raise ValidationError(f"Invalid timestamp for {field_name}: {raw!r}") from exc


def require_positive_quantity(raw: object) -> int:
    """Validate that a line item quantity is a strictly positive integer.

    Raises:
        ValidationError: If the quantity is missing, fractional, or not above zero.
    """
    quantity = data_manager.to_int(raw)
    if quantity is None or quantity <= 0:
        log.error("Quantity validation failed: %r", raw)
        raise ValidationError(f"Quantity must be a positive integer, got {raw!r}")
    return quantity


def parse_line_item(raw: object) -> LineItem:
    """Build a :class:`LineItem` from one entry of the payload's ``items`` list."""
    if not isinstance(raw, Mapping):
        raise ValidationError("Each cart item must be an object")

    item_id = raw.get("id")
    item_id = str(item_id) if item_id not in (None, "") else None
    raw_type = raw.get("type")
    if raw_type in (None, ""):
        if item_id is not None and not item_id.startswith(CUSTOM_ID_MARKER):
            raise ValidationError(f"Cart item '{item_id}' has no type")
        item_type = ItemType.CUSTOM
    else:
        try:
            item_type = ItemType(str(raw_type).lower())
        except ValueError as exc:
            raise ValidationError(f"Unknown item type: {raw_type!r}") from exc

    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Cart item name is required")

    category = raw.get("category")
    return LineItem(
        id=item_id,
        name=name.strip(),
        type=item_type,
        price=parse_money(raw.get("price"), "price"),
        quantity=require_positive_quantity(raw.get("quantity")),
        category=str(category) if category not in (None, "") else None,
    )


def build_transaction_command(payload: object) -> TransactionCommand:
    """Translate a ``recordTransaction`` payload into a :class:`TransactionCommand`.

    Raises:
        ValidationError: When the payload shape or any value is malformed.
    """
    if not isinstance(payload, Mapping):
        raise ValidationError("Transaction payload must be an object")

    raw_items = payload.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("Transaction must contain at least one item")
    items = [parse_line_item(raw) for raw in raw_items]

    customer_name = payload.get("customerName") or ""
    if not isinstance(customer_name, str):
        raise ValidationError("customerName must be text")
    customer_ref = first_present(payload, "rme", "customerRef")
    payment_method = payload.get("paymentMethod")
    if not isinstance(payment_method, str) or not payment_method.strip():
        raise ValidationError("paymentMethod is required")

    total = parse_money(payload.get("total"), "total")
    subtotal_raw = payload.get("subtotal")
    discount_raw = payload.get("discount")
    operator = payload.get("operator")

    return TransactionCommand(
        items=items,
        customer_name=customer_name.strip(),
        customer_ref=str(customer_ref).strip() if customer_ref not in (None, "") else None,
        subtotal=parse_money(subtotal_raw, "subtotal") if subtotal_raw not in (None, "") else None,
        discount=parse_money(discount_raw, "discount") if discount_raw not in (None, "") else Decimal("0"),
        total=total,
        payment_method=payment_method.strip(),
        timestamp=parse_timestamp(payload.get("datetime")),
        operator=str(operator) if operator not in (None, "") else None,
    )


def build_cash_note_command(payload: object) -> CashNoteCommand:
    """Translate a ``recordCashNote`` payload into a :class:`CashNoteCommand`."""
    if not isinstance(payload, Mapping):
        raise ValidationError("Cash note payload must be an object")
    try:
        note_type = CashNoteType(str(payload.get("type", "")).lower())
    except ValueError as exc:
        raise ValidationError(f"Cash note type must be 'in' or 'out', got {payload.get('type')!r}") from exc
    description = payload.get("description") or ""
    return CashNoteCommand(
        note_type=note_type,
        description=str(description),
        amount=parse_money(payload.get("amount"), "amount"),
        timestamp=parse_timestamp(payload.get("datetime")),
    )


# ---------------------------------------------------------------------------
# Portable encoding
# ---------------------------------------------------------------------------


def json_default(value: object) -> object:
    """``json.dumps`` hook for :class:`~decimal.Decimal` and date values."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_items(items: List[LineItem]) -> str:
    """Serialize line items to the JSON stored in ``ItemsJSON``."""
    return json.dumps([item.to_dict() for item in items], default=json_default)


def decode_items(items_json: Optional[str]) -> List[Dict[str, Any]]:
    """Decode an ``ItemsJSON`` cell; prices come back as :class:`~decimal.Decimal`."""
    if not items_json:
        return []
    return json.loads(items_json, parse_float=Decimal)


def decode_history(history_json: object) -> List[str]:
    """Decode a customer's transaction history, or start an empty one.

    Blank, unparseable, or non-list cells all yield ``[]``.
    """
    if history_json in (None, ""):
        return []
    try:
        history = json.loads(str(history_json))
    except ValueError:
        log.warning("Discarding unparseable customer history: %r", history_json)
        return []
    if not isinstance(history, list):
        log.warning("Discarding non-list customer history: %r", history_json)
        return []
    return [str(entry) for entry in history]


# ---------------------------------------------------------------------------
# Pipeline steps
# ---------------------------------------------------------------------------


def materialize_custom_items(context: RuntimeContext, items: List[LineItem]) -> List[data_manager.ProductRow]:
    """Turn every ad-hoc cart entry into a permanent product row.

    Each ad-hoc item gets a new product ID and an unlimited-stock row with zero
    cost price and zero low-stock threshold. The line item is then rewritten in
    place to carry the permanent ID and the ``product`` type. Identical ad-hoc
    items in later transactions mint new rows again; there is no deduplication.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        items (list[LineItem]): Cart entries, modified in place.

    Returns:
        list[data_manager.ProductRow]: The appended product rows, in cart order.
    """
    created: List[data_manager.ProductRow] = []
    for item in items:
        if not item.is_adhoc:
            continue
        transient_id = item.id
        record = data_manager.ProductRow(
            product_id=ids.next_id(PRODUCT_ID_PREFIX),
            product_name=item.name,
            category=item.category or context.settings.default_category,
            stock=UNLIMITED_STOCK,
            sale_price=item.price,
            cost_price=Decimal("0"),
            low_stock_threshold=0,
        )
        data_manager.append_product(context.workbook, record)
        item.id = record.product_id
        item.type = ItemType.PRODUCT
        item.category = record.category
        created.append(record)
        log.info("Materialized ad-hoc item '%s' (%s) as product '%s'", item.name, transient_id, record.product_id)

    if created:
        invalidate_cache(context, "products")
    return created


def append_transaction_record(context: RuntimeContext, command: TransactionCommand) -> data_manager.TransactionRow:
    """Append the immutable ledger row for a sale and return it.

    The identifier is ``INV-<epoch millis>``. Line items are stored as JSON.
    ``total`` is recorded as given; it is not cross-checked against
    ``subtotal - discount``.
    """
    timestamp = _resolve_timestamp(command.timestamp)
    subtotal = command.subtotal if command.subtotal is not None else command.total + command.discount
    transaction = data_manager.TransactionRow(
        transaction_id=ids.next_id(TRANSACTION_ID_PREFIX),
        timestamp_iso=timestamp.isoformat(),
        customer_name=command.customer_name,
        customer_ref=command.customer_ref,
        items_json=encode_items(command.items),
        subtotal=subtotal,
        discount=command.discount,
        total=command.total,
        payment_method=command.payment_method,
        operator=command.operator or context.settings.operator,
    )
    data_manager.append_transaction(context.workbook, transaction)
    invalidate_cache(context, "transactions")
    log.info(
        "Recorded transaction '%s' (%d items, total=%s, payment=%s)",
        transaction.transaction_id,
        len(command.items),
        transaction.total,
        transaction.payment_method,
    )
    return transaction


def adjust_inventory(context: RuntimeContext, items: List[LineItem]) -> Dict[str, int]:
    """Decrement tracked stock for every product line in one bulk pass.

    The product sheet is read once and indexed by ID (first row wins on
    duplicates). Lines whose product is missing, whose stock is blank or not an
    integer, or whose stock is the unlimited sentinel are skipped silently.
    Fractional stock such as ``2.5`` counts as "not an integer" and is left
    alone rather than decremented to ``0.5``.
    Stock may go negative. The sheet is written back only if something changed.

    Returns:
        dict[str, int]: Final stock for every product that was decremented.
    """
    rows = data_manager.read_sheet_values(context.workbook, data_manager.PRODUCTS_SHEET)
    index: Dict[str, int] = {}
    for position, row in enumerate(rows):
        if row[0] is not None:
            index.setdefault(str(row[0]), position)

    changes: Dict[str, int] = {}
    for item in items:
        if item.type is not ItemType.PRODUCT or not item.id:
            continue
        position = index.get(item.id)
        if position is None:
            log.debug("Stock skip: product '%s' not in catalog", item.id)
            continue
        row = rows[position]
        stock = data_manager.to_int(row[3])
        if stock is None or stock == UNLIMITED_STOCK:
            log.debug("Stock skip: product '%s' is untracked (stock=%r)", item.id, row[3])
            continue
        row[3] = stock - item.quantity
        changes[item.id] = row[3]

    if not changes:
        log.debug("No tracked stock to adjust")
        return changes

    data_manager.write_sheet_values(context.workbook, data_manager.PRODUCTS_SHEET, rows)
    invalidate_cache(context, "products")
    for product_id, stock in changes.items():
        if stock < 0:
            log.warning("Product '%s' stock is negative after sale: %d", product_id, stock)
    log.info("Adjusted stock for %d products: %s", len(changes), changes)
    return changes


def is_anonymous_customer(customer_name: Optional[str]) -> bool:
    """True for blank names and for the ``anonymous`` sentinel (any case)."""
    name = (customer_name or "").strip()
    return not name or name.lower() == ANONYMOUS_CUSTOMER


def upsert_customer(
    context: RuntimeContext,
    *,
    customer_name: str,
    customer_ref: Optional[str],
    transaction_id: str,
    total: Decimal,
    now: Optional[datetime] = None,
) -> Optional[data_manager.CustomerRow]:
    """Find-or-create the customer aggregate and fold in one transaction.

    The matching key is ``customer_ref`` when present, else ``customer_name``.
    The first row whose key column or name column equals the matching key is
    updated cell by cell: visit count, total spend, history and last-seen.
    Otherwise a new row is appended with one visit.

    Returns:
        data_manager.CustomerRow | None: The aggregate after the update, or
            ``None`` when the customer is anonymous and nothing was touched.
    """
    if is_anonymous_customer(customer_name):
        log.debug("Skipping customer aggregate for anonymous cart")
        return None

    customer_key = customer_ref or customer_name
    seen_iso = _resolve_timestamp(now).isoformat()
    rows = data_manager.read_sheet_values(context.workbook, data_manager.CUSTOMERS_SHEET)

    match: Optional[int] = None
    for position, row in enumerate(rows):
        name_cell = str(row[0]) if row[0] is not None else None
        key_cell = str(row[1]) if row[1] is not None else None
        if customer_key in (key_cell, name_cell):
            match = position
            break

    if match is None:
        record = data_manager.CustomerRow(
            customer_name=customer_name,
            customer_key=customer_key,
            visit_count=1,
            total_spend=total,
            history_json=json.dumps([transaction_id]),
            first_seen_iso=seen_iso,
            last_seen_iso=seen_iso,
        )
        data_manager.append_customer(context.workbook, record)
        invalidate_cache(context, "customers")
        log.info("Created customer aggregate '%s' with transaction '%s'", customer_key, transaction_id)
        return record

    current = data_manager.deserialize_customer(rows[match])
    history = decode_history(current.history_json)
    history.append(transaction_id)
    updated = data_manager.CustomerRow(
        customer_name=current.customer_name,
        customer_key=current.customer_key,
        visit_count=current.visit_count + 1,
        total_spend=current.total_spend + total,
        history_json=json.dumps(history),
        first_seen_iso=current.first_seen_iso,
        last_seen_iso=seen_iso,
    )
    data_manager.update_row(
        context.workbook,
        data_manager.CUSTOMERS_SHEET,
        match + 2,
        field_values={
            "VisitCount": updated.visit_count,
            "TotalSpend": updated.total_spend,
            "HistoryJSON": updated.history_json,
            "LastSeen": updated.last_seen_iso,
        },
    )
    invalidate_cache(context, "customers")
    log.info(
        "Updated customer aggregate '%s' (visits=%d, spend=%s)",
        customer_key,
        updated.visit_count,
        updated.total_spend,
    )
    return updated


def commit_transaction(context: RuntimeContext, command: TransactionCommand) -> CommitResult:
    """Run the four pipeline steps in order and report what was applied.

    Callers must hold the request lock. If a step raises, the remaining steps
    are skipped and the error propagates; earlier steps are not undone, so a
    ledger row may exist without its stock or customer side effects.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        command (TransactionCommand): The cart and its customer/payment fields.
            Its line items are rewritten in place by materialization.

    Returns:
        CommitResult: The ledger row plus the side effects of each step.
    """
    completed: List[str] = []
    current = STEP_MATERIALIZE
    try:
        materialized = materialize_custom_items(context, command.items)
        completed.append(current)

        current = STEP_APPEND_LEDGER
        transaction = append_transaction_record(context, command)
        completed.append(current)

        current = STEP_ADJUST_INVENTORY
        stock_changes = adjust_inventory(context, command.items)
        completed.append(current)

        current = STEP_UPSERT_CUSTOMER
        customer = upsert_customer(
            context,
            customer_name=command.customer_name,
            customer_ref=command.customer_ref,
            transaction_id=transaction.transaction_id,
            total=command.total,
        )
        completed.append(current)
    except Exception:
        log.error(
            "Commit aborted at step '%s'; completed steps %s are not rolled back",
            current,
            completed or "none",
        )
        raise

    return CommitResult(
        transaction=transaction,
        materialized=materialized,
        stock_changes=stock_changes,
        customer=customer,
        completed_steps=completed,
    )


def record_cash_note(context: RuntimeContext, command: CashNoteCommand) -> data_manager.CashNoteRow:
    """Append one immutable cash note and return it."""
    timestamp = _resolve_timestamp(command.timestamp)
    note = data_manager.CashNoteRow(
        note_id=ids.next_id(CASH_NOTE_ID_PREFIX),
        timestamp_iso=timestamp.isoformat(),
        note_type=command.note_type.value,
        description=command.description,
        amount=command.amount,
    )
    data_manager.append_cash_note(context.workbook, note)
    invalidate_cache(context, "cash_notes")
    log.info("Recorded cash note '%s' (%s, amount=%s)", note.note_id, note.note_type, note.amount)
    return note
