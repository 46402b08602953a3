"""Data access layer for the point-of-sale backend.

This module provides low-level helpers that read from and write to the master
workbook. Each worksheet is one table: row 1 is the header and is never
addressed by business logic, and every following row is keyed by its first
column. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records, appending rows, updating
   individual cells, and reading or writing the whole data range in bulk.
"""


from __future__ import annotations

import configparser
import logging
import tempfile
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import DEFAULT_LOG_LEVEL, log
from .constants import (
    DEFAULT_CATEGORY,
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_OPERATOR,
    SHEET_COLUMNS,
    SheetName,
)
from .errors import StoreUnavailable


CONFIG_FILE_NAME = "config.ini"
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
PRODUCTS_SHEET = SheetName.PRODUCTS.value
SERVICES_SHEET = SheetName.SERVICES.value
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value
CASH_NOTES_SHEET = SheetName.CASH_NOTES.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    operator: str = DEFAULT_OPERATOR
    default_category: str = DEFAULT_CATEGORY
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    log_level: str = DEFAULT_LOG_LEVEL


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet.

    ``stock`` is ``None`` when the cell does not hold an integral number.
    """

    product_id: str
    product_name: str
    category: str
    stock: Optional[int]
    sale_price: Decimal
    cost_price: Decimal
    low_stock_threshold: int


@dataclass(frozen=True)
class ServiceRow:
    """In-memory view of a row from the ``Services`` sheet."""

    service_id: str
    service_name: str
    category: str
    price: Decimal


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    transaction_id: str
    timestamp_iso: str
    customer_name: str
    customer_ref: Optional[str]
    items_json: str
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    payment_method: str
    operator: str


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet."""

    customer_name: str
    customer_key: str
    visit_count: int
    total_spend: Decimal
    history_json: Optional[str]
    first_seen_iso: str
    last_seen_iso: str


@dataclass(frozen=True)
class CashNoteRow:
    """In-memory view of a row from the ``CashNotes`` sheet."""

    note_id: str
    timestamp_iso: str
    note_type: str
    description: str
    amount: Decimal


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
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

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

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

    ``[System]`` entries are mandatory. ``[Defaults]``, ``[Locking]`` and
    ``[Logging]`` are optional and fall back to the package constants.
    Relative ``DataFile`` entries are anchored at ``base_path`` (or the
    working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``LockTimeoutSeconds`` is not a positive number or
            ``[Logging] Level`` is not a logging level name.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    operator = parser.get("Defaults", "Operator", fallback=DEFAULT_OPERATOR)
    default_category = parser.get("Defaults", "DefaultCategory", fallback=DEFAULT_CATEGORY)
    lock_timeout = parser.getfloat("Locking", "LockTimeoutSeconds", fallback=DEFAULT_LOCK_TIMEOUT_SECONDS)
    if lock_timeout <= 0:
        raise ValueError(f"LockTimeoutSeconds must be positive, got {lock_timeout}")
    log_level = parser.get("Logging", "Level", fallback=DEFAULT_LOG_LEVEL).strip().upper()
    if log_level not in logging.getLevelNamesMapping():
        raise ValueError(f"Unknown log level in [Logging] Level: {log_level!r}")

    data_file_path = Path(data_file_raw).expanduser()
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = base_path / data_file_path
    data_file_path = data_file_path.resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        operator=operator,
        default_category=default_category,
        lock_timeout=lock_timeout,
        log_level=log_level,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand.

    The file is written beside ``destination`` and then moved over it, so a
    concurrent reader sees either the previous workbook or the new one.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(delete=False, suffix=dest.suffix, dir=str(dest.parent)) as tmp:
        tmp_path = Path(tmp.name)
    try:
        workbook.save(tmp_path)
        tmp_path.replace(dest)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def get_sheet(workbook: Workbook, sheet_name: str) -> Worksheet:
    """Return the named worksheet.

    Raises:
        StoreUnavailable: If the workbook has no sheet called ``sheet_name``.
    """

    if sheet_name not in workbook.sheetnames:
        log.error("Sheet '%s' is missing from the workbook", sheet_name)
        raise StoreUnavailable(f"Sheet '{sheet_name}' not found")
    return workbook[sheet_name]


def header_map(sheet: Worksheet) -> dict[str, int]:
    """Map header titles to 1-based column indices."""

    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = get_sheet(workbook, sheet_name)
    width = len(SHEET_COLUMNS[sheet_name])
    for raw in sheet.iter_rows(min_row=2, max_col=width, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield _pad(raw, width)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    The header row and fully empty rows are skipped; every other row is
    converted with :func:`deserialize_product`.
    """

    for raw in _iter_raw_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_services(workbook: Workbook) -> Iterable[ServiceRow]:
    """Iterate over the ``Services`` worksheet and yield typed records."""

    for raw in _iter_raw_rows(workbook, SERVICES_SHEET):
        yield deserialize_service(raw)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream transaction records from the ``Transactions`` worksheet in sheet order."""

    for raw in _iter_raw_rows(workbook, TRANSACTIONS_SHEET):
        yield deserialize_transaction(raw)


def iter_customers(workbook: Workbook) -> Iterable[CustomerRow]:
    """Stream customer aggregates from the ``Customers`` worksheet in sheet order."""

    for raw in _iter_raw_rows(workbook, CUSTOMERS_SHEET):
        yield deserialize_customer(raw)


def iter_cash_notes(workbook: Workbook) -> Iterable[CashNoteRow]:
    """Stream cash notes from the ``CashNotes`` worksheet."""

    for raw in _iter_raw_rows(workbook, CASH_NOTES_SHEET):
        yield deserialize_cash_note(raw)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    get_sheet(workbook, PRODUCTS_SHEET).append(serialize_product(record))


def append_service(workbook: Workbook, record: ServiceRow) -> None:
    """Append a service record to the ``Services`` worksheet."""

    get_sheet(workbook, SERVICES_SHEET).append(serialize_service(record))


def append_transaction(workbook: Workbook, record: TransactionRow) -> None:
    """Append a transaction record to the ``Transactions`` worksheet.

    Rows are only ever appended; no existing row is overwritten.
    """

    get_sheet(workbook, TRANSACTIONS_SHEET).append(serialize_transaction(record))


def append_customer(workbook: Workbook, record: CustomerRow) -> None:
    """Append a customer aggregate to the ``Customers`` worksheet."""

    get_sheet(workbook, CUSTOMERS_SHEET).append(serialize_customer(record))


def append_cash_note(workbook: Workbook, record: CashNoteRow) -> None:
    """Append a cash note to the ``CashNotes`` worksheet."""

    get_sheet(workbook, CASH_NOTES_SHEET).append(serialize_cash_note(record))


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    The header row itself is not considered during matching; the first data row
    whose ``key_column`` equals ``key_value`` wins.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
        StoreUnavailable: If the worksheet is missing.
    """

    sheet = get_sheet(workbook, sheet_name)
    columns = header_map(sheet)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = columns[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def update_row(workbook: Workbook, sheet_name: str, row_index: int, *, field_values: dict[str, Any]) -> None:
    """Write selected columns of one row, one cell at a time.

    Only the specified fields are modified, leaving other columns untouched.

    Raises:
        KeyError: If a referenced column is not in the header.
        ValueError: If ``row_index`` addresses the header row.
    """

    if row_index < 2:
        raise ValueError("The header row cannot be updated")

    sheet = get_sheet(workbook, sheet_name)
    columns = header_map(sheet)
    for field, value in field_values.items():
        if field not in columns:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        sheet.cell(row=row_index, column=columns[field], value=value)


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")
    update_row(workbook, PRODUCTS_SHEET, row_index, field_values=field_values)


def update_service(workbook: Workbook, service_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing service.

    Raises:
        KeyError: If the service or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, SERVICES_SHEET, "ServiceID", service_id)
    if row_index is None:
        raise KeyError(f"Service not found: {service_id}")
    update_row(workbook, SERVICES_SHEET, row_index, field_values=field_values)


def delete_row(workbook: Workbook, sheet_name: str, row_index: int) -> None:
    """Remove one data row, shifting the rows below it up."""

    if row_index < 2:
        raise ValueError("The header row cannot be deleted")
    get_sheet(workbook, sheet_name).delete_rows(row_index, 1)


def read_sheet_values(workbook: Workbook, sheet_name: str) -> List[List[object]]:
    """Read every data row of a sheet as mutable lists of raw cell values.

    The result covers rows ``2..max_row`` and exactly the schema's columns, so
    it can be handed back to :func:`write_sheet_values` unchanged in shape.
    """

    sheet = get_sheet(workbook, sheet_name)
    width = len(SHEET_COLUMNS[sheet_name])
    return [
        _pad(raw, width)
        for raw in sheet.iter_rows(min_row=2, max_col=width, values_only=True)
    ]


def write_sheet_values(workbook: Workbook, sheet_name: str, rows: Sequence[Sequence[object]]) -> None:
    """Write a block of rows back over the data range starting at row 2."""

    sheet = get_sheet(workbook, sheet_name)
    for row_offset, values in enumerate(rows):
        for col_offset, value in enumerate(values):
            sheet.cell(row=row_offset + 2, column=col_offset + 1, value=value)


def _pad(raw: Sequence[object], width: int) -> List[object]:
    values = list(raw[:width])
    values.extend([None] * (width - len(values)))
    return values


def to_decimal(raw: object, default: Decimal = Decimal("0")) -> Decimal:
    """Coerce a cell value into a :class:`~decimal.Decimal`, falling back to ``default``."""

    if raw is None or isinstance(raw, bool) or raw == "":
        return default
    try:
        return Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return default


def to_int(raw: object) -> Optional[int]:
    """Coerce a cell value into an ``int`` when it holds an integral number.

    Returns ``None`` for blanks, booleans, text and fractional numbers.
    """

    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite() or value != value.to_integral_value():
        return None
    return int(value)


def _to_optional_str(raw: object) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering."""

    return [
        record.product_id,
        record.product_name,
        record.category,
        record.stock,
        record.sale_price,
        record.cost_price,
        record.low_stock_threshold,
    ]


def serialize_service(record: ServiceRow) -> list[object]:
    """Convert a service dataclass into the worksheet column ordering."""

    return [record.service_id, record.service_name, record.category, record.price]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the transactions column order."""

    return [
        record.transaction_id,
        record.timestamp_iso,
        record.customer_name,
        record.customer_ref,
        record.items_json,
        record.subtotal,
        record.discount,
        record.total,
        record.payment_method,
        record.operator,
    ]


def serialize_customer(record: CustomerRow) -> list[object]:
    """Convert a customer aggregate into the customers column order."""

    return [
        record.customer_name,
        record.customer_key,
        record.visit_count,
        record.total_spend,
        record.history_json,
        record.first_seen_iso,
        record.last_seen_iso,
    ]


def serialize_cash_note(record: CashNoteRow) -> list[object]:
    """Convert a cash note into the cash notes column order."""

    return [
        record.note_id,
        record.timestamp_iso,
        record.note_type,
        record.description,
        record.amount,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Prices become :class:`~decimal.Decimal`, the stock cell is kept only when it
    is integral, and id/name fields are coerced to ``str`` so numeric-looking
    identifiers survive Excel's type guessing.
    """

    product_id, product_name, category, stock_raw, sale_raw, cost_raw, low_raw = raw_row[:7]
    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        category=str(category) if category is not None else "",
        stock=to_int(stock_raw),
        sale_price=to_decimal(sale_raw),
        cost_price=to_decimal(cost_raw),
        low_stock_threshold=to_int(low_raw) or 0,
    )


def deserialize_service(raw_row: Sequence[object]) -> ServiceRow:
    """Convert a raw worksheet row into a strongly typed service record."""

    service_id, service_name, category, price_raw = raw_row[:4]
    return ServiceRow(
        service_id=str(service_id),
        service_name=str(service_name) if service_name is not None else "",
        category=str(category) if category is not None else "",
        price=to_decimal(price_raw),
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw worksheet row into a strongly typed transaction record.

    Monetary columns become :class:`~decimal.Decimal`, the optional customer
    reference stays ``None`` when blank, and text columns default to empty
    strings.
    """

    (
        transaction_id,
        timestamp_iso,
        customer_name,
        customer_ref,
        items_json,
        subtotal_raw,
        discount_raw,
        total_raw,
        payment_method,
        operator,
    ) = raw_row[:10]

    return TransactionRow(
        transaction_id=str(transaction_id),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        customer_name=str(customer_name) if customer_name is not None else "",
        customer_ref=_to_optional_str(customer_ref),
        items_json=str(items_json) if items_json is not None else "[]",
        subtotal=to_decimal(subtotal_raw),
        discount=to_decimal(discount_raw),
        total=to_decimal(total_raw),
        payment_method=str(payment_method) if payment_method is not None else "",
        operator=str(operator) if operator is not None else "",
    )


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    """Convert a raw worksheet row into a customer aggregate."""

    name, key, visits_raw, spend_raw, history_json, first_seen, last_seen = raw_row[:7]
    return CustomerRow(
        customer_name=str(name) if name is not None else "",
        customer_key=str(key) if key is not None else "",
        visit_count=to_int(visits_raw) or 0,
        total_spend=to_decimal(spend_raw),
        history_json=_to_optional_str(history_json),
        first_seen_iso=str(first_seen) if first_seen is not None else "",
        last_seen_iso=str(last_seen) if last_seen is not None else "",
    )


def deserialize_cash_note(raw_row: Sequence[object]) -> CashNoteRow:
    """Convert a raw worksheet row into a cash note."""

    note_id, timestamp_iso, note_type, description, amount_raw = raw_row[:5]
    return CashNoteRow(
        note_id=str(note_id),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        note_type=str(note_type) if note_type is not None else "",
        description=str(description) if description is not None else "",
        amount=to_decimal(amount_raw),
    )
