"""Enumerations and fixed values shared across the point-of-sale backend.

The data access layer, the commit pipeline, and the request layer all key off
these values, so sheet names, item types and identifier prefixes live here
rather than being repeated as string literals.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Stock value marking a catalog item as unlimited.
UNLIMITED_STOCK = -1

# Customer name (compared case-insensitively) that never gets an aggregate row.
ANONYMOUS_CUSTOMER = "anonymous"

# Line item IDs starting with this marker are transient (ad-hoc cart entries).
CUSTOM_ID_MARKER = "custom-"

DEFAULT_LOCK_TIMEOUT_SECONDS = 30.0
DEFAULT_OPERATOR = "Cashier"
DEFAULT_CATEGORY = "Custom"

TRANSACTION_ID_PREFIX = "INV-"
CASH_NOTE_ID_PREFIX = "NOTE-"
PRODUCT_ID_PREFIX = "P"
SERVICE_ID_PREFIX = "S"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    TRANSACTIONS = "Transactions"
    PRODUCTS = "Products"
    SERVICES = "Services"
    CUSTOMERS = "Customers"
    CASH_NOTES = "CashNotes"


class ItemType(str, Enum):
    """Classification carried by every cart line item."""

    PRODUCT = "product"
    SERVICE = "service"
    CUSTOM = "custom"


class CashNoteType(str, Enum):
    """Direction of a cash note."""

    IN = "in"
    OUT = "out"


class Action(str, Enum):
    """Request envelope actions understood by :mod:`pos_ledger.api`."""

    RECORD_TRANSACTION = "recordTransaction"
    RECORD_CASH_NOTE = "recordCashNote"
    SAVE_ITEM = "saveItem"
    DELETE_ITEM = "deleteItem"
    GET_INITIAL_DATA = "getInitialData"
    GET_SHEET_DATA = "getSheetData"
    GET_FILTERED_DATA = "getFilteredData"
    GET_STORE_LOCATION = "getStoreLocation"


# Header row of every sheet, in column order.
SHEET_COLUMNS: dict[str, tuple[str, ...]] = {
    SheetName.TRANSACTIONS.value: (
        "TransactionID",
        "Timestamp",
        "CustomerName",
        "CustomerRef",
        "ItemsJSON",
        "Subtotal",
        "Discount",
        "Total",
        "PaymentMethod",
        "Operator",
    ),
    SheetName.PRODUCTS.value: (
        "ProductID",
        "ProductName",
        "Category",
        "Stock",
        "SalePrice",
        "CostPrice",
        "LowStockThreshold",
    ),
    SheetName.SERVICES.value: (
        "ServiceID",
        "ServiceName",
        "Category",
        "Price",
    ),
    SheetName.CUSTOMERS.value: (
        "CustomerName",
        "CustomerKey",
        "VisitCount",
        "TotalSpend",
        "HistoryJSON",
        "FirstSeen",
        "LastSeen",
    ),
    SheetName.CASH_NOTES.value: (
        "NoteID",
        "Timestamp",
        "NoteType",
        "Description",
        "Amount",
    ),
}


MUTATING_ACTIONS: frozenset[Action] = frozenset(
    {
        Action.RECORD_TRANSACTION,
        Action.RECORD_CASH_NOTE,
        Action.SAVE_ITEM,
        Action.DELETE_ITEM,
    }
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "UNLIMITED_STOCK",
    "ANONYMOUS_CUSTOMER",
    "CUSTOM_ID_MARKER",
    "DEFAULT_LOCK_TIMEOUT_SECONDS",
    "DEFAULT_OPERATOR",
    "DEFAULT_CATEGORY",
    "TRANSACTION_ID_PREFIX",
    "CASH_NOTE_ID_PREFIX",
    "PRODUCT_ID_PREFIX",
    "SERVICE_ID_PREFIX",
    "SheetName",
    "ItemType",
    "CashNoteType",
    "Action",
    "SHEET_COLUMNS",
    "MUTATING_ACTIONS",
]
