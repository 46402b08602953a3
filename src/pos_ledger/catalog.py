"""Catalog maintenance and read-only views over the workbook.

None of these operations touch more than one table, so they carry no ordering
requirements of their own. Writes (``save_item``/``delete_item``) still run
under the request lock because they share the workbook with the commit
pipeline; reads run unlocked and may observe a commit in progress.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from . import data_manager, ids, log
from .constants import PRODUCT_ID_PREFIX, SERVICE_ID_PREFIX, ItemType, SheetName
from .core_logic import (
    RuntimeContext,
    first_present,
    invalidate_cache,
    list_cash_notes,
    list_customers,
    list_products,
    list_services,
    list_transactions,
    parse_money,
)
from .errors import NotFound, ValidationError


FILTERABLE_SHEETS = (SheetName.TRANSACTIONS.value, SheetName.CASH_NOTES.value)


def _product_view(row: data_manager.ProductRow) -> Dict[str, Any]:
    return {
        "id": row.product_id,
        "name": row.product_name,
        "category": row.category,
        "stock": row.stock,
        "price": row.sale_price,
        "buy_price": row.cost_price,
        "low_stock": row.low_stock_threshold,
        "type": ItemType.PRODUCT.value,
    }


def _service_view(row: data_manager.ServiceRow) -> Dict[str, Any]:
    return {
        "id": row.service_id,
        "name": row.service_name,
        "category": row.category,
        "price": row.price,
        "type": ItemType.SERVICE.value,
    }


def get_initial_data(context: RuntimeContext) -> Dict[str, List[Dict[str, Any]]]:
    """Everything a till needs on start-up: catalog, ledger, customers and notes."""
    return {
        "products": [_product_view(row) for row in list_products(context)],
        "services": [_service_view(row) for row in list_services(context)],
        "transactions": [asdict(row) for row in list_transactions(context)],
        "customers": [asdict(row) for row in list_customers(context)],
        "cashNotes": [asdict(row) for row in list_cash_notes(context)],
    }


def _require_sheet_name(sheet_name: object) -> str:
    valid = [member.value for member in SheetName]
    if sheet_name not in valid:
        raise ValidationError(f"Invalid sheet name: {sheet_name!r}")
    return str(sheet_name)


def get_sheet_data(context: RuntimeContext, sheet_name: object) -> List[List[object]]:
    """Return the raw data rows of a sheet, header excluded.

    Raises:
        ValidationError: If ``sheet_name`` is not one of the managed sheets.
    """
    name = _require_sheet_name(sheet_name)
    rows = data_manager.read_sheet_values(context.workbook, name)
    return [row for row in rows if any(cell is not None for cell in row)]


def _require_item_type(item_type: object) -> ItemType:
    if item_type not in (ItemType.PRODUCT.value, ItemType.SERVICE.value):
        raise ValidationError(f"Item type must be 'product' or 'service', got {item_type!r}")
    return ItemType(item_type)


def _require_name(item_data: Mapping[str, Any]) -> str:
    name = item_data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Item name is required")
    return name.strip()


def _optional_int(item_data: Mapping[str, Any], key: str, default: int) -> int:
    raw = item_data.get(key)
    if raw in (None, ""):
        return default
    value = data_manager.to_int(raw)
    if value is None:
        raise ValidationError(f"{key} must be an integer, got {raw!r}")
    return value


def save_item(context: RuntimeContext, item_data: object, item_type: object) -> str:
    """Update a product/service row in place, or append it under a new ID.

    An ``id`` that is absent from the sheet is treated like no ``id``: the
    item is appended with a freshly minted identifier.

    Returns:
        str: Confirmation message naming the saved identifier.
    """
    kind = _require_item_type(item_type)
    if not isinstance(item_data, Mapping):
        raise ValidationError("Item data must be an object")

    name = _require_name(item_data)
    category = str(item_data.get("category") or "")
    price = parse_money(item_data.get("price"), "price")
    item_id = item_data.get("id")
    item_id = str(item_id) if item_id not in (None, "") else None

    if kind is ItemType.PRODUCT:
        sheet_name, key_column = data_manager.PRODUCTS_SHEET, "ProductID"
        stock = _optional_int(item_data, "stock", 0)
        cost_raw = first_present(item_data, "buy_price", "cost_price")
        cost_price = parse_money(cost_raw, "buy_price") if cost_raw not in (None, "") else Decimal("0")
        low_stock = _optional_int(item_data, "low_stock", 0)
        fields: Dict[str, Any] = {
            "ProductName": name,
            "Category": category,
            "Stock": stock,
            "SalePrice": price,
            "CostPrice": cost_price,
            "LowStockThreshold": low_stock,
        }
    else:
        sheet_name, key_column = data_manager.SERVICES_SHEET, "ServiceID"
        fields = {"ServiceName": name, "Category": category, "Price": price}

    row_index = data_manager.locate_row(context.workbook, sheet_name, key_column, item_id) if item_id else None
    if row_index is not None:
        data_manager.update_row(context.workbook, sheet_name, row_index, field_values=fields)
        saved_id = item_id
        log.info("Updated %s '%s'", kind.value, saved_id)
    elif kind is ItemType.PRODUCT:
        saved_id = ids.next_id(PRODUCT_ID_PREFIX)
        data_manager.append_product(
            context.workbook,
            data_manager.ProductRow(saved_id, name, category, stock, price, cost_price, low_stock),
        )
        log.info("Created product '%s'", saved_id)
    else:
        saved_id = ids.next_id(SERVICE_ID_PREFIX)
        data_manager.append_service(
            context.workbook,
            data_manager.ServiceRow(saved_id, name, category, price),
        )
        log.info("Created service '%s'", saved_id)

    invalidate_cache(context, "products" if kind is ItemType.PRODUCT else "services")
    return f"Item {saved_id} saved."


def delete_item(context: RuntimeContext, item_id: object, item_type: object) -> str:
    """Delete a product or service row by identifier.

    Raises:
        NotFound: If no row carries ``item_id``.
    """
    kind = _require_item_type(item_type)
    if item_id in (None, ""):
        raise ValidationError("Item id is required")
    if kind is ItemType.PRODUCT:
        sheet_name, key_column = data_manager.PRODUCTS_SHEET, "ProductID"
    else:
        sheet_name, key_column = data_manager.SERVICES_SHEET, "ServiceID"

    row_index = data_manager.locate_row(context.workbook, sheet_name, key_column, str(item_id))
    if row_index is None:
        log.warning("Delete failed: %s '%s' not found", kind.value, item_id)
        raise NotFound(f"Item not found: {item_id}")

    data_manager.delete_row(context.workbook, sheet_name, row_index)
    invalidate_cache(context, "products" if kind is ItemType.PRODUCT else "services")
    log.info("Deleted %s '%s'", kind.value, item_id)
    return f"Item {item_id} deleted."


def _parse_date(raw: object, field_name: str) -> date:
    if raw in (None, ""):
        raise ValidationError(f"Missing filter field: {field_name}")
    text = str(raw)
    try:
        return datetime.fromisoformat(text).date() if "T" in text else date.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"Invalid date for {field_name}: {raw!r}") from exc


def _row_date(timestamp_iso: str) -> Optional[date]:
    try:
        return datetime.fromisoformat(timestamp_iso).date()
    except ValueError:
        return None


def get_filtered_data(context: RuntimeContext, payload: object) -> List[Dict[str, Any]]:
    """Return ledger rows (or cash notes) whose date lies in ``[startDate, endDate]``.

    Rows whose timestamp cannot be parsed are left out.

    Raises:
        ValidationError: If a date is missing, malformed, or the range is inverted.
    """
    if not isinstance(payload, Mapping):
        raise ValidationError("Filter payload must be an object")
    start = _parse_date(payload.get("startDate"), "startDate")
    end = _parse_date(payload.get("endDate"), "endDate")
    if start > end:
        raise ValidationError("startDate must not be after endDate")

    sheet_name = payload.get("sheetName") or SheetName.TRANSACTIONS.value
    if sheet_name not in FILTERABLE_SHEETS:
        raise ValidationError(f"Sheet cannot be filtered by date: {sheet_name!r}")
    rows = list_transactions(context) if sheet_name == SheetName.TRANSACTIONS.value else list_cash_notes(context)

    selected = []
    for row in rows:
        row_date = _row_date(row.timestamp_iso)
        if row_date is None:
            log.debug("Filter skip: unparseable timestamp %r", row.timestamp_iso)
            continue
        if start <= row_date <= end:
            selected.append(asdict(row))
    log.debug("Filtered %s %s..%s: %d of %d rows", sheet_name, start, end, len(selected), len(rows))
    return selected


def get_store_location(context: RuntimeContext) -> str:
    """Resolved path of the workbook backing this context."""
    return str(context.settings.data_file)
