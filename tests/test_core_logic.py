"""Unit tests for the commit pipeline and payload parsing in the business logic layer."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import Mock, call

import pytest

from pos_ledger import constants, core_logic, data_manager, log
from pos_ledger.constants import ItemType
from pos_ledger.errors import ValidationError


def _seed_products(context, *rows):
    for row in rows:
        context.workbook[data_manager.PRODUCTS_SHEET].append(list(row))


def _line(item_id, quantity, *, item_type=ItemType.PRODUCT, name="Item", price="1"):
    return core_logic.LineItem(id=item_id, name=name, type=item_type, price=Decimal(price), quantity=quantity)


def _command(items, **overrides):
    fields = dict(items=items, customer_name="Ana", total=Decimal("20"), payment_method="cash")
    fields.update(overrides)
    return core_logic.TransactionCommand(**fields)


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "pos.xlsx",
        store_name="Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )
    workbook = Mock(name="workbook")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_workbook = Mock(return_value=workbook)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)


@pytest.fixture
def restore_log_level():
    original = log.level
    yield
    log.setLevel(original)


def test_load_settings_applies_configured_log_level(tmp_path, restore_log_level):
    config_path = tmp_path / "config.ini"
    config_path.write_text(
        "[System]\nDataFile = pos.xlsx\nStoreName = Shop\nSchemaVersion = 1.0.0\n\n[Logging]\nLevel = WARNING\n"
    )

    settings = core_logic.load_settings(config_path)

    assert settings.data_file == (tmp_path / "pos.xlsx").resolve()
    assert log.level == logging.WARNING


def test_ensure_schema_version_rejects_mismatch(context):
    bad_context = core_logic.RuntimeContext(
        settings=replace(context.settings, schema_version="0.9"),
        workbook=context.workbook,
    )
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_list_products_reuses_cache_between_calls(monkeypatch, context):
    """list_products should populate the cache once and reuse it."""

    rows = [data_manager.ProductRow("P1", "Mug", "Home", 3, Decimal("5"), Decimal("2"), 1)]
    iter_mock = Mock(return_value=rows)
    monkeypatch.setattr(data_manager, "iter_products", iter_mock)

    assert core_logic.list_products(context) == rows
    assert core_logic.list_products(context) == rows
    iter_mock.assert_called_once_with(context.workbook)


def test_invalidate_cache_forces_reload(monkeypatch, context):
    iter_mock = Mock(return_value=[])
    monkeypatch.setattr(data_manager, "iter_services", iter_mock)

    core_logic.list_services(context)
    core_logic.invalidate_cache(context, "services", "unknown-bucket")
    core_logic.list_services(context)

    assert iter_mock.call_count == 2


def test_refresh_context_returns_new_workbook(runtime_context):
    _seed_products(runtime_context, ("P1", "Mug", "Home", 3, 5, 2, 1))

    refreshed = core_logic.refresh_context(runtime_context)

    assert refreshed.settings is runtime_context.settings
    assert core_logic.list_products(refreshed) == []


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


def test_parse_line_item_without_type_or_id_is_custom():
    item = core_logic.parse_line_item({"name": " Gift Wrap ", "price": 5000, "quantity": 1})

    assert item.type is ItemType.CUSTOM
    assert item.id is None
    assert item.name == "Gift Wrap"
    assert item.is_adhoc


def test_parse_line_item_marker_id_is_adhoc():
    item = core_logic.parse_line_item({"id": "custom-17", "name": "Engraving", "price": "3", "quantity": 2})

    assert item.type is ItemType.CUSTOM
    assert item.is_adhoc


def test_parse_line_item_requires_type_for_catalog_ids():
    with pytest.raises(ValidationError):
        core_logic.parse_line_item({"id": "P1", "name": "Mug", "price": 1, "quantity": 1})


@pytest.mark.parametrize("quantity", [0, -2, 1.5, "two", None])
def test_parse_line_item_rejects_bad_quantities(quantity):
    with pytest.raises(ValidationError):
        core_logic.parse_line_item({"id": "P1", "type": "product", "name": "Mug", "price": 1, "quantity": quantity})


def test_parse_line_item_rejects_unknown_type():
    with pytest.raises(ValidationError):
        core_logic.parse_line_item({"id": "X1", "type": "bundle", "name": "Box", "price": 1, "quantity": 1})


def test_build_transaction_command_reads_optional_fields():
    command = core_logic.build_transaction_command(
        {
            "items": [{"id": "P1", "type": "product", "name": "Mug", "price": 10, "quantity": 2}],
            "customerName": "Ana",
            "customerRef": "0812",
            "paymentMethod": "card",
            "subtotal": 20,
            "discount": "2.5",
            "total": "17.5",
            "datetime": "2024-05-01T09:30:00+00:00",
            "operator": "Rita",
        }
    )

    assert command.customer_ref == "0812"
    assert command.discount == Decimal("2.5")
    assert command.total == Decimal("17.5")
    assert command.timestamp == datetime(2024, 5, 1, 9, 30, tzinfo=UTC)
    assert command.operator == "Rita"


def test_build_transaction_command_reads_rme_reference():
    command = core_logic.build_transaction_command(
        {
            "items": [{"id": "P1", "type": "product", "name": "Mug", "price": 5, "quantity": 1}],
            "customerName": "Ana",
            "rme": "RME-7",
            "paymentMethod": "cash",
            "total": 5,
        }
    )

    assert command.customer_ref == "RME-7"


def test_build_transaction_command_prefers_rme_over_customer_ref():
    command = core_logic.build_transaction_command(
        {
            "items": [{"name": "Wrap", "price": 1, "quantity": 1}],
            "rme": "RME-7",
            "customerRef": "0812",
            "paymentMethod": "cash",
            "total": 1,
        }
    )

    assert command.customer_ref == "RME-7"


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ({"rme": "A", "customerRef": "B"}, "A"),
        ({"rme": "", "customerRef": "B"}, "B"),
        ({"rme": None}, None),
        ({}, None),
    ],
)
def test_first_present_skips_blank_values(payload, expected):
    assert core_logic.first_present(payload, "rme", "customerRef") == expected


def test_build_transaction_command_defaults():
    command = core_logic.build_transaction_command(
        {"items": [{"name": "Wrap", "price": 1, "quantity": 1}], "paymentMethod": "cash", "total": 1}
    )

    assert command.customer_name == ""
    assert command.discount == Decimal("0")
    assert command.subtotal is None
    assert command.timestamp is None


@pytest.mark.parametrize(
    "payload",
    [
        {"items": [], "paymentMethod": "cash", "total": 1},
        {"paymentMethod": "cash", "total": 1},
        {"items": [{"name": "Wrap", "price": 1, "quantity": 1}], "total": 1},
        {"items": [{"name": "Wrap", "price": 1, "quantity": 1}], "paymentMethod": "cash"},
        {"items": [{"name": "Wrap", "price": 1, "quantity": 1}], "paymentMethod": "cash", "total": "lots"},
        "not-an-object",
    ],
)
def test_build_transaction_command_rejects_malformed_payloads(payload):
    with pytest.raises(ValidationError):
        core_logic.build_transaction_command(payload)


def test_build_cash_note_command_validates_type():
    command = core_logic.build_cash_note_command({"type": "IN", "description": "Float", "amount": 50})
    assert command.note_type is constants.CashNoteType.IN

    with pytest.raises(ValidationError):
        core_logic.build_cash_note_command({"type": "sideways", "amount": 1})


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------


def test_json_default_converts_decimals_and_dates():
    encoded = json.dumps(
        {"whole": Decimal("5000"), "part": Decimal("2.5"), "when": datetime(2024, 1, 1, tzinfo=UTC)},
        default=core_logic.json_default,
    )
    assert json.loads(encoded) == {"whole": 5000, "part": 2.5, "when": "2024-01-01T00:00:00+00:00"}


def test_decode_items_restores_decimal_prices():
    items = [_line("P1", 2, price="2.5")]
    decoded = core_logic.decode_items(core_logic.encode_items(items))

    assert decoded[0]["id"] == "P1"
    assert decoded[0]["price"] == Decimal("2.5")
    assert decoded[0]["type"] == "product"


@pytest.mark.parametrize("raw", [None, "", "{broken", '{"not": "a list"}'])
def test_decode_history_starts_fresh_for_unusable_cells(raw):
    assert core_logic.decode_history(raw) == []


# ---------------------------------------------------------------------------
# Materialization
# ---------------------------------------------------------------------------


def test_materialize_custom_items_appends_unlimited_product(runtime_context):
    custom = _line(None, 1, item_type=ItemType.CUSTOM, name="Gift Wrap", price="5000")
    tracked = _line("P1", 1)

    created = core_logic.materialize_custom_items(runtime_context, [custom, tracked])

    assert len(created) == 1
    record = created[0]
    assert re.fullmatch(r"P\d+", record.product_id)
    assert record.stock == constants.UNLIMITED_STOCK
    assert record.cost_price == Decimal("0")
    assert record.low_stock_threshold == 0
    assert record.category == "Custom"
    assert custom.id == record.product_id
    assert custom.type is ItemType.PRODUCT
    assert tracked.id == "P1"
    assert core_logic.list_products(runtime_context) == created


def test_materialize_mints_distinct_ids_within_one_cart(runtime_context):
    items = [
        _line("custom-1", 1, item_type=ItemType.CUSTOM, name="Wrap"),
        _line("custom-2", 1, item_type=ItemType.CUSTOM, name="Ribbon"),
    ]

    created = core_logic.materialize_custom_items(runtime_context, items)

    assert len({row.product_id for row in created}) == 2


def test_materialize_does_not_deduplicate_across_carts(runtime_context):
    core_logic.materialize_custom_items(runtime_context, [_line(None, 1, item_type=ItemType.CUSTOM, name="Wrap")])
    core_logic.materialize_custom_items(runtime_context, [_line(None, 1, item_type=ItemType.CUSTOM, name="Wrap")])

    assert len(core_logic.list_products(runtime_context)) == 2


# ---------------------------------------------------------------------------
# Ledger append
# ---------------------------------------------------------------------------


def test_append_transaction_record_uses_defaults(runtime_context, set_fixed_datetime):
    moment = set_fixed_datetime(datetime(2024, 3, 5, 14, 0, tzinfo=UTC))
    command = _command([_line("P1", 2, price="10")], total=Decimal("18"), discount=Decimal("2"))

    transaction = core_logic.append_transaction_record(runtime_context, command)

    assert re.fullmatch(r"INV-\d+", transaction.transaction_id)
    assert transaction.timestamp_iso == moment.isoformat()
    assert transaction.subtotal == Decimal("20")
    assert transaction.operator == "Tester"
    (stored,) = core_logic.list_transactions(runtime_context)
    assert stored.transaction_id == transaction.transaction_id
    assert json.loads(stored.items_json)[0]["quantity"] == 2


def test_append_transaction_record_keeps_total_as_given(runtime_context):
    command = _command([_line("P1", 1)], subtotal=Decimal("10"), discount=Decimal("1"), total=Decimal("4"))

    transaction = core_logic.append_transaction_record(runtime_context, command)

    assert transaction.total == Decimal("4")


# ---------------------------------------------------------------------------
# Inventory adjustment
# ---------------------------------------------------------------------------


def test_adjust_inventory_decrements_tracked_stock_only(runtime_context):
    _seed_products(
        runtime_context,
        ("P1", "Mug", "Home", 10, 5, 2, 1),
        ("P2", "Wrap", "Custom", -1, 1, 0, 0),
        ("P3", "Odd", "Misc", "n/a", 1, 0, 0),
    )
    items = [
        _line("P1", 2),
        _line("P2", 3),
        _line("P3", 1),
        _line("P404", 1),
        _line("S1", 1, item_type=ItemType.SERVICE),
    ]

    changes = core_logic.adjust_inventory(runtime_context, items)

    assert changes == {"P1": 8}
    stock = {row.product_id: row.stock for row in core_logic.list_products(runtime_context)}
    assert stock == {"P1": 8, "P2": -1, "P3": None}


def test_adjust_inventory_leaves_fractional_stock_alone(runtime_context):
    _seed_products(runtime_context, ("P1", "Rope", "Hardware", 2.5, 5, 2, 1))

    assert core_logic.adjust_inventory(runtime_context, [_line("P1", 2)]) == {}
    (row,) = data_manager.read_sheet_values(runtime_context.workbook, data_manager.PRODUCTS_SHEET)
    assert row[3] == 2.5


def test_adjust_inventory_allows_negative_stock(runtime_context):
    _seed_products(runtime_context, ("P1", "Mug", "Home", 1, 5, 2, 1))

    assert core_logic.adjust_inventory(runtime_context, [_line("P1", 3)]) == {"P1": -2}


def test_adjust_inventory_repeated_lines_accumulate(runtime_context):
    _seed_products(runtime_context, ("P1", "Mug", "Home", 10, 5, 2, 1))

    assert core_logic.adjust_inventory(runtime_context, [_line("P1", 2), _line("P1", 3)]) == {"P1": 5}


def test_adjust_inventory_first_duplicate_row_wins(runtime_context):
    _seed_products(
        runtime_context,
        ("P1", "Mug", "Home", 10, 5, 2, 1),
        ("P1", "Mug copy", "Home", 50, 5, 2, 1),
    )

    core_logic.adjust_inventory(runtime_context, [_line("P1", 1)])

    stocks = [row.stock for row in core_logic.list_products(runtime_context)]
    assert stocks == [9, 50]


def test_adjust_inventory_skips_write_when_nothing_changes(monkeypatch, runtime_context):
    _seed_products(runtime_context, ("P2", "Wrap", "Custom", -1, 1, 0, 0))
    writer = Mock()
    monkeypatch.setattr(data_manager, "write_sheet_values", writer)

    assert core_logic.adjust_inventory(runtime_context, [_line("P2", 1)]) == {}
    writer.assert_not_called()


# ---------------------------------------------------------------------------
# Customer aggregate
# ---------------------------------------------------------------------------


def test_upsert_customer_creates_then_updates(runtime_context):
    first = core_logic.upsert_customer(
        runtime_context, customer_name="Ana", customer_ref=None, transaction_id="INV-1", total=Decimal("10")
    )
    second = core_logic.upsert_customer(
        runtime_context, customer_name="Ana", customer_ref=None, transaction_id="INV-2", total=Decimal("5.5")
    )

    assert first.visit_count == 1
    assert second.visit_count == 2
    assert second.total_spend == Decimal("15.5")
    assert json.loads(second.history_json) == ["INV-1", "INV-2"]
    assert second.first_seen_iso == first.first_seen_iso
    (stored,) = core_logic.list_customers(runtime_context)
    assert stored.visit_count == 2


def test_upsert_customer_prefers_reference_as_key(runtime_context):
    core_logic.upsert_customer(
        runtime_context, customer_name="Ana", customer_ref="0812", transaction_id="INV-1", total=Decimal("1")
    )
    updated = core_logic.upsert_customer(
        runtime_context, customer_name="Ana B.", customer_ref="0812", transaction_id="INV-2", total=Decimal("1")
    )

    assert updated.customer_key == "0812"
    assert updated.visit_count == 2
    assert len(core_logic.list_customers(runtime_context)) == 1


@pytest.mark.parametrize("name", ["", "   ", "anonymous", "Anonymous"])
def test_upsert_customer_skips_anonymous(runtime_context, name):
    result = core_logic.upsert_customer(
        runtime_context, customer_name=name, customer_ref=None, transaction_id="INV-1", total=Decimal("1")
    )

    assert result is None
    assert core_logic.list_customers(runtime_context) == []


def test_upsert_customer_recovers_from_unparseable_history(runtime_context):
    runtime_context.workbook[data_manager.CUSTOMERS_SHEET].append(["Ana", "Ana", 3, 30, "{oops", "t0", "t0"])

    updated = core_logic.upsert_customer(
        runtime_context, customer_name="Ana", customer_ref=None, transaction_id="INV-9", total=Decimal("2")
    )

    assert updated.visit_count == 4
    assert json.loads(updated.history_json) == ["INV-9"]


# ---------------------------------------------------------------------------
# Commit pipeline
# ---------------------------------------------------------------------------


def test_commit_transaction_runs_steps_in_order(monkeypatch, context):
    recorder = Mock()
    ledger_row = Mock(transaction_id="INV-1")
    recorder.materialize_custom_items.return_value = []
    recorder.append_transaction_record.return_value = ledger_row
    recorder.adjust_inventory.return_value = {}
    recorder.upsert_customer.return_value = None
    for step in core_logic.PIPELINE_STEPS:
        monkeypatch.setattr(core_logic, step, getattr(recorder, step))

    command = _command([_line("P1", 1)])
    result = core_logic.commit_transaction(context, command)

    assert [name for name, _, _ in recorder.mock_calls] == list(core_logic.PIPELINE_STEPS)
    assert result.completed_steps == list(core_logic.PIPELINE_STEPS)
    assert result.transaction_id == "INV-1"
    recorder.upsert_customer.assert_called_once_with(
        context,
        customer_name="Ana",
        customer_ref=None,
        transaction_id="INV-1",
        total=Decimal("20"),
    )


def test_commit_transaction_aborts_without_rollback(monkeypatch, runtime_context):
    _seed_products(runtime_context, ("P1", "Mug", "Home", 10, 5, 2, 1))
    monkeypatch.setattr(core_logic, "adjust_inventory", Mock(side_effect=RuntimeError("disk full")))
    upsert = Mock()
    monkeypatch.setattr(core_logic, "upsert_customer", upsert)

    with pytest.raises(RuntimeError, match="disk full"):
        core_logic.commit_transaction(runtime_context, _command([_line("P1", 2)]))

    upsert.assert_not_called()
    assert len(core_logic.list_transactions(runtime_context)) == 1
    assert core_logic.list_products(runtime_context)[0].stock == 10


def test_commit_transaction_records_permanent_ids(runtime_context):
    _seed_products(runtime_context, ("P1", "Mug", "Home", 10, 5, 2, 1))
    items = [_line("P1", 2), _line(None, 1, item_type=ItemType.CUSTOM, name="Gift Wrap", price="5000")]

    result = core_logic.commit_transaction(runtime_context, _command(items))

    (minted,) = result.materialized
    stored_items = core_logic.decode_items(result.transaction.items_json)
    assert [entry["id"] for entry in stored_items] == ["P1", minted.product_id]
    assert all(entry["type"] == "product" for entry in stored_items)
    assert result.stock_changes == {"P1": 8}
    assert result.customer.visit_count == 1


def test_record_cash_note_appends_row(runtime_context, set_fixed_datetime):
    set_fixed_datetime(datetime(2024, 6, 1, 8, 0, tzinfo=UTC))
    command = core_logic.CashNoteCommand(constants.CashNoteType.OUT, "Bought change", Decimal("25"))

    note = core_logic.record_cash_note(runtime_context, command)

    assert re.fullmatch(r"NOTE-\d+", note.note_id)
    assert note.timestamp_iso == "2024-06-01T08:00:00+00:00"
    assert core_logic.list_cash_notes(runtime_context) == [note]


def test_pipeline_steps_constant_matches_function_names():
    for step in core_logic.PIPELINE_STEPS:
        assert callable(getattr(core_logic, step))
    assert core_logic.PIPELINE_STEPS == (
        core_logic.STEP_MATERIALIZE,
        core_logic.STEP_APPEND_LEDGER,
        core_logic.STEP_ADJUST_INVENTORY,
        core_logic.STEP_UPSERT_CUSTOMER,
    )


def test_upsert_customer_update_uses_cell_writes(monkeypatch, runtime_context):
    runtime_context.workbook[data_manager.CUSTOMERS_SHEET].append(["Bo", "Bo", 1, 3, '["INV-0"]', "t0", "t0"])
    update = Mock(wraps=data_manager.update_row)
    monkeypatch.setattr(data_manager, "update_row", update)

    core_logic.upsert_customer(
        runtime_context,
        customer_name="Bo",
        customer_ref=None,
        transaction_id="INV-1",
        total=Decimal("2"),
        now=datetime(2024, 1, 2, tzinfo=UTC),
    )

    assert update.call_args == call(
        runtime_context.workbook,
        data_manager.CUSTOMERS_SHEET,
        2,
        field_values={
            "VisitCount": 2,
            "TotalSpend": Decimal("5"),
            "HistoryJSON": '["INV-0", "INV-1"]',
            "LastSeen": "2024-01-02T00:00:00+00:00",
        },
    )
