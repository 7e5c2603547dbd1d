"""Inventory ledger: clamping, strict batches, atomicity and history."""

import pytest

from fulfillment.models import InventoryTransaction, Product
from fulfillment.services import inventory_service
from fulfillment.services.errors import InsufficientStockError, NotFoundError, ValidationError


def _ledger(db_session, product_id):
    return (
        db_session.query(InventoryTransaction)
        .filter_by(product_id=product_id)
        .order_by(InventoryTransaction.id)
        .all()
    )


def test_adjust_stock_applies_delta_and_logs(db_session, product):
    new_qty = inventory_service.adjust_stock(product.id, -3, change_type="adjustment", note="damaged", actor=9)

    assert new_qty == 7
    assert inventory_service.get_stock(product.id) == 7

    rows = _ledger(db_session, product.id)
    assert len(rows) == 1
    assert rows[0].quantity_change == -3
    assert rows[0].change_type == "adjustment"
    assert rows[0].note == "damaged"
    assert rows[0].created_by == 9


def test_adjust_stock_clamps_at_zero_but_logs_requested_delta(db_session, product):
    new_qty = inventory_service.adjust_stock(product.id, -25)

    assert new_qty == 0
    assert db_session.get(Product, product.id).stock_quantity == 0

    rows = _ledger(db_session, product.id)
    assert [r.quantity_change for r in rows] == [-25]


def test_stock_never_negative_over_sequence(db_session, product):
    for delta in (-4, +2, -20, +1, -1, -1, +5):
        inventory_service.adjust_stock(product.id, delta)
        assert inventory_service.get_stock(product.id) >= 0

    assert inventory_service.get_stock(product.id) == 5
    assert len(_ledger(db_session, product.id)) == 7


def test_adjust_stock_rejects_unknown_product(db_session):
    with pytest.raises(NotFoundError):
        inventory_service.adjust_stock(999, 1)


def test_adjust_stock_rejects_bad_change_type(db_session, product):
    with pytest.raises(ValidationError):
        inventory_service.adjust_stock(product.id, 1, change_type="gift")
    assert _ledger(db_session, product.id) == []


def test_batch_is_all_or_nothing_on_missing_product(db_session, product, second_product):
    with pytest.raises(NotFoundError):
        inventory_service.batch_adjust_stock([
            {"product_id": product.id, "delta": -1},
            {"product_id": second_product.id, "delta": -1},
            {"product_id": 424242, "delta": 5},
        ])

    assert inventory_service.get_stock(product.id) == 10
    assert inventory_service.get_stock(second_product.id) == 4
    assert db_session.query(InventoryTransaction).count() == 0


def test_batch_strict_rejects_shortfall_without_partial_apply(db_session, product, second_product):
    with pytest.raises(InsufficientStockError) as exc_info:
        inventory_service.batch_adjust_stock(
            [
                inventory_service.StockEntry(product.id, -2, "sale"),
                inventory_service.StockEntry(second_product.id, -5, "sale"),
            ],
            strict=True,
        )

    assert exc_info.value.product_id == second_product.id
    assert exc_info.value.requested == 5
    assert exc_info.value.available == 4
    assert inventory_service.get_stock(product.id) == 10
    assert db_session.query(InventoryTransaction).count() == 0


def test_batch_returns_new_quantities(db_session, product, second_product):
    result = inventory_service.batch_adjust_stock([
        {"product_id": product.id, "quantity_change": 5, "change_type": "receipt"},
        {"product_id": second_product.id, "delta": -1, "change_type": "sale", "note": "walk-in"},
    ], actor=3)

    assert result == {product.id: 15, second_product.id: 3}
    assert db_session.query(InventoryTransaction).count() == 2


def test_batch_rejects_non_integer_delta(db_session, product):
    with pytest.raises(ValidationError):
        inventory_service.batch_adjust_stock([{"product_id": product.id, "delta": "3"}])


def test_record_transaction_leaves_stock_untouched(db_session, product):
    tx = inventory_service.record_transaction(product.id, -2, "correction", note="audit fix")

    assert tx.id is not None
    assert inventory_service.get_stock(product.id) == 10


def test_list_transactions_filters_by_type_newest_first(db_session, product):
    inventory_service.adjust_stock(product.id, 1, change_type="receipt")
    inventory_service.adjust_stock(product.id, -1, change_type="sale")
    inventory_service.adjust_stock(product.id, 2, change_type="receipt")

    receipts = inventory_service.list_transactions(product_id=product.id, change_type="receipt")
    assert [r.quantity_change for r in receipts] == [2, 1]

    everything = inventory_service.list_transactions(product_id=product.id)
    assert len(everything) == 3
