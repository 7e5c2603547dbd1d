"""Stock receipt submission and one-way approval."""

import pytest

from fulfillment.models import InventoryTransaction, StockReceipt
from fulfillment.services import inventory_service, receipt_service
from fulfillment.services.errors import ConflictError, NotFoundError, ValidationError


@pytest.fixture
def receipt(db_session, product, second_product):
    return receipt_service.create_receipt(
        [
            {"product_id": product.id, "quantity": 5, "unit_price": 60000},
            {"product_id": second_product.id, "quantity": 10, "unit_price": 12000},
        ],
        created_by=2,
        notes="supplier delivery",
    )


def test_create_receipt_allocates_number(db_session, receipt):
    assert receipt.receipt_number == "SR-000001"
    assert receipt.status == "pending"
    assert receipt.total_value() == 5 * 60000 + 10 * 12000
    assert len(receipt.items) == 2


def test_create_receipt_with_explicit_number(db_session, product):
    r = receipt_service.create_receipt([{"product_id": product.id, "quantity": 1}], receipt_number="PO-2030-17")
    assert r.receipt_number == "PO-2030-17"
    assert receipt_service.get_by_receipt_number("PO-2030-17").id == r.id

    with pytest.raises(ValidationError):
        receipt_service.create_receipt([{"product_id": product.id, "quantity": 1}], receipt_number="PO-2030-17")


@pytest.mark.parametrize("items", [
    [],
    [{"product_id": 1, "quantity": 0}],
    [{"product_id": 1, "quantity": 2, "unit_price": -1}],
])
def test_create_receipt_validation(db_session, items):
    with pytest.raises(ValidationError):
        receipt_service.create_receipt(items)


def test_create_receipt_unknown_product(db_session):
    with pytest.raises(NotFoundError):
        receipt_service.create_receipt([{"product_id": 8080, "quantity": 1}])
    assert db_session.query(StockReceipt).count() == 0


def test_approve_posts_items_once(db_session, receipt, product, second_product):
    approved = receipt_service.approve(receipt.id, approver_id=11)

    assert approved.status == "approved"
    assert approved.approved_by == 11
    assert approved.approved_at is not None
    assert inventory_service.get_stock(product.id) == 15
    assert inventory_service.get_stock(second_product.id) == 14

    rows = inventory_service.list_transactions(change_type="receipt")
    assert sorted(r.quantity_change for r in rows) == [5, 10]
    assert all(r.note == "Stock receipt SR-000001" and r.created_by == 11 for r in rows)

    with pytest.raises(ConflictError):
        receipt_service.approve(receipt.id, approver_id=12)
    with pytest.raises(ConflictError):
        receipt_service.reject(receipt.id, approver_id=12, reason="too late")

    assert inventory_service.get_stock(product.id) == 15
    assert db_session.query(InventoryTransaction).count() == 2


def test_reject_never_touches_inventory(db_session, receipt, product):
    rejected = receipt_service.reject(receipt.id, approver_id=11, reason="wrong supplier")

    assert rejected.status == "rejected"
    assert rejected.rejection_reason == "wrong supplier"
    assert inventory_service.get_stock(product.id) == 10
    assert db_session.query(InventoryTransaction).count() == 0

    with pytest.raises(ConflictError):
        receipt_service.approve(receipt.id, approver_id=11)


def test_reject_requires_reason(db_session, receipt):
    with pytest.raises(ValidationError):
        receipt_service.reject(receipt.id, approver_id=11, reason="  ")


def test_failed_posting_leaves_receipt_pending(db_session, receipt, product):
    # Receipt item pointing at a product that no longer exists
    receipt.items[0].product_id = 777777
    db_session.commit()

    with pytest.raises(NotFoundError):
        receipt_service.approve(receipt.id, approver_id=11)

    assert receipt_service.get_receipt(receipt.id).status == "pending"
    assert inventory_service.get_stock(product.id) == 10
    assert db_session.query(InventoryTransaction).count() == 0


def test_unknown_receipt(db_session):
    with pytest.raises(NotFoundError):
        receipt_service.approve(9999, approver_id=1)
    with pytest.raises(NotFoundError):
        receipt_service.get_receipt(9999)


def test_list_by_status(db_session, receipt, product):
    other = receipt_service.create_receipt([{"product_id": product.id, "quantity": 1}])
    receipt_service.approve(other.id, approver_id=1)

    assert [r.id for r in receipt_service.list_by_status("pending")] == [receipt.id]
    assert [r.id for r in receipt_service.list_by_status("approved")] == [other.id]
    with pytest.raises(ValidationError):
        receipt_service.list_by_status("archived")
