"""Flask CLI command groups."""

from fulfillment.models import BankReconciliation, BankTransaction, OrderStatus, PaymentStatus
from fulfillment.services import inventory_service, order_service, receipt_service


def test_seed_statuses_is_idempotent(app, db_session):
    runner = app.test_cli_runner()

    for _ in range(2):
        result = runner.invoke(args=["system", "seed-statuses"])
        assert result.exit_code == 0
        assert "PASS" in result.output

    assert db_session.query(OrderStatus).count() == len(order_service.ORDER_STATUSES)
    assert db_session.query(PaymentStatus).count() == 4


def test_inventory_adjust_and_history(app, db_session, product):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["inventory", "adjust", "--note", "cycle count", "--", str(product.id), "-4"])
    assert result.exit_code == 0
    assert "stock is now 6" in result.output

    result = runner.invoke(args=["inventory", "history", str(product.id)])
    assert result.exit_code == 0
    assert "on hand: 6" in result.output
    assert "cycle count" in result.output


def test_inventory_adjust_unknown_product(app, db_session):
    result = app.test_cli_runner().invoke(args=["inventory", "adjust", "999", "1"])
    assert "FAIL" in result.output


def test_receipts_approve_and_reject(app, db_session, product):
    first = receipt_service.create_receipt([{"product_id": product.id, "quantity": 3}])
    second = receipt_service.create_receipt([{"product_id": product.id, "quantity": 9}])
    runner = app.test_cli_runner()

    result = runner.invoke(args=["receipts", "approve", str(first.id), "--approver", "4"])
    assert "PASS" in result.output
    assert inventory_service.get_stock(product.id) == 13

    result = runner.invoke(args=["receipts", "approve", str(first.id), "--approver", "4"])
    assert "FAIL" in result.output

    result = runner.invoke(args=["receipts", "reject", str(second.id), "--approver", "4", "--reason", "damaged"])
    assert "PASS" in result.output
    assert inventory_service.get_stock(product.id) == 13


def test_bank_import_bad_date_reports_failure(app, db_session, tmp_path):
    statement = tmp_path / "broken.csv"
    statement.write_text(
        "external_txn_id,amount,posted_at,txn_type,currency,description\n"
        "ACB-9,100000,yesterday,credit,VND,\n",
        encoding="utf-8",
    )

    result = app.test_cli_runner().invoke(args=["bank", "import", str(statement), "--account-id", "3"])
    assert result.exception is None
    assert "FAIL Bank row ACB-9: posted_at is not an ISO datetime" in result.output
    assert db_session.query(BankTransaction).count() == 0


def test_bank_import_and_match(app, db_session, product, tmp_path):
    order = order_service.create_from_cart(1, [{"product_id": product.id, "quantity": 1}], shipping_address_id=1)
    statement = tmp_path / "statement.csv"
    statement.write_text(
        "external_txn_id,amount,posted_at,txn_type,currency,description\n"
        "ACB-1,100000,2030-04-01T10:00:00Z,credit,VND,ORD-000001\n"
        "ACB-2,5000,2030-04-01T11:00:00Z,debit,VND,fee\n",
        encoding="utf-8",
    )
    runner = app.test_cli_runner()

    result = runner.invoke(args=["bank", "import", str(statement), "--account-id", "3"])
    assert "Imported 2 of 2" in result.output
    result = runner.invoke(args=["bank", "import", str(statement), "--account-id", "3"])
    assert "Imported 0 of 2" in result.output

    txn = db_session.query(BankTransaction).filter_by(external_txn_id="ACB-1").one()
    result = runner.invoke(args=[
        "bank", "match", str(txn.id), "--order-id", str(order.id), "--matched-by", "clerk", "--score", "0.9",
    ])
    assert "PASS" in result.output
    assert db_session.query(BankReconciliation).count() == 1

    result = runner.invoke(args=["bank", "match", str(txn.id), "--matched-by", "clerk", "--score", "0.9"])
    assert "FAIL" in result.output
