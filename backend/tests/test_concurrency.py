"""
Thread-based concurrency tests.

Each test runs against a temporary SQLite file database: in-memory SQLite
cannot be shared across threads.
"""
import os
import tempfile
import threading
import unittest
from decimal import Decimal

from fulfillment import create_app
from fulfillment.extensions import db
from fulfillment.models import Coupon, InventoryTransaction, Order, Product
from fulfillment.services import (
    inventory_service,
    order_service,
    payment_service,
    receipt_service,
)
from fulfillment.services.errors import ConflictError, CouponInvalidError, InsufficientStockError
from fulfillment.services.reference_service import ensure_reference_data


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30}},
            "CONCURRENCY_RETRY_ATTEMPTS": 10,
            "CONCURRENCY_RETRY_BACKOFF": 0.01,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()
            ensure_reference_data()

            product = Product(sku="CONCUR-1", name="Concurrent Product", price=100000, stock_quantity=10)
            db.session.add(product)
            db.session.commit()
            self.product_id = product.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _run_threads(self, target, count):
        results = []
        lock = threading.Lock()

        def worker(index):
            with self.app.app_context():
                try:
                    value = target(index)
                    with lock:
                        results.append(value)
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results

    def test_coupon_usage_limit_under_concurrent_checkouts(self):
        with self.app.app_context():
            product = db.session.get(Product, self.product_id)
            product.stock_quantity = 100
            db.session.add(Coupon(code="RUSH", discount_percent=Decimal("5"), usage_limit=5, used_count=0))
            db.session.commit()

        def checkout(index):
            order = order_service.create_from_cart(
                index + 1,
                [{"product_id": self.product_id, "quantity": 1}],
                shipping_address_id=1,
                coupon_code="RUSH",
            )
            return order.order_number

        results = self._run_threads(checkout, 10)

        placed = [r for r in results if isinstance(r, str)]
        rejected = [r for r in results if isinstance(r, CouponInvalidError)]
        self.assertEqual(len(placed), 5)
        self.assertEqual(len(rejected), 5)
        self.assertEqual(len(placed), len(set(placed)))

        with self.app.app_context():
            self.assertEqual(db.session.query(Coupon).filter_by(code="RUSH").one().used_count, 5)
            self.assertEqual(db.session.query(Order).count(), 5)
            self.assertEqual(inventory_service.get_stock(self.product_id), 95)

    def test_concurrent_orders_cannot_oversell(self):
        def checkout(index):
            return order_service.create_from_cart(
                index + 1,
                [{"product_id": self.product_id, "quantity": 6}],
                shipping_address_id=1,
            ).id

        results = self._run_threads(checkout, 2)

        placed = [r for r in results if isinstance(r, int)]
        short = [r for r in results if isinstance(r, InsufficientStockError)]
        self.assertEqual(len(placed), 1)
        self.assertEqual(len(short), 1)

        with self.app.app_context():
            self.assertEqual(inventory_service.get_stock(self.product_id), 4)
            self.assertEqual(db.session.query(Order).count(), 1)

    def test_concurrent_decrements_never_lose_updates(self):
        results = self._run_threads(lambda i: inventory_service.adjust_stock(self.product_id, -1), 15)

        self.assertFalse([r for r in results if isinstance(r, Exception)])
        with self.app.app_context():
            self.assertEqual(inventory_service.get_stock(self.product_id), 0)
            self.assertEqual(db.session.query(InventoryTransaction).count(), 15)

    def test_duplicate_paid_deliveries(self):
        with self.app.app_context():
            order = order_service.create_from_cart(
                1, [{"product_id": self.product_id, "quantity": 1}], shipping_address_id=1, gateway="vnpay"
            )
            order_id = order.id
            payment_id = payment_service.list_for_order(order_id)[0].id

        results = self._run_threads(lambda i: payment_service.mark_paid(payment_id).id, 5)

        self.assertEqual(results, [payment_id] * 5)
        with self.app.app_context():
            payment = payment_service.get_payment(payment_id)
            self.assertEqual(payment_service.get_status_name(payment), payment_service.STATUS_PAID)
            self.assertIsNotNone(payment.paid_at)
            history = order_service.get_status_history(order_id)
            confirmed = [h for h in history if h.status_id == order_service.STATUS_CONFIRMED]
            self.assertEqual(len(confirmed), 1)

    def test_sibling_attempts_on_confirmed_order_pay_once(self):
        with self.app.app_context():
            order = order_service.create_from_cart(
                1, [{"product_id": self.product_id, "quantity": 1}], shipping_address_id=1
            )
            order_id = order.id
            order_service.update_status(order_id, order_service.STATUS_CONFIRMED)
            attempt_ids = [
                payment_service.create_attempt(order_id, "vnpay", 100000).id,
                payment_service.create_attempt(order_id, "momo", 100000).id,
            ]

        results = self._run_threads(lambda i: payment_service.mark_paid(attempt_ids[i]).id, 2)

        captured = [r for r in results if r in attempt_ids]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        self.assertEqual(len(captured), 1)
        self.assertEqual(len(conflicts), 1)
        with self.app.app_context():
            paid = [
                p for p in payment_service.list_for_order(order_id)
                if payment_service.get_status_name(p) == payment_service.STATUS_PAID
            ]
            self.assertEqual(len(paid), 1)
            self.assertEqual(db.session.get(Order, order_id).status_id, order_service.STATUS_CONFIRMED)

    def test_receipt_approved_once(self):
        with self.app.app_context():
            receipt = receipt_service.create_receipt([{"product_id": self.product_id, "quantity": 7}])
            receipt_id = receipt.id

        results = self._run_threads(lambda i: receipt_service.approve(receipt_id, approver_id=i + 1).id, 4)

        approved = [r for r in results if r == receipt_id]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        self.assertEqual(len(approved), 1)
        self.assertEqual(len(conflicts), 3)
        with self.app.app_context():
            self.assertEqual(inventory_service.get_stock(self.product_id), 17)


if __name__ == "__main__":
    unittest.main()
