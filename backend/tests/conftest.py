"""
Pytest fixtures for fulfillment backend tests.

Provides the application on in-memory SQLite, a clean database per test
with reference vocabularies seeded, and catalog/coupon fixtures.
"""

from decimal import Decimal

import pytest

from fulfillment import create_app
from fulfillment.extensions import db
from fulfillment.models import Coupon, Product
from fulfillment.services.reference_service import ensure_reference_data


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'CONCURRENCY_RETRY_BACKOFF': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        ensure_reference_data()

        yield db.session

        # Cleanup after test
        db.session.rollback()


def make_product(session, sku: str, price: int, stock: int, **kwargs) -> Product:
    product = Product(
        sku=sku,
        name=kwargs.pop('name', f"Product {sku}"),
        price=price,
        stock_quantity=stock,
        images=kwargs.pop('images', [f"https://img.example.com/{sku}.jpg"]),
        **kwargs
    )
    session.add(product)
    session.commit()
    return product


@pytest.fixture(scope='function')
def product(db_session):
    """Product priced 100000 with 10 units on hand."""
    return make_product(db_session, "SKU-7", price=100000, stock=10, name="Ceramic Mug")


@pytest.fixture(scope='function')
def second_product(db_session):
    return make_product(db_session, "SKU-8", price=25000, stock=4, name="Tea Towel")


@pytest.fixture(scope='function')
def third_product(db_session):
    return make_product(db_session, "SKU-9", price=5000, stock=1, name="Coaster")


@pytest.fixture(scope='function')
def save10(db_session):
    """10% coupon, single use, minimum cart 50000."""
    coupon = Coupon(
        code="SAVE10",
        discount_percent=Decimal("10"),
        min_cart_value=50000,
        usage_limit=1,
        used_count=0,
        is_active=True,
    )
    db_session.add(coupon)
    db_session.commit()
    return coupon


@pytest.fixture(scope='function')
def flat_coupon(db_session):
    """Fixed 30000 off, unlimited usage."""
    coupon = Coupon(
        code="FLAT30K",
        discount_amount=30000,
        usage_limit=None,
        used_count=0,
        is_active=True,
    )
    db_session.add(coupon)
    db_session.commit()
    return coupon
