"""
Pytest fixtures for the wholesale backend tests.

Provides a file-backed SQLite database (worker threads need to share it),
per-test table cleanup, catalog/customer fixtures, and a test client with
bearer tokens for each role.
"""

import pytest
from wholesale import create_app
from wholesale.extensions import db
from wholesale.models import FlatTaxRule, Product
from wholesale.money import Money
from wholesale.services import ledger_service


ADMIN_TOKEN = "admin-token"
STAFF_TOKEN = "staff-token"
CUSTOMER_TOKEN = "customer-token"


@pytest.fixture(scope='session')
def app(tmp_path_factory):
    """Create application for testing."""
    db_path = tmp_path_factory.mktemp("db") / "ledger.sqlite3"
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f'sqlite:///{db_path}',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LEDGER_RETRY_BACKOFF_SECONDS': 0.0,
        'AUTH_TOKENS': {
            ADMIN_TOKEN: {"actor_id": "admin-1", "role": "admin"},
            STAFF_TOKEN: {"actor_id": "staff-1", "role": "staff"},
            CUSTOMER_TOKEN: {"actor_id": "cust-1", "role": "customer"},
        },
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    # Clear all data but keep schema
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    # Cleanup after test
    db.session.rollback()


@pytest.fixture(scope='function')
def customer(db_session):
    """Customer with a $100.00 limit and a zero balance."""
    return ledger_service.create_customer("Corner Market", email="corner@example.com", credit_limit=Money(10000))


@pytest.fixture(scope='function')
def tobacco_tax(db_session):
    rule = FlatTaxRule(label="Tobacco Tax", per_unit_cents=50, display_order=1, category="tobacco")
    db_session.add(rule)
    db_session.commit()
    return rule


@pytest.fixture(scope='function')
def county_tax(db_session):
    rule = FlatTaxRule(label="County Tax", per_unit_cents=10, display_order=2)
    db_session.add(rule)
    db_session.commit()
    return rule


@pytest.fixture(scope='function')
def soda(db_session):
    """$12.00 case, no flat tax, earns points."""
    product = Product(sku="SODA-24", name="Cola 24pk", price_cents=1200, category="beverage")
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def cigarettes(db_session, tobacco_tax):
    """$60.00 carton, taxed per unit by category, earns no points."""
    product = Product(sku="CIG-CTN", name="Cigarettes Carton", price_cents=6000,
                      category="tobacco", is_tobacco=True)
    db_session.add(product)
    db_session.commit()
    return product


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def admin_headers():
    return auth_headers(ADMIN_TOKEN)


@pytest.fixture
def staff_headers():
    return auth_headers(STAFF_TOKEN)


@pytest.fixture
def customer_headers():
    return auth_headers(CUSTOMER_TOKEN)
