"""
Pytest fixtures for stockledger backend tests.

Provides the in-memory test database, a clean session per test, catalog items,
and stubbed prediction-service clients.
"""

from datetime import timedelta

import httpx
import pytest

from stockledger import create_app
from stockledger.extensions import db
from stockledger.models.transactions import TXN_TYPE_CONSUME, TXN_TYPE_RECEIVE
from stockledger.services import item_service, transaction_service
from stockledger.services.location import LocationKey
from stockledger.services.prediction_client import PredictionClient
from stockledger.time_utils import utcnow


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'USAGE_TRACKING_ENABLED': False,
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

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def towels(db_session):
    """Consumable item with reorder point 12 and max 40."""
    return item_service.create_item(
        sku="TWL-001",
        name="Bath Towel",
        category="LINENS",
        reorder_point=12,
        reorder_quantity=24,
        max_quantity=40,
        purchase_cost_cents=850,
    )


@pytest.fixture(scope='function')
def lamp(db_session):
    """Durable item outside the forecast categories."""
    return item_service.create_item(
        sku="LMP-001",
        name="Floor Lamp",
        category="FURNITURE",
        reorder_point=0,
        reorder_quantity=0,
        purchase_cost_cents=12000,
    )


@pytest.fixture
def unit_a():
    return LocationKey("P1", "U1")


@pytest.fixture
def unit_b():
    return LocationKey("P1", "U2")


def receive(item_id, location, quantity, **fields):
    """Auto-approved RECEIVE, processed immediately."""
    return transaction_service.create_transaction(
        txn_type=TXN_TYPE_RECEIVE,
        item_id=item_id,
        quantity=quantity,
        destination=location,
        **fields,
    )


def consume(item_id, location, quantity, days_ago=0, **fields):
    """Auto-approved CONSUME dated `days_ago` days back."""
    return transaction_service.create_transaction(
        txn_type=TXN_TYPE_CONSUME,
        item_id=item_id,
        quantity=quantity,
        source=location,
        transaction_date=utcnow() - timedelta(days=days_ago),
        **fields,
    )


def prediction_client(handler):
    """PredictionClient wired to an httpx.MockTransport handler."""
    return PredictionClient("http://prediction.test", timeout=1.0, transport=httpx.MockTransport(handler))


@pytest.fixture
def unavailable_predictor():
    """Prediction service that always answers 503."""
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503, json={"error": "unavailable"})

    client = prediction_client(handler)
    client.calls = calls
    return client
