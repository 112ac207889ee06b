"""
Conftest for unit tests with an in-memory Supabase stand-in.

All tests in this directory are automatically marked as unit tests.
"""
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from unittest.mock import patch

# Add parent directory to path to import main
backend_path = Path(__file__).parent.parent.parent
sys.path.insert(0, str(backend_path))

from main import app
from config import Settings
from errors import ExternalServiceDegraded
from models.inventory import ItemSnapshot
from models.trade import StatusHistoryEntry, TradeRecord, TradeStatus
from models.user import PartyInfo
from services.realtime import ConnectionHub

from factories import (
    BUYER_ID,
    BUYER_TRADE_URL,
    OUTSIDER_ID,
    RIVAL_ID,
    RIVAL_TRADE_URL,
    SELLER_ID,
    SELLER_TRADE_URL,
    FakeSupabase,
    FakeTransferClient,
)


def pytest_collection_modifyitems(items):
    """Automatically mark all tests in this directory as unit tests."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)


# ============== Fixtures ==============

@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def fake_transfer():
    return FakeTransferClient()


@pytest.fixture(autouse=True)
def mock_supabase_client(fake_supabase, fake_transfer):
    """Point the app at the in-memory store and a fresh push hub for every test."""
    app.state.hub = ConnectionHub()
    with patch("main.supabase", fake_supabase), patch("main.transfer_client", fake_transfer):
        yield fake_supabase


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def hub():
    return ConnectionHub()


@pytest.fixture
def buyer_headers():
    return {
        "X-User-Id": BUYER_ID,
        "X-User-Name": "Buyer",
        "X-Trade-Url": BUYER_TRADE_URL,
    }


@pytest.fixture
def seller_headers():
    return {
        "X-User-Id": SELLER_ID,
        "X-User-Name": "Seller",
        "X-Trade-Url": SELLER_TRADE_URL,
    }


@pytest.fixture
def outsider_headers():
    return {"X-User-Id": OUTSIDER_ID, "X-User-Name": "Outsider"}


@pytest.fixture
def rival_headers():
    """A second buyer interested in the same item."""
    return {
        "X-User-Id": RIVAL_ID,
        "X-User-Name": "Rival",
        "X-Trade-Url": RIVAL_TRADE_URL,
    }


@pytest.fixture
def buyer():
    return PartyInfo(user_id=BUYER_ID, display_name="Buyer", trade_url=BUYER_TRADE_URL)


@pytest.fixture
def seller():
    return PartyInfo(user_id=SELLER_ID, display_name="Seller", trade_url=SELLER_TRADE_URL)


@pytest.fixture
def sample_item():
    return ItemSnapshot(
        asset_id="27348912345",
        name="AK-47 | Redline (Field-Tested)",
        image_url="https://example.com/ak47-redline.png",
        wear="Field-Tested",
        rarity="Classified",
        float_value=0.25,
        pattern=661,
    )


@pytest.fixture
def trade_payload(sample_item):
    """Body for POST /trades: buyer purchases the sample item for $100."""
    return {
        "item": sample_item.model_dump(mode="json"),
        "seller": {"user_id": SELLER_ID, "display_name": "Seller", "trade_url": SELLER_TRADE_URL},
        "price": "100.00",
        "currency": "USD",
    }


@pytest.fixture
def offer_payload(sample_item):
    return {
        "item": sample_item.model_dump(mode="json"),
        "seller": {"user_id": SELLER_ID, "display_name": "Seller", "trade_url": SELLER_TRADE_URL},
        "amount": "85.00",
        "currency": "USD",
        "message": "Would you take 85?",
    }


@pytest.fixture
def make_trade(fake_supabase, buyer, seller, sample_item):
    """Insert a trade row directly in a given status and return its record."""

    def _make(status=TradeStatus.AWAITING_SELLER, age=timedelta(0), price="100.00", **overrides):
        stamp = datetime.now(timezone.utc) - age
        status = TradeStatus(status)
        trade = TradeRecord(
            trade_id=str(uuid4()),
            buyer_id=buyer.user_id,
            seller_id=seller.user_id,
            buyer=buyer,
            seller=seller,
            item=sample_item,
            price=Decimal(price),
            status=status,
            status_history=[
                StatusHistoryEntry(sequence=0, status=status, timestamp=stamp, actor_id=buyer.user_id)
            ],
            created_at=stamp,
            updated_at=stamp,
            **overrides,
        )
        fake_supabase.tables["trade"].append(trade.model_dump(mode="json"))
        return trade

    return _make


@pytest.fixture
def degraded_error():
    return ExternalServiceDegraded("Item-transfer system timed out")
