"""
Integration test fixtures for testing with a real local Supabase database.

These fixtures connect to a local Supabase instance and perform real database operations.
Run `supabase start` (with the `trade` and `offer` tables in place) before running
integration tests. All tests in this directory are automatically marked as integration tests.
"""
import os
import subprocess
import warnings
from pathlib import Path
from unittest.mock import patch
from uuid import uuid4

import pytest
from dotenv import load_dotenv
from fastapi.testclient import TestClient
from supabase import create_client, Client

# Path to the project root (where supabase/ folder is located)
PROJECT_ROOT = Path(__file__).parent.parent.parent.parent


def pytest_collection_modifyitems(items):
    """Automatically mark all tests in this directory as integration tests."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def setup_test_environment():
    """Load .env.test at session start."""
    # .env.test is in the backend root (/app/.env.test in container)
    env_test_path = Path(__file__).parent.parent.parent / ".env.test"
    load_dotenv(env_test_path, override=True)
    yield


@pytest.fixture(scope="session")
def supabase_client(setup_test_environment) -> Client:
    """Create a real Supabase client connected to local instance."""
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SERVICE_ROLE_KEY")

    if not url or not key:
        pytest.skip("SUPABASE_URL and SERVICE_ROLE_KEY must be set in .env.test")

    return create_client(url, key)


@pytest.fixture(scope="session")
def reset_database(setup_test_environment):
    """
    Reset the database before the test session.

    Optional: if the supabase CLI is not available (e.g. inside Docker) the reset
    is skipped. Run `supabase db reset` manually before integration tests if needed.
    """
    try:
        result = subprocess.run(
            ["supabase", "db", "reset", "--no-seed"],
            cwd=str(PROJECT_ROOT),
            capture_output=True,
            text=True,
            timeout=60
        )
        if result.returncode != 0:
            # Database might already be in good state
            warnings.warn(f"Could not reset database: {result.stderr}")
    except FileNotFoundError:
        warnings.warn("supabase CLI not found. Skipping database reset.")
    except subprocess.TimeoutExpired:
        warnings.warn("Database reset timed out. Continuing anyway.")

    yield


@pytest.fixture
def integration_client(supabase_client, reset_database):
    """
    FastAPI TestClient using the real Supabase client.

    main.py reads its settings at import, before .env.test is loaded, so the
    module client is swapped for the local one.
    """
    from main import app

    with patch("main.supabase", supabase_client), TestClient(app) as client:
        yield client


@pytest.fixture
def buyer_id():
    return f"test_buyer_{uuid4().hex[:8]}"


@pytest.fixture
def seller_id():
    return f"test_seller_{uuid4().hex[:8]}"


@pytest.fixture
def buyer_headers(buyer_id):
    return {
        "X-User-Id": buyer_id,
        "X-User-Name": "Integration Buyer",
        "X-Trade-Url": "https://steamcommunity.com/tradeoffer/new/?partner=111111&token=IntBuy01",
    }


@pytest.fixture
def seller_headers(seller_id):
    return {
        "X-User-Id": seller_id,
        "X-User-Name": "Integration Seller",
        "X-Trade-Url": "https://steamcommunity.com/tradeoffer/new/?partner=222222&token=IntSell02",
    }


@pytest.fixture
def item():
    """A unique item snapshot so tests never collide on pending offers."""
    return {
        "asset_id": str(uuid4().int)[:11],
        "name": "AWP | Asiimov (Field-Tested)",
        "image_url": "https://example.com/awp-asiimov.png",
        "wear": "Field-Tested",
        "rarity": "Covert",
        "float_value": 0.31,
    }


@pytest.fixture
def trade_body(item, seller_id, seller_headers):
    return {
        "item": item,
        "seller": {
            "user_id": seller_id,
            "display_name": seller_headers["X-User-Name"],
            "trade_url": seller_headers["X-Trade-Url"],
        },
        "price": "100.00",
        "currency": "USD",
    }


@pytest.fixture(autouse=True)
def clean_test_data(request, buyer_id, seller_id):
    """
    Delete every trade and offer the test's users took part in.

    Trades are never deleted by the API; this only keeps the local database tidy.
    """
    yield
    if "supabase_client" not in request.fixturenames:
        return
    client = request.getfixturevalue("supabase_client")
    for user_id in (buyer_id, seller_id):
        client.table("offer").delete().eq("proposer_id", user_id).execute()
        client.table("trade").delete().eq("buyer_id", user_id).execute()
