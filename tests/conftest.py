"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any app import, and the
settings cache is cleared so the app sees them.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STORE_BACKEND"] = "memory"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["WEBHOOK_VERIFY_TOKEN"] = "test-verify-token"
os.environ["PROVIDER_API_URL"] = "https://graph.test/v18.0"
os.environ["PROVIDER_PHONE_NUMBER_ID"] = "123456"
os.environ["PROVIDER_ACCESS_TOKEN"] = "test-token"
os.environ["DEFAULT_COUNTRY_CODE"] = "91"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

# Clear settings cache before any app imports to ensure test env vars are used
from app.config import get_settings
get_settings.cache_clear()

from app.main import app, get_provider, get_store
from app.provider import ProviderClient
from app.storage import InMemoryMessageStore, SqlMessageStore, build_engine, init_db


TEST_WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]
TEST_VERIFY_TOKEN = os.environ["WEBHOOK_VERIFY_TOKEN"]
API_URL = os.environ["PROVIDER_API_URL"]
MESSAGES_URL = f"{API_URL}/{os.environ['PROVIDER_PHONE_NUMBER_ID']}/messages"


class RecordingSleep:
    """Stands in for asyncio.sleep and records each requested delay."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def provider(sleeper: RecordingSleep) -> ProviderClient:
    """Provider client with 3 retries, 1s base delay, x2 backoff and no real sleeping."""
    return ProviderClient(
        api_url=API_URL,
        phone_number_id=os.environ["PROVIDER_PHONE_NUMBER_ID"],
        access_token=os.environ["PROVIDER_ACCESS_TOKEN"],
        default_country_code="91",
        max_retries=3,
        base_delay=1.0,
        multiplier=2.0,
        timeout=5.0,
        sleep=sleeper,
    )


@pytest.fixture
def memory_store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture
def sql_store():
    """SqlMessageStore on a private in-memory SQLite database."""
    engine = build_engine("sqlite://")
    init_db(bind=engine)
    yield SqlMessageStore(sessionmaker(autocommit=False, autoflush=False, bind=engine))
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Runs a test once against each MessageStore implementation."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def client(memory_store, provider):
    """Test client wired to an in-memory store and the test provider client."""
    app.dependency_overrides[get_store] = lambda: memory_store
    app.dependency_overrides[get_provider] = lambda: provider

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
