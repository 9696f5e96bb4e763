# mealplan/conftest.py
import pytest
from fastapi.testclient import TestClient

from mealplan.core.config import Settings
from mealplan.core.database import create_all_tables
from mealplan.features.mealplans.service import MealPlanGenerator
from mealplan.main import create_app
from mealplan.tests.mocks import CLERK_SECRET, PRICE_IDS, WEBHOOK_SECRET, FakeClock, FakeGateway, FakeGroq


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """Keep developer env vars from leaking into database selection."""
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    monkeypatch.delenv("SKIP_ENV_VALIDATION", raising=False)


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        ENV="test",
        DATABASE_URL="sqlite://",
        TEST_DATABASE_URL=None,
        STRIPE_SECRET_KEY=None,
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        STRIPE_PRICE_WEEKLY=PRICE_IDS["week"],
        STRIPE_PRICE_MONTHLY=PRICE_IDS["month"],
        STRIPE_PRICE_YEARLY=PRICE_IDS["year"],
        BASE_URL="http://localhost:3000",
        GROQ_API_KEY=None,
        CLERK_SECRET_KEY=CLERK_SECRET,
        CLERK_ISSUER=None,
        CLERK_JWKS_URL=None,
        AUTH_HEADER_FALLBACK=True,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def fake_groq():
    return FakeGroq()


@pytest.fixture
def app(test_settings, gateway, fake_groq, clock):
    generator = MealPlanGenerator(None, model="test-model", client=fake_groq)
    application = create_app(
        test_settings,
        gateway=gateway,
        generator=generator,
        database_url="sqlite://",
        clock=clock,
    )
    create_all_tables(application.state.services.db_engine)
    yield application
    application.state.services.db_engine.dispose()


@pytest.fixture
def services(app):
    return app.state.services


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
def reconciler(services):
    return services.reconciler


@pytest.fixture
def ingestor(services):
    return services.ingestor


@pytest.fixture
def ledger(services):
    return services.ledger
