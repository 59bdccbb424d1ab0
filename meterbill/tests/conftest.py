from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from meterbill.apps.api.main import create_app
from meterbill.core.config import Settings, get_settings
from meterbill.persistence.db import Database


ADMIN_API_KEY = "test-admin-key"
# 32 bytes, hex encoded.
SECRETS_ENCRYPTION_KEY = "0123456789abcdef" * 4
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"


def _apply_env(monkeypatch, database_url: str) -> None:
    # Route settings to a throwaway SQLite file and fixed test credentials.
    monkeypatch.setenv("DATABASE_URL", database_url)
    monkeypatch.setenv("ADMIN_API_KEY", ADMIN_API_KEY)
    monkeypatch.setenv("SECRETS_ENCRYPTION_KEY", SECRETS_ENCRYPTION_KEY)
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", STRIPE_WEBHOOK_SECRET)
    monkeypatch.setenv("HARD_LIMIT_OVERAGE_MODE", "flag")
    monkeypatch.setenv("OVERAGE_ROUNDING", "half_up")
    get_settings.cache_clear()


@pytest.fixture
def settings(monkeypatch, tmp_path) -> Settings:
    _apply_env(monkeypatch, f"sqlite+aiosqlite:///{tmp_path / 'meterbill-test.db'}")
    yield get_settings()
    # Reset cached settings so env overrides never leak into the next test.
    get_settings.cache_clear()


@pytest.fixture
async def database(settings: Settings) -> Database:
    db = Database(settings.database_url, settings=settings)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
async def client(database: Database, settings: Settings) -> AsyncClient:
    # ASGITransport skips lifespan, so the app uses the injected database directly.
    app = create_app(database=database, settings=settings)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Api-Key": ADMIN_API_KEY}
