"""
Test fixtures: one temp SQLite file per test, in-memory KV store,
httpx client over ASGITransport (lifespan does not run, so tables
are created here).
"""

import itertools
import json
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from authledger.core.config import Config
from authledger.core.kv import MemoryStore
from authledger.main import create_app
from authledger.webhooks import WebhookNotifier

SERVICE_KEYS = {
    "order-service":  "order-key-123",
    "reader-service": "reader-key-456",
}


@pytest.fixture
def env(tmp_path) -> dict:
    return {
        "ENV":                       "development",
        "DB_PATH":                   str(tmp_path / "authledger-test.db"),
        "JWT_SECRET":                "test-secret",
        "FRONTEND_URL":              "http://localhost:3000",
        "ALLOWED_SERVICES":          "order-service,reader-service",
        "SERVICE_API_KEYS":          json.dumps(SERVICE_KEYS),
        "SERVICE_PERMISSIONS":       json.dumps({"reader-service": ["balance", "transaction"]}),
        "IDEMPOTENCY_RETRY_WAIT_MS": "20",
        "GOOGLE_CLIENT_ID":          "google-client",
        "GOOGLE_CLIENT_SECRET":      "google-secret",
    }


@pytest.fixture
def cfg(env) -> Config:
    return Config(env)


@pytest.fixture
def notifier() -> WebhookNotifier:
    """No subscribers by default; webhook tests build their own."""
    return WebhookNotifier((), "")


@pytest_asyncio.fixture
async def app(cfg, notifier) -> AsyncGenerator[FastAPI, None]:
    app = create_app(cfg, store=MemoryStore(), notifier=notifier)
    await app.state.db.init_all_tables()
    yield app
    await notifier.aclose()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def wallet(app):
    return app.state.wallet


@pytest.fixture
def make_user(app):
    """await make_user() → a fresh User with a unique email."""
    counter = itertools.count(1)

    async def _make(email: str = None, referrer_id: int = None, name: str = None):
        n = next(counter)
        return await app.state.users.create(
            email       = email or f"user{n}@example.com",
            name        = name or f"User {n}",
            referrer_id = referrer_id,
        )

    return _make


@pytest.fixture
def user_headers(app):
    def _headers(user) -> dict:
        token = app.state.signer.make_jwt(user.id, user.email)
        return {"Authorization": f"Bearer {token}"}
    return _headers


def service_headers(name: str = "order-service", key: str = None, idempotency_key: str = None) -> dict:
    headers = {"X-Service-Name": name, "X-API-Key": key or SERVICE_KEYS.get(name, "")}
    if idempotency_key:
        headers["Idempotency-Key"] = idempotency_key
    return headers
