import json
import time

import pytest
from fastapi.testclient import TestClient

from cosmic_cv.config import Settings
from cosmic_cv.identity import encode_session_token
from cosmic_cv.main import create_app
from cosmic_cv.resolver import EntitlementResolver
from cosmic_cv.store import SQLEntitlementStore
from cosmic_cv.webhooks import WebhookIngestor, compute_signature

WEBHOOK_SECRET = "whsec_test_secret"
SESSION_SECRET = "session-test-secret"


def make_payload(event_name, resource_id, status, email=None, user_id=None, **attributes):
    custom_data = {"user_id": user_id} if user_id is not None else {}
    attrs = {"status": status, **attributes}
    if email is not None:
        attrs["user_email"] = email
    body = {
        "meta": {"event_name": event_name, "custom_data": custom_data},
        "data": {"type": "orders", "id": resource_id, "attributes": attrs},
    }
    return json.dumps(body).encode("utf-8")


def sign(body, secret=WEBHOOK_SECRET):
    return compute_signature(body, secret)


def session_token(user_id="u42", email="new@user.com", secret=SESSION_SECRET, ttl=3600):
    return encode_session_token({"sub": user_id, "email": email, "exp": int(time.time()) + ttl}, secret)


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        sqlite_path=str(tmp_path / "entitlements.db"),
        store_timeout_seconds=10.0,
        webhook_secret=WEBHOOK_SECRET,
        session_jwt_secret=SESSION_SECRET,
        checkout_url="https://store.example.com/buy/variant-1",
        verify_max_attempts=3,
        verify_interval_seconds=0.0,
    )


@pytest.fixture()
def store(settings):
    sql_store = SQLEntitlementStore(settings)
    sql_store.init_schema()
    return sql_store


@pytest.fixture()
def ingestor(store):
    return WebhookIngestor(store, WEBHOOK_SECRET)


@pytest.fixture()
def resolver(store):
    return EntitlementResolver(store)


@pytest.fixture()
def client(settings, store):
    app = create_app(settings=settings, store=store)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def auth_headers():
    return {"Authorization": f"Bearer {session_token()}"}
