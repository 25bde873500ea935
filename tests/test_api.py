"""Tests for the HTTP endpoints."""

import base64
import hashlib
import hmac
import json
import time
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

API_SECRET = "test-api-secret"
SHOP = "test-store.myshopify.com"


@pytest.fixture
def app_state(config, session_factory, fake_shopify, inline_executor):
    """Wire the app to the test database, state store, and fake provider."""
    from shop_oauth.api.deps import get_db, get_token_exchanger
    from shop_oauth.auth.cookies import StateCookieCodec
    from shop_oauth.auth.state_store import StateStore
    from shop_oauth.auth.token_exchange import TokenExchanger
    from shop_oauth.server import app

    store = StateStore(
        session_factory, StateCookieCodec(config.cookie_secret), executor=inline_executor
    )

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.state.config = config
    app.state.state_store = store
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_token_exchanger] = lambda: TokenExchanger(
        config, transport=fake_shopify.transport()
    )
    yield app
    app.dependency_overrides.clear()
    app.state.config = None
    app.state.state_store = None


@pytest.fixture
def client(app_state):
    return TestClient(app_state)


def _callback_query(sign_query, state, code="abc", shop=SHOP) -> str:
    return sign_query(
        {"code": code, "shop": shop, "state": state, "timestamp": str(int(time.time()))}
    )


class TestBeginEndpoint:
    """Tests for GET /auth/begin."""

    def test_redirects_and_sets_cookie(self, client, app_state):
        response = client.get("/auth/begin", params={"shop": SHOP}, follow_redirects=False)

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert location.netloc == SHOP
        assert location.path == "/admin/oauth/authorize"

        set_cookie = response.headers["set-cookie"]
        assert set_cookie.startswith("shop_oauth_state=")
        assert "HttpOnly" in set_cookie
        assert "samesite=lax" in set_cookie.lower()
        assert "Max-Age=600" in set_cookie
        assert response.headers["x-correlation-id"]

        nonce = parse_qs(location.query)["state"][0]
        assert app_state.state.state_store.get(SHOP) == nonce

    def test_invalid_shop(self, client):
        response = client.get("/auth/begin", params={"shop": "evil.com"}, follow_redirects=False)

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["code"] == "VALIDATION_ERROR"
        assert "store.myshopify.com" in detail["error"]

    def test_missing_shop(self, client):
        response = client.get("/auth/begin", follow_redirects=False)
        assert response.status_code == 400

    def test_not_configured(self, client, config):
        config.api_key = ""
        response = client.get("/auth/begin", params={"shop": SHOP}, follow_redirects=False)

        assert response.status_code == 500
        assert response.json()["detail"]["code"] == "CONFIGURATION_ERROR"


class TestCallbackEndpoint:
    """Tests for GET /auth/callback."""

    def test_full_install(self, client, fake_shopify, sign_query, session_factory):
        from shop_oauth.auth.sessions import SessionPersister

        fake_shopify.issue("abc")
        begin = client.get("/auth/begin", params={"shop": SHOP}, follow_redirects=False)
        nonce = parse_qs(urlparse(begin.headers["location"]).query)["state"][0]

        response = client.get(
            f"/auth/callback?{_callback_query(sign_query, nonce)}&host=YWRtaW4",
            follow_redirects=False,
        )

        # host was appended after signing: unsigned parameter
        assert response.status_code == 401

        response = client.get(
            "/auth/callback?"
            + sign_query(
                {
                    "code": "abc",
                    "host": "YWRtaW4",
                    "shop": SHOP,
                    "state": nonce,
                    "timestamp": str(int(time.time())),
                }
            ),
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == (
            "https://test.example.com/?shop=test-store.myshopify.com&host=YWRtaW4"
        )
        set_cookie = response.headers["set-cookie"]
        assert set_cookie.startswith("shop_oauth_state=")
        assert "Max-Age=0" in set_cookie

        db = session_factory()
        try:
            session = SessionPersister(db).load(f"offline_{SHOP}")
        finally:
            db.close()
        assert session.access_token == "shpat_abc_token"

    def test_csrf_failure_is_generic(self, client, sign_query):
        client.get("/auth/begin", params={"shop": SHOP}, follow_redirects=False)

        response = client.get(
            f"/auth/callback?{_callback_query(sign_query, 'f' * 64)}", follow_redirects=False
        )

        assert response.status_code == 401
        detail = response.json()["detail"]
        assert detail["code"] == "CSRF_FAILED"
        assert detail["error"] == (
            "Authorization could not be verified. Please restart the installation."
        )
        assert detail["correlation_id"]
        assert "nonce" not in json.dumps(detail).lower()

    def test_replayed_code(self, client, fake_shopify, sign_query):
        fake_shopify.issue("abc")
        fake_shopify.used.add("abc")

        begin = client.get("/auth/begin", params={"shop": SHOP}, follow_redirects=False)
        nonce = parse_qs(urlparse(begin.headers["location"]).query)["state"][0]

        response = client.get(
            f"/auth/callback?{_callback_query(sign_query, nonce)}", follow_redirects=False
        )

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["code"] == "AUTH_CODE_EXPIRED"
        assert detail["detail"] == "step=exchanging"

    def test_missing_parameters(self, client):
        response = client.get("/auth/callback?shop=" + SHOP, follow_redirects=False)

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "VALIDATION_ERROR"


class TestStatusEndpoint:
    """Tests for GET /api/oauth/status."""

    def test_not_connected(self, client):
        response = client.get("/api/oauth/status", params={"shop": SHOP})

        assert response.status_code == 200
        assert response.json()["connected"] is False

    def test_connected_never_returns_token(self, client, session_factory):
        from shop_oauth.auth.sessions import Session, SessionPersister

        db = session_factory()
        try:
            SessionPersister(db).store(
                Session(shop=SHOP, is_online=False, scope="read_products", access_token="shpat_x")
            )
        finally:
            db.close()

        response = client.get("/api/oauth/status", params={"shop": SHOP})

        data = response.json()
        assert data["connected"] is True
        assert data["scopes"] == ["read_products"]
        assert data["installed_at"]
        assert "shpat_x" not in response.text

    def test_invalid_shop(self, client):
        response = client.get("/api/oauth/status", params={"shop": "evil.com"})
        assert response.status_code == 400


class TestUninstallWebhook:
    """Tests for POST /webhooks/shopify/uninstall."""

    def _sign(self, body: bytes) -> str:
        return base64.b64encode(hmac.new(API_SECRET.encode(), body, hashlib.sha256).digest()).decode()

    def test_deletes_sessions(self, client, session_factory):
        from shop_oauth.auth.sessions import Session, SessionPersister

        db = session_factory()
        try:
            SessionPersister(db).store(
                Session(shop=SHOP, is_online=False, scope="read_products", access_token="shpat_x")
            )
        finally:
            db.close()

        body = json.dumps({"myshopify_domain": SHOP}).encode()
        response = client.post(
            "/webhooks/shopify/uninstall",
            content=body,
            headers={"X-Shopify-Hmac-Sha256": self._sign(body), "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "sessions_deleted": 1}
        assert client.get("/api/oauth/status", params={"shop": SHOP}).json()["connected"] is False

    def test_shop_from_header(self, client):
        body = b"{}"
        response = client.post(
            "/webhooks/shopify/uninstall",
            content=body,
            headers={
                "X-Shopify-Hmac-Sha256": self._sign(body),
                "X-Shopify-Shop-Domain": SHOP,
            },
        )
        assert response.status_code == 200
        assert response.json()["sessions_deleted"] == 0

    def test_invalid_signature(self, client):
        response = client.post(
            "/webhooks/shopify/uninstall",
            content=b'{"myshopify_domain": "test-store.myshopify.com"}',
            headers={"X-Shopify-Hmac-Sha256": "bogus"},
        )

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "INVALID_WEBHOOK_SIGNATURE"

    def test_missing_shop(self, client):
        body = b'{"id": 1}'
        response = client.post(
            "/webhooks/shopify/uninstall",
            content=body,
            headers={"X-Shopify-Hmac-Sha256": self._sign(body)},
        )
        assert response.status_code == 400


class TestHealth:
    """Tests for GET /api/health."""

    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["state_db_available"] is True
        assert data["state_cache_entries"] == 0
