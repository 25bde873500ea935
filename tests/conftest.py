"""Shared fixtures."""

import os

# Set environment BEFORE any imports from shop_oauth
os.environ["SECRET_KEY"] = "test-secret-key-for-testing"
os.environ["SHOPIFY_API_KEY"] = "test-api-key"
os.environ["SHOPIFY_API_SECRET"] = "test-api-secret"
os.environ["APP_URL"] = "https://test.example.com"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("ENCRYPTION_KEY", None)

import json
from concurrent.futures import Executor, Future
from datetime import datetime, timedelta, timezone
from urllib.parse import quote

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shop_oauth.auth.config import OAuthConfig
from shop_oauth.auth.cookies import StateCookieCodec
from shop_oauth.auth.signature import canonical_message, compute_hmac
from shop_oauth.auth.state_store import StateStore
from shop_oauth.db.models import Base

API_KEY = "test-api-key"
API_SECRET = "test-api-secret"
COOKIE_SECRET = "test-secret-key-for-testing"


class FakeClock:
    """Settable clock for code that takes a ``clock`` callable."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class InlineExecutor(Executor):
    """Runs submitted work on the caller's thread, so tier 1 writes land before put returns."""

    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class FakeShopify:
    """Token endpoint that honors each issued authorization code once."""

    def __init__(self, scope: str = "read_products,write_orders"):
        self.scope = scope
        self.issued: set[str] = set()
        self.used: set[str] = set()
        self.requests: list[httpx.Request] = []

    def issue(self, code: str) -> str:
        self.issued.add(code)
        return code

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = json.loads(request.content)

        if body.get("client_id") != API_KEY or body.get("client_secret") != API_SECRET:
            return httpx.Response(401, json={"errors": "[API] Invalid API key or access token"})

        code = body.get("code")
        if code in self.issued and code not in self.used:
            self.used.add(code)
            return httpx.Response(
                200, json={"access_token": f"shpat_{code}_token", "scope": self.scope}
            )

        return httpx.Response(
            400,
            json={
                "error": "invalid_request",
                "error_description": "The authorization code is invalid or was already used",
            },
        )

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def build_signed_query(params: dict, secret: str = API_SECRET) -> str:
    """Encode ``params`` as a query string with a valid ``hmac`` appended."""
    pairs = [(key, quote(str(value), safe="")) for key, value in params.items()]
    digest = compute_hmac(canonical_message(pairs), secret)
    return "&".join(f"{k}={v}" for k, v in pairs) + f"&hmac={digest}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_engine():
    """In-memory SQLite shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def config():
    return OAuthConfig(
        api_key=API_KEY,
        api_secret=API_SECRET,
        scopes="read_products,write_orders",
        app_url="https://test.example.com",
        shop_domain_suffixes=("myshopify.com", "example.com"),
        cookie_secret=COOKIE_SECRET,
    )


@pytest.fixture
def cookie_codec(clock):
    return StateCookieCodec(COOKIE_SECRET, clock=clock)


@pytest.fixture
def inline_executor():
    return InlineExecutor()


@pytest.fixture
def state_store(session_factory, cookie_codec, clock, inline_executor):
    return StateStore(
        session_factory, cookie_codec, ttl_seconds=600, clock=clock, executor=inline_executor
    )


@pytest.fixture
def fake_shopify():
    return FakeShopify()


@pytest.fixture
def sign_query():
    return build_signed_query
