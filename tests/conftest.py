import json
import os
import tempfile

_TMP_DIR = tempfile.mkdtemp(prefix="transform-tests-")

# Must be set before the app modules read settings.
os.environ.update(
    {
        "DATABASE_URL": f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}",
        "RUNPOD_ENDPOINT_ID": "ep-test",
        "RUNPOD_API_KEY": "rp-test-key",
        "RUNPOD_WEBHOOK_SECRET": "whsec-test",
        "PUBLIC_BASE_URL": "https://app.example.com",
        "RUNPOD_IMAGE_TRANSPORT": "url",
        "SUPABASE_URL": "https://proj.supabase.co",
        "SUPABASE_SERVICE_ROLE_KEY": "service-role-test",
        "SUPABASE_STORAGE_BUCKET": "art-uploads",
        "SUPABASE_STORAGE_PUBLIC_DOMAIN": "https://store.example",
        "SHOPIFY_STORE_DOMAIN": "test-shop.myshopify.com",
        "SHOPIFY_ADMIN_ACCESS_TOKEN": "shpat-test",
        "SHOPIFY_WEBHOOK_SECRET": "shopify-secret",
        "POC_MOCK_MODE": "false",
        "POC_MOCK_JOB_DELAY_MS": "1",
    }
)
for _name in (
    "SUPABASE_DB_URL",
    "RUNPOD_CHECKPOINT_NAME",
    "RUNPOD_RUN_MAX_REQUEST_BYTES",
    "RUNPOD_COMFY_ORG_API_KEY",
    "COMFY_ORG_API_KEY",
    "WORKFLOW_DIR",
    "SHOPIFY_ENABLED",
    "ALLOW_SELF_SIGNED_TLS",
):
    os.environ.pop(_name, None)

import httpx
import pytest
from fastapi.testclient import TestClient

import main
from clients.runpod_client import RunpodClient
from clients.shopify_client import ShopifyClient
from clients.storage_client import SupabaseStorageClient
from config import get_settings
from database import Base, SessionLocal, get_engine
from services.job_store import MockJobStore, SqlJobStore

SOURCE_IMAGE_URL = "https://store.example/uploads/a.png"
WEBHOOK_TOKEN = "whsec-test"


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_state():
    get_settings.cache_clear()
    main.get_mock_store.cache_clear()
    engine = get_engine()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    main.app.dependency_overrides.clear()
    get_settings.cache_clear()
    main.get_mock_store.cache_clear()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def mock_mode(monkeypatch):
    monkeypatch.setenv("POC_MOCK_MODE", "true")
    get_settings.cache_clear()
    main.get_mock_store.cache_clear()
    return get_settings()


@pytest.fixture
def db_session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def sql_store(db_session):
    return SqlJobStore(db_session)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return MockJobStore(ttl_seconds=60, clock=clock)


def make_runpod_client(handler) -> RunpodClient:
    return RunpodClient(
        endpoint_id="ep-test",
        api_key="rp-test-key",
        base_url="https://api.runpod.test/v2",
        transport=httpx.MockTransport(handler),
    )


def make_shopify_client(handler) -> ShopifyClient:
    return ShopifyClient(
        store_domain="test-shop.myshopify.com",
        access_token="shpat-test",
        transport=httpx.MockTransport(handler),
    )


def make_storage_client(handler) -> SupabaseStorageClient:
    return SupabaseStorageClient(
        supabase_url="https://proj.supabase.co",
        service_role_key="service-role-test",
        bucket="art-uploads",
        transport=httpx.MockTransport(handler),
    )


def png_head_handler(request: httpx.Request) -> httpx.Response:
    """Storage stub that reports every object as a small PNG."""
    if request.method == "HEAD":
        return httpx.Response(200, headers={"content-type": "image/png", "content-length": "2048"})
    return httpx.Response(200, content=b"\x89PNG fake", headers={"content-type": "image/png"})


@pytest.fixture
def client():
    with TestClient(main.app) as c:
        yield c


def read_job(runpod_id: str):
    """Load a job through a fresh session so state written by the app is visible."""
    db = SessionLocal()
    try:
        return SqlJobStore(db).get(runpod_id)
    finally:
        db.close()


class RecordingShopify:
    """Shopify GraphQL stub that records metafieldsSet calls."""

    def __init__(self, user_errors=None):
        self.calls = []
        self.user_errors = user_errors or []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(json.loads(request.content))
        return httpx.Response(200, json={"data": {"metafieldsSet": {"userErrors": self.user_errors}}})

    def metafields(self, index: int = -1) -> dict:
        fields = self.calls[index]["variables"]["metafields"]
        return {f["key"]: f["value"] for f in fields}


@pytest.fixture
def shopify():
    return RecordingShopify()


@pytest.fixture
def notifier_override(shopify, settings):
    from services.writeback import WritebackNotifier

    notifier = WritebackNotifier(settings, make_shopify_client(shopify))
    main.app.dependency_overrides[main.get_notifier] = lambda: notifier
    return notifier
