import base64
import hashlib
import hmac
import json

import httpx
import pytest

import main
from database import Order
from services.commerce_webhook import (
    CommerceWebhookError,
    dispatch_order_job,
    extract_image_url,
    extract_order_ref,
    extract_style,
    verify_shopify_hmac,
)
from services.job_submitter import JobSubmitter
from services.payload_builder import PayloadBuilder
from tests.conftest import SOURCE_IMAGE_URL, make_runpod_client, read_job

SECRET = "shopify-secret"

ORDER_PAYLOAD = {
    "id": 820982911946154508,
    "line_items": [
        {
            "title": "Custom portrait",
            "properties": [
                {"name": "Image URL", "value": SOURCE_IMAGE_URL},
                {"name": "Style", "value": "watercolor"},
            ],
        }
    ],
}


def _sign(body: bytes, secret: str = SECRET) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def _headers(body: bytes, event_id="evt-1", signature=None):
    return {
        "content-type": "application/json",
        "X-Shopify-Hmac-Sha256": signature if signature is not None else _sign(body),
        "X-Shopify-Event-Id": event_id,
        "X-Shopify-Topic": "orders/create",
    }


@pytest.fixture
def dispatched(monkeypatch):
    calls = []
    monkeypatch.setattr(
        main, "_dispatch_order_in_background", lambda submitter, *args: calls.append(args)
    )
    return calls


def _orders(db_session):
    db_session.expire_all()
    return db_session.query(Order).all()


# ── Extraction ──────────────────────────────────────────────


def test_verify_shopify_hmac():
    body = b'{"id": 1}'
    assert verify_shopify_hmac(body, _sign(body), SECRET)
    assert not verify_shopify_hmac(body, _sign(body, "other"), SECRET)
    assert not verify_shopify_hmac(body, "not-base64!!", SECRET)
    assert not verify_shopify_hmac(body, "", SECRET)


def test_extract_image_url_sources():
    assert extract_image_url({"line_items": [{"image": "https://a.example/x.png"}]}) == "https://a.example/x.png"
    assert extract_image_url({"line_items": [{"image": {"src": "https://a.example/y.png"}}]}) == "https://a.example/y.png"
    assert (
        extract_image_url({"line_items": [{"featured_image": {"url": "https://a.example/z.png"}}]})
        == "https://a.example/z.png"
    )
    assert extract_image_url(ORDER_PAYLOAD) == SOURCE_IMAGE_URL


def test_extract_image_url_missing():
    with pytest.raises(CommerceWebhookError):
        extract_image_url({"line_items": [{"image": "relative/path.png", "properties": []}]})
    with pytest.raises(CommerceWebhookError):
        extract_image_url({})


def test_extract_style_and_ref():
    assert extract_style(ORDER_PAYLOAD) == "watercolor"
    assert extract_style({"line_items": [{"properties": [{"name": "Size", "value": "A3"}]}]}) == "default"
    assert extract_order_ref(ORDER_PAYLOAD) == "820982911946154508"
    assert extract_order_ref({"id": True}) is None
    assert extract_order_ref({}) is None


# ── Endpoint ────────────────────────────────────────────────


def test_valid_order_is_accepted_and_dispatched(client, dispatched, db_session):
    body = json.dumps(ORDER_PAYLOAD).encode()
    r = client.post("/api/webhooks/shopify", content=body, headers=_headers(body))
    assert r.status_code == 200
    assert r.json() == {"ok": True}

    orders = _orders(db_session)
    assert len(orders) == 1
    assert orders[0].shopify_order_id == "820982911946154508"
    assert orders[0].style == "watercolor"
    assert orders[0].status == "PENDING"
    assert dispatched == [(orders[0].id, SOURCE_IMAGE_URL, "watercolor")]


def test_duplicate_event_is_ignored(client, dispatched, db_session):
    body = json.dumps(ORDER_PAYLOAD).encode()
    client.post("/api/webhooks/shopify", content=body, headers=_headers(body))
    r = client.post("/api/webhooks/shopify", content=body, headers=_headers(body))
    assert r.json() == {"ok": True, "duplicate": True}
    assert len(dispatched) == 1
    assert len(_orders(db_session)) == 1


def test_missing_hmac_header(client, dispatched):
    body = json.dumps(ORDER_PAYLOAD).encode()
    headers = _headers(body)
    del headers["X-Shopify-Hmac-Sha256"]
    r = client.post("/api/webhooks/shopify", content=body, headers=headers)
    assert r.status_code == 401


def test_missing_event_id(client, dispatched):
    body = json.dumps(ORDER_PAYLOAD).encode()
    headers = _headers(body)
    del headers["X-Shopify-Event-Id"]
    r = client.post("/api/webhooks/shopify", content=body, headers=headers)
    assert r.status_code == 400


def test_bad_signature(client, dispatched, db_session):
    body = json.dumps(ORDER_PAYLOAD).encode()
    r = client.post("/api/webhooks/shopify", content=body, headers=_headers(body, signature=_sign(b"tampered")))
    assert r.status_code == 401
    assert dispatched == []
    assert _orders(db_session) == []


def test_missing_order_id(client, dispatched):
    body = json.dumps({"line_items": ORDER_PAYLOAD["line_items"]}).encode()
    r = client.post("/api/webhooks/shopify", content=body, headers=_headers(body))
    assert r.status_code == 400


def test_disabled_integration(client, dispatched, monkeypatch):
    monkeypatch.setenv("SHOPIFY_ENABLED", "false")
    main.get_settings.cache_clear()
    r = client.post("/api/webhooks/shopify", content=b"{}", headers={"content-type": "application/json"})
    assert r.json() == {"ok": True, "disabled": True, "skipped": True}


def test_mock_mode_without_shopify_config(monkeypatch, mock_mode, client, dispatched):
    monkeypatch.delenv("SHOPIFY_WEBHOOK_SECRET")
    main.get_settings.cache_clear()
    r = client.post("/api/webhooks/shopify", content=b"{}", headers={"content-type": "application/json"})
    assert r.json() == {"ok": True, "mock": True, "skipped": True}


# ── Background dispatch ─────────────────────────────────────


def _head(status_code=200, content_type="image/png", content_length="4096"):
    headers = {}
    if content_type:
        headers["content-type"] = content_type
    if content_length:
        headers["content-length"] = content_length
    return httpx.MockTransport(lambda request: httpx.Response(status_code, headers=headers))


def _submitter(settings, runpod_handler):
    return JobSubmitter(settings, PayloadBuilder(settings), make_runpod_client(runpod_handler))


def _new_order(sql_store):
    return sql_store.create_order(external_ref="777", image_url=SOURCE_IMAGE_URL, style="sketch")


def test_dispatch_attaches_processing_job(settings, sql_store):
    order_id = _new_order(sql_store)
    submitter = _submitter(settings, lambda request: httpx.Response(200, json={"id": "rp-shop", "status": "IN_QUEUE"}))

    assert dispatch_order_job(sql_store, submitter, order_id, SOURCE_IMAGE_URL, "sketch", _head()) == "rp-shop"
    record = read_job("rp-shop")
    assert record.order_id == order_id
    assert record.status == "PROCESSING"


@pytest.mark.parametrize(
    "head",
    [
        _head(status_code=404),
        _head(content_type="image/gif"),
        _head(content_type=None),
        _head(content_length=None),
        _head(content_length=str(20 * 1024 * 1024)),
    ],
)
def test_dispatch_rejects_bad_source(settings, sql_store, db_session, head):
    order_id = _new_order(sql_store)
    calls = []
    submitter = _submitter(settings, lambda request: calls.append(request) or httpx.Response(200, json={"id": "x"}))

    assert dispatch_order_job(sql_store, submitter, order_id, SOURCE_IMAGE_URL, "sketch", head) is None
    assert calls == []
    assert _orders(db_session)[0].status == "FAILED"


def test_dispatch_provider_failure_marks_failed(settings, sql_store, db_session):
    order_id = _new_order(sql_store)
    submitter = _submitter(settings, lambda request: httpx.Response(502, text="bad gateway"))

    assert dispatch_order_job(sql_store, submitter, order_id, SOURCE_IMAGE_URL, "sketch", _head()) is None
    assert _orders(db_session)[0].status == "FAILED"
