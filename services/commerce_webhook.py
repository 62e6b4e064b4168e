"""
Shopify orders/create webhook: signature check, order extraction and
background RunPod dispatch.
"""
import base64
import hashlib
import hmac
import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from config import Settings
from database import OrderStatus
from services.job_store import JobStore
from services.job_submitter import JobSubmitter
from services.upload_validation import UploadValidationError, validate_mime, validate_size

logger = logging.getLogger(__name__)

IMAGE_PROPERTY_PATTERN = re.compile(r"(image|img).*(url|src)|^(image|img|url)$", re.IGNORECASE)
STYLE_PROPERTY_PATTERN = re.compile(r"(style|preset|filter)", re.IGNORECASE)
DEFAULT_STYLE = "default"


class CommerceWebhookError(ValueError):
    pass


def verify_shopify_hmac(raw_body: bytes, incoming_hmac: str, secret: str) -> bool:
    """HMAC-SHA256 of the raw body, compared as decoded base64 digests."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    try:
        received = base64.b64decode(incoming_hmac or "", validate=False)
    except ValueError:
        return False
    if not digest or len(digest) != len(received):
        return False
    return hmac.compare_digest(digest, received)


def should_skip_in_mock_mode(settings: Settings) -> bool:
    if not settings.mock_mode:
        return False
    required = (
        settings.shopify_webhook_secret,
        settings.shopify_store_domain,
        settings.shopify_admin_access_token,
    )
    return not all(value and value.strip() for value in required)


def _as_http_url(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return None
    trimmed = value.strip()
    return trimmed if re.match(r"^https?://[^/\s]+", trimmed, re.IGNORECASE) else None


def find_line_item_property(properties: Any, pattern) -> Optional[str]:
    if not isinstance(properties, list):
        return None
    for prop in properties:
        if not isinstance(prop, dict) or not isinstance(prop.get("name"), str):
            continue
        if not pattern.search(prop["name"].lower()):
            continue
        value = prop.get("value")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _line_items(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    items = payload.get("line_items")
    return [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []


def extract_image_url(payload: Dict[str, Any]) -> str:
    for item in _line_items(payload):
        image = item.get("image")
        featured = item.get("featured_image") if isinstance(item.get("featured_image"), dict) else {}
        if isinstance(image, str):
            candidate = image
        else:
            image = image if isinstance(image, dict) else {}
            candidate = image.get("url") or image.get("src") or featured.get("url") or featured.get("src")

        resolved = _as_http_url(candidate) or _as_http_url(
            find_line_item_property(item.get("properties"), IMAGE_PROPERTY_PATTERN)
        )
        if resolved:
            return resolved
    raise CommerceWebhookError("Unable to extract image URL from Shopify line_items")


def extract_style(payload: Dict[str, Any]) -> str:
    for item in _line_items(payload):
        style = find_line_item_property(item.get("properties"), STYLE_PROPERTY_PATTERN)
        if style:
            return style
    return DEFAULT_STYLE


def extract_order_ref(payload: Dict[str, Any]) -> Optional[str]:
    order_id = payload.get("id")
    if isinstance(order_id, bool) or not isinstance(order_id, (int, str)):
        return None
    return str(order_id).strip() or None


def head_source_image(image_url: str, settings: Settings, transport: Optional[httpx.BaseTransport] = None) -> None:
    """Validate the source image from its HEAD response headers."""
    with httpx.Client(
        timeout=settings.storage_head_timeout_seconds,
        verify=settings.verify_tls,
        transport=transport,
        follow_redirects=True,
    ) as client:
        r = client.head(image_url)

    if r.status_code >= 400:
        raise UploadValidationError("OBJECT_NOT_FOUND", f"Source image is unavailable: {r.status_code}", 404)
    content_type = r.headers.get("content-type")
    if not content_type:
        raise UploadValidationError("UNSUPPORTED_CONTENT_TYPE", "Source image content-type header is missing", 415)
    content_length = r.headers.get("content-length")
    if not content_length:
        raise UploadValidationError("INVALID_PAYLOAD", "Source image content-length header is missing", 400)

    validate_mime(content_type)
    try:
        size = float(content_length)
    except ValueError:
        size = float("nan")
    validate_size(size)


def dispatch_order_job(
    store: JobStore,
    submitter: JobSubmitter,
    order_id: str,
    image_url: str,
    style: str,
    transport: Optional[httpx.BaseTransport] = None,
) -> Optional[str]:
    """
    Validate, submit and attach the RunPod job for a webhook-created order.
    Runs after the webhook has been acknowledged; failures mark the order FAILED.
    """
    try:
        head_source_image(image_url, submitter.settings, transport)
        result = submitter.submit(image_url, style)
        store.attach_job(order_id, result.runpod_id, status=OrderStatus.PROCESSING.value, seed=result.seed)
        logger.info("Order %s dispatched as RunPod job %s", order_id, result.runpod_id)
        return result.runpod_id
    except UploadValidationError as e:
        store.set_order_status(order_id, OrderStatus.FAILED.value)
        logger.warning("Rejected Shopify image for order %s: %s %s", order_id, e.code, e.message)
    except Exception as e:
        store.set_order_status(order_id, OrderStatus.FAILED.value)
        logger.exception("Failed to submit RunPod job for order %s: %s", order_id, e)
    return None
