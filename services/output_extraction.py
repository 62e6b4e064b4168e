"""
Read-only helpers over loosely-shaped RunPod job payloads.

Webhook bodies and /status responses share one envelope (`id`, `status`,
`output`, `error`, ...) but `output` is whatever the worker returned, so every
accessor returns None instead of raising on an unexpected shape.
"""
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

from database import OrderStatus

IMAGE_KEY_PATTERN = re.compile(r"(image|img|output_image|preview|result)", re.IGNORECASE)
VIDEO_KEY_PATTERN = re.compile(r"(video|timelapse|time_lapse|output_video)", re.IGNORECASE)
DATA_URI_PATTERN = re.compile(r"^data:(image|video)/[a-z0-9.+-]+;base64,", re.IGNORECASE)
URL_IN_TEXT_PATTERN = re.compile(r"https?://[^\s\"')]+")
IMAGE_EXT_PATTERN = re.compile(r"\.(png|jpe?g|webp|avif|gif)(\?|$)", re.IGNORECASE)
VIDEO_EXT_PATTERN = re.compile(r"\.(mp4|mov|webm|mkv)(\?|$)", re.IGNORECASE)

FAILED_PROVIDER_STATUSES = {"FAILED", "CANCELLED", "TIMED_OUT"}
MAX_FAILURE_REASON_LENGTH = 500


def as_dict(value: Any) -> Optional[Dict[str, Any]]:
    return value if isinstance(value, dict) else None


def as_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


@dataclass
class JobEnvelope:
    id: Optional[str] = None
    status: str = ""
    output: Any = None
    error: Any = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def parse(cls, payload: Any) -> "JobEnvelope":
        data = as_dict(payload) or {}
        job_id = as_str(data.get("id")) or as_str(data.get("jobId"))
        status = data.get("status")
        known = {"id", "jobId", "status", "output", "error"}
        return cls(
            id=job_id,
            status=status.strip().upper() if isinstance(status, str) else "",
            output=data.get("output"),
            error=data.get("error"),
            extra={k: v for k, v in data.items() if k not in known},
        )

    @property
    def message(self) -> Any:
        output = as_dict(self.output)
        return output.get("message") if output else None

    @property
    def result(self) -> Any:
        """`output.message` when the worker set one, else the whole `output`."""
        message = self.message
        return message if message is not None else self.output


def map_provider_status(status: str) -> Optional[str]:
    """COMPLETED -> SUCCEEDED, FAILED/CANCELLED/TIMED_OUT -> FAILED, anything else -> None."""
    normalized = (status or "").strip().upper()
    if normalized == "COMPLETED":
        return OrderStatus.SUCCEEDED.value
    if normalized in FAILED_PROVIDER_STATUSES:
        return OrderStatus.FAILED.value
    return None


def try_asset_ref(value: Any) -> Optional[str]:
    """An absolute http(s) URL or a base64 image/video data URI, else None."""
    if not isinstance(value, str) or not value.strip():
        return None
    trimmed = value.strip()
    if DATA_URI_PATTERN.match(trimmed):
        return trimmed
    parsed = urlparse(trimmed)
    if parsed.scheme in ("http", "https") and parsed.netloc:
        return trimmed
    return None


def find_first_url_by_keys(value: Any, key_pattern, visited: Optional[set] = None) -> Optional[str]:
    if visited is None:
        visited = set()
    if isinstance(value, (dict, list)):
        if id(value) in visited:
            return None
        visited.add(id(value))

    direct = try_asset_ref(value)
    if direct:
        return direct

    if isinstance(value, list):
        for item in value:
            found = find_first_url_by_keys(item, key_pattern, visited)
            if found:
                return found
        return None

    obj = as_dict(value)
    if obj is None:
        return None

    for key, nested in obj.items():
        if key_pattern.search(str(key).lower()):
            found = find_first_url_by_keys(nested, key_pattern, visited)
            if found:
                return found

    for nested in obj.values():
        found = find_first_url_by_keys(nested, key_pattern, visited)
        if found:
            return found
    return None


def collect_urls_from_text(text: str) -> Tuple[Optional[str], Optional[str]]:
    image_url = None
    video_url = None
    for candidate in URL_IN_TEXT_PATTERN.findall(text or ""):
        url = try_asset_ref(candidate)
        if not url:
            continue
        if image_url is None and IMAGE_EXT_PATTERN.search(url):
            image_url = url
        if video_url is None and VIDEO_EXT_PATTERN.search(url):
            video_url = url
    return image_url, video_url


def extract_output_urls(message: Any) -> Tuple[Optional[str], Optional[str]]:
    """Best-guess (image_url, video_url) from a worker output message."""
    if isinstance(message, str):
        # A bare asset string is one asset, not both.
        image_url, video_url = classify_asset_ref(try_asset_ref(message))
        text_image, text_video = collect_urls_from_text(message)
        image_url = image_url or text_image
        video_url = video_url or text_video
        return image_url, video_url

    image_url = find_first_url_by_keys(message, IMAGE_KEY_PATTERN)
    video_url = find_first_url_by_keys(message, VIDEO_KEY_PATTERN)
    return image_url, video_url


def classify_asset_ref(ref: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split a single asset reference into (image_url, video_url) by data-URI type or extension."""
    if not ref:
        return None, None
    if ref.lower().startswith("data:video/") or VIDEO_EXT_PATTERN.search(ref):
        return None, ref
    return ref, None


def _stringify(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value if value.strip() else None
    if isinstance(value, (dict, list)):
        if not value:
            return None
        return json.dumps(value, default=str)
    return str(value)


def extract_failure_reason(payload: Any) -> Optional[str]:
    """First non-empty candidate among error/message fields, whitespace-collapsed and capped."""
    data = as_dict(payload) or {}
    output = as_dict(data.get("output")) or {}
    candidates = []
    for value in (data.get("error"), data.get("message"), output.get("error"), output.get("message")):
        nested = as_dict(value)
        if nested:
            # Prefer the inner text over the serialized object.
            candidates.extend([nested.get("error"), nested.get("message")])
        candidates.append(value)

    for candidate in candidates:
        text = _stringify(candidate)
        if not text:
            continue
        collapsed = " ".join(text.split())
        if not collapsed:
            continue
        if len(collapsed) > MAX_FAILURE_REASON_LENGTH:
            return collapsed[: MAX_FAILURE_REASON_LENGTH - 1] + "…"
        return collapsed
    return None


def extract_immediate_output(response: Any) -> Tuple[Optional[str], Optional[str]]:
    """Asset from a /run response that completed synchronously (`output.message` as a single URL)."""
    output = as_dict((as_dict(response) or {}).get("output")) or {}
    message = output.get("message")
    if not isinstance(message, str):
        return None, None
    return classify_asset_ref(try_asset_ref(message))
