"""
Object-store helpers: public URL → storage key, and HEAD-based validation of uploads.
"""
import logging
from typing import NamedTuple, Optional
from urllib.parse import unquote, urlparse

from clients.storage_client import StorageError, SupabaseStorageClient
from config import ConfigError, Settings
from services.upload_validation import UploadValidationError

logger = logging.getLogger(__name__)

UPLOADS_PREFIX = "uploads/"
MOCK_STORAGE_PATH = "/api/mock/storage"


class ObjectMeta(NamedTuple):
    content_type: str
    content_length: int


def get_public_domain(settings: Settings) -> str:
    explicit = (settings.supabase_storage_public_domain or "").strip()
    if explicit:
        return explicit.rstrip("/")
    if settings.supabase_url and settings.supabase_storage_bucket:
        return f"{settings.supabase_url.rstrip('/')}/storage/v1/object/public/{settings.supabase_storage_bucket}"
    if settings.mock_mode and settings.public_base_url:
        return f"{settings.public_base_url.rstrip('/')}{MOCK_STORAGE_PATH}"
    raise ConfigError("Missing required environment variable: SUPABASE_STORAGE_PUBLIC_DOMAIN")


def get_storage_client(settings: Settings, transport=None) -> Optional[SupabaseStorageClient]:
    """Service-role client, or None when Supabase credentials are not configured."""
    if not (settings.supabase_url and settings.supabase_service_role_key and settings.supabase_storage_bucket):
        return None
    return SupabaseStorageClient(
        supabase_url=settings.supabase_url,
        service_role_key=settings.supabase_service_role_key,
        bucket=settings.supabase_storage_bucket,
        timeout_seconds=settings.api_timeout_seconds,
        verify=settings.verify_tls,
        transport=transport,
    )


def _origin(parsed) -> str:
    return f"{parsed.scheme}://{parsed.netloc}".lower()


def extract_storage_key_from_public_url(image_url: str, public_domain: str) -> str:
    target = urlparse((image_url or "").strip())
    base = urlparse((public_domain or "").strip())
    if not target.scheme or not target.netloc or not base.scheme or not base.netloc:
        raise UploadValidationError("INVALID_IMAGE_URL", "Invalid image URL", 400)
    if _origin(target) != _origin(base):
        raise UploadValidationError("INVALID_IMAGE_URL", "imageUrl must match storage public domain", 400)

    base_path = base.path.rstrip("/")
    prefix = f"{base_path}/" if base_path else "/"
    if not target.path.startswith(prefix):
        raise UploadValidationError(
            "INVALID_IMAGE_URL",
            "imageUrl path must be under storage public domain base path",
            400,
        )

    key = unquote(target.path[len(prefix):])
    if not key or not key.startswith(UPLOADS_PREFIX):
        raise UploadValidationError("INVALID_IMAGE_URL", "imageUrl key must start with uploads/", 400)
    return key


def head_stored_object(
    key: str,
    *,
    storage_client: Optional[SupabaseStorageClient] = None,
    mock_store=None,
    timeout: Optional[float] = None,
) -> ObjectMeta:
    """Content type and length of an uploaded object (mock store in POC mode, Supabase otherwise)."""
    if mock_store is not None:
        stored = mock_store.get_object(key)
        if stored is None:
            raise UploadValidationError("OBJECT_NOT_FOUND", "Uploaded object not found in mock storage", 404)
        return ObjectMeta(stored.content_type, stored.content_length)

    if storage_client is None:
        raise ConfigError("Missing required environment variable: SUPABASE_URL")

    r = storage_client.head_object(key, timeout)
    if r.status_code == 404:
        raise UploadValidationError("OBJECT_NOT_FOUND", "Uploaded object not found in storage", 404)
    if r.status_code >= 400:
        raise StorageError(
            f"Failed to read storage object metadata: {r.status_code} {r.reason_phrase}",
            status_code=r.status_code,
        )

    content_type = r.headers.get("content-type", "")
    try:
        content_length = int(r.headers.get("content-length", ""))
    except ValueError:
        content_length = -1
    if content_length < 0:
        raise UploadValidationError("INVALID_PAYLOAD", "Object content length is unavailable", 400)
    return ObjectMeta(content_type, content_length)
