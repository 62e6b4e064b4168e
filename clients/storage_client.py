"""
Supabase Storage client (service-role access to the upload bucket).
"""
import logging
from typing import Optional, Tuple
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)


class StorageError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def encode_storage_key(key: str) -> str:
    return "/".join(quote(segment, safe="") for segment in key.split("/") if segment)


class SupabaseStorageClient:
    def __init__(
        self,
        supabase_url: str,
        service_role_key: str,
        bucket: str,
        timeout_seconds: float = 60,
        verify: bool = True,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.supabase_url = supabase_url.rstrip("/")
        self.service_role_key = service_role_key
        self.bucket = bucket
        self.timeout_seconds = timeout_seconds
        self.verify = verify
        self.transport = transport

    def _object_url(self, key: str) -> str:
        return f"{self.supabase_url}/storage/v1/object/authenticated/{self.bucket}/{encode_storage_key(key)}"

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.service_role_key}",
            "apikey": self.service_role_key,
        }

    def _client(self, timeout: Optional[float] = None) -> httpx.Client:
        return httpx.Client(
            timeout=timeout if timeout is not None else self.timeout_seconds,
            verify=self.verify,
            transport=self.transport,
        )

    def head_object(self, key: str, timeout: Optional[float] = None) -> httpx.Response:
        """HEAD the object; the caller inspects status and headers."""
        with self._client(timeout) as client:
            return client.head(self._object_url(key), headers=self._headers())

    def download_object(self, key: str) -> Tuple[bytes, str]:
        """Authenticated GET. Returns (body, content_type)."""
        with self._client() as client:
            r = client.get(self._object_url(key), headers=self._headers())
        if r.status_code >= 400:
            raise StorageError(
                f"Supabase download failed ({r.status_code} {r.reason_phrase}): {r.text[:300]}",
                status_code=r.status_code,
            )
        return r.content, r.headers.get("content-type", "")
