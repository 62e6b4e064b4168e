"""
RunPod serverless API client (job submission and status).
"""
import json
import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RunpodClient:
    def __init__(
        self,
        endpoint_id: str,
        api_key: str,
        base_url: str = "https://api.runpod.ai/v2",
        timeout_seconds: float = 60,
        verify: bool = True,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.endpoint_id = endpoint_id
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.verify = verify
        self.transport = transport

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout_seconds, verify=self.verify, transport=self.transport)

    @staticmethod
    def _parse_body(response: httpx.Response) -> Dict[str, Any]:
        raw = response.text
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {"raw": raw}
        return parsed if isinstance(parsed, dict) else {"raw": parsed}

    def run(self, request_body: str) -> Dict[str, Any]:
        """POST an already-serialized `{input, webhook}` body to /run. Returns the parsed response."""
        url = f"{self.base_url}/{self.endpoint_id}/run"
        with self._client() as client:
            r = client.post(url, content=request_body.encode("utf-8"), headers=self._headers())
        parsed = self._parse_body(r)
        if r.status_code >= 400:
            raise ProviderError(
                f"RunPod submit failed ({r.status_code} {r.reason_phrase}): {json.dumps(parsed)}",
                status_code=r.status_code,
                body=parsed,
            )
        logger.info("RunPod job submitted (endpoint %s, status %s)", self.endpoint_id, parsed.get("status"))
        return parsed

    def get_status(self, job_id: str) -> Dict[str, Any]:
        """GET /status/{job_id}. Returns the full job object."""
        url = f"{self.base_url}/{self.endpoint_id}/status/{job_id}"
        with self._client() as client:
            r = client.get(url, headers=self._headers())
        parsed = self._parse_body(r)
        if r.status_code >= 400:
            raise ProviderError(
                f"RunPod status error {r.status_code}: {r.text[:500]}",
                status_code=r.status_code,
                body=parsed,
            )
        return parsed


def runpod_client_from_settings(settings) -> RunpodClient:
    return RunpodClient(
        endpoint_id=settings.require("runpod_endpoint_id"),
        api_key=settings.require("runpod_api_key"),
        base_url=settings.runpod_api_base_url,
        timeout_seconds=settings.api_timeout_seconds,
        verify=settings.verify_tls,
    )
