"""
Submits prepared workflows to RunPod with a token-authenticated webhook callback.
"""
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode, urlparse

from clients.runpod_client import RunpodClient, runpod_client_from_settings
from config import ConfigError, Settings
from services.payload_builder import PayloadBuilder, ensure_request_size_limit, resolve_seed
from services.storage import get_storage_client

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/webhooks/runpod"
JOB_ID_KEYS = ("id", "jobId", "requestId", "executionId")
LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


class SubmissionError(Exception):
    pass


@dataclass
class SubmitResult:
    seed: int
    webhook_url: str
    runpod_id: str
    response: Dict[str, Any]

    @property
    def status(self) -> str:
        raw = self.response.get("status")
        return raw.upper() if isinstance(raw, str) else "IN_QUEUE"


def build_webhook_url(settings: Settings) -> str:
    base_url = (settings.public_base_url or "").strip().rstrip("/")
    if not base_url:
        raise ConfigError("Missing required environment variable: PUBLIC_BASE_URL")
    secret = settings.require("runpod_webhook_secret")
    token_param = (settings.runpod_webhook_token_param or "").strip() or "token"

    host = (urlparse(base_url).hostname or "").lower()
    if host in LOOPBACK_HOSTS and not settings.mock_mode:
        raise ConfigError("PUBLIC_BASE_URL must be a production domain (not localhost) for RunPod webhooks")

    return f"{base_url}{WEBHOOK_PATH}?{urlencode({token_param: secret})}"


def extract_job_id(response: Dict[str, Any]) -> str:
    """First non-empty id-like field at the top level, then under `output`."""
    for source in (response, response.get("output")):
        if not isinstance(source, dict):
            continue
        for key in JOB_ID_KEYS:
            candidate = source.get(key)
            if isinstance(candidate, str) and candidate.strip():
                return candidate
    raise SubmissionError(f"Unable to extract RunPod job id from response: {json.dumps(response, default=str)}")


class JobSubmitter:
    def __init__(
        self,
        settings: Settings,
        payload_builder: Optional[PayloadBuilder] = None,
        runpod_client: Optional[RunpodClient] = None,
    ):
        self.settings = settings
        self.payload_builder = payload_builder or PayloadBuilder(settings, get_storage_client(settings))
        self._runpod_client = runpod_client

    @property
    def runpod_client(self) -> RunpodClient:
        if self._runpod_client is None:
            self._runpod_client = runpod_client_from_settings(self.settings)
        return self._runpod_client

    def submit(self, image_url: str, style: str, seed: Optional[int] = None) -> SubmitResult:
        webhook_url = build_webhook_url(self.settings)
        resolved_seed = resolve_seed(seed)

        if self.settings.mock_mode:
            response = {"id": f"mock-{uuid.uuid4()}", "status": "IN_QUEUE", "mock": True}
            return SubmitResult(resolved_seed, webhook_url, response["id"], response)

        prepared = self.payload_builder.build(image_url, style, resolved_seed)
        request_body = json.dumps({"input": prepared.to_input(), "webhook": webhook_url})
        size = ensure_request_size_limit(request_body, self.settings.max_request_bytes)

        logger.info(
            "Submitting RunPod job (style=%r, seed=%s, transport=%s, %d bytes)",
            style, prepared.seed, prepared.image_transport, size,
        )
        response = self.runpod_client.run(request_body)
        runpod_id = extract_job_id(response)
        logger.info("RunPod job %s accepted with status %s", runpod_id, response.get("status"))
        return SubmitResult(prepared.seed, webhook_url, runpod_id, response)
