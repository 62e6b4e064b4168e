"""
Pull-side reconciliation: refresh a job from RunPod /status on read.

The live call is best-effort; if RunPod is unreachable the stored state is
returned unchanged. The stored status only moves out of PROCESSING here.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from clients.runpod_client import ProviderError, RunpodClient
from config import ConfigError
from database import OrderStatus
from services.job_store import JobRecord, JobStore, is_terminal
from services.output_extraction import (
    JobEnvelope,
    extract_failure_reason,
    extract_output_urls,
    map_provider_status,
)
from services.writeback import WritebackRequest

logger = logging.getLogger(__name__)


@dataclass
class PollResult:
    runpod_id: str
    order_id: str
    status: str
    output_image_url: Optional[str] = None
    output_video_url: Optional[str] = None
    failure_reason: Optional[str] = None
    writeback: Optional[WritebackRequest] = None

    def to_response(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "runpodId": self.runpod_id,
            "orderId": self.order_id,
            "status": self.status,
            "outputImageUrl": self.output_image_url,
            "outputVideoUrl": self.output_video_url,
            "failureReason": self.failure_reason,
        }


def _from_record(record: JobRecord) -> PollResult:
    return PollResult(
        runpod_id=record.runpod_id,
        order_id=record.order_id,
        status=record.status,
        output_image_url=record.output_image_url,
        output_video_url=record.output_video_url,
    )


class StatusPoller:
    def __init__(self, store: JobStore, runpod_client: Optional[RunpodClient]):
        self.store = store
        self.runpod_client = runpod_client

    def _fetch_live(self, runpod_id: str) -> Optional[Dict[str, Any]]:
        if self.runpod_client is None:
            return None
        try:
            return self.runpod_client.get_status(runpod_id)
        except (ProviderError, httpx.HTTPError, ConfigError) as e:
            logger.warning("RunPod status refresh failed for %s, using stored state: %s", runpod_id, e)
            return None

    def poll(self, runpod_id: str) -> Optional[PollResult]:
        """Stored + live view of one job, or None when the job is unknown."""
        record = self.store.get(runpod_id)
        if record is None:
            return None
        if record.status == OrderStatus.SUCCEEDED.value:
            return _from_record(record)

        live = self._fetch_live(runpod_id)
        if live is None:
            return _from_record(record)

        envelope = JobEnvelope.parse(live)
        mapped = map_provider_status(envelope.status)
        image_url, video_url = extract_output_urls(envelope.result)

        result = _from_record(record)
        if mapped and record.status == OrderStatus.PROCESSING.value:
            result.status = mapped
        result.output_image_url = image_url or record.output_image_url
        result.output_video_url = video_url or record.output_video_url
        if result.status == OrderStatus.FAILED.value:
            result.failure_reason = extract_failure_reason(live)

        try:
            transition = self.store.apply_poll_result(runpod_id, mapped, image_url, video_url)
        except Exception as e:
            logger.warning("Persisting polled state for %s failed: %s", runpod_id, e)
            return result

        stored = transition.record
        if transition.changed and stored is not None and is_terminal(stored.status):
            logger.info("RunPod job %s reconciled to %s by status poll", runpod_id, stored.status)
            result.writeback = WritebackRequest(
                external_ref=stored.shopify_order_id,
                status=stored.status,
                runpod_id=runpod_id,
                image_url=stored.output_image_url,
                video_url=stored.output_video_url,
            )
        return result
