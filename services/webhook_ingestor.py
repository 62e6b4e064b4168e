"""
RunPod completion webhook: token check and idempotent state reconciliation.
"""
import hmac
import logging
from typing import Any, Dict, Optional, Tuple

from database import OrderStatus
from services.job_store import JobStore
from services.output_extraction import FAILED_PROVIDER_STATUSES, JobEnvelope, extract_output_urls
from services.writeback import WritebackRequest

logger = logging.getLogger(__name__)


class InvalidCallback(ValueError):
    pass


def verify_webhook_token(received: Optional[str], secret: Optional[str]) -> bool:
    expected = (secret or "").encode("utf-8")
    provided = (received or "").encode("utf-8")
    if not expected or len(expected) != len(provided):
        return False
    return hmac.compare_digest(expected, provided)


def handle_callback(
    store: JobStore, payload: Any
) -> Tuple[Dict[str, Any], Optional[WritebackRequest]]:
    """
    Apply one webhook delivery. Returns the JSON acknowledgement and, when the
    delivery actually moved the order to a terminal state, the write-back to run.
    Replays of an already-applied delivery return the same ack with no write-back.
    """
    envelope = JobEnvelope.parse(payload)
    if not envelope.id:
        raise InvalidCallback("Missing runpod id in webhook payload")
    runpod_id = envelope.id
    status = envelope.status

    if status in FAILED_PROVIDER_STATUSES:
        transition = store.mark_failed(runpod_id)
        record = transition.record
        if record is None:
            logger.warning("RunPod webhook (%s) for unknown job %s", status, runpod_id)
            return {"ok": True, "warning": "Job not found"}, None

        logger.info("RunPod job %s reported %s (order %s)", runpod_id, status, record.order_id)
        writeback = None
        if transition.changed:
            writeback = WritebackRequest(
                external_ref=record.shopify_order_id,
                status=OrderStatus.FAILED.value,
                runpod_id=runpod_id,
            )
        return {
            "ok": True,
            "runpodId": runpod_id,
            "status": OrderStatus.FAILED.value,
            "orderId": record.order_id,
        }, writeback

    if status != "COMPLETED":
        return {"ok": True, "ignored": True, "runpodId": runpod_id, "status": status}, None

    image_url, video_url = extract_output_urls(envelope.result)
    transition = store.mark_succeeded(runpod_id, image_url, video_url)
    record = transition.record
    if record is None:
        # The webhook can beat the submitting request's own job insert.
        logger.warning("RunPod webhook for unknown job %s", runpod_id)
        return {"ok": True, "warning": "Job not found"}, None

    logger.info("RunPod job %s completed (order %s, image=%s)", runpod_id, record.order_id, bool(image_url))
    writeback = None
    if transition.changed:
        writeback = WritebackRequest(
            external_ref=record.shopify_order_id,
            status=OrderStatus.SUCCEEDED.value,
            runpod_id=runpod_id,
            image_url=record.output_image_url,
            video_url=record.output_video_url,
        )
    return {
        "ok": True,
        "runpodId": runpod_id,
        "orderId": record.order_id,
        "imageUrl": image_url,
        "videoUrl": video_url,
    }, writeback
