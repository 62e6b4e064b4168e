"""
Shopify order metafield write-back for terminal job states.

`notify` raises on failure; `notify_safely` is what background tasks run, so a
write-back error is logged and never reaches the HTTP caller.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from clients.shopify_client import ShopifyClient, ShopifyError, order_id_to_gid
from config import Settings
from services.job_store import is_manual_ref

logger = logging.getLogger(__name__)

METAFIELD_NAMESPACE = "ai_art"
METAFIELD_TYPE = "single_line_text_field"

METAFIELDS_SET_MUTATION = """
mutation MetafieldsSet($metafields: [MetafieldsSetInput!]!) {
  metafieldsSet(metafields: $metafields) {
    userErrors {
      field
      message
    }
  }
}
"""


@dataclass
class WritebackRequest:
    external_ref: str
    status: str
    runpod_id: str
    image_url: Optional[str] = None
    video_url: Optional[str] = None


class WritebackNotifier:
    def __init__(self, settings: Settings, shopify_client: Optional[ShopifyClient] = None):
        self.settings = settings
        self._shopify_client = shopify_client

    @property
    def shopify_client(self) -> ShopifyClient:
        if self._shopify_client is None:
            self._shopify_client = ShopifyClient(
                store_domain=self.settings.require("shopify_store_domain"),
                access_token=self.settings.require("shopify_admin_access_token"),
                api_version=self.settings.shopify_api_version,
                timeout_seconds=self.settings.api_timeout_seconds,
                verify=self.settings.verify_tls,
            )
        return self._shopify_client

    def should_notify(self, external_ref: Optional[str]) -> bool:
        return self.settings.shopify_integration_enabled and not is_manual_ref(external_ref)

    def notify(self, request: WritebackRequest) -> bool:
        """Write the four ai_art metafields. Returns False when write-back does not apply."""
        if not self.should_notify(request.external_ref):
            return False

        owner_id = order_id_to_gid(request.external_ref)
        values = {
            "status": request.status,
            "runpod_id": request.runpod_id,
            "output_image_url": request.image_url or "",
            "output_video_url": request.video_url or "",
        }
        metafields = [
            {
                "ownerId": owner_id,
                "namespace": METAFIELD_NAMESPACE,
                "key": key,
                "type": METAFIELD_TYPE,
                "value": value,
            }
            for key, value in values.items()
        ]
        data = self.shopify_client.graphql(METAFIELDS_SET_MUTATION, {"metafields": metafields})

        user_errors = ((data.get("metafieldsSet") or {}).get("userErrors")) or []
        if user_errors:
            messages = "; ".join((e.get("message") if isinstance(e, dict) else None) or "unknown" for e in user_errors)
            raise ShopifyError(f"Shopify metafieldsSet userErrors: {messages}")

        logger.info("Shopify metafields written for %s (%s, job %s)", owner_id, request.status, request.runpod_id)
        return True

    def notify_safely(self, request: WritebackRequest) -> bool:
        try:
            return self.notify(request)
        except Exception as e:
            logger.error(
                "Shopify write-back failed for order %s (job %s, %s): %s",
                request.external_ref, request.runpod_id, request.status, e,
            )
            return False
