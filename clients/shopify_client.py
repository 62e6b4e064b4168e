"""
Shopify Admin GraphQL client used for order metafield write-back.
"""
import logging
import re
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

ORDER_GID_PREFIX = "gid://shopify/Order/"


class ShopifyError(Exception):
    pass


def normalize_store_domain(value: str) -> str:
    without_protocol = re.sub(r"^https?://", "", (value or "").strip(), flags=re.IGNORECASE)
    domain = without_protocol.split("/")[0]
    if not domain:
        raise ShopifyError("Invalid SHOPIFY_STORE_DOMAIN")
    return domain


def order_id_to_gid(shopify_order_id: str) -> str:
    raw = (shopify_order_id or "").strip()
    if not raw:
        raise ShopifyError("shopify_order_id is required")
    if raw.startswith(ORDER_GID_PREFIX):
        return raw
    if not raw.isdigit():
        raise ShopifyError(f"Invalid Shopify order id: {shopify_order_id}")
    return f"{ORDER_GID_PREFIX}{raw}"


class ShopifyClient:
    """Client for POST /admin/api/{version}/graphql.json."""

    def __init__(
        self,
        store_domain: str,
        access_token: str,
        api_version: str = "2025-10",
        timeout_seconds: float = 60,
        verify: bool = True,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.store_domain = normalize_store_domain(store_domain)
        self.access_token = access_token
        self.api_version = api_version or "2025-10"
        self.timeout_seconds = timeout_seconds
        self.verify = verify
        self.transport = transport

    @property
    def graphql_url(self) -> str:
        return f"https://{self.store_domain}/admin/api/{self.api_version}/graphql.json"

    def graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        """Run a query/mutation and return its `data` block; top-level errors raise ShopifyError."""
        with httpx.Client(timeout=self.timeout_seconds, verify=self.verify, transport=self.transport) as client:
            r = client.post(
                self.graphql_url,
                json={"query": query, "variables": variables},
                headers={
                    "Content-Type": "application/json",
                    "X-Shopify-Access-Token": self.access_token,
                },
            )
        if r.status_code >= 400:
            raise ShopifyError(f"Shopify GraphQL request failed ({r.status_code}): {r.text}")
        try:
            parsed = r.json()
        except ValueError:
            raise ShopifyError("Shopify GraphQL response is not valid JSON")

        errors = parsed.get("errors") if isinstance(parsed, dict) else None
        if errors:
            messages = "; ".join((e.get("message") if isinstance(e, dict) else None) or "unknown" for e in errors)
            raise ShopifyError(f"Shopify GraphQL errors: {messages}")
        data = parsed.get("data") if isinstance(parsed, dict) else None
        if not data:
            raise ShopifyError("Shopify GraphQL response missing data")
        return data
