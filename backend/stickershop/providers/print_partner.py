"""
Print partner integration.

Two calls are used:
- GET productvariants: the country-scoped variant catalog for one product
- POST orders: submit a print order

The catalog endpoint is not contractually stable about its shape, so this
module only returns decoded JSON pages; ``stickershop.catalog`` turns them
into typed variants. Each response body is capped at 5 MiB whether or not the
server announces a Content-Length.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

import httpx

from stickershop.config import Settings
from stickershop.errors import CatalogFetchFailed, FulfillmentRejected, MissingFulfillmentCredentials

logger = logging.getLogger(__name__)

# -----------------------------
# Configuration
# -----------------------------

MAX_CATALOG_BYTES = 5 * 1024 * 1024

# Hard stop on catalog pagination
MAX_CATALOG_PAGES = 20


class PrintPartnerClient:
    """
    Async client for the print partner API.

    Usage:
        client = PrintPartnerClient(settings, http)
        pages = await client.fetch_variant_pages("CA")
        confirmation = await client.create_order(order_body)
    """

    def __init__(self, settings: Settings, http: httpx.AsyncClient):
        self.settings = settings
        self.http = http

    def require_credentials(self) -> None:
        if not self.settings.print_recipe_id or not self.settings.print_billing_key:
            raise MissingFulfillmentCredentials("Print partner recipe id / billing key not configured")
        if not self.settings.print_product_id:
            raise MissingFulfillmentCredentials("PRINT_PRODUCT_ID not configured")

    # -----------------------------
    # Catalog
    # -----------------------------

    async def fetch_variant_pages(self, country_code: str) -> List[Any]:
        """Fetch every page of the variant catalog for one country.

        Returns:
            Decoded JSON payloads, one per page, in order.
        """
        self.require_credentials()

        pages: List[Any] = []
        for page in range(1, MAX_CATALOG_PAGES + 1):
            payload = await self._get_capped_json(
                f"{self.settings.print_api_url}/productvariants/",
                params={
                    "recipeid": self.settings.print_recipe_id,
                    "productId": self.settings.print_product_id,
                    "countryCode": country_code,
                    "page": page,
                },
            )
            pages.append(payload)
            if not _has_more_pages(payload):
                break
        else:
            logger.warning("Catalog for %s exceeded %d pages, truncating", country_code, MAX_CATALOG_PAGES)

        logger.info("Fetched %d catalog page(s) for %s", len(pages), country_code)
        return pages

    async def _get_capped_json(self, url: str, params: Dict[str, Any]) -> Any:
        try:
            async with self.http.stream("GET", url, params=params) as response:
                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > MAX_CATALOG_BYTES:
                    raise CatalogFetchFailed(f"Catalog response too large ({declared} bytes)")

                if response.status_code >= 400:
                    body = (await response.aread())[:2000].decode("utf-8", "replace")
                    logger.error("Catalog fetch failed: HTTP %s", response.status_code)
                    raise CatalogFetchFailed(
                        f"Print partner catalog returned HTTP {response.status_code}",
                        partner_status=response.status_code,
                        body=body,
                    )

                chunks: List[bytes] = []
                received = 0
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > MAX_CATALOG_BYTES:
                        raise CatalogFetchFailed(f"Catalog response exceeded {MAX_CATALOG_BYTES} bytes")
                    chunks.append(chunk)
        except httpx.HTTPError as e:
            logger.error("Network error fetching catalog: %s", type(e).__name__)
            raise CatalogFetchFailed(f"Could not reach print partner: {type(e).__name__}") from None

        try:
            return json.loads(b"".join(chunks))
        except ValueError:
            raise CatalogFetchFailed("Print partner catalog returned invalid JSON") from None

    # -----------------------------
    # Orders
    # -----------------------------

    async def create_order(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Submit an order body.

        Raises:
            FulfillmentRejected: non-2xx response or an error flag in the body.
        """
        self.require_credentials()

        try:
            response = await self.http.post(
                f"{self.settings.print_api_url}/orders/",
                params={"recipeid": self.settings.print_recipe_id},
                json=body,
            )
        except httpx.HTTPError as e:
            logger.error("Network error submitting order: %s", type(e).__name__)
            raise FulfillmentRejected(status=0, body=f"{type(e).__name__}: {e}") from None

        if response.status_code >= 400:
            logger.error("Print partner rejected order: HTTP %s", response.status_code)
            raise FulfillmentRejected(status=response.status_code, body=response.text)

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}

        if isinstance(data, dict) and (data.get("HadError") or data.get("hadError")):
            logger.error("Print partner flagged order error: %s", data.get("Errors") or data.get("errors"))
            raise FulfillmentRejected(status=response.status_code, body=response.text)

        return data if isinstance(data, dict) else {"result": data}


def _has_more_pages(payload: Any) -> bool:
    """Whether a catalog page says there is another page after it."""
    if not isinstance(payload, dict):
        return False

    for key in ("HasMore", "hasMore", "has_more"):
        if key in payload:
            return bool(payload[key])

    for key in ("next", "NextPage", "nextPage"):
        if payload.get(key):
            return True

    paging = payload.get("paging") or payload.get("Paging")
    if isinstance(paging, dict):
        try:
            total = int(paging.get("total", 0))
            offset = int(paging.get("offset", 0))
            limit = int(paging.get("limit", 0))
        except (TypeError, ValueError):
            return False
        return limit > 0 and offset + limit < total

    return False
