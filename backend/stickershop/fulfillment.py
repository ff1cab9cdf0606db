"""Print order submission.

Turns a paid sticker purchase into a print partner order:

1. Build ship-to / billing records from whatever address data the checkout
   produced (best-effort, nothing here is validated)
2. Normalise the destination country and resolve a SKU for it
3. Submit the order with the payment event id as its SourceId

The partner treats SourceId as unique when IsPartnerSourceIdUnique is set, so
a redelivered payment event cannot produce a second physical order. Nothing
here retries; a failed submission is reported to the operator by the caller.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from stickershop.catalog import CatalogResolver, DesiredAttributes
from stickershop.config import Settings
from stickershop.providers.print_partner import PrintPartnerClient

logger = logging.getLogger(__name__)

# Partner limit on SourceId length
SOURCE_ID_MAX_LENGTH = 50

# Partner requires a phone number; checkout doesn't always collect one
PHONE_PLACEHOLDER = "0000000000"


@dataclass
class OrderConfirmation:
    order_id: Optional[str]
    sku: str
    country_code: str
    source_id: str
    test_mode: bool
    raw: Dict[str, Any]


def split_name(full_name: Optional[str]) -> Tuple[str, str]:
    """Split on the first whitespace run: "Mary Ann Smith" -> ("Mary", "Ann Smith")."""
    parts = (full_name or "").strip().split(None, 1)
    if not parts:
        return "", ""
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]


def truncate_source_id(key: str) -> str:
    return (key or "")[:SOURCE_ID_MAX_LENGTH]


def _field(address: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = address.get(key)
        if value:
            return str(value)
    return ""


class FulfillmentSubmitter:
    """Submit print orders for completed sticker purchases."""

    def __init__(self, client: PrintPartnerClient, resolver: CatalogResolver, settings: Settings):
        self.client = client
        self.resolver = resolver
        self.settings = settings

    def build_address(
        self,
        buyer_name: str,
        buyer_email: str,
        address: Dict[str, Any],
        country_code: str,
    ) -> Dict[str, Any]:
        first_name, last_name = split_name(buyer_name)
        return {
            "FirstName": first_name,
            "LastName": last_name,
            "Line1": _field(address, "line1", "address1", "street"),
            "Line2": _field(address, "line2", "address2"),
            "City": _field(address, "city"),
            "State": _field(address, "state", "province", "region"),
            "CountryCode": country_code,
            "PostalCode": _field(address, "postal_code", "zip", "postcode"),
            "Phone": _field(address, "phone") or PHONE_PLACEHOLDER,
            "Email": buyer_email or "",
            "IsBusinessAddress": False,
        }

    def build_order(
        self,
        artwork_url: str,
        buyer_email: str,
        buyer_name: str,
        address: Dict[str, Any],
        country_code: str,
        sku: str,
        source_id: str,
    ) -> Dict[str, Any]:
        recipient = self.build_address(buyer_name, buyer_email, address, country_code)
        return {
            "ShipToAddress": recipient,
            "BillingAddress": dict(recipient),
            "Items": [
                {
                    "Quantity": 1,
                    "SKU": sku,
                    "ShipType": "standard",
                    "SourceId": source_id,
                    "Files": [{"Type": "Default", "Url": artwork_url or ""}],
                }
            ],
            "Payment": {"PartnerBillingKey": self.settings.print_billing_key},
            "SourceId": source_id,
            "IsPartnerSourceIdUnique": True,
            "IsInTestMode": self.settings.print_test_mode,
        }

    async def submit_order(
        self,
        artwork_url: str,
        buyer_email: str,
        buyer_name: str,
        address: Optional[Dict[str, Any]],
        idempotency_key: str,
    ) -> OrderConfirmation:
        """
        Resolve a SKU and submit one print order.

        Raises:
            MissingFulfillmentCredentials: partner not configured
            CatalogFetchFailed, SkuResolutionFailed: no SKU for the destination
            FulfillmentRejected: partner refused the order
        """
        self.client.require_credentials()
        address = address or {}

        country_code = self.resolver.normalize_country(_field(address, "country", "country_code"))
        desired = DesiredAttributes(
            size=self.settings.print_size,
            pack=self.settings.print_pack,
            variant=self.settings.print_variant,
        )
        sku = await self.resolver.resolve_sku(country_code, desired, self.settings.print_preferred_sku or None)

        source_id = truncate_source_id(idempotency_key)
        body = self.build_order(artwork_url, buyer_email, buyer_name, address, country_code, sku, source_id)
        if not artwork_url:
            logger.warning("Submitting order %s with no artwork URL", source_id)

        data = await self.client.create_order(body)
        order_id = data.get("Id") or data.get("id") or data.get("OrderId")
        logger.info("Print order submitted (source=%s, sku=%s, country=%s, order=%s)",
                    source_id, sku, country_code, order_id)

        return OrderConfirmation(
            order_id=str(order_id) if order_id else None,
            sku=sku,
            country_code=country_code,
            source_id=source_id,
            test_mode=self.settings.print_test_mode,
            raw=data,
        )
