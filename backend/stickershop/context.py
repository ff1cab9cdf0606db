"""Process-wide handles, built once at startup.

Everything that would otherwise be module-global (settings, the database
pool, the shared HTTP client, the variant cache) lives on one ``AppContext``
stored at ``app.state.ctx``. Tests build their own from fakes.
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from stickershop.auth import SessionAuthenticator
from stickershop.billing import BillingService
from stickershop.catalog import CatalogResolver, VariantCache
from stickershop.config import Settings
from stickershop.database import Database
from stickershop.entitlements import EntitlementGate
from stickershop.fulfillment import FulfillmentSubmitter
from stickershop.generation import ArtworkGenerationOrchestrator
from stickershop.mailer import Mailer
from stickershop.providers import PrintPartnerClient, ReplicateClient, TmpFilesClient
from stickershop.webhooks import PaymentWebhookRouter


@dataclass
class AppContext:
    settings: Settings
    db: Database
    http: httpx.AsyncClient
    mailer: Mailer
    variant_cache: VariantCache
    catalog: CatalogResolver
    auth: SessionAuthenticator
    entitlements: EntitlementGate
    generation: ArtworkGenerationOrchestrator
    fulfillment: FulfillmentSubmitter
    billing: BillingService
    webhooks: PaymentWebhookRouter


def build_context(
    settings: Settings,
    db: Database,
    http: httpx.AsyncClient,
    mailer: Optional[Mailer] = None,
) -> AppContext:
    """Wire every component from settings and the shared handles."""
    mailer = mailer or Mailer(settings.resend_api_key, settings.email_from)

    print_partner = PrintPartnerClient(settings, http)
    variant_cache = VariantCache(settings.catalog_cache_ttl_seconds)
    catalog = CatalogResolver(print_partner, variant_cache, settings.print_fallback_country)

    generation = ArtworkGenerationOrchestrator(
        generator=ReplicateClient(settings, http),
        file_host=TmpFilesClient(settings.tmpfiles_upload_url, http),
        max_dimension=settings.image_max_dimension,
        pad_fraction=settings.image_pad_fraction,
    )
    fulfillment = FulfillmentSubmitter(print_partner, catalog, settings)
    billing = BillingService(settings)

    return AppContext(
        settings=settings,
        db=db,
        http=http,
        mailer=mailer,
        variant_cache=variant_cache,
        catalog=catalog,
        auth=SessionAuthenticator(settings, db, mailer),
        entitlements=EntitlementGate(db, settings.free_generations_per_day, settings.quota_window_hours),
        generation=generation,
        fulfillment=fulfillment,
        billing=billing,
        webhooks=PaymentWebhookRouter(billing, db, fulfillment, mailer, settings.operator_email),
    )
