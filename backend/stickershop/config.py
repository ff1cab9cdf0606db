"""Runtime configuration for the sticker pipeline.

All settings are read once at startup into a ``Settings`` instance which is
then handed to every component explicitly. Secrets may come from GCP Secret
Manager (when ``GCP_PROJECT_ID`` is set) and otherwise from the environment.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

logger = logging.getLogger(__name__)


# -----------------------------
# Secret loading
# -----------------------------

def _get_secret_from_gcp(project_id: str, secret_name: str) -> Optional[str]:
    """Fetch a secret from GCP Secret Manager.

    Returns None if GCP is not configured or the secret can't be read.
    """
    if not project_id:
        return None

    from google.cloud import secretmanager

    try:
        client = secretmanager.SecretManagerServiceClient()
        name = f"projects/{project_id}/secrets/{secret_name}/versions/latest"
        response = client.access_secret_version(request={"name": name})
        return response.payload.data.decode("UTF-8")
    except Exception as e:
        logger.warning("Failed to fetch secret %s from GCP: %s", secret_name, str(e))
        return None


def _get_secret(project_id: str, secret_name: str, env_var: str) -> str:
    """Get a secret from GCP Secret Manager with env var fallback.

    Priority:
    1. GCP Secret Manager (if GCP_PROJECT_ID is set)
    2. Environment variable
    3. Empty string (feature disabled)
    """
    gcp_value = _get_secret_from_gcp(project_id, secret_name)
    if gcp_value:
        logger.info("Loaded %s from GCP Secret Manager", secret_name)
        return gcp_value

    return os.environ.get(env_var, "")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    return float(raw) if raw else default


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.environ.get(name, "")
    items = tuple(item.strip().upper() for item in raw.split(",") if item.strip())
    return items or default


# -----------------------------
# Settings
# -----------------------------

@dataclass
class Settings:
    """Everything the pipeline needs to talk to its collaborators."""

    # Datastore
    database_url: str = ""

    # Public URLs
    public_base_url: str = "http://localhost:8000"

    # Sessions / magic links
    session_secret: str = ""
    session_cookie_name: str = "session"
    cookie_secure: bool = True
    session_ttl_days: int = 90
    login_token_ttl_minutes: int = 15
    login_rate_limit_per_hour: int = 5

    # Entitlements
    free_generations_per_day: int = 3
    quota_window_hours: int = 24

    # Generation API
    replicate_api_token: str = ""
    replicate_api_url: str = "https://api.replicate.com/v1"
    openai_api_key: str = ""
    generation_model: str = "openai/gpt-image-1"

    # Image preprocessing
    image_max_dimension: int = 1024
    image_pad_fraction: float = 0.12
    max_upload_bytes: int = 10 * 1024 * 1024

    # Temporary file host
    tmpfiles_upload_url: str = "https://tmpfiles.org/api/v1/upload"

    # Print partner
    print_api_url: str = "https://api.print.io/api/v/5/source/api"
    print_recipe_id: str = ""
    print_billing_key: str = ""
    print_product_id: str = ""
    print_test_mode: bool = True
    print_preferred_sku: str = ""
    print_size: str = "3x3"
    print_pack: str = "1"
    print_variant: str = "white"
    print_fallback_country: str = "US"
    catalog_cache_ttl_seconds: int = 21600

    # Payments
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_price_id_pro: str = ""
    sticker_price_cents: int = 700
    sticker_currency: str = "usd"
    shipping_countries: Tuple[str, ...] = field(default_factory=lambda: ("US", "CA"))

    # Email
    resend_api_key: str = ""
    email_from: str = "Sticker Shop <orders@example.com>"
    operator_email: str = ""

    # Outbound HTTP
    http_timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment."""
        project_id = os.environ.get("GCP_PROJECT_ID", "")

        settings = cls(
            database_url=os.environ.get("DATABASE_URL", ""),
            public_base_url=os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/"),
            session_secret=_get_secret(project_id, "session-secret", "SESSION_SECRET"),
            session_cookie_name=os.environ.get("SESSION_COOKIE_NAME", "session"),
            cookie_secure=_env_bool("COOKIE_SECURE", True),
            session_ttl_days=_env_int("SESSION_TTL_DAYS", 90),
            login_token_ttl_minutes=_env_int("LOGIN_TOKEN_TTL_MINUTES", 15),
            login_rate_limit_per_hour=_env_int("LOGIN_RATE_LIMIT_PER_HOUR", 5),
            free_generations_per_day=_env_int("FREE_GENERATIONS_PER_DAY", 3),
            quota_window_hours=_env_int("QUOTA_WINDOW_HOURS", 24),
            replicate_api_token=_get_secret(project_id, "replicate-api-token", "REPLICATE_API_TOKEN"),
            replicate_api_url=os.environ.get("REPLICATE_API_URL", "https://api.replicate.com/v1").rstrip("/"),
            openai_api_key=_get_secret(project_id, "openai-api-key", "OPENAI_API_KEY"),
            generation_model=os.environ.get("GENERATION_MODEL", "openai/gpt-image-1"),
            image_max_dimension=_env_int("IMAGE_MAX_DIMENSION", 1024),
            image_pad_fraction=_env_float("IMAGE_PAD_FRACTION", 0.12),
            max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", 10 * 1024 * 1024),
            tmpfiles_upload_url=os.environ.get("TMPFILES_UPLOAD_URL", "https://tmpfiles.org/api/v1/upload"),
            print_api_url=os.environ.get("PRINT_API_URL", "https://api.print.io/api/v/5/source/api").rstrip("/"),
            print_recipe_id=os.environ.get("PRINT_RECIPE_ID", ""),
            print_billing_key=_get_secret(project_id, "print-billing-key", "PRINT_BILLING_KEY"),
            print_product_id=os.environ.get("PRINT_PRODUCT_ID", ""),
            print_test_mode=_env_bool("PRINT_TEST_MODE", True),
            print_preferred_sku=os.environ.get("PRINT_PREFERRED_SKU", ""),
            print_size=os.environ.get("PRINT_SIZE", "3x3"),
            print_pack=os.environ.get("PRINT_PACK", "1"),
            print_variant=os.environ.get("PRINT_VARIANT", "white"),
            print_fallback_country=os.environ.get("PRINT_FALLBACK_COUNTRY", "US").upper(),
            catalog_cache_ttl_seconds=_env_int("CATALOG_CACHE_TTL_SECONDS", 21600),
            stripe_secret_key=_get_secret(project_id, "stripe-secret-key", "STRIPE_SECRET_KEY"),
            stripe_webhook_secret=_get_secret(project_id, "stripe-webhook-secret", "STRIPE_WEBHOOK_SECRET"),
            stripe_price_id_pro=os.environ.get("STRIPE_PRICE_ID_PRO", ""),
            sticker_price_cents=_env_int("STICKER_PRICE_CENTS", 700),
            sticker_currency=os.environ.get("STICKER_CURRENCY", "usd"),
            shipping_countries=_env_list("SHIPPING_COUNTRIES", ("US", "CA")),
            resend_api_key=_get_secret(project_id, "resend-api-key", "RESEND_API_KEY"),
            email_from=os.environ.get("EMAIL_FROM", "Sticker Shop <orders@example.com>"),
            operator_email=os.environ.get("OPERATOR_EMAIL", ""),
            http_timeout_seconds=_env_float("HTTP_TIMEOUT_SECONDS", 30.0),
        )

        if not settings.session_secret:
            logger.warning("SESSION_SECRET not set - sign-in is disabled")
        return settings
