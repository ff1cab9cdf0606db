"""Error taxonomy for the sticker pipeline.

Every failure a component can report is a ``PipelineError`` subclass carrying
the HTTP status it maps to and a short machine-readable code. The HTTP layer
renders them; components only raise.
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base exception for all pipeline failures."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "", **extra: Any):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "detail": self.message}
        body.update(self.extra)
        return body


# -----------------------------
# Configuration errors
# -----------------------------

class ConfigurationError(PipelineError):
    """Server is missing required configuration."""
    status_code = 500
    code = "configuration_error"


class MissingCredentials(ConfigurationError):
    """Generation API credentials are not configured."""
    code = "missing_credentials"


class MissingFulfillmentCredentials(ConfigurationError):
    """Print partner credentials are not configured."""
    code = "missing_fulfillment_credentials"


class MissingPaymentCredentials(ConfigurationError):
    """Payment processor credentials are not configured."""
    code = "missing_payment_credentials"


class DatabaseUnavailable(ConfigurationError):
    """Database not available."""
    status_code = 503
    code = "database_unavailable"


# -----------------------------
# Validation errors
# -----------------------------

class ValidationError(PipelineError):
    """Request failed validation."""
    status_code = 400
    code = "invalid_request"


class InvalidEmail(ValidationError):
    """Please enter a valid email address."""
    code = "invalid_email"


class InvalidUpload(ValidationError):
    """Uploaded file is missing or unreadable."""
    code = "invalid_upload"


class UploadTooLarge(ValidationError):
    """Uploaded file is too large."""
    status_code = 413
    code = "upload_too_large"


class UnsupportedMediaType(ValidationError):
    """Only JPEG, PNG and WebP images are supported."""
    status_code = 415
    code = "unsupported_media_type"


class MissingCheckoutFields(ValidationError):
    """Missing required fields."""
    code = "missing_checkout_fields"


# -----------------------------
# Authentication errors
# -----------------------------

class AuthenticationError(PipelineError):
    """Authentication failed."""
    status_code = 401
    code = "unauthorized"


class InvalidOrExpiredToken(AuthenticationError):
    """This sign-in link is invalid or has expired."""
    code = "invalid_or_expired_token"


class AuthenticationRequired(AuthenticationError):
    """Sign in required."""
    code = "authentication_required"


class InvalidWebhookSignature(PipelineError):
    """Webhook signature verification failed."""
    status_code = 400
    code = "invalid_signature"


# -----------------------------
# Rate limits
# -----------------------------

class QuotaExceeded(PipelineError):
    """Daily free generation limit reached."""
    status_code = 429
    code = "quota_exceeded"

    def __init__(self, limit: int, used: int, window_hours: int):
        super().__init__(
            f"Free plan allows {limit} generations per {window_hours} hours",
            limit=limit,
            used=used,
            window_hours=window_hours,
        )
        self.limit = limit
        self.used = used
        self.window_hours = window_hours


class LoginRateLimited(PipelineError):
    """Too many sign-in requests. Please try again later."""
    status_code = 429
    code = "login_rate_limited"


# -----------------------------
# Upstream errors
# -----------------------------

class UpstreamError(PipelineError):
    """An upstream provider failed."""
    status_code = 502
    code = "upstream_error"


class ProviderError(UpstreamError):
    """The image generation provider rejected the request."""
    code = "provider_error"

    def __init__(self, message: str, status: Optional[int] = None, details: Any = None):
        super().__init__(message, provider_status=status, details=details)
        self.status = status
        self.details = details


class UploadFailed(UpstreamError):
    """The temporary file host did not accept the upload."""
    code = "upload_failed"


class CatalogFetchFailed(UpstreamError):
    """Could not load the print partner's variant catalog."""
    code = "catalog_fetch_failed"


class SkuResolutionFailed(UpstreamError):
    """No printable product variant could be chosen."""
    code = "sku_resolution_failed"


class NoEnabledVariants(SkuResolutionFailed):
    """The print partner has no enabled variants for this country."""
    code = "no_enabled_variants"


class NoSkuResolved(SkuResolutionFailed):
    """No enabled variant matched the requested attributes."""
    code = "no_sku_resolved"


class FulfillmentRejected(UpstreamError):
    """The print partner rejected the order."""
    code = "fulfillment_rejected"

    def __init__(self, status: int, body: str):
        super().__init__(f"Print partner returned HTTP {status}", partner_status=status, body=body[:2000])
        self.status = status
        self.body = body


class PaymentProviderError(UpstreamError):
    """The payment processor rejected the request."""
    code = "payment_provider_error"
