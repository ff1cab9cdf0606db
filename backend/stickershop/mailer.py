"""Transactional email through Resend.

Sending never raises: a missing API key or a provider failure is logged and
reported as False, so callers (webhooks in particular) are never broken by
the email channel.
"""

import asyncio
import html
import logging
from typing import Any, Dict, Optional

import resend

logger = logging.getLogger(__name__)


class Mailer:
    """Thin async wrapper around the Resend SDK."""

    def __init__(self, api_key: str, from_email: str):
        self.api_key = api_key
        self.from_email = from_email

    async def send(self, to: str, subject: str, html: str) -> bool:
        """Send one email. Returns True if the provider accepted it."""
        if not self.api_key:
            logger.warning("RESEND_API_KEY not set - email '%s' not sent", subject)
            return False
        if not to:
            logger.warning("No recipient for email '%s'", subject)
            return False

        params: Dict[str, Any] = {
            "from": self.from_email,
            "to": [to],
            "subject": subject,
            "html": html.strip(),
        }
        try:
            await asyncio.to_thread(self._send_sync, params)
        except Exception as e:
            logger.error("Failed to send email '%s': %s", subject, type(e).__name__)
            logger.debug("Email provider error: %s", str(e))
            return False

        logger.info("Email '%s' sent", subject)
        return True

    def _send_sync(self, params: Dict[str, Any]) -> None:
        resend.api_key = self.api_key
        resend.Emails.send(params)


# -----------------------------
# Templates
# -----------------------------

def _esc(value: Any) -> str:
    return html.escape(str(value or ""), quote=True)


def render_magic_link_email(link: str, ttl_minutes: int) -> str:
    safe_link = html.escape(link, quote=True)
    return f"""
    <p>Hi,</p>
    <p>Click the link below to sign in. It works once and expires in {ttl_minutes} minutes.</p>
    <p><a href="{safe_link}">Sign in</a></p>
    <p>If you didn't ask for this, you can ignore this email.</p>
    """


def render_order_notification(
    buyer_name: str,
    buyer_email: str,
    address: Dict[str, Any],
    artwork_url: str,
    fulfillment_ok: bool,
    fulfillment_detail: Optional[str] = None,
) -> str:
    """Operator email for a completed sticker purchase."""
    if fulfillment_ok:
        status_html = f"<p><strong>Print order:</strong> submitted ({_esc(fulfillment_detail)})</p>"
    else:
        status_html = (
            "<p><strong>Print order:</strong> FAILED - needs manual attention</p>"
            f"<pre>{_esc(fulfillment_detail)}</pre>"
        )

    postal = address.get("postal_code") or address.get("zip") or ""
    return f"""
    <h2>New Sticker Order</h2>
    <p><strong>Buyer Name:</strong> {_esc(buyer_name)}</p>
    <p><strong>Buyer Email:</strong> {_esc(buyer_email)}</p>
    <p><strong>Address:</strong><br/>
      {_esc(address.get("line1"))}<br/>
      {_esc(address.get("line2"))}<br/>
      {_esc(address.get("city"))}, {_esc(address.get("state"))} {_esc(postal)}<br/>
      {_esc(address.get("country"))}
    </p>
    {status_html}
    <p><strong>Sticker Image:</strong></p>
    <img src="{_esc(artwork_url)}" alt="Purchased Sticker" style="max-width:300px; border:1px solid #ccc; border-radius:6px;" />
    <p>View order details in the Stripe Dashboard.</p>
    """
