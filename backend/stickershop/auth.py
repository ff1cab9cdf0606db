"""Authentication module for the sticker pipeline.

Passwordless sign-in with single-use magic links, backed by server-side
session records.

Flow:
1. request_login(email) stores a hash of a random token and emails the link
2. verify(token) consumes the token and opens a session
3. The session id travels in a signed cookie; the database row is the truth
4. sign_out(session) deletes the row

SECURITY:
- Only an HMAC-SHA256 of a login token (keyed with the session secret) is
  stored, never the token itself
- Tokens expire after 15 minutes and can be redeemed exactly once
- The cookie is an HS256 JWT whose only claims are the session id and expiry
- Responses never reveal whether an email address was already registered
"""

import hashlib
import hmac
import logging
import re
import secrets
import time
from dataclasses import dataclass
from typing import Any, Optional, Tuple
from urllib.parse import urlencode

from fastapi import Request
from jose import JWTError, jwt

from stickershop.config import Settings
from stickershop.database import Database
from stickershop.errors import (
    AuthenticationRequired,
    InvalidEmail,
    InvalidOrExpiredToken,
    LoginRateLimited,
    MissingCredentials,
)
from stickershop.mailer import Mailer, render_magic_link_email

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"

# Deliberately loose: one @, something on both sides, a dot in the domain
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# -----------------------------
# Helpers
# -----------------------------

def normalize_email(email: str) -> str:
    """Trim and lower-case an email address, rejecting obviously bad shapes."""
    normalized = (email or "").strip().lower()
    if len(normalized) > 320 or not _EMAIL_RE.match(normalized):
        raise InvalidEmail()
    return normalized


def hash_login_token(token: str, secret: str) -> str:
    """Hash a login token for database storage.

    Keyed with the session secret so a leaked table can't be replayed
    against another deployment.
    """
    return hmac.new(secret.encode("utf-8"), f"token:{token}".encode("utf-8"), hashlib.sha256).hexdigest()


# -----------------------------
# Models
# -----------------------------

@dataclass
class CurrentUser:
    """The signed-in user, as seen by route handlers."""
    id: int
    email: str
    session_id: str


@dataclass
class SessionCookie:
    """Value and lifetime for the Set-Cookie header."""
    value: str
    max_age: int


class SessionAuthenticator:
    """Magic-link login and cookie sessions.

    Usage:
        auth = SessionAuthenticator(settings, db, mailer)
        await auth.request_login("a@example.com")
        user, cookie = await auth.verify(token_from_link)
    """

    def __init__(self, settings: Settings, db: Database, mailer: Mailer):
        self.settings = settings
        self.db = db
        self.mailer = mailer

    def _require_secret(self) -> str:
        if not self.settings.session_secret:
            raise MissingCredentials("SESSION_SECRET not configured")
        return self.settings.session_secret

    # -----------------------------
    # Login request
    # -----------------------------

    async def request_login(self, email: str) -> None:
        """Create a login token for this email and send the magic link.

        The outcome is the same whether or not the email was seen before.
        Email delivery failures are logged, not raised.
        """
        secret = self._require_secret()
        normalized = normalize_email(email)

        user = await self.db.upsert_user(normalized)

        recent = await self.db.count_recent_login_tokens(user["id"], minutes=60)
        if recent >= self.settings.login_rate_limit_per_hour:
            logger.warning("Login rate limit hit for user %s", user["id"])
            raise LoginRateLimited()

        token = secrets.token_urlsafe(32)
        await self.db.create_login_token(
            user["id"],
            hash_login_token(token, secret),
            self.settings.login_token_ttl_minutes,
        )

        link = self.build_verify_url(token)
        sent = await self.mailer.send(
            to=normalized,
            subject="Your sign-in link",
            html=render_magic_link_email(link, self.settings.login_token_ttl_minutes),
        )
        if not sent:
            logger.error("Magic link email was not delivered for user %s", user["id"])
        else:
            logger.info("Magic link sent for user %s", user["id"])

    def build_verify_url(self, token: str) -> str:
        return f"{self.settings.public_base_url}/auth/verify?{urlencode({'token': token})}"

    # -----------------------------
    # Verification
    # -----------------------------

    async def verify(self, token: str) -> Tuple[dict, SessionCookie]:
        """Redeem a login token and open a new session.

        Raises:
            InvalidOrExpiredToken: unknown, expired or already used token.
        """
        secret = self._require_secret()
        if not token:
            raise InvalidOrExpiredToken()

        session_id = secrets.token_hex(32)
        user = await self.db.redeem_login_token(
            hash_login_token(token, secret),
            session_id,
            self.settings.session_ttl_days,
        )
        if not user:
            raise InvalidOrExpiredToken()

        logger.info("User %s signed in", user["id"])
        return user, self.create_cookie(session_id)

    # -----------------------------
    # Cookies
    # -----------------------------

    def create_cookie(self, session_id: str) -> SessionCookie:
        secret = self._require_secret()
        max_age = self.settings.session_ttl_days * 86400
        payload: dict[str, Any] = {
            "sid": session_id,
            "iat": int(time.time()),
            "exp": int(time.time()) + max_age,
        }
        return SessionCookie(value=jwt.encode(payload, secret, algorithm=JWT_ALGORITHM), max_age=max_age)

    def read_cookie(self, cookie_value: Optional[str]) -> Optional[str]:
        """Return the session id inside a cookie, or None if it doesn't verify."""
        if not cookie_value or not self.settings.session_secret:
            return None
        try:
            payload = jwt.decode(cookie_value, self.settings.session_secret, algorithms=[JWT_ALGORITHM])
        except JWTError as e:
            logger.debug("Session cookie rejected: %s", str(e))
            return None
        session_id = payload.get("sid")
        return session_id if isinstance(session_id, str) and session_id else None

    # -----------------------------
    # Sessions
    # -----------------------------

    async def get_current_user(self, session_id: Optional[str]) -> Optional[CurrentUser]:
        """Resolve a session id to a user. No session is a normal state, not an error."""
        if not session_id or not self.db.is_connected:
            return None
        row = await self.db.get_session_user(session_id)
        if not row:
            return None
        return CurrentUser(id=row["id"], email=row["email"], session_id=session_id)

    async def sign_out(self, session_id: Optional[str]) -> None:
        """Delete the session row. Idempotent."""
        if not session_id:
            return
        await self.db.delete_session(session_id)


# -----------------------------
# FastAPI Dependencies
# -----------------------------

async def get_optional_user(request: Request) -> Optional[CurrentUser]:
    """Current user from the session cookie, or None for anonymous callers."""
    ctx = request.app.state.ctx
    session_id = ctx.auth.read_cookie(request.cookies.get(ctx.settings.session_cookie_name))
    return await ctx.auth.get_current_user(session_id)


async def require_user(request: Request) -> CurrentUser:
    """Require a signed-in user (use as dependency)."""
    user = await get_optional_user(request)
    if not user:
        raise AuthenticationRequired()
    return user
