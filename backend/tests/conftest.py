import itertools
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import pytest

from stickershop.config import Settings
from stickershop.context import AppContext, build_context


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "session_secret": "test-session-secret",
        "cookie_secure": False,
        "replicate_api_token": "r8_test",
        "openai_api_key": "sk-test",
        "print_recipe_id": "recipe-123",
        "print_billing_key": "billing-key",
        "print_product_id": "1234",
        "stripe_secret_key": "sk_test_123",
        "stripe_webhook_secret": "whsec_test",
        "stripe_price_id_pro": "price_pro",
        "resend_api_key": "re_test",
        "operator_email": "ops@example.com",
    }
    values.update(overrides)
    return Settings(**values)


# -----------------------------
# In-memory datastore
# -----------------------------

class FakeDatabase:
    """Same coroutine surface as stickershop.database.Database, kept in dicts."""

    def __init__(self):
        self.users: Dict[int, Dict[str, Any]] = {}
        self.login_tokens: List[Dict[str, Any]] = []
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.generations: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)

    @property
    def is_connected(self) -> bool:
        return True

    async def upsert_user(self, email: str) -> dict:
        for user in self.users.values():
            if user["email"] == email:
                return dict(user)
        user = {"id": next(self._ids), "email": email, "created_at": utcnow()}
        self.users[user["id"]] = user
        return dict(user)

    async def get_user(self, user_id: int) -> Optional[dict]:
        user = self.users.get(user_id)
        return dict(user) if user else None

    async def create_login_token(self, user_id: int, token_hash: str, ttl_minutes: int) -> int:
        token_id = next(self._ids)
        self.login_tokens.append({
            "id": token_id,
            "user_id": user_id,
            "token_hash": token_hash,
            "expires_at": utcnow() + timedelta(minutes=ttl_minutes),
            "used": False,
            "created_at": utcnow(),
        })
        return token_id

    async def count_recent_login_tokens(self, user_id: int, minutes: int = 60) -> int:
        cutoff = utcnow() - timedelta(minutes=minutes)
        return sum(1 for t in self.login_tokens if t["user_id"] == user_id and t["created_at"] > cutoff)

    async def redeem_login_token(self, token_hash: str, session_id: str, session_ttl_days: int) -> Optional[dict]:
        for token in self.login_tokens:
            if token["token_hash"] == token_hash and not token["used"] and token["expires_at"] > utcnow():
                token["used"] = True
                self.sessions[session_id] = {
                    "user_id": token["user_id"],
                    "expires_at": utcnow() + timedelta(days=session_ttl_days),
                }
                return dict(self.users[token["user_id"]])
        return None

    async def cleanup_expired_login_tokens(self) -> int:
        cutoff = utcnow() - timedelta(hours=24)
        before = len(self.login_tokens)
        self.login_tokens = [t for t in self.login_tokens if t["expires_at"] >= cutoff]
        return before - len(self.login_tokens)

    async def get_session_user(self, session_id: str) -> Optional[dict]:
        session = self.sessions.get(session_id)
        if not session or session["expires_at"] <= utcnow():
            return None
        return dict(self.users[session["user_id"]])

    async def delete_session(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)

    async def cleanup_expired_sessions(self) -> int:
        expired = [sid for sid, s in self.sessions.items() if s["expires_at"] < utcnow()]
        for sid in expired:
            del self.sessions[sid]
        return len(expired)

    async def get_active_pro_subscription(self, user_id: int) -> Optional[dict]:
        for row in self.subscriptions.values():
            if row["user_id"] == user_id and row["plan"] == "pro" and row["status"] == "active":
                return dict(row)
        return None

    async def upsert_subscription(
        self,
        user_id: int,
        stripe_subscription_id: str,
        stripe_customer_id: Optional[str],
        plan: str,
        status: str,
        current_period_end=None,
    ) -> dict:
        row = self.subscriptions.get(stripe_subscription_id)
        if row is None:
            row = {"id": next(self._ids), "stripe_subscription_id": stripe_subscription_id,
                   "user_id": user_id, "plan": plan, "status": status,
                   "current_period_end": None, "stripe_customer_id": None}
            self.subscriptions[stripe_subscription_id] = row
        if row["current_period_end"] is None:
            row["current_period_end"] = current_period_end
        if stripe_customer_id:
            row["stripe_customer_id"] = stripe_customer_id
        return dict(row)

    async def update_subscription_status(
        self,
        stripe_subscription_id: str,
        status: str,
        current_period_end=None,
    ) -> Optional[dict]:
        row = self.subscriptions.get(stripe_subscription_id)
        if row is None:
            return None
        row["status"] = status
        if current_period_end is not None:
            row["current_period_end"] = current_period_end
        return dict(row)

    async def count_recent_generations(self, user_id: int, hours: int) -> int:
        cutoff = utcnow() - timedelta(hours=hours)
        return sum(1 for g in self.generations if g["user_id"] == user_id and g["created_at"] > cutoff)

    async def record_generation(self, user_id: int, external_id: str, mode: str) -> bool:
        if any(g["user_id"] == user_id and g["external_id"] == external_id for g in self.generations):
            return False
        self.generations.append({
            "user_id": user_id,
            "external_id": external_id,
            "mode": mode,
            "created_at": utcnow(),
        })
        return True


class FakeMailer:
    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent: List[Dict[str, str]] = []

    async def send(self, to: str, subject: str, html: str) -> bool:
        self.sent.append({"to": to, "subject": subject, "html": html})
        return self.succeed


# -----------------------------
# Fake upstream HTTP services
# -----------------------------

def variant(sku: str, name: str, enabled: bool = True) -> Dict[str, Any]:
    return {"Sku": sku, "Name": name, "IsEnabled": enabled}


CA_CATALOG = {
    "ProductVariants": [
        variant("STK-3x3-1-CLEAR-CA", "3x3 Sticker 1 Pack Clear"),
        variant("STK-3x3-1-WHITE-CA", "3x3 Sticker 1 Pack White"),
        variant("STK-4x4-1-WHITE-CA", "4x4 Sticker 1 Pack White"),
        variant("STK-3x3-1-WHITE-OLD", "3x3 Sticker 1 Pack White (retired)", enabled=False),
    ],
}

US_CATALOG = {
    "ProductVariants": [
        variant("STK-3x3-1-WHITE-US", "3x3 Sticker 1 Pack White"),
    ],
}


class FakeUpstreams:
    """One MockTransport handler standing in for every outbound service."""

    def __init__(self):
        self.catalog: Dict[str, Any] = {"CA": CA_CATALOG, "US": US_CATALOG}
        self.catalog_requests: List[str] = []
        self.catalog_status = 200

        self.orders: Dict[str, Dict[str, Any]] = {}
        self.order_requests: List[Dict[str, Any]] = []

        self.predictions: List[Dict[str, Any]] = []
        self.reject_inline = False
        self.reject_all = False
        self.prediction_status = "succeeded"

        self.uploads: List[bytes] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport())

    def __call__(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        path = request.url.path

        if host == "api.replicate.com":
            return self._replicate(request, path)
        if host == "tmpfiles.org":
            self.uploads.append(request.content)
            return httpx.Response(200, json={"status": "success", "data": {"url": "http://tmpfiles.org/12345/sticker.png"}})
        if host == "api.print.io":
            if path.endswith("/productvariants/"):
                return self._catalog(request)
            if path.endswith("/orders/"):
                return self._order(request)
        return httpx.Response(404, json={"error": f"unexpected {request.method} {request.url}"})

    def _replicate(self, request: httpx.Request, path: str) -> httpx.Response:
        if request.method == "POST" and path == "/v1/predictions":
            body = json.loads(request.content)
            self.predictions.append(body)
            image_ref = body["input"]["input_images"][0]
            if self.reject_all:
                return httpx.Response(422, json={"title": "Invalid input", "detail": "Prompt flagged by moderation"})
            if self.reject_inline and image_ref.startswith("data:"):
                return httpx.Response(413, json={"detail": "Request Entity Too Large"})
            return httpx.Response(201, json={"id": f"job-{len(self.predictions)}", "status": "starting"})

        job_id = path.rsplit("/", 1)[-1]
        succeeded = self.prediction_status == "succeeded"
        return httpx.Response(200, json={
            "id": job_id,
            "status": self.prediction_status,
            "output": ["https://replicate.delivery/out.webp"] if succeeded else None,
            "error": None,
        })

    def _catalog(self, request: httpx.Request) -> httpx.Response:
        country = request.url.params["countryCode"]
        self.catalog_requests.append(country)
        if self.catalog_status >= 400:
            return httpx.Response(self.catalog_status, text="catalog unavailable")
        return httpx.Response(200, json=self.catalog.get(country, {"ProductVariants": []}))

    def _order(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.order_requests.append(body)
        if not body["Items"][0]["Files"][0]["Url"]:
            return httpx.Response(400, json={"HadError": True, "Errors": [{"ErrorMessage": "File Url is required"}]})

        source_id = body["SourceId"]
        if source_id not in self.orders:
            self.orders[source_id] = {"Id": f"order-{len(self.orders) + 1}", "body": body}
        return httpx.Response(201, json={"Id": self.orders[source_id]["Id"]})


# -----------------------------
# Fixtures
# -----------------------------

@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def upstreams() -> FakeUpstreams:
    return FakeUpstreams()


@pytest.fixture
def ctx(settings, db, mailer, upstreams) -> AppContext:
    return build_context(settings, db, upstreams.client(), mailer=mailer)
