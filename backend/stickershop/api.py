"""HTTP routes.

Handlers stay thin: pull the context, call one component, shape the JSON.
Every failure is a PipelineError and is rendered by the app-level handler.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, Response, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from stickershop.auth import CurrentUser, get_optional_user, require_user
from stickershop.context import AppContext
from stickershop.errors import InvalidUpload, UploadTooLarge
from stickershop.generation import normalize_mode

logger = logging.getLogger(__name__)

router = APIRouter()


def get_context(request: Request) -> AppContext:
    return request.app.state.ctx


# -----------------------------
# Request models
# -----------------------------

class LoginRequest(BaseModel):
    email: str


class CheckoutRequest(BaseModel):
    email: Optional[str] = None
    imageUrl: Optional[str] = None
    name: Optional[str] = None
    address: Optional[Dict[str, Any]] = None


# -----------------------------
# Health
# -----------------------------

@router.get("/health")
async def health(ctx: AppContext = Depends(get_context)):
    return {"status": "ok", "database": ctx.db.is_connected}


# -----------------------------
# Auth
# -----------------------------

@router.post("/auth/login", status_code=202)
async def login(body: LoginRequest, ctx: AppContext = Depends(get_context)):
    """Email a magic link. Same answer for new and known addresses."""
    await ctx.auth.request_login(body.email)
    return {"ok": True}


@router.get("/auth/verify")
async def verify(
    response: Response,
    token: str = Query(""),
    ctx: AppContext = Depends(get_context),
):
    user, cookie = await ctx.auth.verify(token)
    response.set_cookie(
        key=ctx.settings.session_cookie_name,
        value=cookie.value,
        max_age=cookie.max_age,
        httponly=True,
        secure=ctx.settings.cookie_secure,
        samesite="lax",
    )
    return {"email": user["email"]}


@router.get("/auth/me")
async def me(
    ctx: AppContext = Depends(get_context),
    user: Optional[CurrentUser] = Depends(get_optional_user),
):
    if not user:
        return {"authenticated": False, "plan": "free"}
    plan = await ctx.entitlements.get_plan(user.id)
    return {"authenticated": True, "email": user.email, "plan": plan}


@router.post("/auth/logout")
async def logout(request: Request, response: Response, ctx: AppContext = Depends(get_context)):
    session_id = ctx.auth.read_cookie(request.cookies.get(ctx.settings.session_cookie_name))
    await ctx.auth.sign_out(session_id)
    response.delete_cookie(ctx.settings.session_cookie_name)
    return {"ok": True}


# -----------------------------
# Generation
# -----------------------------

@router.post("/generate-image")
async def generate_image(
    image: Optional[UploadFile] = File(None),
    mode: str = Form("sticker"),
    ctx: AppContext = Depends(get_context),
    user: Optional[CurrentUser] = Depends(get_optional_user),
):
    if image is None:
        raise InvalidUpload("No file uploaded")

    limit = ctx.settings.max_upload_bytes
    data = await image.read(limit + 1)
    if len(data) > limit:
        raise UploadTooLarge(f"Image exceeds {limit // (1024 * 1024)} MB limit")

    user_id = user.id if user else None
    await ctx.entitlements.assert_within_free_quota(user_id)
    plan = await ctx.entitlements.get_plan(user_id)

    job_id = await ctx.generation.submit(data, image.content_type or "", mode, plan)
    return {"prediction": {"id": job_id}}


@router.get("/prediction-status/{job_id}")
async def prediction_status(
    job_id: str,
    mode: str = Query("sticker"),
    ctx: AppContext = Depends(get_context),
    user: Optional[CurrentUser] = Depends(get_optional_user),
):
    status = await ctx.generation.poll_status(job_id)
    if status.succeeded and user and ctx.db.is_connected:
        recorded = await ctx.db.record_generation(user.id, status.id, normalize_mode(mode))
        if recorded:
            logger.info("Recorded generation %s for user %s", status.id, user.id)
    return status.to_dict()


@router.get("/usage")
async def usage(
    ctx: AppContext = Depends(get_context),
    user: Optional[CurrentUser] = Depends(get_optional_user),
):
    return await ctx.entitlements.get_usage(user.id if user else None)


# -----------------------------
# Billing
# -----------------------------

@router.post("/create-checkout-session")
async def create_checkout_session(body: CheckoutRequest, ctx: AppContext = Depends(get_context)):
    session = await ctx.billing.create_sticker_checkout(body.email, body.imageUrl, body.name, body.address)
    return {"url": session["url"], "id": session["id"]}


@router.post("/billing/subscribe")
async def subscribe(
    ctx: AppContext = Depends(get_context),
    user: CurrentUser = Depends(require_user),
):
    session = await ctx.billing.create_subscription_checkout(user)
    return {"url": session["url"], "id": session["id"]}


@router.post("/webhook")
async def stripe_webhook(request: Request, ctx: AppContext = Depends(get_context)):
    """Raw body in, signature checked before anything is parsed."""
    payload = await request.body()
    result = await ctx.webhooks.handle(payload, request.headers.get("stripe-signature"))
    return JSONResponse(result)
