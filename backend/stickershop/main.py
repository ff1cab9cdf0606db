"""
Sticker pipeline API.

Run with:
    uvicorn stickershop.main:app --app-dir backend
"""

import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from stickershop import __version__
from stickershop.api import router
from stickershop.config import Settings
from stickershop.context import AppContext, build_context
from stickershop.database import Database
from stickershop.errors import PipelineError

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


async def _housekeeping(db: Database) -> None:
    """Drop expired login tokens and sessions. Runs once per boot."""
    tokens = await db.cleanup_expired_login_tokens()
    sessions = await db.cleanup_expired_sessions()
    logger.info("Startup cleanup: %d login tokens, %d sessions removed", tokens, sessions)


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    """Build the FastAPI app.

    With ``context`` the app uses it as-is (tests); otherwise the lifespan
    builds one from the environment and tears it down on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if context is not None:
            app.state.ctx = context
            yield
            return

        configure_logging()
        settings = Settings.from_env()
        db = Database(settings.database_url)
        await db.connect()
        if db.is_connected:
            await _housekeeping(db)

        http = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        app.state.ctx = build_context(settings, db, http)
        logger.info("Sticker pipeline %s started", __version__)
        try:
            yield
        finally:
            await http.aclose()
            await db.close()

    app = FastAPI(title="Sticker Pipeline", version=__version__, lifespan=lifespan)
    if context is not None:
        app.state.ctx = context

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.include_router(router)
    return app


app = create_app()
