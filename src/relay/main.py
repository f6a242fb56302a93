"""
FastAPI service entrypoint.

Responsibilities:
- Create FastAPI app
- Register routes (/translate, /download, /health)
- Own the credential refresh loop for this process

IMPORTANT:
- Stream relaying happens in the Redis worker (src.relay.infra.redis.worker);
  this service is the synchronous caller of the same pipeline.
"""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from src.relay.api.media import router as media_router
from src.relay.api.translate import router as translate_router
from src.relay.config.settings import settings
from src.relay.credentials.store import CredentialStore, build_credential_store
from src.relay.logging.logger import setup_logger
from src.relay.runtime.pipeline import TranslationPipeline, build_pipeline

logger = setup_logger(__name__)


def create_app(
    credentials: Optional[CredentialStore] = None,
    pipeline: Optional[TranslationPipeline] = None,
    run_refresh_loop: bool = True,
) -> FastAPI:
    """
    FastAPI application factory.
    """
    credentials = credentials or build_credential_store()
    pipeline = pipeline or build_pipeline(credentials)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        refresh_task = None
        if run_refresh_loop:
            credentials.load_persisted()
            refresh_task = asyncio.create_task(credentials.run_refresh_loop(), name="credential-refresh")
        try:
            yield
        finally:
            if refresh_task is not None:
                refresh_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await refresh_task

    app = FastAPI(title="Translate Relay Ingress Service", lifespan=lifespan)
    app.state.credentials = credentials
    app.state.pipeline = pipeline

    # Register routes
    app.include_router(translate_router)
    app.include_router(media_router)

    logger.info(
        "FastAPI ingress service initialized | env=%s | upload_root=%s",
        settings.app_env,
        settings.upload_root_dir,
    )

    return app


# ASGI entrypoint (required by uvicorn)
app = create_app()
