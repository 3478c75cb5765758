"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from deepimg.api.routes import router
from deepimg.api.schemas import ClassificationSettings
from deepimg.config import Settings, get_settings
from deepimg.core.classifier import ZeroShotClassifier
from deepimg.core.files import FileStore
from deepimg.core.handles import HandleStore
from deepimg.core.inference import ClassificationPool
from deepimg.errors import (
    ConfigurationError,
    DeepImgError,
    NetworkError,
    RemoteError,
    RunInProgressError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_ERROR_STATUS: tuple[tuple[type[DeepImgError], int], ...] = (
    (ValidationError, 422),
    (RunInProgressError, status.HTTP_409_CONFLICT),
    (ConfigurationError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (NetworkError, status.HTTP_502_BAD_GATEWAY),
    (RemoteError, status.HTTP_502_BAD_GATEWAY),
)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Create the per-process components and attach them to ``app.state``."""
    handles = HandleStore()
    app.state.settings = settings
    app.state.handle_store = handles
    app.state.file_store = FileStore(
        handles,
        max_file_size=settings.max_file_size,
        notice_delay=settings.oversize_notice_ms / 1000,
    )
    app.state.classifier = ZeroShotClassifier(settings)
    app.state.classification_pool = ClassificationPool(settings)
    app.state.classification_settings = ClassificationSettings(model=settings.default_model)


def teardown_state(app: FastAPI) -> None:
    """Release every display handle and stop the worker threads."""
    app.state.file_store.close()
    app.state.classification_pool.shutdown()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting DeepImg (model=%s, max_concurrent=%s, max_file_size=%s, token=%s)",
        settings.default_model,
        settings.max_concurrent or "unbounded",
        settings.max_file_size,
        "set" if settings.hf_token else "missing",
    )

    init_state(app, settings)

    logger.info("DeepImg ready")
    yield

    logger.info("Shutting down DeepImg")
    teardown_state(app)
    logger.info("DeepImg shutdown complete")


async def _deepimg_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, mapped in _ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = mapped
            break
    if status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


async def _queue_timeout_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("Classification queue timeout on %s", request.url.path)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Classification queue is full, try again later"},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="DeepImg",
        description="Zero-shot image tagging with a label frequency chart",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(DeepImgError, _deepimg_error_handler)
    application.add_exception_handler(TimeoutError, _queue_timeout_handler)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run("deepimg.main:app", host=settings.host, port=settings.port)
