"""FastAPI application entry point.

Start with:
    uvicorn webhook_runner.main:create_app --factory

or ``python -m webhook_runner``.  The app skeleton has:
- Eager configuration checks and keyring loading in ``create_app``
- Lifespan event for logging setup
- Router includes for webhooks and health
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from webhook_runner.config import Settings, get_settings
from webhook_runner.core.dispatcher import SubprocessDispatcher
from webhook_runner.core.exceptions import ProcessingError
from webhook_runner.core.keyring import KeyringFiles, KeyringStore
from webhook_runner.core.router import Policy, PolicySet, PushEventRouter, RefKind

assert sys.version_info >= (3, 12), "webhook-runner requires Python 3.12+"

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
#  Lifespan: startup / shutdown
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: configure logging and announce the policies."""
    settings: Settings = app.state.settings

    configure_logging(settings.log_level)
    policies: PolicySet = app.state.router.policies
    logger.info(
        "Webhook runner starting up",
        extra={
            "bind_address": settings.bind_address,
            "commit_command": policies.commit.command if policies.commit else None,
            "tag_command": policies.tag.command if policies.tag else None,
            "authenticated": settings.webhook_secret is not None,
        },
    )

    yield

    logger.info("Webhook runner shutting down")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ---------------------------------------------------------------------------
#  Wiring
# ---------------------------------------------------------------------------

def load_keyrings(settings: Settings) -> KeyringFiles:
    """Read the configured keyring files.

    Raises:
        InvalidKeyringFileError: A configured keyring file is unreadable.
    """
    timeout = settings.verify_timeout
    return KeyringFiles(
        commit=KeyringStore.from_path(settings.commit_keyring, timeout) if settings.commit_keyring else None,
        tag=KeyringStore.from_path(settings.tag_keyring, timeout) if settings.tag_keyring else None,
    )


def build_router(settings: Settings) -> PushEventRouter:
    """Build the push event router from validated settings."""
    keyrings = load_keyrings(settings)
    policies = PolicySet(
        commit=Policy.from_config(RefKind.BRANCH, settings.commit_command, keyrings.commit),
        tag=Policy.from_config(RefKind.TAG, settings.tag_command, keyrings.tag),
    )
    return PushEventRouter(
        policies,
        SubprocessDispatcher(settings.command_timeout),
        repository_url=settings.git_repository,
        ssh_key=settings.ssh_key,
        clone_timeout=settings.clone_timeout,
        verify_timeout=settings.verify_timeout,
        workdir=settings.checkout_dir,
    )


async def processing_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Turn an unexpected processing failure into a 500 without stopping the server."""
    logger.error(
        "Unhandled processing error",
        extra={"path": request.url.path, "error": type(exc).__name__},
        exc_info=exc,
    )
    return JSONResponse(status_code=500, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
#  FastAPI application
# ---------------------------------------------------------------------------

def create_app(settings: Settings | None = None, router: PushEventRouter | None = None) -> FastAPI:
    """Create the application.

    Configuration problems (keyring without command, unreadable keyring)
    surface here, before the server accepts any request.
    """
    settings = settings or get_settings()
    router = router or build_router(settings)

    app = FastAPI(
        title="webhook-runner",
        description="Run a command for authenticated, signature-verified GitHub pushes",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = settings
    app.state.router = router

    app.add_exception_handler(ProcessingError, processing_error_handler)

    # Import routers lazily to avoid circular-import issues.
    from webhook_runner.api.health import router as health_router
    from webhook_runner.api.webhooks import router as webhook_router

    app.include_router(webhook_router)
    app.include_router(health_router)
    return app
