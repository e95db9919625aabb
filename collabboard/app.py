from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from collabboard.api.error_handling import register_exception_handlers
from collabboard.api.routes import router
from collabboard.config import get_settings
from collabboard.logging import clear_request_context, get_logger, set_correlation_id
from collabboard.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the token cleanup worker on startup and stop it on shutdown."""
    runtime = get_runtime()
    if runtime.settings.cookie_secure is False and runtime.settings.is_production:
        logger.warning("refresh_cookie_not_secure", node_env=runtime.settings.node_env)
    if runtime.settings.token_cleanup_enabled:
        try:
            await runtime.cleanup.start()
        except Exception as exc:
            logger.error("startup_token_cleanup_failed", error=str(exc))

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_shutdown_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins() -> List[str]:
    origins = get_settings().cors_allow_origins
    if origins:
        return origins
    # Credentials are allowed, so never fall back to a wildcard
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app() -> FastAPI:
    app = FastAPI(title="CollabBoard Sessions", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Echo or mint an X-Request-ID and bind it to every log line of the request."""
        clear_request_context()
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/api/auth") or request.url.path.startswith("/api/admin"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
