from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from identitykit.api.error_handling import register_exception_handlers
from identitykit.api.routes import router
from identitykit.api.schemas import Envelope
from identitykit.config import Settings
from identitykit.logging import configure_logging, get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()
configure_logging(_settings.log_level)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its pool on shutdown."""
    from identitykit.service import runtime as runtime_module

    runtime_module.get_runtime()
    logger.info("app_started", version=__version__)

    yield

    current = runtime_module.runtime
    if current is not None:
        current.close()
        runtime_module.runtime = None
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="IdentityKit", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.allowed_origins:
        return _settings.allowed_origins
    # Default to common local dev hosts
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID for log tracing.

    The ID comes from the client's X-Request-ID header when present and is
    generated otherwise; it is echoed back in the X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Token-bearing responses must never sit in a shared cache
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def healthz():
    return Envelope(status="ok", data={"status": "ok"})
