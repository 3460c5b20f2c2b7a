from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agora.api.error_handling import register_exception_handlers
from agora.api.routes import router
from agora.config import Settings, get_settings
from agora.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release the database pool on shutdown."""
    from agora.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)
    yield
    try:
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Agora", version=__version__, lifespan=lifespan)


def _allowed_origins(settings: Settings) -> List[str]:
    # cookies are sent cross-origin, so origins are listed, never "*"
    return settings.cors_allow_origins or [settings.app_base_url.rstrip("/")]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(get_settings()),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with ``X-Request-ID`` (client supplied or generated).

    The id is bound for structured logging and echoed on the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from agora.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "healthy",
        "store": type(runtime.store).__name__,
        "object_storage": runtime.objects.is_initialized,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
