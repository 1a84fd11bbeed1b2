from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from findclass.api.catalog_routes import router as catalog_router
from findclass.api.error_handling import register_exception_handlers
from findclass.api.routes import router as account_router
from findclass.config import SERVICE_NAME, Settings
from findclass.logging import configure_logging, get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

PROBE_TIMEOUT_SECONDS = 3
DEV_ORIGINS = ["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:3000"]
RATE_LIMIT_HEADERS = ["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"]


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _run_maintenance(runtime, interval_seconds: int) -> None:
    """Prune expired sessions and in-process state every ``interval_seconds``."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await runtime.run_maintenance()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("maintenance_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("maintenance_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from findclass.service.runtime import get_runtime

    maintenance: Optional[asyncio.Task] = None
    try:
        runtime = get_runtime()
        maintenance = asyncio.create_task(
            _run_maintenance(runtime, runtime.settings.maintenance_interval_seconds)
        )
    except Exception as exc:
        # Readiness reports the failure; liveness keeps answering
        logger.error("startup_failed", error=str(exc))
    else:
        logger.info("startup_complete", version=__version__, build=app.state.build)
    yield
    if maintenance is not None:
        maintenance.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await maintenance
    try:
        get_runtime().close()
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


health_router = APIRouter(tags=["health"])


@health_router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": __version__,
        "build": request.app.state.build,
        "timestamp": _timestamp(),
    }


@health_router.get("/health/live")
async def liveness() -> Dict[str, Any]:
    return {"status": "alive", "timestamp": _timestamp()}


async def _probe(component: str, check: Callable[[], Any]) -> str:
    """Run a blocking connectivity check off the loop, bounded in time."""
    try:
        await asyncio.wait_for(asyncio.to_thread(check), PROBE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("readiness_probe_timeout", component=component, timeout=PROBE_TIMEOUT_SECONDS)
        return "unhealthy"
    except Exception as exc:
        logger.error("readiness_probe_failed", component=component, error=str(exc))
        return "unhealthy"
    return "healthy"


@health_router.get("/health/ready")
async def readiness():
    """200 when the database (and Redis, if configured) answer; 503 otherwise."""
    from findclass.service.runtime import get_runtime

    try:
        runtime = get_runtime()
    except Exception as exc:
        logger.error("readiness_runtime_unavailable", error=str(exc))
        checks = {"runtime": {"status": "unhealthy"}}
    else:
        checks = {"database": {"status": await _probe("database", runtime.store.verify_connection)}}
        if runtime.cache is None:
            checks["redis"] = {"status": "not_configured"}
        else:
            checks["redis"] = {"status": await _probe("redis", runtime.cache.verify_connection)}

    ready = all(check["status"] != "unhealthy" for check in checks.values())
    body = {"status": "ready" if ready else "not_ready", "checks": checks, "timestamp": _timestamp()}
    return body if ready else JSONResponse(status_code=503, content=body)


def _install_middleware(app: FastAPI, settings: Settings) -> None:
    app.add_middleware(
        CORSMiddleware,
        # Never "*": credentials are allowed
        allow_origins=settings.cors_allow_origins or DEV_ORIGINS,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "API-Version", *RATE_LIMIT_HEADERS],
        max_age=3600,
    )

    @app.middleware("http")
    async def request_id(request: Request, call_next):
        """Adopt or mint the request id; logs and error envelopes carry it."""
        rid = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        headers = response.headers
        headers.setdefault("X-Content-Type-Options", "nosniff")
        headers.setdefault("X-Frame-Options", "DENY")
        headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        headers.setdefault("API-Version", __version__)
        if request.url.path.startswith("/api/"):
            headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        if settings.enable_hsts and request.url.scheme == "https":
            headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains")
        return response


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.log_format.lower())

    application = FastAPI(title="FindClass NZ API", version=__version__, lifespan=lifespan)
    application.state.build = settings.build_sha
    _install_middleware(application, settings)
    register_exception_handlers(application)
    application.include_router(health_router)
    application.include_router(account_router)
    application.include_router(catalog_router)
    return application


app = create_app()
