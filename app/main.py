import logging
import traceback
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api.v1.router import api_v1_router
from app.core.config import settings, validate_settings_for_production
from app.core.logging import setup_logging
from app.core.metrics import PrometheusMiddleware, metrics_response
from app.core.rate_limit import limiter
from app.core.sentry import init_sentry
from app.gateway.errors import GatewayError, QuotaExceeded
from app.gateway.gateway import GenerationGateway

# Configure logging before anything else
setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    init_sentry()
    app.state.gateway = GenerationGateway.from_settings(settings)
    logger.info(
        "Starting Storyteller gateway (images/min=%d, requests/day=%d, concurrency=%d)",
        settings.images_per_minute,
        settings.requests_per_day,
        settings.max_concurrency,
    )

    yield

    # Shutdown: let calls whose callers went away finish writing the cache
    await app.state.gateway.drain()
    logger.info("Storyteller gateway shut down")


app = FastAPI(
    title="Storyteller Gateway",
    description="Generation gateway for the storytelling app: quotas, caching, retries",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(GatewayError)
async def _gateway_error_handler(request: Request, exc: GatewayError):
    headers: dict[str, str] = {}
    if exc.snapshot is not None:
        headers.update(exc.snapshot.to_headers())
    if isinstance(exc, QuotaExceeded) and exc.snapshot is not None:
        snap = exc.snapshot
        reset = snap.daily_reset_in_seconds if snap.requests_today >= snap.requests_per_day_limit else snap.minute_reset_in_seconds
        headers["Retry-After"] = str(reset)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# Log unhandled exceptions with full traceback
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"error": "internal_error", "message": f"{type(exc).__name__}: {exc}"})


# Rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Metrics
app.add_middleware(PrometheusMiddleware)

# CORS: parse allowed_origins from settings (comma-separated)
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Cache", "X-Usage-Requests-Today", "X-Usage-Images-Minute", "Retry-After"],
)

# Generated artifacts (cache entries included) as static files
Path(settings.generated_dir).mkdir(parents=True, exist_ok=True)
app.mount("/generated", StaticFiles(directory=settings.generated_dir), name="generated")

# API routes
app.include_router(api_v1_router)


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
