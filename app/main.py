import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from app.api.v1.router import api_v1_router
from app.core.config import settings, validate_settings_for_production
from app.core.dependencies import build_components
from app.core.exceptions import AppError
from app.core.logging import setup_logging
from app.core.metrics import PrometheusMiddleware, metrics_response
from app.core.middleware import RequestLoggingMiddleware
from app.core.rate_limit import limiter
from app.core.sentry import init_sentry
from app.db.postgres import async_session_factory, engine
from app.gateway.vendor_adapters import UpstreamRejected

# Configure logging before anything else
setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    init_sentry()
    if getattr(app.state, "components", None) is None:
        app.state.components = build_components(settings, async_session_factory)
    pool_size = len(app.state.components.pool.keys)
    logger.info("Starting AI relay gateway (env=%s, pooled speech credentials=%d)", settings.app_env, pool_size)

    yield

    # Shutdown
    await app.state.components.aclose()
    app.state.components = None
    await engine.dispose()
    logger.info("AI relay gateway shut down")


app = FastAPI(
    title="AI Relay Gateway",
    description="Streaming LLM relay with admission control and pooled speech credentials",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(AppError)
async def _app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(UpstreamRejected)
async def _upstream_rejected_handler(request: Request, exc: UpstreamRejected):
    logger.warning("Upstream %s rejected %s %s: %s", exc.provider, request.method, request.url.path, exc)
    return JSONResponse(
        status_code=502,
        content={"error": str(exc), "errorCode": exc.error_code, "upstreamStatus": exc.status_code},
    )


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError):
    details = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "errorCode": "BAD_REQUEST", "details": details},
    )


# Log unhandled exceptions with their traceback
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"error": "Internal server error", "errorCode": "INTERNAL_ERROR"})


# Rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(PrometheusMiddleware)
app.add_middleware(RequestLoggingMiddleware)

# CORS: allowed_origins is comma-separated
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=_origins != ["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(api_v1_router)


@app.get("/api/v1/health")
async def health():
    db_ok = True
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Health check: database unavailable: %s", e)
        db_ok = False
    return {"status": "ok" if db_ok else "degraded", "database": db_ok}


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
