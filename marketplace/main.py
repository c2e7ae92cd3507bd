import asyncio
import logging
import time

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from .config import settings
from .database import engine
from .errors import AppError, app_error_handler, http_exception_handler, request_validation_handler
from .middleware_rate_limit import RedisRateLimiter, SlidingWindowLimiter
from .middleware_request_id import RequestIDMiddleware
from .models import Base
from .routers import admin, auth, offers, payments, transactions, wallet
from .services import sweeper


logger = logging.getLogger("marketplace.app")

REQUESTS = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"])
REQ_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)

UNTHROTTLED = ("/health", "/metrics", "/docs", "/openapi.json")


def _install_rate_limiter(app: FastAPI) -> None:
    common = dict(
        limit_per_minute=settings.RATE_LIMIT_PER_MINUTE,
        auth_boost=settings.RATE_LIMIT_AUTH_BOOST,
        exclude_paths=UNTHROTTLED,
    )
    if settings.RATE_LIMIT_BACKEND.lower() == "redis":
        app.add_middleware(
            RedisRateLimiter,
            redis_url=settings.REDIS_URL,
            prefix=settings.RATE_LIMIT_REDIS_PREFIX,
            **common,
        )
    else:
        app.add_middleware(SlidingWindowLimiter, **common)


def _install_metrics(app: FastAPI) -> None:
    @app.middleware("http")
    async def _observe(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        # Route templates keep label cardinality bounded
        path = getattr(request.scope.get("route"), "path", None) or "unmatched"
        REQUESTS.labels(request.method, path, str(response.status_code)).inc()
        REQ_DURATION.labels(request.method, path).observe(time.perf_counter() - started)
        return response

    @app.get("/metrics", include_in_schema=False)
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def _schedule_sweeper(app: FastAPI, every_secs: int) -> None:
    """In-process alternative to the Celery beat schedule, for single-node deployments."""

    @app.on_event("startup")
    async def _start_sweeper():
        async def _loop():
            while True:
                try:
                    await asyncio.to_thread(sweeper.run_once)
                except Exception:
                    logger.exception("expiry sweep failed")
                await asyncio.sleep(every_secs)

        asyncio.create_task(_loop())


def create_app() -> FastAPI:
    app = FastAPI(title="Marketplace Escrow API", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIDMiddleware)
    _install_rate_limiter(app)

    if settings.AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(bind=engine)

    @app.get("/health")
    def health():
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return {"status": "ok", "env": settings.ENV}

    _install_metrics(app)

    for module in (auth, offers, transactions, payments, wallet, admin):
        app.include_router(module.router)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    if settings.EXPIRY_SWEEP_POLL_SECS > 0:
        _schedule_sweeper(app, settings.EXPIRY_SWEEP_POLL_SECS)

    return app


app = create_app()
