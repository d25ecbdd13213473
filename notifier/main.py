"""FastAPI application factory with middleware, routers, and lifespan."""

import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import settings, setup_logging
from .database.base import get_db
from .dependencies import get_mailer, get_queue, get_store, get_verifier
from .integrations.mailer import MailProvider, create_mail_provider
from .integrations.qstash import MessageQueue, QueueError, QueueSignatureVerifier, create_message_queue, create_signature_verifier
from .notifications.operations import NotificationOperations
from .notifications.scheduler import NotificationScheduler
from .notifications.store import InvalidTransitionError, JobNotFoundError, JobStoreError, RedisJobStore, create_job_store
from .notifications.worker import NotificationWorker
from .rate_limit import limiter

logger = logging.getLogger(__name__)

_startup_time: float = 0.0


def _run_migrations() -> None:
    """Run Alembic migrations (upgrade head) on startup."""
    from alembic import command
    from alembic.config import Config

    alembic_cfg = Config()
    alembic_cfg.set_main_option("script_location", str(Path(__file__).parent.parent / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", settings.effective_database_url)
    command.upgrade(alembic_cfg, "head")


def wire_services(app: FastAPI, store: RedisJobStore, queue: MessageQueue, mailer: MailProvider) -> None:
    """Build the notification services from their clients and keep them on app.state."""
    scheduler = NotificationScheduler(store, queue, settings)
    app.state.store = store
    app.state.queue = queue
    app.state.mailer = mailer
    app.state.scheduler = scheduler
    app.state.worker = NotificationWorker(store, mailer, settings)
    app.state.operations = NotificationOperations(store, queue, scheduler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup/shutdown lifecycle."""
    global _startup_time
    _startup_time = time.time()

    setup_logging()

    if settings.is_production and settings.secret_key == "change-me":
        raise RuntimeError("SECRET_KEY must be set in production. Configure .env file")

    _run_migrations()

    queue = create_message_queue()
    wire_services(app, create_job_store(), queue, create_mail_provider())
    app.state.verifier = create_signature_verifier()
    if not app.state.verifier.configured:
        logger.warning("Queue signing keys not configured; inbound queue requests are not verified")

    yield

    queue.close()


def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> Response:
    retry_after = "60"
    return JSONResponse(
        {"error": "Too many requests", "detail": str(exc.detail), "retry_after": int(retry_after)},
        status_code=429,
        headers={"Retry-After": retry_after},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Session Notifier",
        lifespan=lifespan,
    )

    # --- Exception handlers ---
    @app.exception_handler(JobNotFoundError)
    async def not_found_handler(request: Request, exc: JobNotFoundError):
        return JSONResponse({"error": str(exc)}, status_code=404)

    @app.exception_handler(InvalidTransitionError)
    async def conflict_handler(request: Request, exc: InvalidTransitionError):
        return JSONResponse(
            {"error": str(exc), "status": exc.current.value},
            status_code=409,
        )

    @app.exception_handler(JobStoreError)
    async def store_unavailable_handler(request: Request, exc: JobStoreError):
        return JSONResponse({"error": "Job store unavailable"}, status_code=503)

    @app.exception_handler(QueueError)
    async def queue_error_handler(request: Request, exc: QueueError):
        return JSONResponse({"error": str(exc)}, status_code=502)

    app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    # --- Middleware stack (LIFO: last added = outermost) ---

    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=["*"])

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
        return response

    # --- API v1 (all JSON endpoints) ---
    from .api_v1 import api_v1_router

    app.include_router(api_v1_router)

    # --- Health check ---
    @app.get("/health")
    def health(
        recalculate: bool = False,
        store: RedisJobStore = Depends(get_store),
        queue: MessageQueue = Depends(get_queue),
        mailer: MailProvider = Depends(get_mailer),
        verifier: QueueSignatureVerifier = Depends(get_verifier),
        db: Session = Depends(get_db),
    ):
        db_status = "ok"
        try:
            db.execute(text("SELECT 1"))
        except Exception:
            db_status = "unreachable"

        redis_ok = store.ping()
        dead_letters = None
        recalculated = None
        if redis_ok:
            dead_letters = store.count_dead_letters()
            if recalculate:
                recalculated = sum(1 for batch_id in store.iter_active_batch_ids() if store.recompute_batch(batch_id))
                logger.info("Health check recalculated %d active batch(es)", recalculated)

        status = "ok" if db_status == "ok" and redis_ok and queue.configured else "degraded"
        uptime = round(time.time() - _startup_time, 1) if _startup_time else 0.0

        body = {
            "status": status,
            "db": db_status,
            "redis": "ok" if redis_ok else "unreachable",
            "queue": {
                "configured": queue.configured,
                "signature_verification": verifier.configured,
                "retries": settings.queue_retries,
                "flow_control": {"key": settings.flow_control_key, "value": settings.flow_control_value},
            },
            "mail": {
                "configured": mailer.configured,
                "test_mode": settings.email_test_mode,
            },
            "endpoints": {
                "worker": settings.worker_url,
                "callback": settings.callback_url,
                "failure": settings.failure_url,
            },
            "dead_letters": dead_letters,
            "version": "1.0.0",
            "uptime_seconds": uptime,
        }
        if recalculated is not None:
            body["recalculated"] = recalculated
        return body

    return app


app = create_app()
