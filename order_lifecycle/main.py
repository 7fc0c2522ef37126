import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from order_lifecycle.errors import Busy, IllegalTransition, LifecycleError, StorageFailure, UnknownOrder
from order_lifecycle.metrics import get_metrics_bytes, get_metrics_content_type
from order_lifecycle.redis_client import close_redis
from order_lifecycle.routes import admin, audit, orders, webhooks
from order_lifecycle.services import LifecycleServices, build_services

logger = logging.getLogger(__name__)


def _error(status_code: int, exc: LifecycleError, headers: dict | None = None, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "error": exc.code, "detail": str(exc), **extra},
        headers=headers,
    )


async def unknown_order_handler(request: Request, exc: UnknownOrder) -> JSONResponse:
    return _error(404, exc, order_id=exc.order_id)


async def illegal_transition_handler(request: Request, exc: IllegalTransition) -> JSONResponse:
    return _error(409, exc, order_id=exc.order_id, action=exc.action, current_status=exc.current_status)


async def busy_handler(request: Request, exc: Busy) -> JSONResponse:
    return _error(503, exc, headers={"Retry-After": "1"}, order_id=exc.order_id)


async def storage_failure_handler(request: Request, exc: StorageFailure) -> JSONResponse:
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return _error(503, exc)


def create_app(services: LifecycleServices | None = None) -> FastAPI:
    """Build the API. Pass services to run against an existing store (tests, embedding)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services if services is not None else await build_services()
        yield
        if owned:
            await app.state.services.close()
            await close_redis()

    app = FastAPI(title="Order Lifecycle & Audit", lifespan=lifespan)
    if services is not None:
        app.state.services = services
    app.include_router(orders.router)
    app.include_router(audit.router)
    app.include_router(webhooks.router)
    app.include_router(admin.router)
    app.add_exception_handler(UnknownOrder, unknown_order_handler)
    app.add_exception_handler(IllegalTransition, illegal_transition_handler)
    app.add_exception_handler(Busy, busy_handler)
    app.add_exception_handler(StorageFailure, storage_failure_handler)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus scrape endpoint: transitions, webhooks, audit queries."""
        return Response(
            content=get_metrics_bytes(),
            media_type=get_metrics_content_type(),
        )

    return app


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)

app = create_app()
