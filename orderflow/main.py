import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from orderflow.config import settings
from orderflow.db import PostgresOrderStore, close_pool, get_pool, init_schema
from orderflow.errors import OrderError
from orderflow.metrics import get_metrics_bytes, get_metrics_content_type
from orderflow.notifications import NOTIFICATION_QUEUE_KEY, publish_order_notification
from orderflow.redis_client import check_redis, close_redis
from orderflow.routes import orders
from orderflow.service import OrderService

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    pool = await get_pool()
    await init_schema(pool)
    notifier = None
    if settings.notifications_enabled:
        notifier = publish_order_notification
        if not settings.sqs_queue_url:
            await check_redis(NOTIFICATION_QUEUE_KEY)
    service = OrderService(PostgresOrderStore(pool), notifier=notifier)
    app.state.order_service = service
    logger.info("Order service ready (notifications=%s)", "on" if notifier else "off")
    yield
    await service.drain_notifications(timeout=settings.notification_drain_timeout_sec)
    await close_redis()
    await close_pool()


app = FastAPI(title="Order Lifecycle Service", lifespan=lifespan)
app.include_router(orders.router)


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Validation error",
                "details": jsonable_encoder(exc.errors()),
            }
        },
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "INTERNAL_ERROR", "message": "Internal server error", "details": []}},
    )


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
