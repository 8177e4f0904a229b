import logging
import os
import time
from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from quart import Quart, jsonify, request

from .catalog.controller import bp as catalog_bp
from .catalog.events import StockPublisher
from .catalog.service import CatalogService
from .common.config import settings
from .common.database import Database
from .common.errors import (
    Contention,
    DuplicateCategory,
    InsufficientStock,
    InvalidRequest,
    NotFound,
    OrderDeskError,
)
from .common.redis_client import close_redis
from .orders.controller import bp as orders_bp
from .orders.service import OrderService

log = logging.getLogger(__name__)

INSTANCE_ID = os.getenv("INSTANCE_ID", "unknown")

REQUEST_COUNT = Counter("http_requests_total", "Total HTTP requests", ["method", "endpoint", "status"])
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, float("inf"))
)


def status_for(error: OrderDeskError) -> int:
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, DuplicateCategory):
        return 409
    if isinstance(error, (InvalidRequest, InsufficientStock)):
        return 400
    if isinstance(error, Contention):
        return 503
    return 500


def _endpoint_label(path: str) -> str:
    # Group dynamic routes to keep label cardinality bounded
    for prefix in ("/products", "/categories", "/orders"):
        if path.startswith(prefix):
            return prefix
    return path


def create_app(
    database: Optional[Database] = None,
    publisher: Optional[StockPublisher] = None,
) -> Quart:
    app = Quart(__name__)

    database = database or Database(settings.DB_URL)
    publisher = publisher or StockPublisher()
    app.database = database
    app.catalog_service = CatalogService(database, publisher=publisher)
    app.order_service = OrderService(database, publisher=publisher)

    app.register_blueprint(catalog_bp)
    app.register_blueprint(orders_bp)

    @app.errorhandler(OrderDeskError)
    async def handle_order_desk_error(error: OrderDeskError):
        body = error.to_dict()
        body["message"] = error.message
        if error.retryable:
            body["retryable"] = True
        return jsonify(body), status_for(error)

    @app.before_request
    async def before_request():
        request._start_time = time.time()
        log.debug("[Instance %s] %s %s", INSTANCE_ID, request.method, request.path)

    @app.after_request
    async def after_request(response):
        start = getattr(request, "_start_time", None)
        if start is not None:
            endpoint = _endpoint_label(request.path)
            REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.time() - start)
            REQUEST_COUNT.labels(
                method=request.method,
                endpoint=endpoint,
                status=str(response.status_code)
            ).inc()
        response.headers["X-Instance-ID"] = INSTANCE_ID
        return response

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return app.response_class(data, mimetype=CONTENT_TYPE_LATEST)

    @app.get("/health")
    async def health():
        return jsonify({"status": "ok"})

    @app.before_serving
    async def startup():
        logging.basicConfig(level=settings.LOG_LEVEL)
        log.info("Initializing database...")
        await database.init_db()
        log.info("Database ready.")

    @app.after_serving
    async def shutdown():
        await database.dispose()
        await close_redis()
        log.info("Shutdown complete.")

    return app
