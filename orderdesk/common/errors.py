import logging
from typing import Any, Dict

from sqlalchemy import exc as sa_exc

_logger = logging.getLogger(__name__)

# SQLSTATE codes for serialization failure, deadlock and lock_timeout (PostgreSQL)
_CONTENTION_SQLSTATES = {"40001", "40P01", "55P03"}
# MySQL lock wait timeout and deadlock
_CONTENTION_ERRNOS = {1205, 1213}
_CONTENTION_MARKERS = (
    "database is locked",
    "database table is locked",
    "lock wait timeout",
    "lock timeout",
    "could not obtain lock",
    "deadlock",
    "could not serialize",
)


class OrderDeskError(Exception):
    """Base class for every failure surfaced to callers.

    ``code`` is a stable machine-readable identifier, ``details`` carries the
    structured context that goes into API responses.
    """

    code = "error"
    retryable = False

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": False, "error": self.code}
        payload.update(self.details)
        return payload


class InvalidRequest(OrderDeskError):
    code = "invalid_request"


class InvalidOrder(InvalidRequest):
    code = "invalid_order"


class NotFound(OrderDeskError):
    code = "not_found"


class ProductNotFound(NotFound):
    code = "product_not_found"

    def __init__(self, product_id: int) -> None:
        super().__init__(f"product {product_id} does not exist", product_id=product_id)
        self.product_id = product_id


class CategoryNotFound(NotFound):
    code = "category_not_found"

    def __init__(self, category_id: int) -> None:
        super().__init__(f"category {category_id} does not exist", category_id=category_id)
        self.category_id = category_id


class OrderNotFound(NotFound):
    code = "order_not_found"

    def __init__(self, order_id: int) -> None:
        super().__init__(f"order {order_id} does not exist", order_id=order_id)
        self.order_id = order_id


class DuplicateCategory(OrderDeskError):
    code = "duplicate_category"

    def __init__(self, name: str) -> None:
        super().__init__(f"category {name!r} already exists", name=name)
        self.name = name


class InsufficientStock(OrderDeskError):
    code = "insufficient_stock"

    def __init__(self, product_id: int, requested: int, available: int) -> None:
        super().__init__(
            f"product {product_id}: requested {requested}, available {available}",
            product_id=product_id,
            requested=requested,
            available=available,
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class Contention(OrderDeskError):
    """Lock or transaction acquisition failed; the whole call may be retried."""

    code = "contention"
    retryable = True


class StorageFailure(OrderDeskError):
    code = "storage_failure"


def _is_contention(exc: sa_exc.DBAPIError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _CONTENTION_SQLSTATES:
        return True
    args = getattr(orig, "args", ())
    if args and isinstance(args[0], int) and args[0] in _CONTENTION_ERRNOS:
        return True
    text = str(orig).lower()
    return any(marker in text for marker in _CONTENTION_MARKERS)


def translate_storage_error(exc: sa_exc.SQLAlchemyError) -> OrderDeskError:
    """Map a SQLAlchemy/driver error onto Contention or StorageFailure."""
    if isinstance(exc, sa_exc.TimeoutError):
        return Contention("timed out waiting for a database connection")
    if isinstance(exc, sa_exc.DBAPIError) and _is_contention(exc):
        return Contention(f"lock wait exceeded: {exc.orig}")
    _logger.error("Storage failure | type=%s err=%s", type(exc).__name__, exc)
    return StorageFailure(f"{type(exc).__name__}: {getattr(exc, 'orig', None) or exc}")
