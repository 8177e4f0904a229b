from datetime import datetime

from quart import Blueprint, current_app, jsonify

from ..common.errors import InvalidOrder
from ..common.http import as_int, read_json
from .schemas import LineRequest, as_utc

bp = Blueprint("orders", __name__)


def _parse_lines(data):
    items = data.get("items")
    if not isinstance(items, list) or not items:
        raise InvalidOrder("items must be a non-empty list")
    lines = []
    for entry in items:
        if not isinstance(entry, dict):
            raise InvalidOrder("each item must be an object with product_id and quantity")
        lines.append(
            LineRequest(
                product_id=as_int(entry.get("product_id"), "product_id", InvalidOrder),
                quantity=as_int(entry.get("quantity"), "quantity", InvalidOrder),
            )
        )
    return lines


def _parse_placed_at(data):
    raw = data.get("placed_at")
    if raw is None:
        return None
    try:
        return datetime.fromisoformat(raw)
    except (TypeError, ValueError):
        raise InvalidOrder(f"placed_at must be an ISO-8601 timestamp, got {raw!r}") from None


@bp.post("/orders")
async def order_place():
    data = await read_json()
    placed = await current_app.order_service.place_order(_parse_lines(data), placed_at=_parse_placed_at(data))
    return jsonify({"ok": True, "order": placed.to_dict()}), 201


@bp.get("/orders")
async def orders_list():
    orders = await current_app.order_service.list_orders()
    return jsonify(
        {
            "orders": [
                {"id": o.id, "placed_at": as_utc(o.placed_at).isoformat(), "total": str(o.total)}
                for o in orders
            ]
        }
    )


@bp.get("/orders/<int:order_id>")
async def order_detail(order_id: int):
    placed = await current_app.order_service.get_order(order_id)
    return jsonify({"ok": True, "order": placed.to_dict()})
