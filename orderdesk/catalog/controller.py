from quart import Blueprint, current_app, jsonify, request

from ..common.http import as_int, read_json
from .service import UNSET, category_to_dict, product_to_dict

bp = Blueprint("catalog", __name__)


def _catalog():
    return current_app.catalog_service


@bp.get("/categories")
async def categories_list():
    items = await _catalog().list_categories()
    return jsonify({"categories": [category_to_dict(c) for c in items]})


@bp.post("/categories")
async def category_create():
    data = await read_json()
    category = await _catalog().create_category(data.get("name"), data.get("description"))
    return jsonify({"category": category_to_dict(category)}), 201


@bp.get("/categories/<int:category_id>")
async def category_detail(category_id: int):
    category = await _catalog().get_category(category_id)
    return jsonify({"category": category_to_dict(category)})


@bp.put("/categories/<int:category_id>")
async def category_update(category_id: int):
    data = await read_json()
    category = await _catalog().update_category(
        category_id,
        name=data.get("name", UNSET),
        description=data.get("description", UNSET),
    )
    return jsonify({"category": category_to_dict(category)})


@bp.delete("/categories/<int:category_id>")
async def category_delete(category_id: int):
    await _catalog().delete_category(category_id)
    return jsonify({"ok": True, "category_id": category_id})


@bp.get("/products")
async def products_list():
    category_id = request.args.get("category_id")
    if category_id is not None:
        category_id = as_int(category_id, "category_id")
    items = await _catalog().list_products(category_id=category_id)
    return jsonify({"products": [product_to_dict(p) for p in items]})


@bp.post("/products")
async def product_create():
    data = await read_json()
    category_id = data.get("category_id")
    product = await _catalog().create_product(
        data.get("name"),
        data.get("price"),
        data.get("stock", 0),
        description=data.get("description"),
        category_id=None if category_id is None else as_int(category_id, "category_id"),
    )
    return jsonify({"product": product_to_dict(product)}), 201


@bp.get("/products/<int:product_id>")
async def product_detail(product_id: int):
    product = await _catalog().get_product(product_id)
    return jsonify({"product": product_to_dict(product)})


@bp.put("/products/<int:product_id>")
async def product_update(product_id: int):
    data = await read_json()
    fields = {k: data[k] for k in ("name", "price", "stock", "description", "category_id") if k in data}
    if fields.get("category_id") is not None:
        fields["category_id"] = as_int(fields["category_id"], "category_id")
    product = await _catalog().update_product(product_id, **fields)
    return jsonify({"product": product_to_dict(product)})


@bp.delete("/products/<int:product_id>")
async def product_delete(product_id: int):
    await _catalog().delete_product(product_id)
    return jsonify({"ok": True, "product_id": product_id})


@bp.put("/products/<int:product_id>/stock")
async def stock_put(product_id: int):
    data = await read_json()
    updated = await _catalog().set_stock(product_id, data.get("stock"))
    return jsonify({"product_id": product_id, "stock": updated})
