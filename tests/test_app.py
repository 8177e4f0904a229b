"""
HTTP-level tests through Quart's test client.
"""
import pytest_asyncio

from orderdesk.app import create_app


@pytest_asyncio.fixture
async def client(database, publisher):
    app = create_app(database=database, publisher=publisher)
    async with app.test_app() as test_app:
        yield test_app.test_client()


async def _json(response):
    return await response.get_json()


async def test_health_and_metrics(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert await _json(response) == {"status": "ok"}

    response = await client.get("/metrics")
    assert response.status_code == 200
    assert b"http_requests_total" in await response.get_data()


async def test_catalog_endpoints(client):
    response = await client.post("/categories", json={"name": "Kitchen"})
    assert response.status_code == 201
    category_id = (await _json(response))["category"]["id"]

    response = await client.post("/categories", json={"name": "Kitchen"})
    assert response.status_code == 409
    assert (await _json(response))["error"] == "duplicate_category"

    response = await client.post(
        "/products", json={"name": "Kettle", "price": "24.90", "stock": 3, "category_id": category_id}
    )
    assert response.status_code == 201
    product = (await _json(response))["product"]
    assert product["price"] == "24.90"

    response = await client.get(f"/products?category_id={category_id}")
    assert [p["name"] for p in (await _json(response))["products"]] == ["Kettle"]

    response = await client.put(f"/products/{product['id']}/stock", json={"stock": 8})
    assert await _json(response) == {"product_id": product["id"], "stock": 8}

    response = await client.get("/products/999")
    assert response.status_code == 404
    assert (await _json(response))["error"] == "product_not_found"


async def test_place_and_fetch_order(client, catalog, publisher):
    response = await client.post(
        "/orders",
        json={"items": [{"product_id": catalog["widget"], "quantity": 2}, {"product_id": catalog["gadget"], "quantity": 1}]},
    )
    assert response.status_code == 201
    order = (await _json(response))["order"]
    assert order["total"] == "34.48"
    assert [i["subtotal"] for i in order["items"]] == ["19.98", "14.50"]

    response = await client.get(f"/orders/{order['id']}")
    fetched = (await _json(response))["order"]
    assert fetched["total"] == order["total"]
    assert [(i["id"], i["subtotal"]) for i in fetched["items"]] == [(i["id"], i["subtotal"]) for i in order["items"]]
    assert [(i["product_name"], i["category_name"]) for i in fetched["items"]] == [
        ("Widget", "Hardware"),
        ("Gadget", "Hardware"),
    ]
    assert "product_name" not in order["items"][0]
    assert fetched["placed_at"].endswith("+00:00")
    assert publisher.sent


async def test_order_errors_map_to_status_codes(client, catalog):
    response = await client.post("/orders", json={"items": [{"product_id": catalog["gadget"], "quantity": 7}]})
    assert response.status_code == 400
    body = await _json(response)
    assert body["error"] == "insufficient_stock"
    assert (body["requested"], body["available"]) == (7, 6)

    response = await client.post("/orders", json={"items": [{"product_id": 5000, "quantity": 1}]})
    assert response.status_code == 404

    response = await client.post("/orders", json={"items": []})
    assert response.status_code == 400
    assert (await _json(response))["error"] == "invalid_order"

    response = await client.post("/orders", json={"items": [{"product_id": catalog["widget"], "quantity": 1.5}]})
    assert response.status_code == 400

    for quantity in ("--3", "\u00b2", "+-1", " 7x"):
        response = await client.post("/orders", json={"items": [{"product_id": catalog["widget"], "quantity": quantity}]})
        assert response.status_code == 400
        assert (await _json(response))["error"] == "invalid_order"

    response = await client.get("/products?category_id=--3")
    assert response.status_code == 400

    response = await client.get("/orders/12345")
    assert response.status_code == 404
