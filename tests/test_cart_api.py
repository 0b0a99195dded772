"""
Tests d'API pour le panier (GET/POST/PUT/DELETE /cart)
"""
import json
import os
import tempfile
import pytest

from storefront import create_app, db, Product, Order
from storefront.cart import CartRegistry


@pytest.fixture
def client():
    fd, path = tempfile.mkstemp(suffix=".sqlite")
    os.close(fd)
    db.init(path)

    db.connect()
    db.create_tables([Product, Order])
    Product.create(
        id="lion-25",
        name="Lion's Mane Grow Kit (2.5L)",
        category="Mushroom Grow Kits",
        price=249.0,
        in_stock=True,
        stock_count=5,
        chargeable_kg=2.5,
    )
    Product.create(
        id="lion-50",
        name="Lion's Mane Grow Kit (5L)",
        category="Mushroom Grow Kits",
        price=399.0,
        in_stock=True,
        stock_count=5,
        chargeable_kg=5,
    )
    Product.create(
        id="oyster",
        name="Blue Oyster Grow Kit",
        category="Mushroom Grow Kits",
        price=199.0,
        in_stock=True,
        stock_count=8,
        chargeable_kg=2.5,
        variants=json.dumps([
            {"id": "small", "unit": "l", "size": "2.5", "price": 199},
            {"id": "large", "unit": "l", "size": "5", "price": 349},
        ]),
    )
    Product.create(
        id="empty",
        name="Produit épuisé",
        category="Mushroom Grow Kits",
        price=100.0,
        in_stock=True,
        stock_count=0,
    )
    Product.create(
        id="reishi",
        name="Reishi Bulk",
        category="Bulk Herbal Products",
        price=500.0,
        in_stock=True,
        stock_count=50,
    )
    db.close()

    app = create_app({"TESTING": True})
    with app.test_client() as test_client:
        yield test_client

    if not db.is_closed():
        db.close()
    if os.path.exists(path):
        os.remove(path)


def add(client, product_id, quantity=1, variant_id=None):
    payload = {"product_id": product_id, "quantity": quantity}
    if variant_id is not None:
        payload["variant_id"] = variant_id
    return client.post("/cart/lines", json=payload)


def test_empty_cart_has_minimum_courier_fee(client):
    response = client.get("/cart")
    assert response.status_code == 200
    cart = response.get_json()["cart"]
    assert cart["lines"] == []
    assert cart["courier_fee"] == 100
    assert cart["grand_total"] == 100
    assert cart["checkout_allowed"] is False


def test_add_lines_and_totals(client):
    assert add(client, "lion-25", 2).status_code == 200
    response = add(client, "lion-50")
    cart = response.get_json()["cart"]

    assert cart["items_total"] == 897
    assert cart["total_chargeable_weight"] == 10
    assert cart["courier_bracket"] == "5-10kg"
    assert cart["courier_fee"] == 140
    assert cart["grand_total"] == 1037
    assert cart["checkout_allowed"] is True


def test_adding_same_product_merges_lines(client):
    add(client, "lion-25", 1)
    cart = add(client, "lion-25", 2).get_json()["cart"]
    assert len(cart["lines"]) == 1
    assert cart["lines"][0]["quantity"] == 3


def test_variant_line(client):
    cart = add(client, "oyster", 1, "large").get_json()["cart"]
    line = cart["lines"][0]
    assert line["id"] == "oyster:large"
    assert line["unit_price"] == 349
    assert line["chargeable_weight_kg"] == 2.5


def test_variant_required(client):
    response = add(client, "oyster", 1)
    assert response.status_code == 422
    assert response.get_json()["errors"]["product"]["code"] == "invalid-variant"


def test_out_of_stock_product_is_refused(client):
    response = add(client, "empty")
    assert response.status_code == 422
    assert response.get_json() == {
        "errors": {
            "product": {
                "code": "out-of-inventory",
                "name": "Le produit demandé n'est pas en inventaire",
            }
        }
    }


def test_enquiry_only_product_is_refused(client):
    response = add(client, "reishi")
    assert response.status_code == 422
    assert response.get_json()["errors"]["product"]["code"] == "enquiry-only"


def test_quantity_above_stock_is_refused(client):
    response = add(client, "lion-25", 6)
    assert response.status_code == 422
    assert response.get_json()["errors"]["product"]["code"] == "insufficient-stock"


def test_invalid_quantity_is_refused(client):
    response = add(client, "lion-25", 0)
    assert response.status_code == 422
    assert response.get_json()["errors"]["product"]["code"] == "invalid-quantity"


def test_missing_product_returns_missing_fields(client):
    response = client.post("/cart/lines", json={})
    assert response.status_code == 422
    assert response.get_json()["errors"]["product"]["code"] == "missing-fields"


def test_unknown_product_returns_404(client):
    response = add(client, "nope")
    assert response.status_code == 404


def test_set_quantity_floors_and_removes(client):
    add(client, "lion-25", 1)
    cart = client.put("/cart/lines/lion-25", json={"quantity": 2.7}).get_json()["cart"]
    assert cart["lines"][0]["quantity"] == 2

    cart = client.put("/cart/lines/lion-25", json={"quantity": -3}).get_json()["cart"]
    assert cart["lines"] == []


def test_set_quantity_requires_quantity(client):
    response = client.put("/cart/lines/lion-25", json={})
    assert response.status_code == 422


def test_set_quantity_on_variant_line(client):
    add(client, "oyster", 1, "small")
    cart = client.put("/cart/lines/oyster:small", json={"quantity": 4}).get_json()["cart"]
    assert cart["lines"][0]["quantity"] == 4


def test_remove_line_and_clear(client):
    add(client, "lion-25")
    add(client, "lion-50")
    cart = client.delete("/cart/lines/lion-25").get_json()["cart"]
    assert [line["id"] for line in cart["lines"]] == ["lion-50"]

    cart = client.delete("/cart").get_json()["cart"]
    assert cart["lines"] == []
    assert cart["grand_total"] == 100


def test_end_session_discards_cart(client):
    add(client, "lion-25")
    assert client.delete("/session").status_code == 204
    assert client.get("/cart").get_json()["cart"]["lines"] == []


def test_carts_are_isolated_per_session(client):
    add(client, "lion-25")
    app = client.application
    other = app.test_client()
    assert other.get("/cart").get_json()["cart"]["lines"] == []
    assert len(client.get("/cart").get_json()["cart"]["lines"]) == 1


def test_set_quantity_is_clamped_to_stock(client):
    add(client, "lion-25", 1)
    cart = client.put("/cart/lines/lion-25", json={"quantity": 999}).get_json()["cart"]
    assert cart["lines"][0]["quantity"] == 5

    response = add(client, "lion-25", 5)
    assert response.status_code == 422
    assert response.get_json()["errors"]["product"]["code"] == "insufficient-stock"
    assert client.get("/cart").get_json()["cart"]["lines"][0]["quantity"] == 5


def test_set_quantity_zero_removes_line(client):
    add(client, "lion-25", 2)
    cart = client.put("/cart/lines/lion-25", json={"quantity": 0}).get_json()["cart"]
    assert cart["lines"] == []


def test_set_quantity_unreadable_is_ignored(client):
    add(client, "lion-25", 2)
    cart = client.put("/cart/lines/lion-25", json={"quantity": "beaucoup"}).get_json()["cart"]
    assert cart["lines"][0]["quantity"] == 2


def test_repeated_adds_cannot_exceed_stock(client):
    assert add(client, "lion-25", 3).status_code == 200
    response = add(client, "lion-25", 3)
    assert response.status_code == 422
    assert response.get_json()["errors"]["product"]["code"] == "insufficient-stock"
    assert client.get("/cart").get_json()["cart"]["lines"][0]["quantity"] == 3


def test_variant_lines_share_product_stock(client):
    assert add(client, "oyster", 5, "small").status_code == 200
    assert add(client, "oyster", 4, "large").status_code == 422

    add(client, "oyster", 3, "large")
    cart = client.put("/cart/lines/oyster:large", json={"quantity": 10}).get_json()["cart"]
    quantities = {line["id"]: line["quantity"] for line in cart["lines"]}
    assert quantities == {"oyster:small": 5, "oyster:large": 3}


def test_reads_without_session_do_not_create_carts(client):
    app = client.application
    for _ in range(50):
        assert app.test_client().get("/cart").status_code == 200
    client.get("/cart")
    client.delete("/cart")
    client.put("/cart/lines/lion-25", json={"quantity": 2})
    client.post("/checkout", json={})
    assert len(app.extensions["carts"]) == 0


def test_idle_cart_is_abandoned(client):
    now = [0.0]
    app = client.application
    app.extensions["carts"] = CartRegistry(idle_ttl=60, clock=lambda: now[0])

    add(client, "lion-25")
    now[0] = 30.0
    assert len(client.get("/cart").get_json()["cart"]["lines"]) == 1
    now[0] = 200.0
    assert client.get("/cart").get_json()["cart"]["lines"] == []
    assert len(app.extensions["carts"]) == 0
