from decimal import Decimal

from cafe import models


def test_catalog_price_rounding_regression(client, admin):
    # Guard against regressions: catalog prices stored with 2-decimal rounding half up
    r = client.post("/api/products", json={"name": "Muffin", "base_price": "2.675"}, headers=admin.headers)
    detail = client.get(f"/api/products/{r.json()['id']}").json()
    assert detail["base_price"] == "2.68"


def test_repeated_orders_do_not_drift(orders, customer, db_session):
    product = models.Product(name="Cookie", base_price=Decimal("0.10"))
    product.items = [models.ProductItem(name="Cookie", price=Decimal("0.10"))]
    db_session.add(product)
    db_session.commit()
    cart = [{"product_item": {"id": product.items[0].id}, "quantity": 1}] * 10

    totals = [orders.create_order(customer.id, cart)["total"] for _ in range(3)]
    assert totals == [Decimal("1.00")] * 3
