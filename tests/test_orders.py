import pytest
from bson import ObjectId

import database
import main

SHIPPING = {"name": "Asha", "address": "12 Lake Rd", "city": "Pune", "pincode": "411001"}


def place(client, owner, items, total=None, **extra):
    body = {
        "products": items,
        "total_amount": total if total is not None else sum(i["price"] for i in items),
        "shipping": SHIPPING,
        "payment": "UPI",
        **extra,
    }
    return client.post("/api/orders", json=body, headers=owner["headers"])


def test_place_order_snapshots_product(client, customer, vendor, product):
    res = place(client, customer, [{"product_id": product["id"], "price": 90}])
    assert res.status_code == 201
    body = res.json()
    assert body["msg"] == "Order placed successfully"
    order = body["order"]
    assert order["status"] == "Pending"
    assert order["payment"] == "UPI"
    item = order["products"][0]
    assert item["price"] == 90
    assert item["name"] == product["name"]
    assert item["category"] == "Home"
    assert item["vendor_id"] == vendor["id"]
    assert item["quantity"] == 1


def test_total_is_not_recomputed(client, customer, product):
    res = place(client, customer, [{"product_id": product["id"], "price": 90}], total=1)
    assert res.json()["order"]["total_amount"] == 1


def test_bargained_price_is_taken_as_sent(client, customer, product, start_bargain):
    thread = start_bargain(customer, product, price=70)
    res = place(client, customer, [{"product_id": product["id"], "price": 70}], bargain_id=thread["id"])
    assert res.status_code == 201
    assert res.json()["order"]["bargain_id"] == thread["id"]


def test_zero_stock_item_is_still_accepted(client, customer, vendor, make_product):
    sold_out = make_product(vendor, stock=0)
    res = place(client, customer, [{"product_id": sold_out["id"], "price": 100}])
    assert res.status_code == 201
    # stock is never decremented
    stored = database.db["product"].find_one({"_id": ObjectId(sold_out["id"])})
    assert stored["stock"] == 0


def test_invalid_payment_method(client, customer, product):
    res = place(client, customer, [{"product_id": product["id"], "price": 1}], payment="Barter")
    assert res.status_code == 400


def test_list_own_orders_newest_first(client, customer, register, product):
    place(client, customer, [{"product_id": product["id"], "price": 1}])
    place(client, customer, [{"product_id": product["id"], "price": 2}])
    place(client, register("customer"), [{"product_id": product["id"], "price": 3}])

    res = client.get("/api/orders", headers=customer["headers"])
    assert res.status_code == 200
    orders = res.json()
    assert [o["total_amount"] for o in orders] == [2, 1]
    assert orders[0]["products"][0]["description"] == "Hand made"


def test_vendor_sees_orders_with_their_items(client, customer, vendor, register, product, make_product):
    other_vendor = register("vendor")
    other_product = make_product(other_vendor, name="Rug")
    place(
        client,
        customer,
        [{"product_id": product["id"], "price": 10}, {"product_id": other_product["id"], "price": 20}],
    )
    place(client, customer, [{"product_id": other_product["id"], "price": 20}])

    res = client.get("/api/orders/vendor", headers=vendor["headers"])
    assert res.status_code == 200
    orders = res.json()
    assert len(orders) == 1
    assert {i["vendor_id"] for i in orders[0]["products"]} == {vendor["id"], other_vendor["id"]}

    assert client.get("/api/orders/vendor", headers=customer["headers"]).status_code == 403


def test_cancel_pending_order(client, customer, product):
    order = place(client, customer, [{"product_id": product["id"], "price": 5}]).json()["order"]
    res = client.patch(f"/api/orders/{order['id']}/cancel", headers=customer["headers"])
    assert res.status_code == 200
    body = res.json()
    assert body["msg"] == "Order cancelled successfully"
    assert body["order"]["status"] == "Cancelled"
    assert body["order"]["cancelled_at"]


def test_cancel_processing_order_case_insensitively(client, customer, product):
    order = place(client, customer, [{"product_id": product["id"], "price": 5}]).json()["order"]
    database.db["order"].update_one({"_id": ObjectId(order["id"])}, {"$set": {"status": "PROCESSING"}})
    res = client.patch(f"/api/orders/{order['id']}/cancel", headers=customer["headers"])
    assert res.status_code == 200


def test_cannot_cancel_someone_elses_order(client, customer, register, product):
    order = place(client, customer, [{"product_id": product["id"], "price": 5}]).json()["order"]
    res = client.patch(f"/api/orders/{order['id']}/cancel", headers=register("customer")["headers"])
    assert res.status_code == 403
    assert res.json() == {"msg": "Not authorized to cancel this order"}


@pytest.mark.parametrize("status", ["Shipped", "Delivered", "Cancelled"])
def test_cannot_cancel_past_pending(client, customer, product, status):
    order = place(client, customer, [{"product_id": product["id"], "price": 5}]).json()["order"]
    database.db["order"].update_one({"_id": ObjectId(order["id"])}, {"$set": {"status": status}})
    res = client.patch(f"/api/orders/{order['id']}/cancel", headers=customer["headers"])
    assert res.status_code == 400
    assert status in res.json()["msg"]


def test_cancel_missing_order(client, customer):
    res = client.patch(f"/api/orders/{ObjectId()}/cancel", headers=customer["headers"])
    assert res.status_code == 404
    assert res.json() == {"msg": "Order not found"}


def test_cancel_when_order_disappears_midway(client, monkeypatch, customer, product):
    order = place(client, customer, [{"product_id": product["id"], "price": 90}]).json()["order"]
    stale = database.db["order"].find_one({"_id": ObjectId(order["id"])})
    database.db["order"].delete_one({"_id": stale["_id"]})

    monkeypatch.setattr(main, "find_or_404", lambda *args, **kwargs: stale)
    res = client.patch(f"/api/orders/{order['id']}/cancel", headers=customer["headers"])
    assert res.status_code == 404
    assert res.json() == {"msg": "Order not found"}


def test_listing_prefers_live_product_image(client, customer, vendor, make_product):
    png = ("images", ("live.png", b"\x89PNG\r\n\x1a\nfake", "image/png"))
    product = make_product(vendor, files=[png])
    place(client, customer, [{"product_id": product["id"], "price": 90, "image": "/uploads/old.png"}])

    item = client.get("/api/orders", headers=customer["headers"]).json()[0]["products"][0]
    assert item["image"] == product["images"][0]
    assert item["images"] == product["images"]


def test_listing_keeps_snapshot_image_when_product_has_none(client, customer, product):
    place(client, customer, [{"product_id": product["id"], "price": 90, "image": "/uploads/old.png"}])
    item = client.get("/api/orders", headers=customer["headers"]).json()[0]["products"][0]
    assert item["image"] == "/uploads/old.png"
