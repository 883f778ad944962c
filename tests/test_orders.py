import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main

ADDRESS = {
    "fullName": "Sam Shopper",
    "street": "1 Main St",
    "city": "Portland",
    "state": "OR",
    "zipCode": "97201",
    "country": "US",
}
VISA = {"cardNumber": "4111 1111 1111 1111"}


def order_payload(*lines, **extra):
    payload = {"shippingAddress": ADDRESS, "paymentMethod": "card", "paymentDetails": VISA, "cartItems": list(lines)}
    payload.update(extra)
    return payload


def product_line(product_id, quantity=1):
    return {"type": "product", "productId": product_id, "quantity": quantity}


@pytest.fixture
def place_order(client, user_auth):
    headers, _ = user_auth

    def _place(*lines, headers=headers, **extra):
        return client.post("/api/orders", headers=headers, json=order_payload(*lines, **extra))
    return _place


def test_card_order_is_paid_and_priced_on_the_server(client, user_auth, make_product, place_order, stock_of):
    headers, user_id = user_auth
    product_id = make_product(price=30, stock=5)
    client.post("/api/cart", headers=headers, json={"productId": product_id})

    resp = place_order(product_line(product_id), totalPrice=42.39, shippingPrice=9.99, taxPrice=2.40)
    assert resp.status_code == 201
    order = resp.json()["data"]
    assert order["userId"] == user_id
    assert order["orderStatus"] == "pending"
    assert order["paymentStatus"] == "paid"
    assert order["isPaid"] is True
    assert order["paymentResult"]["status"] == "COMPLETED"
    assert (order["itemsPrice"], order["shippingPrice"], order["taxPrice"], order["totalPrice"]) == (30.0, 9.99, 2.4, 42.39)
    assert order["items"][0]["name"] == "Soy Candle"

    assert stock_of(product_id) == 4
    assert client.get("/api/cart", headers=headers).json()["data"]["items"] == []


def test_non_card_order_stays_pending(make_product, place_order):
    resp = place_order(product_line(make_product()), paymentMethod="cod", paymentDetails=None)
    order = resp.json()["data"]
    assert order["paymentStatus"] == "pending"
    assert order["isPaid"] is False


def test_order_with_coupon_redeems_one_use(make_product, make_discount, place_order, mongo):
    make_discount()
    resp = place_order(product_line(make_product(price=30)), appliedCouponCode="save10")
    assert resp.status_code == 201
    order = resp.json()["data"]
    assert order["discountPrice"] == 3.0
    assert order["totalPrice"] == 39.15
    assert order["appliedDiscountCode"] == "SAVE10"
    assert mongo["discount"].find_one({"code": "SAVE10"})["uses"] == 1


def test_exhausted_coupon_leaves_everything_untouched(client, user_auth, make_product, make_discount,
                                                      place_order, stock_of, mongo):
    headers, _ = user_auth
    make_discount(uses=2, maxUses=2)
    product_id = make_product()
    client.post("/api/cart", headers=headers, json={"productId": product_id})

    resp = place_order(product_line(product_id), appliedCouponCode="SAVE10")
    assert resp.status_code == 400
    assert mongo["order"].count_documents({}) == 0
    assert stock_of(product_id) == 5
    assert len(client.get("/api/cart", headers=headers).json()["data"]["items"]) == 1
    assert mongo["discount"].find_one({"code": "SAVE10"})["uses"] == 2


def test_losing_the_last_coupon_use_restocks(make_product, make_discount, place_order, stock_of, monkeypatch):
    make_discount(maxUses=1)
    product_id = make_product()
    monkeypatch.setattr(main, "redeem_discount", lambda doc: False)
    resp = place_order(product_line(product_id), appliedCouponCode="SAVE10")
    assert resp.status_code == 400
    assert stock_of(product_id) == 5


def test_failed_save_rolls_back_stock_and_coupon(mongo, user_auth, make_product, make_discount, stock_of, monkeypatch):
    headers, _ = user_auth
    make_discount()
    product_id = make_product()

    def broken(collection_name, data):
        raise RuntimeError("write failed")
    monkeypatch.setattr(main, "create_document", broken)

    client = TestClient(main.app, raise_server_exceptions=False)
    resp = client.post("/api/orders", headers=headers, json=order_payload(product_line(product_id), appliedCouponCode="SAVE10"))
    assert resp.status_code == 500
    assert resp.json()["success"] is False
    assert stock_of(product_id) == 5
    assert mongo["discount"].find_one({"code": "SAVE10"})["uses"] == 0


def test_declined_card_creates_no_order(make_product, place_order, stock_of, mongo):
    product_id = make_product()
    resp = place_order(product_line(product_id), paymentDetails={"cardNumber": "5555555555554444"})
    assert resp.status_code == 402
    assert resp.json()["success"] is False
    assert mongo["order"].count_documents({}) == 0
    assert stock_of(product_id) == 5


def test_insufficient_stock(make_product, place_order, mongo):
    resp = place_order(product_line(make_product(stock=2), quantity=3))
    assert resp.status_code == 400
    assert "Insufficient stock" in resp.json()["message"]
    assert mongo["order"].count_documents({}) == 0


def test_client_totals_must_match(make_product, place_order, stock_of):
    product_id = make_product(price=30)
    resp = place_order(product_line(product_id), totalPrice=10.0)
    assert resp.status_code == 400
    assert stock_of(product_id) == 5
    assert place_order(product_line(product_id), totalPrice=42.38).status_code == 201


def test_themed_box_order(make_product, make_box, place_order, stock_of):
    coffee = make_product(name="Coffee", price=24)
    journal = make_product(name="Journal", price=16)
    box_id = make_box([coffee, journal])

    resp = place_order({"type": "themedBox", "themedBoxId": box_id})
    assert resp.status_code == 201
    items = resp.json()["data"]["items"]
    assert [i["name"] for i in items] == ["Coffee", "Journal"]
    assert {i["themedBoxId"] for i in items} == {box_id}
    assert resp.json()["data"]["itemsPrice"] == 40.0
    assert stock_of(coffee) == 4
    assert stock_of(journal) == 4


def test_order_payload_validation(make_product, place_order):
    assert place_order().status_code == 400
    assert place_order({"type": "product"}).status_code == 400
    assert place_order(product_line("not-an-id")).status_code == 400
    assert place_order(product_line(str(ObjectId()))).status_code == 404
    assert place_order(product_line(make_product(), quantity=0)).status_code == 400


def test_orders_are_scoped_to_their_owner(client, make_user, admin_auth, make_product, place_order):
    order_id = place_order(product_line(make_product())).json()["data"]["_id"]
    other, _ = make_user(email="other@example.com")
    admin, _ = admin_auth

    assert client.get(f"/api/orders/{order_id}", headers=other).status_code == 403
    assert client.get("/api/orders", headers=other).json()["data"] == []
    assert client.get(f"/api/orders/{order_id}", headers=admin).status_code == 200
    assert len(client.get("/api/orders", headers=admin).json()["data"]) == 1


def test_admin_ships_order(client, user_auth, admin_auth, make_product, place_order, mongo):
    order_id = place_order(product_line(make_product())).json()["data"]["_id"]
    before = mongo["order"].find_one({"_id": ObjectId(order_id)})
    admin, _ = admin_auth

    resp = client.put(f"/api/orders/{order_id}", headers=admin, json={"orderStatus": "shipped"})
    assert resp.status_code == 200
    assert resp.json()["data"]["orderStatus"] == "shipped"

    after = mongo["order"].find_one({"_id": ObjectId(order_id)})
    changed = {k for k in set(before) | set(after) if before.get(k) != after.get(k)}
    assert changed - {"updatedAt"} == {"orderStatus"}
    assert after["deliveredAt"] is None

    customer, _ = user_auth
    assert client.put(f"/api/orders/{order_id}", headers=customer, json={"orderStatus": "delivered"}).status_code == 403


def test_status_lifecycle(client, admin_auth, make_product, place_order, mongo):
    order_id = place_order(product_line(make_product())).json()["data"]["_id"]
    admin, _ = admin_auth

    def set_status(status):
        return client.put(f"/api/orders/{order_id}", headers=admin, json={"orderStatus": status})

    assert set_status("processing").status_code == 200
    assert set_status("processing").status_code == 200
    assert set_status("shipped").status_code == 200
    assert set_status("delivered").json()["data"]["deliveredAt"]

    resp = set_status("pending")
    assert resp.status_code == 400
    assert resp.json()["message"] == "Cannot change order status from 'delivered' to 'pending'."
    assert set_status("teleported").status_code == 400
    assert mongo["order"].find_one({"_id": ObjectId(order_id)})["orderStatus"] == "delivered"

    assert set_status("completed").status_code == 200
    assert set_status("refunded").status_code == 400


def test_admin_order_list(client, user_auth, admin_auth, make_product, place_order):
    product_id = make_product(stock=10)
    first = place_order(product_line(product_id)).json()["data"]["_id"]
    place_order(product_line(product_id))
    admin, _ = admin_auth
    client.put(f"/api/orders/{first}", headers=admin, json={"orderStatus": "cancelled"})

    body = client.get("/api/admin/orders", headers=admin, params={"limit": 1}).json()
    assert body["pagination"] == {"currentPage": 1, "totalPages": 2, "totalOrders": 2}
    assert body["data"][0]["user"]["name"] == "Sam Shopper"
    assert body["data"][0]["user"]["email"] == "shopper@example.com"

    body = client.get("/api/admin/orders", headers=admin, params={"status": "cancelled"}).json()
    assert [o["_id"] for o in body["data"]] == [first]

    assert client.get("/api/admin/orders", headers=admin, params={"search": "shopper"}).json()["pagination"]["totalOrders"] == 2
    assert client.get("/api/admin/orders", headers=admin, params={"search": first}).json()["pagination"]["totalOrders"] == 1
    assert client.get("/api/admin/orders", headers=admin, params={"search": "nobody"}).json()["data"] == []


def test_box_quantity_multiplies_its_products(make_product, make_box, place_order, stock_of):
    coffee = make_product(name="Coffee", price=24, stock=5)
    journal = make_product(name="Journal", price=16, stock=5)
    box_id = make_box([coffee, journal])

    resp = place_order({"type": "themedBox", "themedBoxId": box_id, "quantity": 2})
    assert resp.status_code == 201
    order = resp.json()["data"]
    assert [i["quantity"] for i in order["items"]] == [2, 2]
    assert order["itemsPrice"] == 80.0
    assert stock_of(coffee) == 3
    assert stock_of(journal) == 3


def test_retired_boxes_and_products_cannot_be_ordered(make_product, make_box, place_order, stock_of, mongo):
    coffee = make_product(name="Coffee")
    retired = make_product(name="Retired", isActive=False)
    hidden_box = make_box([coffee], name="Hidden Box", isActive=False)
    stale_box = make_box([coffee, retired], name="Stale Box")

    resp = place_order({"type": "themedBox", "themedBoxId": hidden_box})
    assert resp.status_code == 400
    assert resp.json()["message"] == "\"Hidden Box\" is no longer available."

    resp = place_order({"type": "themedBox", "themedBoxId": stale_box})
    assert resp.status_code == 400
    assert resp.json()["message"] == "\"Retired\" in themed box \"Stale Box\" is no longer available."

    assert place_order(product_line(retired)).status_code == 400
    assert mongo["order"].count_documents({}) == 0
    assert stock_of(coffee) == 5
