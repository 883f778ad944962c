from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

import database
from schemas import Discount


def validate(client, headers, code, subtotal=30):
    return client.post("/api/discounts/validate", headers=headers, json={"code": code, "cartSubtotal": subtotal})


def test_validate_percentage_code(client, user_auth, make_discount):
    headers, _ = user_auth
    make_discount()
    resp = validate(client, headers, " save10 ")
    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Discount applied successfully!"
    assert body["data"] == {
        "code": "SAVE10", "type": "percentage", "value": 10.0, "discountAmount": 3.0, "freeShipping": False,
    }


def test_validate_fixed_code_capped_at_subtotal(client, user_auth, make_discount):
    headers, _ = user_auth
    make_discount(code="TENOFF", type="fixed", value=10)
    assert validate(client, headers, "TENOFF", 6.5).json()["data"]["discountAmount"] == 6.5


def test_validate_rejections(client, user_auth, make_discount):
    headers, _ = user_auth
    make_discount(code="OLD", expiryDate=datetime.now(timezone.utc) - timedelta(days=1))
    make_discount(code="OFF", isActive=False)
    make_discount(code="USEDUP", uses=3, maxUses=3)

    resp = validate(client, headers, "OLD")
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "message": "Discount code has expired."}

    assert validate(client, headers, "NOPE").status_code == 404
    assert validate(client, headers, "OFF").status_code == 404
    assert validate(client, headers, "USEDUP").status_code == 400
    assert validate(client, headers, "   ").status_code == 400
    assert validate(client, headers, "SAVE10", -5).status_code == 400


def test_validate_needs_login(client, make_discount):
    make_discount()
    assert client.post("/api/discounts/validate", json={"code": "SAVE10", "cartSubtotal": 30}).status_code == 401


def test_admin_creates_discount(client, admin_auth, mongo):
    headers, _ = admin_auth
    payload = {"code": "spring20", "type": "percentage", "value": 20, "maxUses": 50, "description": "Spring sale"}
    resp = client.post("/api/admin/discounts", headers=headers, json=payload)
    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["code"] == "SPRING20"
    assert data["uses"] == 0
    assert data["isActive"] is True

    resp = client.post("/api/admin/discounts", headers=headers, json=dict(payload, code="Spring20"))
    assert resp.status_code == 409
    assert resp.json()["message"] == "Discount code must be unique."
    assert mongo["discount"].count_documents({}) == 1


def test_admin_discount_validation(client, admin_auth, user_auth):
    headers, _ = admin_auth
    resp = client.post("/api/admin/discounts", headers=headers, json={"code": "HUGE", "type": "percentage", "value": 150})
    assert resp.status_code == 400
    resp = client.post("/api/admin/discounts", headers=headers, json={"code": "ODD", "type": "bogus", "value": 5})
    assert resp.status_code == 400

    customer, _ = user_auth
    resp = client.post("/api/admin/discounts", headers=customer, json={"code": "MINE", "type": "fixed", "value": 5})
    assert resp.status_code == 403


def test_admin_lists_discounts_with_stats(client, admin_auth, make_discount):
    headers, _ = admin_auth
    make_discount(uses=4)
    make_discount(code="WELCOME5", type="fixed", value=5, uses=2)
    make_discount(code="OLD", uses=7, expiryDate=datetime.now(timezone.utc) - timedelta(days=1))
    make_discount(code="OFF", isActive=False)

    body = client.get("/api/admin/discounts", headers=headers).json()
    assert len(body["data"]) == 4
    assert body["stats"] == {"activeCodes": 2, "totalUses": 13}


def test_admin_deletes_discount(client, admin_auth, make_discount):
    headers, _ = admin_auth
    discount_id = make_discount()
    assert client.delete(f"/api/admin/discounts/{discount_id}", headers=headers).json()["success"] is True
    assert client.delete(f"/api/admin/discounts/{discount_id}", headers=headers).status_code == 404
    assert client.delete(f"/api/admin/discounts/{ObjectId()}", headers=headers).status_code == 404
    assert client.delete("/api/admin/discounts/oops", headers=headers).status_code == 400


def test_discount_codes_are_unique_in_the_database(mongo):
    database.create_document("discount", Discount(code="SAVE10", type="percentage", value=10))
    with pytest.raises(DuplicateKeyError):
        database.create_document("discount", Discount(code="SAVE10", type="fixed", value=5))
    assert mongo["discount"].count_documents({"code": "SAVE10"}) == 1


def test_concurrent_discount_create_is_a_conflict(client, admin_auth, lose_insert_race, mongo):
    headers, _ = admin_auth
    lose_insert_race()
    resp = client.post("/api/admin/discounts", headers=headers, json={"code": "RACE", "type": "fixed", "value": 5})
    assert resp.status_code == 409
    assert resp.json()["message"] == "Discount code must be unique."
    assert mongo["discount"].count_documents({"code": "RACE"}) == 1
