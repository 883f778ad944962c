import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from passlib.context import CryptContext

import database
import main
from schemas import Product, ThemedBox


@pytest.fixture
def mongo(monkeypatch):
    mock_db = mongomock.MongoClient()["curated_crate_test"]
    database.ensure_indexes(mock_db)
    monkeypatch.setattr(database, "db", mock_db)
    monkeypatch.setattr(main, "db", mock_db)
    # cheap hashes keep the suite fast
    monkeypatch.setattr(main, "pwd_context", CryptContext(schemes=["bcrypt"], bcrypt__rounds=4))
    main.rate_store.clear()
    return mock_db


@pytest.fixture
def client(mongo):
    return TestClient(main.app)


@pytest.fixture
def make_user(client, mongo):
    def _make(email="shopper@example.com", name="Sam Shopper", role="user", password="secret123"):
        resp = client.post("/api/auth/register", json={"name": name, "email": email, "password": password})
        assert resp.status_code == 201, resp.text
        body = resp.json()
        if role == "admin":
            mongo["user"].update_one({"email": email}, {"$set": {"role": "admin"}})
        return {"Authorization": f"Bearer {body['token']}"}, body["user"]["_id"]
    return _make


@pytest.fixture
def user_auth(make_user):
    return make_user()


@pytest.fixture
def admin_auth(make_user):
    return make_user(email="admin@example.com", name="Ada Admin", role="admin")


@pytest.fixture
def make_product(mongo):
    def _make(**overrides):
        data = {
            "name": "Soy Candle",
            "description": "Cedar and sea salt",
            "price": 30.0,
            "category": "Home Goods",
            "stock": 5,
            "images": ["https://img.example.com/candle.jpg"],
        }
        data.update(overrides)
        return database.create_document("product", Product(**data))
    return _make


@pytest.fixture
def make_box(mongo):
    def _make(product_ids, **overrides):
        data = {
            "name": "Slow Sunday Box",
            "description": "Everything for a quiet morning",
            "price": 59.0,
            "image": "https://img.example.com/box.jpg",
            "products": product_ids,
        }
        data.update(overrides)
        return database.create_document("themedbox", ThemedBox(**data))
    return _make


@pytest.fixture
def make_discount(mongo):
    def _make(code="SAVE10", type="percentage", value=10, **extra):
        doc = {"code": code, "type": type, "value": value, "uses": 0, "isActive": True}
        doc.update(extra)
        return str(mongo["discount"].insert_one(doc).inserted_id)
    return _make


@pytest.fixture
def stock_of(mongo):
    def _stock(product_id):
        return mongo["product"].find_one({"_id": ObjectId(product_id)})["stock"]
    return _stock


@pytest.fixture
def lose_insert_race(monkeypatch):
    """Make the next insert lose to an identical one written just before it."""
    def _patch():
        def racing(collection_name, data):
            database.create_document(collection_name, data)
            return database.create_document(collection_name, data)
        monkeypatch.setattr(main, "create_document", racing)
    return _patch
