from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import hash_password, make_token
from database import get_db, now_utc
from main import app
from permissions import ADMIN_PERMISSIONS, SHOP_OWNER_PERMISSIONS, Actor


@pytest.fixture
def db():
    return mongomock.MongoClient()["bozor_test"]


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def store(db):
    """A shop owner with one shop, a seller working there and two products."""
    stamp = now_utc()
    owner_id = db["shopowner"].insert_one({
        "name": "Olma Savdo", "phone": "+998901112233", "username": "owner",
        "password_hash": hash_password("secret1"), "permissions": SHOP_OWNER_PERMISSIONS,
        "status": "active", "created_at": stamp,
    }).inserted_id
    shop_id = db["shop"].insert_one({"name": "Olma 1", "owner_id": str(owner_id), "status": "active"}).inserted_id
    seller_id = db["seller"].insert_one({
        "full_name": "Ali Valiyev", "username": "seller", "password_hash": hash_password("secret1"),
        "phone": "+998901234567", "shops": [str(shop_id)], "shop_owners": [], "status": "active",
    }).inserted_id
    rice_id = db["product"].insert_one({
        "shop_id": str(shop_id), "name": "Rice", "price": 100000, "quantity": 10, "unit": "dona", "unit_size": 1,
    }).inserted_id
    tv_id = db["product"].insert_one({
        "shop_id": str(shop_id), "name": "TV", "price": 500000, "quantity": 2, "unit": "dona", "unit_size": 1,
    }).inserted_id
    admin_id = db["admin"].insert_one({
        "username": "root", "password_hash": hash_password("secret1"), "role": "general",
        "permissions": ADMIN_PERMISSIONS, "status": "active",
    }).inserted_id
    return {
        "owner_id": str(owner_id),
        "shop_id": str(shop_id),
        "seller_id": str(seller_id),
        "rice_id": str(rice_id),
        "tv_id": str(tv_id),
        "admin_id": str(admin_id),
    }


@pytest.fixture
def seller(store):
    return Actor(id=store["seller_id"], role="seller", shops=[store["shop_id"]])


@pytest.fixture
def admin(store):
    return Actor(id=store["admin_id"], role="admin", admin_role="general", permissions=ADMIN_PERMISSIONS)


@pytest.fixture
def headers(store):
    def for_role(role):
        subject = {"admin": store["admin_id"], "seller": store["seller_id"], "shop_owner": store["owner_id"]}[role]
        return {"Authorization": f"Bearer {make_token(subject, role)}"}
    return for_role


@pytest.fixture
def customer():
    return {
        "full_name": "Karim Karimov",
        "birth_date": "1990-05-17",
        "passport_series": "aa1234567",
        "primary_phone": "+998907654321",
    }


@pytest.fixture
def tomorrow():
    return (now_utc() + timedelta(days=1)).date().isoformat()
