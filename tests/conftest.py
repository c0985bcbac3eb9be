"""Pytest fixtures for marketplace tests."""

import itertools

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from marketplace import database, realtime
from marketplace.main import app

PASSWORD = "secret123"

SHOP_LOCATION = {"latitude": 19.0760, "longitude": 72.8777}
NEAR_SHOP = {"latitude": 19.0800, "longitude": 72.8800}


@pytest.fixture(autouse=True)
def db():
    """Install a fresh in-memory database for every test."""
    original = database.db
    test_db = mongomock.MongoClient()["marketplace_test"]
    database.use_database(test_db)
    yield test_db
    database.use_database(original)


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def register(client, db):
    """Register a user with the given role and return its id, token and auth headers."""
    counter = itertools.count(1)

    def _register(role="customer", **overrides):
        n = next(counter)
        payload = {
            "name": f"{role.replace('_', ' ').title()} {n}",
            "email": f"{role}{n}@example.com",
            "phone": f"+91987650{n:04d}",
            "password": PASSWORD,
            "role": "customer" if role == "admin" else role,
        }
        payload.update(overrides)
        response = client.post("/api/auth/register", json=payload)
        assert response.status_code == 201, response.text
        data = response.json()
        user_id = data["user"]["id"]
        if role == "admin":
            db["user"].update_one({"_id": ObjectId(user_id)}, {"$set": {"role": "admin"}})
        return {
            "id": user_id,
            "email": payload["email"],
            "phone": payload["phone"],
            "token": data["token"],
            "headers": {"Authorization": f"Bearer {data['token']}"},
        }

    return _register


@pytest.fixture
def customer(register):
    return register("customer")


@pytest.fixture
def owner(register):
    return register("shop_owner")


@pytest.fixture
def admin(register):
    return register("admin")


@pytest.fixture
def partner(register):
    return register("delivery_partner")


def shop_payload(**overrides):
    payload = {
        "business_name": "Fresh Mart",
        "business_type": "grocery",
        "description": "Neighbourhood grocery store",
        "contact_info": {"phone": "+919800000001", "email": "freshmart@example.com"},
        "address": {
            "address_line1": "1 Market Road",
            "city": "Mumbai",
            "state": "Maharashtra",
            "pincode": "400001",
            "coordinates": dict(SHOP_LOCATION),
        },
        "settings": {
            "delivery_fee": 20,
            "free_delivery_above": 500,
            "service_radius": 10,
            "payment_methods": ["cash", "card", "upi"],
        },
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_shop(client, db):
    def _make_shop(owner, verified=True, **overrides):
        response = client.post("/api/shops", json=shop_payload(**overrides), headers=owner["headers"])
        assert response.status_code == 201, response.text
        shop = response.json()["shop"]
        if verified:
            db["shop"].update_one({"_id": ObjectId(shop["id"])}, {"$set": {"verification.status": "verified"}})
        return shop

    return _make_shop


@pytest.fixture
def shop(make_shop, owner):
    return make_shop(owner)


@pytest.fixture
def make_category(client, admin):
    def _make_category(name="Groceries", **fields):
        response = client.post("/api/categories", json={"name": name, **fields}, headers=admin["headers"])
        assert response.status_code == 201, response.text
        return response.json()["category"]

    return _make_category


@pytest.fixture
def category(make_category):
    return make_category()


@pytest.fixture
def make_product(client, owner, shop, category):
    counter = itertools.count(1)

    def _make_product(**overrides):
        payload = {
            "name": f"Basmati Rice {next(counter)}",
            "description": "Long grain rice",
            "category_id": category["id"],
            "price": 100,
            "stock": 10,
        }
        payload.update(overrides)
        response = client.post("/api/products", json=payload, headers=owner["headers"])
        assert response.status_code == 201, response.text
        return response.json()["product"]

    return _make_product


@pytest.fixture
def product(make_product):
    return make_product()


@pytest.fixture
def make_address(client):
    def _make_address(user, **overrides):
        payload = {
            "full_name": "Asha Rao",
            "phone": "+919811111111",
            "address_line1": "22 Hill Road",
            "city": "Mumbai",
            "state": "Maharashtra",
            "pincode": "400001",
            "coordinates": dict(NEAR_SHOP),
        }
        payload.update(overrides)
        response = client.post("/api/users/me/addresses", json=payload, headers=user["headers"])
        assert response.status_code == 201, response.text
        return response.json()["address"]

    return _make_address


@pytest.fixture
def address(make_address, customer):
    return make_address(customer)


@pytest.fixture
def place_order(client, shop, address):
    def _place_order(user, items, method="cash", **overrides):
        payload = {
            "shop_id": shop["id"],
            "items": items,
            "delivery": {"type": "delivery", "address_id": address["id"]},
            "payment": {"method": method},
        }
        payload.update(overrides)
        return client.post("/api/orders", json=payload, headers=user["headers"])

    return _place_order


class RoomListener:
    """Stands in for a websocket connection and records every pushed message."""

    def __init__(self):
        self.user_id = "listener"
        self.rooms = set()
        self.received = []

    def push(self, message):
        self.received.append(message)

    def events(self):
        return [m["event"] for m in self.received]


@pytest.fixture
def listen():
    """Join a recorder to real-time rooms on the live hub."""
    listeners = []

    def _listen(*rooms):
        listener = RoomListener()
        for room in rooms:
            realtime.hub.join(listener, room)
        listeners.append(listener)
        return listener

    yield _listen
    for listener in listeners:
        realtime.hub.disconnect(listener)
