import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from main import app


@pytest.fixture
def mongo_db(monkeypatch):
    db = mongomock.MongoClient()["shop_test"]
    monkeypatch.setattr(database, "db", db)
    monkeypatch.setattr(main, "PBKDF2_ITERATIONS", 1000)
    return db


@pytest.fixture
def client(mongo_db):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def register(client):
    def _register(email="alice@example.com", password="secret123", name="Alice"):
        res = client.post("/register", json={"name": name, "email": email, "password": password})
        assert res.status_code == 200
        return {"email": email, "password": password}
    return _register


@pytest.fixture
def auth_headers(client, register):
    creds = register()
    res = client.post("/login", json=creds)
    assert res.status_code == 200
    return {"Authorization": f"Bearer {res.json()['accessToken']}"}


@pytest.fixture
def products(mongo_db):
    mongo_db["product"].insert_many([
        {"_id": "A", "title": "A", "price": 10, "sold": 0},
        {"_id": "B", "title": "B", "price": 25.5, "sold": 4},
    ])
    return ["A", "B"]
