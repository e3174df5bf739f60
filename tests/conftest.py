import os
import pathlib
import sys
from datetime import date, timedelta

import mongomock
import pytest


REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.append(str(REPO_ROOT))


def pytest_configure():
    # Tests never talk to a real server; the database fixture is in-memory
    os.environ.pop("DATABASE_URL", None)
    os.environ.pop("DATABASE_NAME", None)


@pytest.fixture(autouse=True)
def lock_disabled(monkeypatch):
    monkeypatch.delenv("ENABLE_BHANDARA_LOCK", raising=False)


@pytest.fixture()
def enable_lock(monkeypatch):
    monkeypatch.setenv("ENABLE_BHANDARA_LOCK", "true")


@pytest.fixture()
def mongo_db():
    client = mongomock.MongoClient()
    yield client["bhandara_test"]
    client.close()


@pytest.fixture()
def make_bhandara(mongo_db):
    def _make(days_ago: int = 0, name: str = "Annual bhandara") -> dict:
        doc = {
            "name": name,
            "date": (date.today() - timedelta(days=days_ago)).isoformat(),
            "status": "active",
        }
        doc["_id"] = mongo_db["bhandara"].insert_one(dict(doc)).inserted_id
        return doc

    return _make


@pytest.fixture()
def admin_current(mongo_db):
    admin_id = mongo_db["admin"].insert_one({"username": "SEVA", "pin": "x", "role": "admin"}).inserted_id
    return {"admin_id": str(admin_id), "username": "SEVA", "role": "admin"}


@pytest.fixture()
def super_current(mongo_db):
    admin_id = mongo_db["admin"].insert_one({"username": "ROOT", "pin": "x", "role": "super-admin"}).inserted_id
    return {"admin_id": str(admin_id), "username": "ROOT", "role": "super-admin"}


@pytest.fixture()
def api_client(mongo_db):
    from database import get_db
    from main import app
    from fastapi.testclient import TestClient

    def _get_test_db():
        return mongo_db

    app.dependency_overrides[get_db] = _get_test_db
    client = TestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture()
def login(api_client, mongo_db):
    import services
    from schemas import AdminCreate

    def _login(username: str = "seva", pin: str = "12345", role: str = "admin") -> dict:
        if not mongo_db["admin"].find_one({"username": username.upper()}):
            services.create_admin(mongo_db, AdminCreate(username=username, pin=pin, role=role))
        resp = api_client.post("/auth/login", data={"username": username, "password": pin})
        assert resp.status_code == 200, resp.text
        return {"Authorization": f"Bearer {resp.json()['access_token']}"}

    return _login
