import os
import tempfile
from types import SimpleNamespace

os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="handcraft-uploads-"))

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from access import Role
from storage import LocalImageStorage

JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 256


@pytest.fixture
def db():
    return mongomock.MongoClient()["handcraft_test"]


@pytest.fixture
def storage(tmp_path):
    return LocalImageStorage(root_dir=str(tmp_path), url_prefix="/uploads")


@pytest.fixture
def client(db, storage):
    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[main.get_storage] = lambda: storage
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


@pytest.fixture
def actor():
    def make(actor_id="seller-1", role=Role.SELLER):
        return SimpleNamespace(id=actor_id, role=role)
    return make


@pytest.fixture
def product_data():
    def make(**overrides):
        data = {
            "name": "Walnut bowl",
            "price": 10.0,
            "description": "Hand-turned walnut bowl",
            "image": "https://cdn.example.com/bowl.jpg",
            "category": "wooden",
        }
        data.update(overrides)
        return data
    return make


@pytest.fixture
def signup(client):
    """Register an account over HTTP and return (auth headers, user json)."""
    def make(name, email, role="user", password="secret123"):
        resp = client.post("/api/register", json={"name": name, "email": email, "password": password, "role": role})
        assert resp.status_code == 201, resp.text
        body = resp.json()
        return {"Authorization": f"Bearer {body['access_token']}"}, body["user"]
    return make
