import io

import pytest
from fastapi.testclient import TestClient
from openpyxl import Workbook

from auth import hash_password
from catalog import Catalog
from config import Settings
from database import MemoryStore
from images import ImageStore, ImageUpload
from main import create_app

ADMIN_PASSWORD = "correct horse battery"
ADMIN_PASSWORD_HASH = hash_password(ADMIN_PASSWORD, rounds=4)

PNG_HEADER = b"\x89PNG\r\n\x1a\n"

RING = {
    "name": "Ring A",
    "brand": "Cartier",
    "type": "Nhẫn",
    "material": "18K Gold",
    "stock": 5,
    "originalPrice": 1000,
    "salePrice": 900,
}

HEADER = ["Name", "Brand", "Type", "Stock", "OriginalPrice", "SalePrice", "Image", "Material"]


@pytest.fixture
def ring():
    return dict(RING)


@pytest.fixture
def png():
    def make(seed: bytes = b"ring", filename: str = "ring.png") -> ImageUpload:
        return ImageUpload(filename=filename, content_type="image/png", data=PNG_HEADER + seed)

    return make


@pytest.fixture
def xlsx():
    def make(rows) -> bytes:
        workbook = Workbook()
        sheet = workbook.active
        sheet.append(HEADER)
        for row in rows:
            sheet.append(list(row))
        buffer = io.BytesIO()
        workbook.save(buffer)
        return buffer.getvalue()

    return make


@pytest.fixture
def store():
    return MemoryStore(retries=50, retry_delay=0.005, max_retry_delay=0.05)


@pytest.fixture
def images(tmp_path):
    return ImageStore(tmp_path / "uploads")


@pytest.fixture
def catalog(store, images):
    return Catalog(store, images)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATA_DIR=tmp_path / "data",
        UPLOADS_DIR=tmp_path / "uploads",
        ADMIN_USERNAME="admin",
        ADMIN_PASSWORD_HASH=ADMIN_PASSWORD_HASH,
        JWT_SECRET="test-secret",
        LOCK_RETRIES=20,
        LOCK_RETRY_DELAY=0.005,
        LOCK_MAX_RETRY_DELAY=0.1,
    )


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as c:
        yield c


@pytest.fixture
def admin_headers(client):
    response = client.post("/api/login", json={"username": "admin", "password": ADMIN_PASSWORD})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}
