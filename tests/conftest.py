import base64
import os
import tempfile
from io import BytesIO

import pytest

# Settings are read at import time, so configure the environment first
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["RATE_LIMIT"] = "10000/minute"
os.environ["ENABLE_EMAIL"] = "false"
os.environ["STORAGE_PROVIDER"] = "local"
os.environ["STORAGE_LOCAL_DIR"] = tempfile.mkdtemp(prefix="repairhub-tests-")
os.environ["PAYMENT_WEBHOOK_SECRET"] = "test-webhook-secret"

from decimal import Decimal  # noqa: E402

from fastapi.testclient import TestClient  # noqa: E402
from PIL import Image, ImageDraw  # noqa: E402

from repairhub.auth.security import create_access_token, get_password_hash  # noqa: E402
from repairhub.db import Base, SessionLocal, engine  # noqa: E402
from repairhub.main import app  # noqa: E402
from repairhub.models.models import Repair, User  # noqa: E402
from repairhub.services import lifecycle  # noqa: E402
from repairhub.services.change_feed import feed  # noqa: E402
from repairhub.storage.local_provider import LocalStorageProvider  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    feed.reset()
    yield
    feed.reset()


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db():
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def storage(tmp_path):
    return LocalStorageProvider(str(tmp_path))


def make_user(db, role: str, email: str, full_name: str = None) -> User:
    user = User(
        email=email,
        full_name=full_name or email.split("@")[0].title(),
        role=role,
        password_hash=get_password_hash("password123"),
    )
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def customer(db):
    return make_user(db, "customer", "casey@repairs.dev", "Casey Customer")


@pytest.fixture
def technician(db):
    return make_user(db, "technician", "terry@repairs.dev", "Terry Tech")


@pytest.fixture
def other_technician(db):
    return make_user(db, "technician", "olive@repairs.dev", "Olive Tech")


def auth(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(str(user.id), user.role)}"}


def book_repair(db, customer, **overrides) -> Repair:
    data = {
        "device": "iPhone 14",
        "issues": ["screen"],
        "address": "1 Main St",
        "customer_lat": 37.7749,
        "customer_lng": -122.4194,
    }
    data.update(overrides)
    return lifecycle.book(db, customer, data)


@pytest.fixture
def repair(db, customer):
    return book_repair(db, customer, parts_in_stock=True)


def move_to(db, repair, technician, status: str, storage=None) -> Repair:
    """Claim and advance `repair` until it reaches `status`, signing intake on the way."""
    if repair.status == "pending":
        repair = lifecycle.claim(db, repair.id, technician)
    while repair.status != status:
        if repair.status == "arrived" and not repair.intake_signature_path:
            repair = lifecycle.record_intake_signature(
                db, repair.id, technician, signature_png(), storage or LocalStorageProvider()
            )
        repair = lifecycle.advance(db, repair.id, technician)
    return repair


def set_total(db, repair, total: str) -> Repair:
    repair.total_estimate = Decimal(total)
    db.commit()
    return repair


def signature_png(blank: bool = False, transparent: bool = True) -> bytes:
    if transparent:
        img = Image.new("RGBA", (120, 40), (0, 0, 0, 0))
        ink = (0, 0, 0, 255)
    else:
        img = Image.new("RGB", (120, 40), (255, 255, 255))
        ink = (0, 0, 0)
    if not blank:
        ImageDraw.Draw(img).line([(10, 30), (60, 5), (110, 30)], fill=ink, width=3)
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def signature_data_url(blank: bool = False) -> str:
    return "data:image/png;base64," + base64.b64encode(signature_png(blank=blank)).decode()
