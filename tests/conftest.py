from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from core.auth import create_access_token
from core.db import Base, get_db
from core import config as core_config
from models.address import Address
from models.book import Book
from models.category import Category
from models.shipping_provider import ShippingProvider
from models.user import User
from models.voucher import Voucher
from services import email as email_service
from services import notifications


@pytest.fixture(scope="session", autouse=True)
def test_settings():
    core_config.settings.JWT_SECRET = "test-secret"
    core_config.settings.TESTING = True
    core_config.settings.FRONTEND_URL = "http://frontend.test"
    core_config.settings.VNPAY_TMN_CODE = "TESTTMN1"
    core_config.settings.VNPAY_SECRET_KEY = "vnpay-test-secret"
    core_config.settings.MOMO_PARTNER_CODE = "MOMOTEST"
    core_config.settings.MOMO_ACCESS_KEY = "momo-access"
    core_config.settings.MOMO_SECRET_KEY = "momo-test-secret"
    yield


@pytest.fixture()
def db():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()

    def _get_db():
        try:
            yield session
        finally:
            pass

    app.dependency_overrides[get_db] = _get_db
    try:
        yield session
    finally:
        session.close()
        app.dependency_overrides.clear()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client(db):
    with TestClient(app) as c:
        yield c


@pytest.fixture(autouse=True)
def mock_email_send(monkeypatch):
    sent = []

    def _fake_send(to_email: str, subject: str, body: str) -> bool:
        sent.append({"to": to_email, "subject": subject, "body": body})
        return True

    monkeypatch.setattr(email_service, "send_email", _fake_send)
    return sent


class _RecordingTask:
    def __init__(self, job_type, queued):
        self.job_type = job_type
        self.queued = queued

    def delay(self, **payload):
        self.queued.append((self.job_type, payload))


@pytest.fixture(autouse=True)
def queued_notifications(monkeypatch):
    """Keep Celery out of the tests; record what would have been queued."""
    queued = []
    for job_type in list(notifications.JOB_TASKS):
        monkeypatch.setitem(notifications.JOB_TASKS, job_type, _RecordingTask(job_type, queued))
    return queued


def _add(db, obj):
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


@pytest.fixture
def test_user(db):
    return _add(db, User(name="Test User", email="test@example.com", role="customer"))


@pytest.fixture
def other_user(db):
    return _add(db, User(name="Other User", email="other@example.com", role="customer"))


@pytest.fixture
def admin_user(db):
    return _add(db, User(name="Admin", email="admin@example.com", role="admin"))


@pytest.fixture
def category(db):
    return _add(db, Category(name="Fiction"))


@pytest.fixture
def other_category(db):
    return _add(db, Category(name="Science"))


@pytest.fixture
def paperback(db, category):
    return _add(
        db,
        Book(title="The Paper Book", author="A. Writer", price=Decimal("100000"), stock=5, format="paperback", category_id=category.id),
    )


@pytest.fixture
def ebook(db, category):
    return _add(
        db,
        Book(
            title="The E-Book",
            author="B. Writer",
            price=Decimal("50000"),
            stock=0,
            format="ebook",
            category_id=category.id,
            file_path="books/the-e-book.epub",
            file_size=2048,
            mime_type="application/epub+zip",
        ),
    )


@pytest.fixture
def audiobook(db, category):
    return _add(
        db,
        Book(
            title="The Audio Book",
            price=Decimal("80000"),
            stock=0,
            format="audiobook",
            category_id=category.id,
            file_path="books/the-audio-book.mp3",
            file_size=4096,
            mime_type="audio/mpeg",
        ),
    )


@pytest.fixture
def address(db, test_user):
    return _add(
        db,
        Address(user_id=test_user.id, name="Test User", phone="0900000000", address="1 Main St", city="Hanoi"),
    )


@pytest.fixture
def provider(db):
    return _add(
        db,
        ShippingProvider(name="Fast Ship", code="FAST", base_fee=Decimal("20000"), estimated_time="2-3 days"),
    )


@pytest.fixture
def make_voucher(db):
    def _make(**overrides):
        now = datetime.utcnow()
        fields = {
            "code": "CODE10",
            "name": "Ten percent off",
            "type": "percentage",
            "value": Decimal("10"),
            "min_order_amount": Decimal("50000"),
            "max_discount_amount": Decimal("15000"),
            "usage_limit": 100,
            "used_count": 0,
            "valid_from": now - timedelta(days=1),
            "valid_to": now + timedelta(days=30),
            "is_active": True,
        }
        fields.update(overrides)
        return _add(db, Voucher(**fields))

    return _make


@pytest.fixture
def checkout(db, test_user, address, provider):
    """Place an order for ``test_user`` with sensible defaults."""
    from services import orders

    def _checkout(items, **kwargs):
        params = {
            "user_id": test_user.id,
            "items": items,
            "shipping_address_id": address.id,
            "shipping_provider_id": provider.id,
            "payment_method": "cod",
        }
        params.update(kwargs)
        return orders.create_order(db, **params)

    return _checkout


@pytest.fixture
def auth_headers(test_user):
    return {"Authorization": f"Bearer {create_access_token(str(test_user.id))}"}


@pytest.fixture
def admin_headers(admin_user):
    return {"Authorization": f"Bearer {create_access_token(str(admin_user.id))}"}


@pytest.fixture
def task_db(db, monkeypatch):
    """Point the Celery tasks at the test session."""
    from tasks import notification_tasks, order_tasks

    @contextmanager
    def _session():
        yield db

    monkeypatch.setattr(notification_tasks, "db_session", _session)
    monkeypatch.setattr(order_tasks, "db_session", _session)
    return db
