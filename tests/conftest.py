import io
import json
import os
import tempfile
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from decimal import Decimal

# Settings are read at import time; configure the test environment first
os.environ.setdefault("TEST_SQLITE", "1")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DB_SERVER", "localhost")
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("LOCAL_STORAGE_DIR", tempfile.mkdtemp(prefix="eventlens-storage-"))
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("PAYPAL_CLIENT_ID", "paypal-client")
os.environ.setdefault("PAYPAL_CLIENT_SECRET", "paypal-secret")
os.environ.setdefault("REVENUECAT_SECRET_KEY", "rc_secret")

import httpx  # noqa: E402
import pytest  # noqa: E402
import stripe  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from PIL import Image  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import Session as _Session  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

import db as dbmod  # noqa: E402
from db import engine  # noqa: E402
from eventlens.models import Base, DiscountCode, Event, PricingPlan, User  # noqa: E402
from eventlens.services import audit as audit_sink  # noqa: E402
from eventlens.services.identity import Identity, issue_token  # noqa: E402
from eventlens.services.payments.paypal_adapter import PayPalAdapter  # noqa: E402
from eventlens.services.payments.registry import PaymentProviders  # noqa: E402
from eventlens.services.payments.revenuecat_adapter import RevenueCatAdapter  # noqa: E402
from eventlens.services.payments.stripe_adapter import StripeAdapter  # noqa: E402
from eventlens.services.plan_schema import dump_custom_plan  # noqa: E402
from eventlens.services.pricing import PriceTrustPolicy  # noqa: E402
from eventlens.services.s3_storage import ObjectStorage  # noqa: E402


# pysqlite defers BEGIN on its own, which breaks SAVEPOINT; emit BEGIN ourselves
@event.listens_for(engine, "connect")
def _sqlite_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


Base.metadata.create_all(bind=engine)


def utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def custom_plan(guest_limit=10, photo_pool=100, photos_per_guest=None, storage_days=30, can_view_gallery=True):
    return {
        "guestLimit": guest_limit,
        "photoPool": photo_pool,
        "photosPerGuest": photos_per_guest,
        "storageDays": storage_days,
        "permissions": {
            "canViewGallery": can_view_gallery,
            "canSharePhotos": True,
            "canDownload": False,
        },
    }


def png_bytes(size=(8, 6), color=(200, 80, 40)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color=color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def db_session():
    """Transactional session shared with request handlers; rolled back at teardown.

    Service code calls ``commit()`` freely: with ``create_savepoint`` each commit
    only releases a SAVEPOINT inside the outer per-test transaction.
    """
    connection = engine.connect()
    transaction = connection.begin()
    session = _Session(bind=connection, join_transaction_mode="create_savepoint")
    dbmod._TEST_SESSION = session
    try:
        yield session
    finally:
        dbmod._TEST_SESSION = None
        session.close()
        if transaction.is_active:
            transaction.rollback()
        connection.close()


@pytest.fixture
def storage(tmp_path):
    return ObjectStorage(local_dir=str(tmp_path / "storage"))


@pytest.fixture
def policy():
    return PriceTrustPolicy(tolerance_cents=1, minimum_charge_cents=50)


class ProviderStub:
    """Routes httpx requests to canned JSON responses keyed by (method, path)."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, method, path, payload, status=200):
        self.routes[(method.upper(), path)] = (status, payload)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.method, request.url.path))
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND", "message": request.url.path})
        status, payload = self.routes[key]
        return httpx.Response(status, json=payload)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def paypal_stub():
    stub = ProviderStub()
    stub.add("POST", "/v1/oauth2/token", {"access_token": "A21-token", "expires_in": 3600})
    return stub


@pytest.fixture
def revenuecat_stub():
    return ProviderStub()


@pytest.fixture
def providers(policy, paypal_stub, revenuecat_stub):
    return PaymentProviders(
        stripe=StripeAdapter(api_key="sk_test_dummy", policy=policy),
        paypal=PayPalAdapter(
            client_id="paypal-client",
            client_secret="paypal-secret",
            mode="sandbox",
            http=paypal_stub.client(),
            policy=policy,
        ),
        revenuecat=RevenueCatAdapter(
            api_key="rc_secret",
            api_base="https://api.revenuecat.test/v1",
            http=revenuecat_stub.client(),
            policy=policy,
        ),
    )


@pytest.fixture
def client(db_session, providers, storage):
    # Import the app here so the environment above is in place first
    from main import app

    original = (app.state.payments, app.state.storage)
    app.state.payments = providers
    app.state.storage = storage
    try:
        yield TestClient(app)
    finally:
        app.state.payments, app.state.storage = original


@pytest.fixture
def auth_headers():
    def _headers(user_id="owner-1", email=None, anonymous=False, name=None):
        token = issue_token(user_id, email=email, anonymous=anonymous, name=name)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def owner(db_session):
    db_session.add(User(UserID="owner-1", Email="owner@example.test", FullName="Olive Owner"))
    db_session.commit()
    return Identity(user_id="owner-1", email="owner@example.test", name="Olive Owner")


@pytest.fixture
def plan(db_session):
    """A 'standard' plan: $10 base, 10 guests / 100 photos included."""
    row = PricingPlan(
        PlanID="standard",
        Name="Standard",
        BasePrice=10,
        GuestLimit=10,
        PhotoPool=100,
        PhotosPerGuest=None,
        GuestOveragePrice="0.50",
        PhotoOveragePrice="0.05",
        StorageOptions=json.dumps([{"days": 30, "price": 0}, {"days": 90, "price": 5}]),
        DefaultStorageDays=30,
        RevenueCatProductID="eventlens_standard",
        IsActive=True,
    )
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture
def free_plan(db_session):
    row = PricingPlan(
        PlanID="free",
        Name="Free",
        BasePrice=0,
        GuestLimit=5,
        PhotoPool=50,
        PhotosPerGuest=5,
        GuestOveragePrice=0,
        PhotoOveragePrice=0,
        StorageOptions=json.dumps([{"days": 7, "price": 0}]),
        DefaultStorageDays=7,
        IsActive=True,
    )
    db_session.add(row)
    db_session.commit()
    return row


def new_event(user_id="owner-1", plan_snapshot=None, start=None, end=None, final_price=0, status="active"):
    """An unsaved event row, active for a few more hours by default."""
    now = utcnow_naive()
    return Event(
        EventID=str(uuid.uuid4()),
        UserID=user_id,
        Name="Garden Party",
        EventDate=start or now - timedelta(hours=1),
        EventEndDate=end or now + timedelta(hours=5),
        EventStartTime="12:00",
        EventEndTime="18:00",
        TimeZone="UTC",
        PlanID="standard",
        BasePlanName="Standard",
        CustomPlan=dump_custom_plan(plan_snapshot or custom_plan()),
        FinalPrice=final_price,
        OriginalPrice=final_price,
        ShareCode=uuid.uuid4().hex[:8].upper(),
        Status=status,
        GuestCount=0,
        PhotoCount=0,
    )


@pytest.fixture
def make_event(db_session):
    """Insert an event row directly."""

    def _make(user_id="owner-1", **kwargs):
        if db_session.get(User, user_id) is None:
            db_session.add(User(UserID=user_id, Email=f"{user_id}@example.test"))
        ev = new_event(user_id, **kwargs)
        db_session.add(ev)
        db_session.commit()
        return ev

    return _make


@pytest.fixture
def file_sessions(tmp_path, monkeypatch):
    """Session factory on a file-backed SQLite database for multi-threaded tests.

    Every transaction opens with BEGIN IMMEDIATE, so writers queue on the
    database lock the way row locks queue them on the production server.
    Audit rows are not written here; the sink's shared session belongs to the
    in-memory engine.
    """
    race_engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(race_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(race_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=race_engine)
    monkeypatch.setattr(audit_sink, "record", lambda *args, **kwargs: None)
    try:
        yield sessionmaker(bind=race_engine, autoflush=False)
    finally:
        race_engine.dispose()


def run_concurrently(sessions, count, work):
    """Run ``work(db, n)`` for n in range(count) on parallel threads, one session each.

    Returns one entry per worker: the result, or the exception it raised.
    """
    barrier = threading.Barrier(count)

    def _worker(n):
        db = sessions()
        try:
            barrier.wait()
            return work(db, n)
        finally:
            db.close()

    with ThreadPoolExecutor(max_workers=count) as pool:
        futures = [pool.submit(_worker, n) for n in range(count)]
        return [f.exception() or f.result() for f in futures]


@pytest.fixture
def stripe_api(monkeypatch):
    """Record Stripe SDK calls and answer them from a dict of canned intents."""
    calls = []
    intents = {}

    def create_intent(**params):
        calls.append(("create", params))
        intent = {
            "id": f"pi_{len(intents) + 1}",
            "status": "requires_payment_method",
            "client_secret": "pi_secret",
            "amount": params["amount"],
        }
        intents[intent["id"]] = intent
        return intent

    def retrieve(ref):
        calls.append(("retrieve", ref))
        return intents[ref]

    def confirm(ref, **params):
        calls.append(("confirm", ref, params))
        intents[ref]["status"] = "succeeded"
        return intents[ref]

    monkeypatch.setattr(stripe.Customer, "list", lambda **kw: {"data": []})
    monkeypatch.setattr(stripe.Customer, "create", lambda **kw: {"id": "cus_1"})
    monkeypatch.setattr(stripe.PaymentIntent, "create", create_intent)
    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", retrieve)
    monkeypatch.setattr(stripe.PaymentIntent, "confirm", confirm)
    monkeypatch.setattr(stripe.Refund, "create", lambda **kw: {"id": "re_1", "status": "succeeded"})
    return {"calls": calls, "intents": intents}


@pytest.fixture
def discount(db_session):
    row = DiscountCode(
        Code="SAVE10",
        DiscountType="percentage",
        DiscountValue=Decimal("10"),
        StartDate=datetime(2020, 1, 1),
        ExpireDate=datetime(2099, 1, 1),
        IsActive=True,
    )
    db_session.add(row)
    db_session.commit()
    return row
