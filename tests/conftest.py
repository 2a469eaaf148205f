import os
import socket
import uuid

import pytest
from fastapi.testclient import TestClient

from geofoncier.backends import ShapelyBackend
from geofoncier.config import Settings
from geofoncier.database import build_engine, init_db, make_session_factory
from geofoncier.hierarchy import HierarchyStore
from geofoncier.main import create_app
from geofoncier.models import User
from geofoncier.notifications import NotificationError, Notifier
from geofoncier.parcels import ParcelRegistry
from geofoncier.schemas import ArrondissementCreate, DepartmentCreate, RegionCreate
from geofoncier.spatial import SpatialQueryEngine
from geofoncier.storage import ObjectStore

ADMIN_TOKEN = "test-admin-token"
WEBHOOK_SECRET = "test-webhook-secret"
ADMIN_HEADERS = {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture(autouse=True)
def block_network(monkeypatch):
    if os.getenv("LIVE") == "1":
        return

    real_connect = socket.socket.connect

    def guarded_connect(sock, address):
        host = address[0] if isinstance(address, tuple) else address
        if host not in ("127.0.0.1", "localhost"):
            raise RuntimeError("Network access blocked in tests")
        return real_connect(sock, address)

    monkeypatch.setattr(socket.socket, "connect", guarded_connect)


# =============================================================================
# Fakes for external collaborators
# =============================================================================


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, to, subject, html):
        if self.fail:
            raise NotificationError("relay down")
        self.sent.append({"to": to, "subject": subject, "html": html})


class MemoryObjectStore(ObjectStore):
    def __init__(self):
        self.objects = {}

    def put(self, key, data, content_type):
        self.objects[key] = (data, content_type)
        return f"memory://{key}"


class FakeGateway:
    """Stands in for PaymentGateway; every listed transaction id verifies."""

    def __init__(self):
        self.verified = set()
        self.calls = []

    def verify_transaction(self, transaction_id):
        self.calls.append(transaction_id)
        ok = transaction_id in self.verified
        return {"verified": ok, "data": {"id": transaction_id, "status": "successful" if ok else "failed"}}


# =============================================================================
# Geometry helpers
# =============================================================================


def square(west, south, east, north):
    """GeoJSON Polygon for an axis-aligned box (longitude, latitude)."""
    return {
        "type": "Polygon",
        "coordinates": [[[west, south], [east, south], [east, north], [west, north], [west, south]]],
    }


def parcel_coords(lat, lng, size=0.01):
    """[latitude, longitude] corners of a small square parcel, as the map client sends them."""
    return [[lat, lng], [lat, lng + size], [lat + size, lng + size], [lat + size, lng]]


# =============================================================================
# Application and database
# =============================================================================


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'geofoncier.db'}",
        admin_token=ADMIN_TOKEN,
        admin_email="admin@geofoncier.test",
        webhook_secret=WEBHOOK_SECRET,
        payment_public_key="FLWPUBK_TEST",
    )


@pytest.fixture
def db_engine(settings):
    engine = build_engine(settings)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def backend():
    return ShapelyBackend()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store():
    return MemoryObjectStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def spatial(session, backend, settings):
    return SpatialQueryEngine(session, backend, settings)


@pytest.fixture
def registry(session, spatial, store, settings):
    return ParcelRegistry(session, spatial, store, settings)


@pytest.fixture
def app(settings, backend, notifier, store, gateway):
    return create_app(settings, backend=backend, notifier=notifier, object_store=store, gateway=gateway)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


# =============================================================================
# Seed data
# =============================================================================


def make_user(session, full_name, email, user_type="client", phone=None):
    user = User(id=uuid.uuid4(), full_name=full_name, email=email, phone=phone, user_type=user_type)
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def owner(session):
    return make_user(session, "Aminatou Owner", "owner@example.cm", "owner", phone="+237600000001")


@pytest.fixture
def buyer(session):
    return make_user(session, "Blaise Client", "client@example.cm", "client")


@pytest.fixture
def divisions(session):
    """Two adjacent regions with one department and arrondissement in the first.

    Littoral:  lon 9-10,  lat 4-5
    Centre:    lon 10-11, lat 4-5
    Wouri:     lon 9-9.5, lat 4-4.5 (in Littoral)
    Douala I:  lon 9-9.25, lat 4-4.25 (in Wouri)
    """
    store = HierarchyStore(session)
    littoral = store.create_region(RegionCreate(name="Littoral", boundary=square(9, 4, 10, 5)))
    centre = store.create_region(RegionCreate(name="Centre", boundary=square(10, 4, 11, 5)))
    wouri = store.create_department(
        DepartmentCreate(name="Wouri", region_id=littoral.id, boundary=square(9, 4, 9.5, 4.5))
    )
    douala = store.create_arrondissement(
        ArrondissementCreate(name="Douala I", department_id=wouri.id, boundary=square(9, 4, 9.25, 4.25))
    )
    return {"littoral": littoral, "centre": centre, "wouri": wouri, "douala": douala}
