"""
pytest configuration and shared fixtures
"""
import pytest
from fastapi.testclient import TestClient
from passlib.context import CryptContext

from hubqueue.core.services import build_services
from hubqueue.models.user import Role, UserRecord
from hubqueue.realtime.notifier import LocalNotifier
from hubqueue.storage.blob import MemoryBlobStore
from hubqueue.storage.locking import LockManager

# bcrypt is slow on purpose; tests only need the scheme mechanics
TEST_PASSWORDS = CryptContext(schemes=["sha256_crypt", "hex_sha256"], deprecated="auto", sha256_crypt__default_rounds=1000)


class RecordingNotifier(LocalNotifier):
    """LocalNotifier that also remembers every published event"""

    def __init__(self):
        super().__init__()
        self.events = []

    def _send(self, event):
        self.events.append(event)
        super()._send(event)

    def names(self):
        return [event.name for event in self.events]


@pytest.fixture
def blobs():
    return MemoryBlobStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def locks(blobs):
    return LockManager(blobs, retries=50, backoff_ms=2, lease_seconds=30.0)


@pytest.fixture
def services(blobs, notifier, locks):
    return build_services(
        TEST_PASSWORDS,
        blobs=blobs,
        notifier=notifier,
        locks=locks,
        parse_policy="default",
        topic="test:updates",
        snapshot_events=False,
    )


def _make_user(services, username, role):
    user = UserRecord(username=username, password_hash=TEST_PASSWORDS.hash("secret"), role=role)
    services.store.write_users(services.store.read_users() + [user])
    return user


@pytest.fixture
def admin(services):
    return _make_user(services, "alice", Role.ADMIN)


@pytest.fixture
def trusted(services, admin):
    return _make_user(services, "bob", Role.TRUSTED)


@pytest.fixture
def trusted2(services, admin):
    return _make_user(services, "carol", Role.TRUSTED)


@pytest.fixture
def plain_user(services, admin):
    return _make_user(services, "dave", Role.USER)


@pytest.fixture
def banned(services, admin):
    return _make_user(services, "eve", Role.BANNED)


@pytest.fixture
def app(services):
    from hubqueue.main import create_app
    return create_app(services)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def login(client):
    """Log in through the API and return auth headers"""
    def _login(username, password="secret"):
        response = client.post("/api/auth/login", json={"username": username, "password": password})
        assert response.status_code == 200, response.text
        return {"Authorization": f"Bearer {response.json()['access_token']}"}
    return _login
