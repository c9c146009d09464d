"""
HTTP client tests with a mocked requests session
"""
from unittest.mock import MagicMock

import pytest
import requests

from hubqueue.core.errors import AlreadyClaimed, AuthenticationRequired, HubQueueError, MaintenanceActive, error_class
from hubqueue.realtime.client import HubQueueClient


def _response(status_code, body=None, content_type="application/json"):
    response = MagicMock()
    response.status_code = status_code
    response.headers = {"content-type": content_type}
    response.json.return_value = body
    response.content = b""
    response.raise_for_status.side_effect = (
        requests.HTTPError(f"{status_code}") if status_code >= 400 else None
    )
    return response


@pytest.fixture
def session():
    session = MagicMock(spec=requests.Session)
    session.headers = {}
    return session


@pytest.fixture
def client(session):
    return HubQueueClient("http://hub.local/", session=session)


def test_error_class_lookup():
    assert error_class("AlreadyClaimed") is AlreadyClaimed
    assert error_class("MaintenanceActive") is MaintenanceActive
    assert error_class("Nonsense") is HubQueueError
    assert error_class(None) is HubQueueError


def test_login_sets_bearer_token(client, session):
    session.request.return_value = _response(200, {
        "access_token": "tok",
        "token_type": "bearer",
        "user": {"username": "bob", "role": "trusted"},
    })

    user = client.login("bob", "pw")

    assert user["username"] == "bob"
    assert client.username == "bob"
    assert session.headers["Authorization"] == "Bearer tok"
    method, url = session.request.call_args[0]
    assert (method, url) == ("POST", "http://hub.local/api/auth/login")


def test_failure_envelope_raises_mapped_error(client, session):
    session.request.return_value = _response(409, {
        "success": False,
        "error": "This image has already been claimed.",
        "retryable": False,
        "code": "AlreadyClaimed",
    })

    with pytest.raises(AlreadyClaimed) as exc_info:
        client.claim("abc")
    assert exc_info.value.message == "This image has already been claimed."


def test_retryable_flag_from_server(client, session):
    session.request.return_value = _response(503, {
        "success": False, "error": "busy", "retryable": True, "code": "LockCouldNotAcquire",
    })
    with pytest.raises(HubQueueError) as exc_info:
        client.delete("abc")
    assert exc_info.value.retryable


def test_http_error_envelope_maps_to_error_class(client, session):
    session.request.return_value = _response(401, {
        "success": False, "error": "Invalid token", "retryable": False, "code": "AuthenticationRequired",
    })
    with pytest.raises(AuthenticationRequired):
        client.fetch_queue()


def test_other_http_errors_raise(client, session):
    session.request.return_value = _response(401, {"detail": "Missing authentication token"})
    with pytest.raises(requests.HTTPError):
        client.fetch_queue()


def test_snapshot_parses_items(client, session):
    session.request.return_value = _response(200, {
        "active": [{"id": "a", "name": "a.png", "storagePath": "/uploads/a", "uploadedBy": "dave"}],
        "history": [],
    })
    snapshot = client.snapshot()
    assert snapshot.active[0].storage_path == "/uploads/a"
    assert snapshot.history == []
