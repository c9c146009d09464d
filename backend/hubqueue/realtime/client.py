"""
HTTP client for the HubQueue API, used by scripts and as the fetcher of a
ReconciliationLoop.
"""
import logging
from typing import List, Optional

import requests

from ..core.errors import error_class
from ..models.task import TaskItem
from .reconcile import Snapshot

logger = logging.getLogger(__name__)


class HubQueueClient:
    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()
        self.username: Optional[str] = None
        if token:
            self.set_token(token)

    def set_token(self, token: str) -> None:
        self.session.headers["Authorization"] = f"Bearer {token}"

    def _call(self, method: str, path: str, **kwargs):
        response = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("success") is False:
                error = error_class(body.get("code"))(body.get("error"))
                error.retryable = bool(body.get("retryable", error.retryable))
                raise error
            response.raise_for_status()
        if response.headers.get("content-type", "").startswith("application/json"):
            return response.json()
        return response.content

    # ============ AUTH ============
    def login(self, username: str, password: str) -> dict:
        data = self._call("POST", "/api/auth/login", json={"username": username, "password": password})
        self.set_token(data["access_token"])
        self.username = data["user"]["username"]
        return data["user"]

    def register(self, username: str, password: str) -> dict:
        data = self._call("POST", "/api/auth/register", json={"username": username, "password": password})
        self.set_token(data["access_token"])
        self.username = data["user"]["username"]
        return data["user"]

    def session_info(self) -> dict:
        return self._call("GET", "/api/system/session")

    # ============ QUEUE ============
    def snapshot(self) -> Snapshot:
        return Snapshot.from_json(self._call("GET", "/api/queue/snapshot"))

    def fetch_queue(self) -> List[TaskItem]:
        return [TaskItem.model_validate(raw) for raw in self._call("GET", "/api/queue")]

    def fetch_history(self) -> List[TaskItem]:
        return [TaskItem.model_validate(raw) for raw in self._call("GET", "/api/queue/history")]

    def upload(self, filename: str, data: bytes, content_type: str = "application/octet-stream") -> TaskItem:
        result = self._call("POST", "/api/queue", files={"file": (filename, data, content_type)})
        return TaskItem.model_validate(result["item"])

    def claim(self, item_id: str) -> TaskItem:
        return TaskItem.model_validate(self._call("POST", f"/api/queue/{item_id}/claim")["item"])

    def unclaim(self, item_id: str) -> TaskItem:
        return TaskItem.model_validate(self._call("POST", f"/api/queue/{item_id}/unclaim")["item"])

    def complete(self, item_id: str, notes: Optional[str] = None) -> TaskItem:
        result = self._call("POST", f"/api/queue/{item_id}/complete", json={"notes": notes})
        return TaskItem.model_validate(result["item"])

    def delete(self, item_id: str) -> None:
        self._call("DELETE", f"/api/queue/{item_id}")

    def read_asset(self, path: str) -> bytes:
        return self._call("GET", "/api/assets", params={"path": path})

    # ============ SYSTEM ============
    def get_maintenance(self) -> bool:
        return self._call("GET", "/api/system/maintenance")["isMaintenance"]

    def set_maintenance(self, enabled: bool) -> bool:
        return self._call("PUT", "/api/system/maintenance", json={"isMaintenance": enabled})["isMaintenance"]

    def realtime_token(self) -> dict:
        return self._call("GET", "/api/realtime/token")
