"""
Collection store: whole-document JSON collections kept on the blob store.

Each collection is one file that is always read and written in full.
Missing files read as the default value. What happens to unparseable files
depends on the configured ParsePolicy.
"""
import copy
import json
import logging
from enum import Enum
from typing import Any, List

from pydantic import ValidationError as SchemaError

from ..core.errors import CollectionCorrupted, NotFound
from ..models.task import TaskItem
from ..models.user import UserRecord
from .blob import BlobStore

logger = logging.getLogger(__name__)

# Well-known paths on the file server
USERS_PATH = "/users.json"
ACTIVE_PATH = "/images.json"
HISTORY_PATH = "/history.json"
MAINTENANCE_PATH = "/maintenance.json"
UPLOADS_DIR = "/uploads"
LOCK_PATH = "/~lock"


class ParsePolicy(str, Enum):
    DEFAULT = "default"  # log and fall back to the default value
    FAIL = "fail"        # raise CollectionCorrupted


class CollectionStore:
    """Typed read/write of the JSON collections"""

    def __init__(self, blobs: BlobStore, parse_policy: ParsePolicy = ParsePolicy.DEFAULT):
        self.blobs = blobs
        self.parse_policy = ParsePolicy(parse_policy)

    # ============ GENERIC ============
    def read_collection(self, path: str, default: Any) -> Any:
        try:
            raw = self.blobs.read(path)
        except NotFound:
            return copy.deepcopy(default)

        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            return self._corrupted(path, default, e)

    def write_collection(self, path: str, value: Any) -> None:
        data = json.dumps(value, ensure_ascii=False, indent=2).encode("utf-8")
        self.blobs.write(path, data)

    def _corrupted(self, path: str, default: Any, error: Exception) -> Any:
        if self.parse_policy == ParsePolicy.FAIL:
            logger.error(f"Failed to parse {path}: {error}")
            raise CollectionCorrupted(f"{path} on the file server is corrupted.") from error
        logger.error(f"Failed to parse {path}, returning default: {error}")
        return copy.deepcopy(default)

    # ============ TASK ITEMS ============
    def read_items(self, path: str) -> List[TaskItem]:
        raw = self.read_collection(path, [])
        try:
            if not isinstance(raw, list):
                raise ValueError(f"expected a list, got {type(raw).__name__}")
            return [TaskItem.model_validate(item) for item in raw]
        except (SchemaError, ValueError) as e:
            return self._corrupted(path, [], e)

    def write_items(self, path: str, items: List[TaskItem]) -> None:
        self.write_collection(path, [item.to_json() for item in items])

    # ============ USERS ============
    def read_raw_users(self) -> List[dict]:
        raw = self.read_collection(USERS_PATH, [])
        if not isinstance(raw, list):
            return self._corrupted(USERS_PATH, [], ValueError("expected a list"))
        return raw

    def read_users(self) -> List[UserRecord]:
        raw = self.read_raw_users()
        try:
            return [UserRecord.model_validate(user) for user in raw]
        except SchemaError as e:
            return self._corrupted(USERS_PATH, [], e)

    def write_users(self, users: List[UserRecord]) -> None:
        self.write_collection(USERS_PATH, [user.to_json() for user in users])

    # ============ MAINTENANCE ============
    def read_maintenance(self) -> bool:
        raw = self.read_collection(MAINTENANCE_PATH, {"isMaintenance": False})
        if not isinstance(raw, dict):
            raw = self._corrupted(MAINTENANCE_PATH, {"isMaintenance": False}, ValueError("expected an object"))
        return bool(raw.get("isMaintenance", False))

    def write_maintenance(self, enabled: bool) -> None:
        self.write_collection(MAINTENANCE_PATH, {"isMaintenance": bool(enabled)})
