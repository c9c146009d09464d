"""
Task item model: one image moving through the claim-and-complete queue
"""
import time
import uuid
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TaskStatus(str, Enum):
    """
    Item status workflow:
    - queued: created locally, upload not started
    - uploaded: asset stored, waiting to be claimed
    - in-progress: claimed by a trusted user
    - completed: done, lives in history
    - error: upload failed
    """
    QUEUED = "queued"
    UPLOADED = "uploaded"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    ERROR = "error"


def now_ms() -> int:
    return int(time.time() * 1000)


def new_item_id() -> str:
    return uuid.uuid4().hex


class TaskItem(BaseModel):
    """An image in the active queue or in history"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    name: str
    # older documents call this webdavPath
    storage_path: str = Field(
        validation_alias=AliasChoices("storagePath", "webdavPath", "storage_path"),
        serialization_alias="storagePath",
    )
    status: TaskStatus = TaskStatus.UPLOADED
    uploaded_by: str
    claimed_by: Optional[str] = None
    completed_by: Optional[str] = None
    completion_notes: Optional[str] = None
    created_at: Optional[int] = None
    completed_at: Optional[int] = None

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
