"""
Task lifecycle: the claim-and-complete state machine over the shared collections.

Every mutation follows the same protocol: take the global lock, re-read the
collection from the server, apply exactly one transition, write, release,
then publish a change event. Nothing is trusted from before the lock.
"""
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ...core.errors import (
    AlreadyClaimed,
    InvalidTransition,
    ItemNotFound,
    NotFound,
    PermissionDenied,
    StoreError,
    TransitionIncomplete,
    ValidationError,
)
from ...models.task import TaskItem, TaskStatus, new_item_id, now_ms
from ...models.user import UserRecord
from ...realtime.notifier import (
    IMAGE_ADDED,
    IMAGE_COMPLETED,
    IMAGE_DELETED,
    IMAGE_UPDATED,
    QUEUE_UPDATED,
    ChangeNotifier,
)
from ...storage.blob import normalize_path
from ...storage.collections import ACTIVE_PATH, HISTORY_PATH, UPLOADS_DIR, CollectionStore
from ...storage.locking import LockManager

logger = logging.getLogger(__name__)

# status -> statuses it may move to
TRANSITIONS: Dict[TaskStatus, set] = {
    TaskStatus.QUEUED: {TaskStatus.UPLOADED, TaskStatus.ERROR},
    TaskStatus.UPLOADED: {TaskStatus.IN_PROGRESS, TaskStatus.ERROR},
    TaskStatus.IN_PROGRESS: {TaskStatus.UPLOADED, TaskStatus.COMPLETED, TaskStatus.ERROR},
    TaskStatus.COMPLETED: set(),
    TaskStatus.ERROR: set(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TRANSITIONS.get(current, set())


def safe_filename(name: str) -> str:
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", (name or "").strip()).strip("._")
    return name[:120] or "image"


@dataclass
class RepairReport:
    removed_from_active: List[str] = field(default_factory=list)
    moved_to_history: List[str] = field(default_factory=list)
    duplicates_dropped: List[str] = field(default_factory=list)
    claims_cleared: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(
            self.removed_from_active or self.moved_to_history
            or self.duplicates_dropped or self.claims_cleared
        )

    def to_dict(self) -> dict:
        return {
            "removedFromActive": self.removed_from_active,
            "movedToHistory": self.moved_to_history,
            "duplicatesDropped": self.duplicates_dropped,
            "claimsCleared": self.claims_cleared,
        }


class QueueService:
    def __init__(
        self,
        store: CollectionStore,
        locks: LockManager,
        notifier: ChangeNotifier,
        topic: str,
        snapshot_events: bool = False,
    ):
        self.store = store
        self.blobs = store.blobs
        self.locks = locks
        self.notifier = notifier
        self.topic = topic
        self.snapshot_events = snapshot_events

    # ============ READS ============
    def list_active(self) -> List[TaskItem]:
        return self.store.read_items(ACTIVE_PATH)

    def list_history(self) -> List[TaskItem]:
        return self.store.read_items(HISTORY_PATH)

    def snapshot(self) -> dict:
        return {
            "active": [item.to_json() for item in self.list_active()],
            "history": [item.to_json() for item in self.list_history()],
        }

    def read_asset(self, path: str) -> bytes:
        path = normalize_path(path)
        if not path.startswith(UPLOADS_DIR + "/") or ".." in path.split("/"):
            raise ValidationError("Only uploaded images can be fetched.")
        return self.blobs.read(path)

    def stats(self) -> dict:
        """Per-user upload / claim / completion counts"""
        active = self.list_active()
        history = self.list_history()
        users: Dict[str, Dict[str, int]] = {}

        def bucket(username: str) -> Dict[str, int]:
            return users.setdefault(username, {"uploaded": 0, "inProgress": 0, "completed": 0})

        for item in active + history:
            bucket(item.uploaded_by)["uploaded"] += 1
        for item in active:
            if item.status == TaskStatus.IN_PROGRESS and item.claimed_by:
                bucket(item.claimed_by)["inProgress"] += 1
        for item in history:
            if item.completed_by:
                bucket(item.completed_by)["completed"] += 1

        return {
            "totalUploaded": len(active) + len(history),
            "totalCompleted": len(history),
            "totalWaiting": sum(1 for i in active if i.status == TaskStatus.UPLOADED),
            "totalInProgress": sum(1 for i in active if i.status == TaskStatus.IN_PROGRESS),
            "users": dict(sorted(users.items(), key=lambda kv: -kv[1]["completed"])),
        }

    # ============ HELPERS ============
    def _publish(self, event_name: str, payload: dict) -> None:
        self.notifier.publish(self.topic, event_name, payload)
        if self.snapshot_events:
            try:
                self.notifier.publish(self.topic, QUEUE_UPDATED, self.snapshot())
            except StoreError as e:
                logger.warning(f"Skipping {QUEUE_UPDATED} event: {e}")

    @staticmethod
    def _index(items: List[TaskItem], item_id: str) -> int:
        for index, item in enumerate(items):
            if item.id == item_id:
                return index
        raise ItemNotFound()

    @staticmethod
    def _require_active(actor: UserRecord) -> None:
        if actor.is_banned:
            raise PermissionDenied("This account has been banned.")

    def _update_active(self, item_id: str, transform) -> TaskItem:
        """Lock, re-read the active queue, replace one item with transform(item), write"""
        def action() -> TaskItem:
            items = self.store.read_items(ACTIVE_PATH)
            index = self._index(items, item_id)
            updated = transform(items[index])
            items[index] = updated
            self.store.write_items(ACTIVE_PATH, items)
            return updated

        return self.locks.with_lock(action)

    # ============ TRANSITIONS ============
    def create(self, actor: UserRecord, filename: str, data: bytes) -> TaskItem:
        """Upload the asset, then add an `uploaded` item at the head of the queue"""
        self._require_active(actor)
        if not data:
            raise ValidationError("The uploaded file is empty.")

        item_id = new_item_id()
        item = TaskItem(
            id=item_id,
            name=filename or "image",
            storage_path=f"{UPLOADS_DIR}/{item_id}-{safe_filename(filename)}",
            uploaded_by=actor.username,
            created_at=now_ms(),
        )

        self.blobs.ensure_directory(UPLOADS_DIR)
        self.blobs.write(item.storage_path, data)

        def action() -> TaskItem:
            items = self.store.read_items(ACTIVE_PATH)
            self.store.write_items(ACTIVE_PATH, [item] + items)
            return item

        try:
            self.locks.with_lock(action)
        except Exception:
            self._delete_asset(item.storage_path)
            raise

        logger.info(f"User {actor.username} added image {item.id[:8]} ({item.name})")
        self._publish(IMAGE_ADDED, item.to_json())
        return item

    def claim(self, actor: UserRecord, item_id: str) -> TaskItem:
        self._require_active(actor)
        if not actor.can_claim:
            raise PermissionDenied("Only trusted users can claim images.")

        def transform(item: TaskItem) -> TaskItem:
            if item.status != TaskStatus.UPLOADED:
                raise AlreadyClaimed()
            return item.model_copy(update={
                "status": TaskStatus.IN_PROGRESS,
                "claimed_by": actor.username,
            })

        updated = self._update_active(item_id, transform)
        logger.info(f"User {actor.username} claimed image {item_id[:8]}")
        self._publish(IMAGE_UPDATED, updated.to_json())
        return updated

    def unclaim(self, actor: UserRecord, item_id: str) -> TaskItem:
        """Release a claim: by the claimant, or forced by an admin"""
        self._require_active(actor)

        def transform(item: TaskItem) -> TaskItem:
            if item.status != TaskStatus.IN_PROGRESS:
                raise InvalidTransition("This image is not claimed.")
            if item.claimed_by != actor.username and not actor.is_admin:
                raise PermissionDenied("Only the claimant or an admin can release this image.")
            return item.model_copy(update={"status": TaskStatus.UPLOADED, "claimed_by": None})

        updated = self._update_active(item_id, transform)
        logger.info(f"User {actor.username} released image {item_id[:8]}")
        self._publish(IMAGE_UPDATED, updated.to_json())
        return updated

    def complete(self, actor: UserRecord, item_id: str, notes: Optional[str] = None) -> TaskItem:
        """
        Move an in-progress item from the active queue to history.

        History is written before the active queue, so a failure in between
        leaves the item in both collections (which repair() resolves) rather
        than in neither. The history write is rolled back best-effort.
        """
        self._require_active(actor)

        def action() -> TaskItem:
            active = self.store.read_items(ACTIVE_PATH)
            history = self.store.read_items(HISTORY_PATH)
            index = self._index(active, item_id)
            item = active[index]
            if not can_transition(item.status, TaskStatus.COMPLETED):
                raise InvalidTransition("Only images in progress can be completed.")
            if item.claimed_by != actor.username:
                raise PermissionDenied("Only the user who claimed this image can complete it.")

            done = item.model_copy(update={
                "status": TaskStatus.COMPLETED,
                "claimed_by": None,
                "completed_by": actor.username,
                "completed_at": now_ms(),
                "completion_notes": notes or None,
            })
            self.store.write_items(HISTORY_PATH, [done] + history)
            try:
                self.store.write_items(ACTIVE_PATH, active[:index] + active[index + 1:])
            except StoreError as e:
                logger.error(f"Completing {item_id[:8]}: queue write failed after history write: {e}")
                try:
                    self.store.write_items(HISTORY_PATH, history)
                except StoreError as rollback_error:
                    logger.error(
                        f"Rollback of history for {item_id[:8]} failed, item is in both collections: {rollback_error}"
                    )
                raise TransitionIncomplete() from e
            return done

        done = self.locks.with_lock(action)
        logger.info(f"User {actor.username} completed image {item_id[:8]}")
        self._publish(IMAGE_COMPLETED, {"imageId": done.id, "completedImage": done.to_json()})
        return done

    def delete(self, actor: UserRecord, item_id: str) -> TaskItem:
        """Remove a non-completed item; the asset is deleted best-effort afterwards"""
        self._require_active(actor)

        def action() -> TaskItem:
            items = self.store.read_items(ACTIVE_PATH)
            index = self._index(items, item_id)
            item = items[index]
            if item.uploaded_by != actor.username and not actor.is_admin:
                raise PermissionDenied("Only the uploader or an admin can delete this image.")
            if item.status == TaskStatus.COMPLETED:
                raise InvalidTransition("Completed images cannot be deleted.")
            self.store.write_items(ACTIVE_PATH, items[:index] + items[index + 1:])
            return item

        removed = self.locks.with_lock(action)
        logger.info(f"User {actor.username} deleted image {item_id[:8]}")
        self._delete_asset(removed.storage_path)
        self._publish(IMAGE_DELETED, {"imageId": removed.id})
        return removed

    def _delete_asset(self, path: str) -> None:
        if not path:
            return
        try:
            self.blobs.delete(path)
        except Exception as e:
            logger.warning(f"Could not delete asset {path}, leaving it for the sweep: {e}")

    # ============ MAINTENANCE ============
    def repair(self) -> RepairReport:
        """
        Restore the collection invariants after an interrupted update:
        - items in both collections stay only in history
        - duplicate ids within a collection are collapsed (first wins)
        - completed items still in the active queue move to history
        - claims on items that are not in progress are cleared
        """
        def action() -> RepairReport:
            report = RepairReport()
            active = self.store.read_items(ACTIVE_PATH)
            history = self.store.read_items(HISTORY_PATH)

            new_history: List[TaskItem] = []
            history_ids = set()
            for item in history:
                if item.id in history_ids:
                    report.duplicates_dropped.append(item.id)
                    continue
                history_ids.add(item.id)
                new_history.append(item)

            new_active: List[TaskItem] = []
            moved: List[TaskItem] = []
            active_ids = set()
            for item in active:
                if item.id in history_ids:
                    report.removed_from_active.append(item.id)
                    continue
                if item.id in active_ids:
                    report.duplicates_dropped.append(item.id)
                    continue
                active_ids.add(item.id)
                if item.status == TaskStatus.COMPLETED:
                    moved.append(item.model_copy(update={"claimed_by": None}))
                    report.moved_to_history.append(item.id)
                    continue
                if item.claimed_by and item.status != TaskStatus.IN_PROGRESS:
                    item = item.model_copy(update={"claimed_by": None})
                    report.claims_cleared.append(item.id)
                new_active.append(item)

            if report.changed:
                self.store.write_items(HISTORY_PATH, moved + new_history)
                self.store.write_items(ACTIVE_PATH, new_active)
            return report

        report = self.locks.with_lock(action)
        if report.changed:
            logger.warning(f"Repaired collections: {report.to_dict()}")
            self.notifier.publish(self.topic, QUEUE_UPDATED, self.snapshot())
        return report

    def sweep_orphaned_assets(self, min_age_seconds: float = 600.0) -> List[str]:
        """
        Delete uploaded files no item refers to. Files younger than
        `min_age_seconds` are kept since their item may not be written yet.
        """
        try:
            entries = self.blobs.list(UPLOADS_DIR)
        except NotFound:
            return []
        referenced = {item.storage_path for item in self.list_active() + self.list_history()}
        now = time.time()

        removed = []
        for entry in entries:
            if entry.is_dir or entry.path in referenced:
                continue
            if entry.modified is not None and now - entry.modified.timestamp() < min_age_seconds:
                continue
            try:
                self.blobs.delete(entry.path)
                removed.append(entry.path)
            except StoreError as e:
                logger.warning(f"Could not sweep {entry.path}: {e}")
        if removed:
            logger.info(f"Swept {len(removed)} orphaned asset(s)")
        return removed
