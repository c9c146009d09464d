"""
System-wide settings: maintenance mode and lock administration
"""
import logging
from typing import Optional

from ...core.errors import MaintenanceActive, PermissionDenied
from ...models.user import UserRecord
from ...realtime.notifier import MAINTENANCE_UPDATED, ChangeNotifier
from ...storage.collections import CollectionStore
from ...storage.locking import LockInfo, LockManager

logger = logging.getLogger(__name__)


class SystemService:
    def __init__(self, store: CollectionStore, locks: LockManager, notifier: ChangeNotifier, topic: str):
        self.store = store
        self.locks = locks
        self.notifier = notifier
        self.topic = topic

    def is_maintenance(self) -> bool:
        return self.store.read_maintenance()

    def set_maintenance(self, actor: UserRecord, enabled: bool) -> bool:
        if not actor.is_admin:
            raise PermissionDenied("Only admins can change maintenance mode.")

        def action() -> bool:
            self.store.write_maintenance(enabled)
            return bool(enabled)

        value = self.locks.with_lock(action)
        logger.info(f"Admin {actor.username} set maintenance mode to {value}")
        self.notifier.publish(self.topic, MAINTENANCE_UPDATED, {"isMaintenance": value})
        return value

    def check_session(self, user: Optional[UserRecord]) -> bool:
        """
        Session bootstrap gate. Returns the maintenance flag; raises
        MaintenanceActive for anyone but an admin while it is on.
        """
        maintenance = self.is_maintenance()
        if maintenance and (user is None or not user.is_admin):
            raise MaintenanceActive()
        return maintenance

    def lock_status(self) -> Optional[LockInfo]:
        return self.locks.inspect()

    def force_release_lock(self, actor: UserRecord) -> bool:
        if not actor.is_admin:
            raise PermissionDenied("Only admins can release the lock.")
        released = self.locks.force_release()
        logger.warning(f"Admin {actor.username} force-released the lock (present={released})")
        return released
