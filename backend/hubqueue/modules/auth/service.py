"""
User accounts kept in the shared users collection
"""
import logging
from typing import List, Optional, Tuple

from passlib.context import CryptContext

from ...core.errors import AlreadyExists, LastAdminError, PermissionDenied, ValidationError
from ...models.user import Role, UserRecord, migrate_user_record, needs_migration
from ...realtime.notifier import USERS_UPDATED, ChangeNotifier
from ...storage.collections import USERS_PATH, CollectionStore
from ...storage.locking import LockManager

logger = logging.getLogger(__name__)


def _find(users: List[UserRecord], username: str) -> Optional[int]:
    for index, user in enumerate(users):
        if user.username == username:
            return index
    return None


class UserService:
    def __init__(
        self,
        store: CollectionStore,
        locks: LockManager,
        notifier: ChangeNotifier,
        topic: str,
        passwords: CryptContext,
    ):
        self.store = store
        self.locks = locks
        self.notifier = notifier
        self.topic = topic
        self.passwords = passwords

    def _publish(self) -> None:
        self.notifier.publish(self.topic, USERS_UPDATED, {})

    # ============ READS ============
    def list_users(self) -> List[UserRecord]:
        return self.store.read_users()

    def get_user(self, username: str) -> Optional[UserRecord]:
        users = self.store.read_users()
        index = _find(users, username)
        return users[index] if index is not None else None

    # ============ REGISTRATION / LOGIN ============
    def register(self, username: str, password: str) -> UserRecord:
        """
        Create an account. The first account ever created becomes admin.
        The duplicate check happens on the collection re-read under the lock.
        """
        username = (username or "").strip()
        if not username or not password:
            raise ValidationError("Username and password must not be empty.")
        password_hash = self.passwords.hash(password)

        def action() -> UserRecord:
            users = self.store.read_users()
            if _find(users, username) is not None:
                raise AlreadyExists("User already exists.")
            role = Role.ADMIN if not users else Role.USER
            user = UserRecord(username=username, password_hash=password_hash, role=role)
            self.store.write_users(users + [user])
            return user

        user = self.locks.with_lock(action)
        logger.info(f"Registered user {user.username} with role {user.role.value}")
        self._publish()
        return user

    def authenticate(self, username: str, password: str) -> Optional[UserRecord]:
        """Return the user when the password matches, None otherwise"""
        user = self.get_user((username or "").strip())
        if user is None:
            return None
        try:
            valid, new_hash = self.passwords.verify_and_update(password, user.password_hash)
        except (ValueError, TypeError) as e:
            logger.warning(f"Unreadable password hash for {user.username}: {e}")
            return None
        if not valid:
            return None
        if user.is_banned:
            raise PermissionDenied("This account has been banned.")
        if new_hash:
            self._rehash(user.username, user.password_hash, new_hash)
        return user

    def _rehash(self, username: str, old_hash: str, new_hash: str) -> None:
        """Upgrade a legacy hash after a successful login (best effort)"""
        def action() -> bool:
            users = self.store.read_users()
            index = _find(users, username)
            if index is None or users[index].password_hash != old_hash:
                return False
            users[index] = users[index].model_copy(update={"password_hash": new_hash})
            self.store.write_users(users)
            return True

        try:
            if self.locks.with_lock(action):
                logger.info(f"Upgraded password hash for {username}")
        except Exception as e:
            logger.warning(f"Could not upgrade password hash for {username}: {e}")

    # ============ ADMIN ============
    def set_role(self, actor: UserRecord, username: str, role: Role) -> UserRecord:
        if not actor.is_admin:
            raise PermissionDenied("Only admins can change roles.")
        role = Role(role)

        def action() -> UserRecord:
            users = self.store.read_users()
            index = _find(users, username)
            if index is None:
                raise ValidationError(f"User {username} does not exist.")
            current = users[index]
            if current.is_admin and role != Role.ADMIN and self._admin_count(users) <= 1:
                raise LastAdminError()
            users[index] = current.model_copy(update={"role": role})
            self.store.write_users(users)
            return users[index]

        updated = self.locks.with_lock(action)
        logger.info(f"Admin {actor.username} set role of {username} to {role.value}")
        self._publish()
        return updated

    def delete_user(self, actor: UserRecord, username: str) -> None:
        if not actor.is_admin:
            raise PermissionDenied("Only admins can delete users.")

        def action() -> None:
            users = self.store.read_users()
            index = _find(users, username)
            if index is None:
                raise ValidationError(f"User {username} does not exist.")
            if users[index].is_admin and self._admin_count(users) <= 1:
                raise LastAdminError()
            del users[index]
            self.store.write_users(users)

        self.locks.with_lock(action)
        logger.info(f"Admin {actor.username} deleted user {username}")
        self._publish()

    def ensure_admin(self, username: str, password: str) -> Tuple[UserRecord, bool]:
        """Create `username` as admin, or promote it; returns (user, created)"""
        username = (username or "").strip()
        if not username or not password:
            raise ValidationError("Username and password must not be empty.")
        password_hash = self.passwords.hash(password)

        def action() -> Tuple[UserRecord, bool]:
            users = self.store.read_users()
            index = _find(users, username)
            if index is None:
                user = UserRecord(username=username, password_hash=password_hash, role=Role.ADMIN)
                self.store.write_users(users + [user])
                return user, True
            users[index] = users[index].model_copy(update={"role": Role.ADMIN})
            self.store.write_users(users)
            return users[index], False

        result = self.locks.with_lock(action)
        self._publish()
        return result

    @staticmethod
    def _admin_count(users: List[UserRecord]) -> int:
        return sum(1 for u in users if u.is_admin)

    # ============ MIGRATION ============
    def migrate_legacy_records(self) -> int:
        """
        Rewrite boolean-flag user records into the role schema.
        Runs once at startup; returns the number of records converted.
        """
        if not any(needs_migration(raw) for raw in self.store.read_raw_users()):
            return 0

        def action() -> int:
            raw_users = self.store.read_raw_users()
            pending = [raw for raw in raw_users if needs_migration(raw)]
            if not pending:
                return 0
            migrated = [migrate_user_record(raw) for raw in raw_users]
            self.store.write_collection(USERS_PATH, migrated)
            return len(pending)

        count = self.locks.with_lock(action)
        if count:
            logger.info(f"Migrated {count} legacy user record(s) to role schema")
            self._publish()
        return count
