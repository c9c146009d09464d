"""
Advisory mutual exclusion over the collection store.

The file server has no locks or transactions. Creating the marker file with
create-if-absent semantics is the only server-side atomic step, so it is used
as a single global mutex for every collection write.

The marker carries a lease: owner token plus acquisition time. The holder
renews the lease from a heartbeat thread while its action runs, so a marker
older than the lease is treated as abandoned by a crashed holder and reclaimed.
Reclaim, renewal and release only touch the marker if it still holds exactly
the bytes last seen, so a marker that changed hands is never removed.
Zero-length markers left by older clients have no known age and are only
removed by force_release.
"""
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from ..core.errors import AlreadyExists, LockCouldNotAcquire, NotFound
from .blob import BlobStore
from .collections import LOCK_PATH

logger = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass
class LockInfo:
    """What is known about a marker currently on the server"""
    path: str
    owner: Optional[str] = None
    acquired_at: Optional[float] = None

    def age(self, now: Optional[float] = None) -> Optional[float]:
        if self.acquired_at is None:
            return None
        return (now if now is not None else time.time()) - self.acquired_at

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "owner": self.owner,
            "acquiredAt": self.acquired_at,
            "ageSeconds": self.age(),
        }


@dataclass
class HeldLock:
    """A marker this process created, with the exact bytes last written to it"""
    path: str
    token: str
    body: bytes
    lost: bool = False
    stopped: threading.Event = field(default_factory=threading.Event)


class LockManager:
    """Marker-file mutex with fixed-delay retry, lease renewal and reclamation"""

    def __init__(
        self,
        blobs: BlobStore,
        retries: int = 5,
        backoff_ms: int = 200,
        lease_seconds: Optional[float] = 60.0,
        renew_interval: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.blobs = blobs
        self.retries = max(1, int(retries))
        self.backoff_ms = max(0, int(backoff_ms))
        self.lease_seconds = lease_seconds
        self.renew_interval = renew_interval
        self._sleep = sleep
        self._clock = clock

    def with_lock(
        self,
        action: Callable[[], R],
        marker_path: str = LOCK_PATH,
        retries: Optional[int] = None,
        backoff_ms: Optional[int] = None,
    ) -> R:
        """
        Run `action` while holding the marker at `marker_path`.

        Raises LockCouldNotAcquire after `retries` failed attempts. The marker
        is removed even if `action` raises.
        """
        held = self._acquire(
            marker_path,
            self.retries if retries is None else max(1, int(retries)),
            self.backoff_ms if backoff_ms is None else max(0, int(backoff_ms)),
        )
        heartbeat = self._start_heartbeat(held)
        try:
            return action()
        finally:
            if heartbeat is not None:
                held.stopped.set()
                heartbeat.join()
            self._release(held)

    def _marker_body(self, token: str) -> bytes:
        return json.dumps({"owner": token, "acquiredAt": self._clock()}).encode("utf-8")

    def _acquire(self, marker_path: str, retries: int, backoff_ms: int) -> HeldLock:
        token = uuid.uuid4().hex

        for attempt in range(1, retries + 1):
            body = self._marker_body(token)
            try:
                self.blobs.write_if_absent(marker_path, body)
                logger.debug(f"Lock {marker_path} acquired by {token[:8]} (attempt {attempt})")
                return HeldLock(path=marker_path, token=token, body=body)
            except AlreadyExists:
                pass

            if self._reclaim_if_stale(marker_path):
                continue

            logger.debug(f"Lock {marker_path} busy (attempt {attempt}/{retries})")
            if attempt < retries:
                self._sleep(backoff_ms / 1000.0)

        logger.warning(f"Could not acquire lock {marker_path} after {retries} attempts")
        raise LockCouldNotAcquire()

    # ============ LEASE ============
    def _start_heartbeat(self, held: HeldLock) -> Optional[threading.Thread]:
        if not self.lease_seconds:
            return None
        thread = threading.Thread(target=self._heartbeat, args=(held,), daemon=True)
        thread.start()
        return thread

    def _heartbeat(self, held: HeldLock) -> None:
        interval = self.renew_interval or self.lease_seconds / 3.0
        while not held.stopped.wait(timeout=interval):
            body = self._marker_body(held.token)
            try:
                renewed = self.blobs.replace_if_unchanged(held.path, held.body, body)
            except Exception as e:
                logger.error(f"Failed to renew lock {held.path}: {e}")
                continue
            if not renewed:
                held.lost = True
                logger.error(f"Lock {held.path} was taken from {held.token[:8]} while its action was running")
                return
            held.body = body

    def _reclaim_if_stale(self, marker_path: str) -> bool:
        """Delete the marker if its lease has expired; True when a retry is worthwhile"""
        if not self.lease_seconds:
            return False
        raw = self._read_marker(marker_path)
        if raw is None:
            # released between our attempt and the inspection
            return True
        info = self._parse_marker(marker_path, raw)
        age = info.age(self._clock())
        if age is None or age < self.lease_seconds:
            return False

        if self.blobs.delete_if_unchanged(marker_path, raw):
            logger.warning(
                f"Reclaimed stale lock {marker_path} held by {(info.owner or '?')[:8]} for {age:.1f}s"
            )
        else:
            logger.debug(f"Stale lock {marker_path} changed hands before it could be reclaimed")
        return True

    def _release(self, held: HeldLock) -> None:
        try:
            if self.blobs.delete_if_unchanged(held.path, held.body):
                logger.debug(f"Lock {held.path} released by {held.token[:8]}")
            else:
                logger.warning(f"Lock {held.path} no longer belongs to {held.token[:8]}; leaving it in place")
        except Exception as e:
            logger.error(f"Failed to release lock {held.path}, it may need to be removed manually: {e}")

    def _read_marker(self, marker_path: str) -> Optional[bytes]:
        try:
            return self.blobs.read(marker_path)
        except NotFound:
            return None

    @staticmethod
    def _parse_marker(marker_path: str, raw: bytes) -> LockInfo:
        try:
            data = json.loads(raw.decode("utf-8")) if raw.strip() else {}
            if not isinstance(data, dict):
                data = {}
        except (UnicodeDecodeError, ValueError):
            data = {}
        acquired_at = data.get("acquiredAt")
        return LockInfo(
            path=marker_path,
            owner=data.get("owner"),
            acquired_at=float(acquired_at) if isinstance(acquired_at, (int, float)) else None,
        )

    def inspect(self, marker_path: str = LOCK_PATH) -> Optional[LockInfo]:
        """Return the marker's lease, or None when no marker exists"""
        raw = self._read_marker(marker_path)
        if raw is None:
            return None
        return self._parse_marker(marker_path, raw)

    def force_release(self, marker_path: str = LOCK_PATH) -> bool:
        """Remove the marker regardless of owner; True if one was present"""
        info = self.inspect(marker_path)
        self.blobs.delete(marker_path)
        if info is not None:
            logger.warning(f"Lock {marker_path} force-released (owner {info.owner or 'unknown'})")
        return info is not None
