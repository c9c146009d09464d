"""
Service container: every client handle is built once at startup and passed
to request handlers through the app state.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from passlib.context import CryptContext

from . import config
from ..modules.auth.service import UserService
from ..modules.queue.service import QueueService
from ..modules.system.service import SystemService
from ..realtime.notifier import ChangeNotifier, LocalNotifier, NullNotifier, RedisNotifier
from ..storage.blob import BlobStore, MemoryBlobStore, WebDavBlobStore
from ..storage.collections import CollectionStore, ParsePolicy
from ..storage.locking import LockManager

logger = logging.getLogger(__name__)


@dataclass
class Services:
    blobs: BlobStore
    store: CollectionStore
    locks: LockManager
    notifier: ChangeNotifier
    users: UserService
    queue: QueueService
    system: SystemService
    topic: str = config.REALTIME_TOPIC

    def close(self) -> None:
        self.notifier.close()


def build_blob_store(backend: str = config.STORE_BACKEND) -> BlobStore:
    if backend == "memory":
        logger.warning("Using in-memory store: data is lost on restart")
        return MemoryBlobStore()
    return WebDavBlobStore(
        config.WEBDAV_URL,
        username=config.WEBDAV_USERNAME,
        password=config.WEBDAV_PASSWORD,
        timeout=config.WEBDAV_TIMEOUT,
    )


def build_notifier(backend: str = config.NOTIFIER_BACKEND) -> ChangeNotifier:
    if backend == "redis":
        return RedisNotifier(config.REDIS_URL)
    if backend == "none":
        return NullNotifier()
    return LocalNotifier()


def build_services(
    password_context: CryptContext,
    blobs: Optional[BlobStore] = None,
    notifier: Optional[ChangeNotifier] = None,
    locks: Optional[LockManager] = None,
    parse_policy: str = config.COLLECTION_PARSE_POLICY,
    topic: str = config.REALTIME_TOPIC,
    snapshot_events: bool = config.SNAPSHOT_EVENTS,
) -> Services:
    """Wire the store, lock manager, notifier and domain services together"""
    blobs = blobs if blobs is not None else build_blob_store()
    notifier = notifier if notifier is not None else build_notifier()
    store = CollectionStore(blobs, ParsePolicy(parse_policy))
    # a renewal (read plus conditional write) must land before the lease runs out
    if config.LOCK_LEASE_SECONDS and config.LOCK_LEASE_SECONDS <= 3 * config.WEBDAV_TIMEOUT:
        logger.warning(
            f"LOCK_LEASE_SECONDS={config.LOCK_LEASE_SECONDS:g} should exceed three times "
            f"WEBDAV_TIMEOUT={config.WEBDAV_TIMEOUT:g}, or a slow holder may lose its lease"
        )
    locks = locks if locks is not None else LockManager(
        blobs,
        retries=config.LOCK_RETRIES,
        backoff_ms=config.LOCK_BACKOFF_MS,
        lease_seconds=config.LOCK_LEASE_SECONDS,
    )
    return Services(
        blobs=blobs,
        store=store,
        locks=locks,
        notifier=notifier,
        users=UserService(store, locks, notifier, topic, password_context),
        queue=QueueService(store, locks, notifier, topic, snapshot_events=snapshot_events),
        system=SystemService(store, locks, notifier, topic),
        topic=topic,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
