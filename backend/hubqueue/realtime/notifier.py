"""
Change notifier: best-effort fan-out of "something changed" events.

Events are hints. Subscribers re-fetch the collections instead of trusting
payloads, and publish failures never fail the write that already happened.
"""
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import redis

logger = logging.getLogger(__name__)

DEFAULT_TOPIC = "hubqueue:updates"

# Event names
IMAGE_ADDED = "image_added"
IMAGE_UPDATED = "image_updated"
IMAGE_COMPLETED = "image_completed"
IMAGE_DELETED = "image_deleted"
USERS_UPDATED = "users_updated"
MAINTENANCE_UPDATED = "maintenance_updated"
QUEUE_UPDATED = "queue_updated"


@dataclass
class ChangeEvent:
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    topic: str = DEFAULT_TOPIC

    def to_dict(self) -> dict:
        return {"name": self.name, "data": self.payload}


Handler = Callable[[ChangeEvent], None]


class ChangeNotifier:
    """Base notifier: subclasses implement _send and subscribe"""

    def publish(self, topic: str, event_name: str, payload: Optional[dict] = None) -> bool:
        """Publish an event; returns False instead of raising on failure"""
        event = ChangeEvent(name=event_name, payload=payload or {}, topic=topic)
        try:
            self._send(event)
            return True
        except Exception as e:
            logger.warning(f"Failed to publish {event_name} on {topic}: {e}")
            return False

    def _send(self, event: ChangeEvent) -> None:
        raise NotImplementedError

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register `handler` for `topic`; returns a function that unsubscribes"""
        raise NotImplementedError

    def close(self) -> None:
        pass


class NullNotifier(ChangeNotifier):
    """Discards every event (realtime disabled)"""

    def _send(self, event: ChangeEvent) -> None:
        logger.debug(f"Realtime disabled, dropping {event.name}")

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        return lambda: None


class LocalNotifier(ChangeNotifier):
    """In-process broker, used by a single server and by tests"""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()

    def _send(self, event: ChangeEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.topic, []))
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.warning(f"Subscriber failed on {event.name}: {e}")

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._handlers.setdefault(topic, []).append(handler)

        def unsubscribe():
            with self._lock:
                handlers = self._handlers.get(topic, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def subscriber_count(self, topic: str = DEFAULT_TOPIC) -> int:
        with self._lock:
            return len(self._handlers.get(topic, []))


class RedisNotifier(ChangeNotifier):
    """
    Redis pub/sub transport, for several server processes sharing one queue.

    Messages are JSON objects `{"name": ..., "data": ...}` published on the
    topic channel. Each subscription runs its own pubsub listener thread.
    """

    def __init__(self, url: str = "redis://localhost:6379/0", client=None):
        self.client = client if client is not None else redis.Redis.from_url(url)
        self._threads = []
        self._lock = threading.Lock()

    def _send(self, event: ChangeEvent) -> None:
        self.client.publish(event.topic, json.dumps(event.to_dict(), ensure_ascii=False))

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        def on_message(message):
            try:
                data = message.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                body = json.loads(data)
                handler(ChangeEvent(name=body.get("name", ""), payload=body.get("data") or {}, topic=topic))
            except Exception as e:
                logger.warning(f"Failed to handle message on {topic}: {e}")

        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(**{topic: on_message})
        worker = pubsub.run_in_thread(sleep_time=0.5, daemon=True)
        with self._lock:
            self._threads.append(worker)

        def unsubscribe():
            worker.stop()
            try:
                pubsub.close()
            except Exception as e:
                logger.debug(f"Error closing pubsub for {topic}: {e}")
            with self._lock:
                if worker in self._threads:
                    self._threads.remove(worker)

        return unsubscribe

    def close(self) -> None:
        with self._lock:
            workers, self._threads = self._threads, []
        for worker in workers:
            worker.stop()
        self.client.close()
