"""
Client-side reconciliation: keep a local view of the queue in step with the
server by re-fetching on a timer and/or whenever a change event arrives.

The server is always the source of truth. Events only say "something
changed"; the loop fetches the full snapshot and replaces its view, keeping
optimistic items the server has not acknowledged yet.
"""
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from ..models.task import TaskItem
from .notifier import DEFAULT_TOPIC, QUEUE_UPDATED, ChangeEvent, ChangeNotifier

logger = logging.getLogger(__name__)


class Transport(str, Enum):
    POLL = "poll"
    PUSH = "push"
    PUSH_AND_POLL = "push+poll"

    @property
    def polls(self) -> bool:
        return self in (Transport.POLL, Transport.PUSH_AND_POLL)

    @property
    def pushes(self) -> bool:
        return self in (Transport.PUSH, Transport.PUSH_AND_POLL)


@dataclass
class Snapshot:
    active: List[TaskItem] = field(default_factory=list)
    history: List[TaskItem] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: dict) -> "Snapshot":
        return cls(
            active=[TaskItem.model_validate(raw) for raw in data.get("active") or []],
            history=[TaskItem.model_validate(raw) for raw in data.get("history") or []],
        )

    def ids(self) -> set:
        return {item.id for item in self.active} | {item.id for item in self.history}


def diff_new_items(previous: Iterable[TaskItem], current: Iterable[TaskItem]) -> List[TaskItem]:
    """Items in `current` whose id is not in `previous`, in `current` order"""
    seen = {item.id for item in previous}
    return [item for item in current if item.id not in seen]


class ReconciliationLoop:
    """
    Args:
        fetch: returns the server's current Snapshot (or its JSON form)
        transport: poll, push, or both
        interval: seconds between polls
        notifier: source of change events for the push transports
        on_change: called with the new Snapshot after every refresh
        on_new_items: called with items that appeared since the last refresh
        ignore_uploaded_by: new items uploaded by this user are not reported
    """

    def __init__(
        self,
        fetch: Callable[[], object],
        transport: Transport = Transport.PUSH_AND_POLL,
        interval: float = 5.0,
        notifier: Optional[ChangeNotifier] = None,
        topic: str = DEFAULT_TOPIC,
        on_change: Optional[Callable[[Snapshot], None]] = None,
        on_new_items: Optional[Callable[[List[TaskItem]], None]] = None,
        ignore_uploaded_by: Optional[str] = None,
    ):
        self.fetch = fetch
        self.transport = Transport(transport)
        self.interval = interval
        self.notifier = notifier
        self.topic = topic
        self.on_change = on_change
        self.on_new_items = on_new_items
        self.ignore_uploaded_by = ignore_uploaded_by

        self.snapshot: Optional[Snapshot] = None
        self._pending: Dict[str, TaskItem] = {}
        self._refresh_lock = threading.Lock()
        self._fetch_lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

        if self.transport.pushes and notifier is None:
            raise ValueError(f"Transport {self.transport.value} needs a notifier")

    # ============ LIFECYCLE ============
    def start(self) -> Optional[Snapshot]:
        self._stop_event.clear()
        snapshot = self.refresh("start")

        if self.transport.pushes:
            self._unsubscribe = self.notifier.subscribe(self.topic, self._on_event)
        if self.transport.polls:
            self._thread = threading.Thread(target=self._poll_loop, daemon=True)
            self._thread.start()
        return snapshot

    def stop(self) -> None:
        self._stop_event.set()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._thread is not None:
            self._thread.join(timeout=max(self.interval, 1.0) + 1.0)
            self._thread = None

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set() and (self._thread is not None or self._unsubscribe is not None)

    def _poll_loop(self):
        while not self._stop_event.wait(timeout=self.interval):
            self.refresh("poll")

    def _on_event(self, event: ChangeEvent):
        if self._stop_event.is_set():
            return
        if event.name == QUEUE_UPDATED and "active" in event.payload:
            try:
                pushed = Snapshot.from_json(event.payload)
            except Exception as e:
                logger.warning(f"Ignoring malformed {QUEUE_UPDATED} payload: {e}")
            else:
                # a fetch already in flight is older than the pushed state
                with self._fetch_lock:
                    self._apply(pushed)
                return
        self.refresh(event.name)

    # ============ OPTIMISTIC ITEMS ============
    def add_pending(self, item: TaskItem) -> None:
        """Show a locally created item until the server lists it"""
        with self._refresh_lock:
            self._pending[item.id] = item

    def discard_pending(self, item_id: str) -> None:
        with self._refresh_lock:
            self._pending.pop(item_id, None)

    @property
    def pending(self) -> List[TaskItem]:
        with self._refresh_lock:
            return list(self._pending.values())

    # ============ REFRESH ============
    def refresh(self, reason: str = "manual") -> Optional[Snapshot]:
        """
        Fetch and apply the server state. Never raises: a failed fetch is
        logged and the current view is kept until the next trigger.
        """
        with self._fetch_lock:
            try:
                fetched = self.fetch()
                if not isinstance(fetched, Snapshot):
                    fetched = Snapshot.from_json(fetched)
            except Exception as e:
                logger.warning(f"Refresh ({reason}) failed, keeping current view: {e}")
                return None
            logger.debug(f"Refreshed ({reason}): {len(fetched.active)} active, {len(fetched.history)} done")
            return self._apply(fetched)

    def _apply(self, server: Snapshot) -> Snapshot:
        with self._refresh_lock:
            previous = self.snapshot
            server_ids = server.ids()
            for item_id in list(self._pending):
                if item_id in server_ids:
                    del self._pending[item_id]
            view = Snapshot(
                active=list(self._pending.values()) + list(server.active),
                history=list(server.history),
            )
            self.snapshot = view

            new_items: List[TaskItem] = []
            if previous is not None:
                new_items = [
                    item for item in diff_new_items(previous.active + previous.history, server.active)
                    if item.uploaded_by != self.ignore_uploaded_by
                ]

        self._notify(view, new_items)
        return view

    def _notify(self, view: Snapshot, new_items: List[TaskItem]) -> None:
        if self.on_change is not None:
            try:
                self.on_change(view)
            except Exception as e:
                logger.warning(f"on_change callback failed: {e}")
        if new_items and self.on_new_items is not None:
            try:
                self.on_new_items(new_items)
            except Exception as e:
                logger.warning(f"on_new_items callback failed: {e}")
