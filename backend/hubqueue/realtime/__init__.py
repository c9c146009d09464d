from .notifier import ChangeEvent, ChangeNotifier, LocalNotifier, NullNotifier, RedisNotifier
from .reconcile import ReconciliationLoop, Snapshot, Transport, diff_new_items
