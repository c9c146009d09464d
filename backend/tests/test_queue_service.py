"""
Task lifecycle tests: transitions, permissions, the completion saga, repair
"""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from hubqueue.core.errors import (
    AlreadyClaimed,
    HubQueueError,
    InvalidTransition,
    ItemNotFound,
    PermissionDenied,
    StoreError,
    TransitionIncomplete,
    ValidationError,
)
from hubqueue.models.task import TaskItem, TaskStatus
from hubqueue.modules.queue.service import can_transition, safe_filename
from hubqueue.realtime.notifier import (
    IMAGE_ADDED,
    IMAGE_COMPLETED,
    IMAGE_DELETED,
    IMAGE_UPDATED,
    QUEUE_UPDATED,
)
from hubqueue.storage.blob import BlobEntry
from hubqueue.storage.collections import ACTIVE_PATH, HISTORY_PATH, LOCK_PATH


@pytest.fixture
def queue(services):
    return services.queue


def ids(items):
    return [item.id for item in items]


def assert_membership(queue):
    """Every id is in exactly one collection, at most once"""
    active = ids(queue.list_active())
    history = ids(queue.list_history())
    assert len(active) == len(set(active))
    assert len(history) == len(set(history))
    assert not set(active) & set(history)


class TestHelpers:

    def test_transition_table(self):
        assert can_transition(TaskStatus.UPLOADED, TaskStatus.IN_PROGRESS)
        assert can_transition(TaskStatus.IN_PROGRESS, TaskStatus.UPLOADED)
        assert can_transition(TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED)
        assert not can_transition(TaskStatus.UPLOADED, TaskStatus.COMPLETED)
        assert not can_transition(TaskStatus.COMPLETED, TaskStatus.IN_PROGRESS)

    def test_safe_filename(self):
        assert safe_filename("my cat (1).png") == "my_cat_1_.png"
        assert safe_filename("../../etc/passwd") == "etc_passwd"
        assert safe_filename("") == "image"


class TestCreate:

    def test_create_adds_uploaded_item(self, queue, blobs, plain_user, notifier):
        item = queue.create(plain_user, "cat.png", b"\x89PNG")

        [stored] = queue.list_active()
        assert stored.id == item.id
        assert stored.status == TaskStatus.UPLOADED
        assert stored.uploaded_by == "dave"
        assert stored.created_at is not None
        assert stored.storage_path.startswith("/uploads/")
        assert blobs.read(stored.storage_path) == b"\x89PNG"
        assert notifier.names() == [IMAGE_ADDED]
        assert not blobs.exists(LOCK_PATH)

    def test_newest_first(self, queue, plain_user):
        first = queue.create(plain_user, "a.png", b"a")
        second = queue.create(plain_user, "b.png", b"b")
        assert ids(queue.list_active()) == [second.id, first.id]

    def test_ids_are_unique(self, queue, plain_user):
        items = [queue.create(plain_user, "same.png", b"x") for _ in range(5)]
        assert len({item.id for item in items}) == 5
        assert len({item.storage_path for item in items}) == 5

    def test_empty_upload_rejected(self, queue, plain_user):
        with pytest.raises(ValidationError):
            queue.create(plain_user, "empty.png", b"")

    def test_banned_user_cannot_upload(self, queue, banned):
        with pytest.raises(PermissionDenied):
            queue.create(banned, "x.png", b"x")

    def test_asset_removed_when_queue_write_fails(self, queue, services, blobs, plain_user, monkeypatch):
        def failing_write(path, items):
            raise StoreError()

        monkeypatch.setattr(services.store, "write_items", failing_write)
        with pytest.raises(StoreError):
            queue.create(plain_user, "x.png", b"x")
        assert blobs.list("/uploads") == []


class TestClaim:

    def test_claim(self, queue, plain_user, trusted, notifier):
        item = queue.create(plain_user, "cat.png", b"x")
        claimed = queue.claim(trusted, item.id)

        assert claimed.status == TaskStatus.IN_PROGRESS
        assert claimed.claimed_by == "bob"
        assert queue.list_active()[0].claimed_by == "bob"
        assert notifier.names()[-1] == IMAGE_UPDATED

    def test_plain_user_cannot_claim(self, queue, plain_user):
        item = queue.create(plain_user, "cat.png", b"x")
        with pytest.raises(PermissionDenied):
            queue.claim(plain_user, item.id)

    def test_second_claim_fails_and_changes_nothing(self, queue, plain_user, trusted, trusted2):
        item = queue.create(plain_user, "cat.png", b"x")
        queue.claim(trusted, item.id)
        with pytest.raises(AlreadyClaimed):
            queue.claim(trusted2, item.id)
        assert queue.list_active()[0].claimed_by == "bob"

    def test_unknown_item(self, queue, trusted):
        with pytest.raises(ItemNotFound):
            queue.claim(trusted, "nope")

    def test_concurrent_claims_have_one_winner(self, queue, plain_user, trusted, trusted2):
        item = queue.create(plain_user, "cat.png", b"x")
        results = {}
        barrier = threading.Barrier(2)

        def attempt(user):
            barrier.wait()
            try:
                queue.claim(user, item.id)
                results[user.username] = "won"
            except HubQueueError as e:
                results[user.username] = type(e).__name__

        threads = [threading.Thread(target=attempt, args=(u,)) for u in (trusted, trusted2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results.values()) == ["AlreadyClaimed", "won"]
        winner = next(name for name, r in results.items() if r == "won")
        assert queue.list_active()[0].claimed_by == winner


class TestUnclaim:

    def test_claimant_can_release(self, queue, plain_user, trusted):
        item = queue.create(plain_user, "cat.png", b"x")
        queue.claim(trusted, item.id)
        released = queue.unclaim(trusted, item.id)
        assert released.status == TaskStatus.UPLOADED
        assert released.claimed_by is None

    def test_admin_can_force_release(self, queue, plain_user, trusted, admin):
        item = queue.create(plain_user, "cat.png", b"x")
        queue.claim(trusted, item.id)
        assert queue.unclaim(admin, item.id).claimed_by is None

    def test_other_user_cannot_release(self, queue, plain_user, trusted, trusted2):
        item = queue.create(plain_user, "cat.png", b"x")
        queue.claim(trusted, item.id)
        with pytest.raises(PermissionDenied):
            queue.unclaim(trusted2, item.id)

    def test_unclaimed_item(self, queue, plain_user, trusted):
        item = queue.create(plain_user, "cat.png", b"x")
        with pytest.raises(InvalidTransition):
            queue.unclaim(trusted, item.id)


class TestComplete:

    def test_complete_moves_to_history(self, queue, plain_user, trusted, notifier):
        item = queue.create(plain_user, "cat.png", b"x")
        queue.claim(trusted, item.id)
        done = queue.complete(trusted, item.id, notes="cropped")

        assert queue.list_active() == []
        [stored] = queue.list_history()
        assert stored.id == item.id
        assert stored.status == TaskStatus.COMPLETED
        assert stored.completed_by == "bob"
        assert stored.claimed_by is None
        assert stored.completion_notes == "cropped"
        assert stored.completed_at is not None
        assert done == stored
        assert notifier.events[-1].name == IMAGE_COMPLETED
        assert notifier.events[-1].payload["imageId"] == item.id
        assert_membership(queue)

    def test_only_claimant_can_complete(self, queue, plain_user, trusted, admin):
        item = queue.create(plain_user, "cat.png", b"x")
        queue.claim(trusted, item.id)
        with pytest.raises(PermissionDenied):
            queue.complete(admin, item.id)

    def test_cannot_complete_unclaimed(self, queue, plain_user, trusted):
        item = queue.create(plain_user, "cat.png", b"x")
        with pytest.raises(InvalidTransition):
            queue.complete(trusted, item.id)

    def test_completed_item_is_gone_from_active(self, queue, plain_user, trusted):
        item = queue.create(plain_user, "cat.png", b"x")
        queue.claim(trusted, item.id)
        queue.complete(trusted, item.id)
        with pytest.raises(ItemNotFound):
            queue.complete(trusted, item.id)

    def test_failed_queue_write_rolls_back_history(self, queue, services, plain_user, trusted, monkeypatch):
        item = queue.create(plain_user, "cat.png", b"x")
        queue.claim(trusted, item.id)
        original = services.store.write_items

        def flaky_write(path, items):
            if path == ACTIVE_PATH:
                raise StoreError()
            original(path, items)

        monkeypatch.setattr(services.store, "write_items", flaky_write)
        with pytest.raises(TransitionIncomplete):
            queue.complete(trusted, item.id)
        monkeypatch.undo()

        assert queue.list_history() == []
        assert queue.list_active()[0].status == TaskStatus.IN_PROGRESS
        assert_membership(queue)

    def test_membership_holds_over_a_session(self, queue, plain_user, trusted, admin):
        items = [queue.create(plain_user, f"{n}.png", b"x") for n in range(6)]
        for item in items[:4]:
            queue.claim(trusted, item.id)
        queue.complete(trusted, items[0].id)
        queue.unclaim(admin, items[1].id)
        queue.complete(trusted, items[2].id)
        queue.delete(plain_user, items[5].id)

        assert_membership(queue)
        assert set(ids(queue.list_history())) == {items[0].id, items[2].id}
        assert len(queue.list_active()) == 3


class TestDelete:

    def test_uploader_can_delete(self, queue, plain_user, blobs, notifier):
        item = queue.create(plain_user, "cat.png", b"x")
        queue.delete(plain_user, item.id)
        assert queue.list_active() == []
        assert not blobs.exists(item.storage_path)
        assert notifier.names()[-1] == IMAGE_DELETED

    def test_admin_can_delete(self, queue, plain_user, admin):
        item = queue.create(plain_user, "cat.png", b"x")
        queue.delete(admin, item.id)
        assert queue.list_active() == []

    def test_others_cannot_delete(self, queue, plain_user, trusted):
        item = queue.create(plain_user, "cat.png", b"x")
        with pytest.raises(PermissionDenied):
            queue.delete(trusted, item.id)

    def test_asset_delete_failure_does_not_fail(self, queue, plain_user, blobs, monkeypatch):
        item = queue.create(plain_user, "cat.png", b"x")

        def failing_delete(path):
            if path.startswith("/uploads/"):
                raise StoreError()
            del_original(path)

        del_original = blobs.delete
        monkeypatch.setattr(blobs, "delete", failing_delete)
        queue.delete(plain_user, item.id)
        assert queue.list_active() == []


class TestRepairAndSweep:

    def test_repair_restores_invariants(self, queue, services, plain_user):
        a = TaskItem(id="a", name="a", storage_path="/uploads/a", uploaded_by="dave")
        b = TaskItem(id="b", name="b", storage_path="/uploads/b", uploaded_by="dave",
                     status=TaskStatus.COMPLETED, completed_by="bob")
        c = TaskItem(id="c", name="c", storage_path="/uploads/c", uploaded_by="dave", claimed_by="bob")
        done_a = a.model_copy(update={"status": TaskStatus.COMPLETED, "completed_by": "bob"})
        services.store.write_items(ACTIVE_PATH, [a, b, c, c])
        services.store.write_items(HISTORY_PATH, [done_a, done_a])

        report = queue.repair()

        assert report.changed
        assert report.removed_from_active == ["a"]
        assert report.moved_to_history == ["b"]
        assert sorted(report.duplicates_dropped) == ["a", "c"]
        assert report.claims_cleared == ["c"]
        assert ids(queue.list_active()) == ["c"]
        assert queue.list_active()[0].claimed_by is None
        assert ids(queue.list_history()) == ["b", "a"]
        assert_membership(queue)

    def test_repair_noop(self, queue, plain_user, notifier):
        queue.create(plain_user, "a.png", b"a")
        assert not queue.repair().changed
        assert QUEUE_UPDATED not in notifier.names()

    def test_sweep_removes_only_old_orphans(self, queue, blobs, plain_user, monkeypatch):
        item = queue.create(plain_user, "kept.png", b"x")
        blobs.write("/uploads/orphan-old.png", b"x")
        blobs.write("/uploads/orphan-new.png", b"x")
        old = datetime.now(timezone.utc) - timedelta(hours=1)
        listing = [
            BlobEntry(path=item.storage_path, name="kept", modified=old),
            BlobEntry(path="/uploads/orphan-old.png", name="orphan-old.png", modified=old),
            BlobEntry(path="/uploads/orphan-new.png", name="orphan-new.png", modified=datetime.now(timezone.utc)),
        ]
        monkeypatch.setattr(blobs, "list", lambda directory: listing)

        removed = queue.sweep_orphaned_assets(min_age_seconds=600)

        assert removed == ["/uploads/orphan-old.png"]
        assert blobs.exists(item.storage_path)
        assert blobs.exists("/uploads/orphan-new.png")

    def test_sweep_without_uploads_dir(self, queue):
        assert queue.sweep_orphaned_assets() == []


class TestReadsAndStats:

    def test_read_asset_only_under_uploads(self, queue, plain_user):
        item = queue.create(plain_user, "cat.png", b"data")
        assert queue.read_asset(item.storage_path) == b"data"
        with pytest.raises(ValidationError):
            queue.read_asset("/users.json")
        with pytest.raises(ValidationError):
            queue.read_asset("/uploads/../users.json")

    def test_stats(self, queue, plain_user, trusted):
        items = [queue.create(plain_user, f"{n}.png", b"x") for n in range(3)]
        queue.claim(trusted, items[0].id)
        queue.claim(trusted, items[1].id)
        queue.complete(trusted, items[1].id)

        stats = queue.stats()
        assert stats["totalUploaded"] == 3
        assert stats["totalCompleted"] == 1
        assert stats["totalWaiting"] == 1
        assert stats["totalInProgress"] == 1
        assert stats["users"]["dave"]["uploaded"] == 3
        assert stats["users"]["bob"] == {"uploaded": 0, "inProgress": 1, "completed": 1}

    def test_snapshot_events(self, services, plain_user, notifier):
        services.queue.snapshot_events = True
        services.queue.create(plain_user, "a.png", b"a")
        assert notifier.names() == [IMAGE_ADDED, QUEUE_UPDATED]
        assert len(notifier.events[-1].payload["active"]) == 1
