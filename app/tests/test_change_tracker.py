from datetime import datetime, timezone

from habitsync.models import Activity, EntityKind, MutationEvent, RemoteRecord, Session
from habitsync.sync.applier import RecordApplier
from habitsync.sync.change_tracker import ChangeTracker


def test_local_commit_marks_entities_dirty(store, log_func):
    settled = []
    tracker = ChangeTracker(store, log_func, on_settled=lambda: settled.append(True))
    tracker.attach()

    activity = Activity(name="Read")
    session = Session(activity_id=activity.id, numeric_value=12)
    event = store.commit(inserted=[activity, session])

    stored = store.get(EntityKind.activity, activity.id)
    assert stored.dirty is True
    assert stored.last_modified_at == event.committed_at
    assert store.get(EntityKind.session, session.id).dirty is True
    assert settled == [True]


def test_redelivered_event_yields_identical_state(store, log_func):
    tracker = ChangeTracker(store, log_func)
    activity = Activity(name="Read")
    store.commit(inserted=[activity])
    event = MutationEvent(
        origin="local",
        updated=[(EntityKind.activity, activity.id)],
        committed_at=datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
    )

    tracker.handle(event)
    first = store.get(EntityKind.activity, activity.id).model_dump()
    tracker.handle(event)

    assert store.get(EntityKind.activity, activity.id).model_dump() == first


def test_sync_writes_are_not_marked_dirty(store, log_func):
    tracker = ChangeTracker(store, log_func)
    tracker.attach()

    RecordApplier(store, log_func).upsert(
        RemoteRecord(record_type="Activity", record_id="Activity-r1", zone="HabitsZone", fields={"id": "a1", "name": "Swim"})
    )

    assert store.get(EntityKind.activity, "a1").dirty is False
    assert store.count_dirty() == {"activity": 0, "session": 0}


def test_detach_stops_tracking(store, log_func):
    tracker = ChangeTracker(store, log_func)
    tracker.attach()
    tracker.detach()

    activity = Activity(name="Read")
    store.commit(inserted=[activity])

    assert store.get(EntityKind.activity, activity.id).dirty is False
