from datetime import timedelta

import pytest

from habitsync.errors import RemoteConflictError, RemoteFatalError, UploadFailedError
from habitsync.models import Activity, EntityKind, RemoteRecord, Session, utcnow
from habitsync.sync.applier import RecordApplier
from habitsync.sync.change_tracker import ChangeTracker
from habitsync.sync.upload import UploadPipeline

ZONE = "HabitsZone"


def _pipeline(store, remote, retry, log_func) -> UploadPipeline:
    ChangeTracker(store, log_func).attach()
    return UploadPipeline(store, remote, RecordApplier(store, log_func), retry, ZONE, log_func)


def test_new_local_activity_is_uploaded(store, remote, retry, log_func):
    pipeline = _pipeline(store, remote, retry, log_func)
    activity = Activity(name="Meditate")
    store.commit(inserted=[activity])

    summary = pipeline.run()

    assert summary["uploaded"] == 1
    stored = store.get(EntityKind.activity, activity.id)
    assert stored.dirty is False
    assert stored.remote_ref is not None and stored.remote_ref.startswith("Activity-")
    assert remote.record_for(activity.id).fields["name"] == "Meditate"


def test_parent_saved_before_child_and_child_carries_parent_ref(store, remote, retry, log_func):
    pipeline = _pipeline(store, remote, retry, log_func)
    activity = Activity(name="Pushups")
    session = Session(activity_id=activity.id, numeric_value=20)
    # Child committed first on purpose.
    store.commit(inserted=[session])
    store.commit(inserted=[activity])

    pipeline.run()

    assert [c for c in remote.calls if c.startswith("save:")] == ["save:Activity", "save:ActivitySession"]
    parent_ref = store.get(EntityKind.activity, activity.id).remote_ref
    assert remote.record_for(session.id).fields["activity_ref"] == parent_ref
    assert store.get(EntityKind.session, session.id).dirty is False


def test_child_skipped_when_parent_upload_fails(store, remote, retry, log_func):
    pipeline = _pipeline(store, remote, retry, log_func)
    activity = Activity(name="Pushups")
    session = Session(activity_id=activity.id)
    store.commit(inserted=[activity, session])
    remote.fail_save[activity.id] = RemoteFatalError("bad_request")

    with pytest.raises(UploadFailedError) as exc:
        pipeline.run()

    assert exc.value.summary["skipped_children"] == 1
    assert [f["id"] for f in exc.value.failures] == [activity.id]
    assert store.get(EntityKind.activity, activity.id).dirty is True
    assert store.get(EntityKind.session, session.id).dirty is True
    assert "save:ActivitySession" not in remote.calls


def test_one_failure_does_not_block_siblings(store, remote, retry, log_func):
    pipeline = _pipeline(store, remote, retry, log_func)
    good = Activity(name="Good")
    bad = Activity(name="Bad")
    store.commit(inserted=[bad, good])
    remote.fail_save[bad.id] = RemoteFatalError("bad_request")

    with pytest.raises(UploadFailedError) as exc:
        pipeline.run()

    assert exc.value.summary["uploaded"] == 1
    assert exc.value.summary["upload_failed"] == 1
    assert store.get(EntityKind.activity, good.id).dirty is False
    assert store.get(EntityKind.activity, bad.id).dirty is True


def test_unexpected_save_error_does_not_block_siblings(store, remote, retry, log_func):
    pipeline = _pipeline(store, remote, retry, log_func)
    broken = Activity(name="Broken")
    good = Activity(name="Good")
    store.commit(inserted=[broken, good])
    remote.fail_save[broken.id] = ValueError("malformed save response")

    with pytest.raises(UploadFailedError) as exc:
        pipeline.run()

    assert [f["id"] for f in exc.value.failures] == [broken.id]
    assert "malformed save response" in exc.value.failures[0]["error"]
    assert store.get(EntityKind.activity, broken.id).dirty is True
    assert store.get(EntityKind.activity, good.id).dirty is False


def test_invalid_conflict_record_does_not_block_siblings(store, remote, retry, log_func):
    pipeline = _pipeline(store, remote, retry, log_func)
    broken = Activity(name="Broken")
    good = Activity(name="Good")
    store.commit(inserted=[broken, good])
    invalid = RemoteRecord(
        record_type="Activity",
        record_id="Activity-bad",
        zone=ZONE,
        fields={"id": broken.id, "name": None},
        change_tag="tag-x",
    )
    remote.fail_save[broken.id] = RemoteConflictError(invalid)

    with pytest.raises(UploadFailedError) as exc:
        pipeline.run()

    assert exc.value.summary["conflicts_resolved"] == 0
    assert "record_invalid" in exc.value.failures[0]["error"]
    assert store.get(EntityKind.activity, broken.id).name == "Broken"
    assert store.get(EntityKind.activity, good.id).dirty is False


def test_conflict_applies_server_copy(store, remote, retry, log_func):
    pipeline = _pipeline(store, remote, retry, log_func)
    activity = Activity(name="Original")
    store.commit(inserted=[activity])
    pipeline.run()
    ref = store.get(EntityKind.activity, activity.id).remote_ref

    # Another device changes the record; this device edits its stale copy.
    server_fields = dict(remote.records[ZONE][ref].fields, name="From other device")
    remote.server_put("Activity", ref, server_fields)
    local = store.get(EntityKind.activity, activity.id)
    local.name = "From this device"
    store.commit(updated=[local])

    summary = pipeline.run()

    assert summary["conflicts_resolved"] == 1
    stored = store.get(EntityKind.activity, activity.id)
    assert stored.name == "From other device"
    assert stored.dirty is False
    assert stored.remote_ref == ref


def test_session_conflict_converges_to_server_value(store, remote, retry, log_func):
    pipeline = _pipeline(store, remote, retry, log_func)
    activity = Activity(name="Pushups")
    session = Session(activity_id=activity.id, numeric_value=10)
    store.commit(inserted=[activity, session])
    pipeline.run()
    ref = store.get(EntityKind.session, session.id).remote_ref

    remote.server_put("ActivitySession", ref, dict(remote.records[ZONE][ref].fields, numeric_value=30))
    local = store.get(EntityKind.session, session.id)
    local.numeric_value = 20
    store.commit(updated=[local])

    summary = pipeline.run()

    assert summary["conflicts_resolved"] == 1
    stored = store.get(EntityKind.session, session.id)
    assert stored.numeric_value == 30
    assert stored.activity_id == activity.id
    assert stored.dirty is False


def test_edit_during_upload_keeps_entity_dirty(store, remote, retry, log_func):
    pipeline = _pipeline(store, remote, retry, log_func)
    activity = Activity(name="Walk")
    store.commit(inserted=[activity])

    def _edit_in_flight(_record):
        store.mark_dirty(EntityKind.activity, [activity.id], utcnow() + timedelta(seconds=5))

    remote.before_save = _edit_in_flight
    summary = pipeline.run()

    assert summary["uploaded"] == 1
    assert summary["modified_during_upload"] == 1
    stored = store.get(EntityKind.activity, activity.id)
    assert stored.dirty is True
    assert stored.remote_ref is not None


def test_record_reuses_remote_ref_and_tag(store, remote, retry, log_func):
    pipeline = _pipeline(store, remote, retry, log_func)
    activity = Activity(name="Yoga")
    store.commit(inserted=[activity])
    pipeline.run()
    first = store.get(EntityKind.activity, activity.id)

    first.name = "Hot yoga"
    store.commit(updated=[first])
    pipeline.run()

    second_save = remote.saved[-1]
    assert second_save.record_id == first.remote_ref
    assert second_save.change_tag == first.remote_tag
    assert store.get(EntityKind.activity, activity.id).remote_ref == first.remote_ref
