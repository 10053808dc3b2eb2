import json

from fakes import FOLDER_ID, kml, make_track
from tracksync.core.errors import RemoteStoreError
from tracksync.store.tracks import UNSYNCED_MODIFIED_TIME
from tracksync.sync.engine import resolve_folder


def _owners(store):
    owners = {}
    for t in store.tracks_with_drive_id():
        owners.setdefault(t.drive_id, []).append(t.id)
    return owners


def test_initial_sync_imports_remote_and_uploads_local(engine, store, state_store, drive, session):
    drive.add_file("f1", kml("from drive"))
    local_id = store.insert_track(make_track("on device"))
    cursor_before = drive.change_id

    summary = engine.run_once(session)

    assert summary["initial"] is True
    assert summary["imported"] == 1
    assert summary["uploaded"] == 1
    assert summary["errors"] == 0
    assert summary["largest_change_id"] == cursor_before
    assert state_store.load(session.account).largest_change_id == cursor_before

    local = store.get_track(local_id)
    assert local.drive_id.startswith("new-")
    assert local.modified_time == drive.files[local.drive_id].modified_time
    assert [t.name for t in store.find_by_drive_id("f1")] == ["from drive"]
    assert drive.files[local.drive_id].title == "on device.kml"


def test_steady_state_cycles_make_no_remote_mutations(engine, store, drive, session):
    drive.add_file("f1", kml("from drive"))
    store.insert_track(make_track("on device"))
    engine.run_once(session)
    drive.calls.clear()

    second = engine.run_once(session)
    third = engine.run_once(session)

    assert drive.mutating_calls() == []
    assert second["errors"] == third["errors"] == 0
    assert second["imported"] == third["imported"] == 0
    assert len(store.list_tracks()) == 2
    assert all(len(ids) == 1 for ids in _owners(store).values())


def test_remote_edit_replaces_local_track(engine, store, drive, session):
    drive.add_file("f1", kml("v1"))
    engine.run_once(session)

    drive.edit("f1", kml("v2"))
    summary = engine.run_once(session)

    assert summary["pulled"] == 1
    linked = store.find_by_drive_id("f1")
    assert [t.name for t in linked] == ["v2"]
    assert linked[0].modified_time == drive.files["f1"].modified_time


def test_local_edit_is_pushed(engine, store, drive, session):
    drive.add_file("f1", kml("v1"))
    engine.run_once(session)
    track = store.find_by_drive_id("f1")[0]
    track.name = "renamed"
    track.modified_time = drive.files["f1"].modified_time + 5000
    store.update_track(track)

    summary = engine.run_once(session)

    assert summary["pushed"] == 1
    assert b"renamed" in drive.contents["f1"]
    assert store.get_track(track.id).modified_time == drive.files["f1"].modified_time


def test_remote_deletion_removes_local_track(engine, store, drive, session):
    drive.add_file("f1", kml("doomed"))
    engine.run_once(session)

    drive.delete("f1")
    summary = engine.run_once(session)

    assert summary["local_deleted"] == 1
    assert store.find_by_drive_id("f1") == []


def test_local_deletion_is_trashed_and_not_reimported(engine, store, state_store, drive, session):
    drive.add_file("f1", kml("doomed"))
    engine.run_once(session)
    track = store.find_by_drive_id("f1")[0]
    state_store.queue_deletion(session.account, track.drive_id)
    store.delete_track(track.id)

    summary = engine.run_once(session)

    assert ("trash_file", "f1") in drive.calls
    assert drive.files["f1"].trashed
    assert summary["trashed"] == 1
    assert summary["imported"] == 0
    assert store.list_tracks() == []
    assert state_store.load(session.account).pending_deletion_ids == set()


def test_failed_trash_is_still_dropped_from_queue(engine, state_store, drive, session):
    drive.add_file("f1", kml("x"))
    engine.run_once(session)
    state_store.queue_deletion(session.account, "f1")
    drive.errors["trash_file"] = RemoteStoreError("trash_file_failed_status_500", status=500)

    summary = engine.run_once(session)

    assert summary["flushed"] == 1
    assert summary["trashed"] == 0
    assert state_store.load(session.account).pending_deletion_ids == set()


def test_deletion_queued_for_foreign_file_does_not_trash_it(engine, state_store, drive, session):
    drive.add_file("other", kml("x"), parents=["elsewhere"])
    state_store.queue_deletion(session.account, "other")

    engine.run_once(session)

    assert not drive.files["other"].trashed
    assert ("trash_file", "other") not in drive.calls


def test_failed_cycle_keeps_state_and_records_run(engine, store, state_store, drive, session):
    drive.add_file("f1", kml("x"))
    drive.errors["get_largest_change_id"] = RemoteStoreError("changes_failed_status_503", status=503)

    summary = engine.run_once(session, run_type="test")

    assert "fatal_error" in summary
    assert state_store.load(session.account).initial
    assert store.list_tracks() == []
    last = engine.recent_runs(limit=1)[0]
    assert last["status"] == "failed"
    assert last["run_type"] == "test"
    assert json.loads(last["summary_json"])["fatal_error"] == summary["fatal_error"]


def test_duplicate_link_aborts_without_moving_cursor(engine, store, state_store, drive, session):
    drive.add_file("f1", kml("x"))
    engine.run_once(session)
    cursor = state_store.load(session.account).largest_change_id
    store.insert_track(make_track("copy", drive_id="f1", modified_time=1))
    drive.add_file("f2", kml("later"))

    summary = engine.run_once(session)

    assert summary["fatal_error"].startswith("drive_id_claimed_twice: drive_id=f1")
    assert state_store.load(session.account).largest_change_id == cursor
    assert engine.recent_runs(limit=1)[0]["status"] == "failed"


def test_truncated_initial_listing_reruns_initial_sync(engine, state_store, drive, session):
    for name in ("a", "b", "c"):
        drive.add_file(name, kml(name))
    drive.targeted_errors[("list_files", 2)] = RemoteStoreError("list_files_failed_status_500", status=500)

    first = engine.run_once(session)
    assert first["imported"] == 2
    assert state_store.load(session.account).initial

    del drive.targeted_errors[("list_files", 2)]
    second = engine.run_once(session)

    assert second["initial"] is True
    assert second["imported"] == 1
    assert not state_store.load(session.account).initial


def test_recording_track_is_not_uploaded(engine, store, drive, session):
    recording_id = store.insert_track(make_track("recording now"))
    store.recording_track_id = recording_id
    store.insert_track(make_track("finished"))

    summary = engine.run_once(session)

    assert summary["uploaded"] == 1
    assert store.get_track(recording_id).drive_id == ""
    assert [c[1] for c in drive.calls if c[0] == "create_file"] == ["finished.kml"]


def test_one_failed_upload_does_not_block_others(engine, store, drive, session):
    bad_id = store.insert_track(make_track("bad"))
    good_id = store.insert_track(make_track("good"))
    drive.targeted_errors[("create_file", "bad.kml")] = RemoteStoreError("create_file_failed_status_500", status=500)

    summary = engine.run_once(session)

    assert summary["uploaded"] == 1
    assert summary["errors"] == 1
    assert store.get_track(bad_id).drive_id == ""
    assert store.get_track(bad_id).modified_time == 100
    assert store.get_track(good_id).drive_id != ""

    del drive.targeted_errors[("create_file", "bad.kml")]
    retry = engine.run_once(session)

    assert retry["uploaded"] == 1
    assert store.get_track(bad_id).drive_id != ""


def test_unlinked_track_is_uploaded_again(engine, store, drive, session):
    drive.add_file("f1", kml("moved"))
    engine.run_once(session)
    drive.move_out("f1", record_change=False)

    summary = engine.run_once(session)

    assert summary["unlinked"] == 1
    assert summary["uploaded"] == 1
    track = store.list_tracks()[0]
    assert track.drive_id.startswith("new-")
    assert track.modified_time != UNSYNCED_MODIFIED_TIME


def test_failed_import_is_retried_next_cycle(engine, store, state_store, drive, session):
    drive.add_file("f1", kml("slow"))
    drive.errors["download_content"] = RemoteStoreError("download_failed_status_503", status=503)

    engine.run_once(session)
    assert state_store.load(session.account).pending_imports == {"f1": 1}

    del drive.errors["download_content"]
    summary = engine.run_once(session)

    assert summary["imported"] == 1
    assert [t.name for t in store.find_by_drive_id("f1")] == ["slow"]
    assert state_store.load(session.account).pending_imports == {}


def test_import_retry_gives_up_after_max_attempts(engine, store, state_store, log_sink, drive, session):
    drive.add_file("f1", kml("never"))
    drive.errors["download_content"] = RemoteStoreError("download_failed_status_503", status=503)

    engine.run_once(session)
    engine.run_once(session)
    assert state_store.load(session.account).pending_imports == {"f1": 2}

    summary = engine.run_once(session)

    assert summary["import_retry_dropped"] == 1
    assert state_store.load(session.account).pending_imports == {}
    assert "import_retry_discarded" in log_sink.messages("ERROR")
    assert store.list_tracks() == []


def test_cursor_never_moves_backwards(engine, state_store, drive, session):
    drive.add_file("f1", kml("x"))
    engine.run_once(session)
    drive.add_file("f2", kml("y"))
    engine.run_once(session)
    cursor = state_store.load(session.account).largest_change_id

    drive.errors["list_changes"] = RemoteStoreError("list_changes_failed_status_500", status=500)
    summary = engine.run_once(session)

    assert summary["errors"] == 1
    assert state_store.load(session.account).largest_change_id == cursor


def test_successful_run_is_recorded(engine, session):
    engine.run_once(session, run_type="scheduled")

    last = engine.recent_runs(limit=1)[0]
    assert last["status"] == "success"
    assert last["account"] == session.account
    assert last["finished_at"]


def test_resolve_folder_prefers_configured_id(drive):
    assert resolve_folder(drive, "My Tracks", FOLDER_ID) == FOLDER_ID
    assert drive.calls == []


def test_resolve_folder_finds_or_creates_by_title(drive):
    created = resolve_folder(drive, "My Tracks")
    found = resolve_folder(drive, "My Tracks")

    assert created == found == "folder-My Tracks"
    assert [c[0] for c in drive.calls] == ["find_folder", "create_folder", "find_folder"]


def test_linked_file_moved_out_of_folder_removes_local_track(engine, store, drive, session):
    drive.add_file("f1", kml("leaving"))
    drive.add_file("f2", kml("staying"))
    engine.run_once(session)

    drive.move_out("f1")
    drive.add_file("x1", kml("unrelated"), parents=["other-folder"])
    summary = engine.run_once(session)

    assert summary["local_deleted"] == 1
    assert summary["changes"] == 1
    assert store.find_by_drive_id("f1") == []
    assert [t.name for t in store.list_tracks()] == ["staying"]
