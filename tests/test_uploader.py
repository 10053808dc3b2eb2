from fakes import make_track
from tracksync.core.errors import RemoteStoreError
from tracksync.sync.engine import SyncEngine
from tracksync.sync.uploader import NewItemUploader


def test_parallel_upload_links_each_track_once(store, codec, log_sink, drive, session, summary):
    ids = [store.insert_track(make_track(f"track {n}")) for n in range(6)]

    NewItemUploader(store, codec, log_sink, max_workers=4).upload(session, summary)

    assert summary["uploaded"] == 6
    drive_ids = [store.get_track(i).drive_id for i in ids]
    assert all(drive_ids)
    assert len(set(drive_ids)) == 6
    assert sorted(drive_ids) == sorted(f.id for f in drive.folder_files())
    for track_id, drive_id in zip(ids, drive_ids):
        assert store.get_track(track_id).modified_time == drive.files[drive_id].modified_time


def test_parallel_upload_failure_only_affects_that_track(store, codec, log_sink, drive, session, summary):
    ids = {n: store.insert_track(make_track(f"track {n}")) for n in range(5)}
    drive.targeted_errors[("create_file", "track 2.kml")] = RemoteStoreError("create_file_failed_status_500", status=500)

    NewItemUploader(store, codec, log_sink, max_workers=4).upload(session, summary)

    assert summary["uploaded"] == 4
    assert summary["errors"] == 1
    assert [t.id for t in store.tracks_without_drive_id()] == [ids[2]]
    assert "upload_failed" in log_sink.messages("WARN")


def test_engine_with_default_workers_uploads_everything(db_path, log_sink, drive, session):
    engine = SyncEngine(cfg={}, db_path=db_path, log_func=log_sink)
    for n in range(5):
        engine.store.insert_track(make_track(f"track {n}"))

    summary = engine.run_once(session)

    assert engine.uploader.max_workers == 4
    assert summary["uploaded"] == 5
    assert engine.store.tracks_without_drive_id() == []
    assert len(drive.folder_files()) == 5
