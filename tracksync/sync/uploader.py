from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple

from tracksync.core.errors import RemoteStoreError
from tracksync.store.tracks import Track, TrackStore

from .models import RemoteFile, SyncSession
from .reconciler import file_metadata


class NewItemUploader:
    """Create remote files for tracks that have none yet.

    A failed upload leaves the track unsynced; the next cycle picks it up
    again. The track being recorded right now is never uploaded.
    """

    def __init__(self, store: TrackStore, codec, log_func, max_workers: int = 1):
        self.store = store
        self.codec = codec
        self.log_func = log_func
        self.max_workers = max(1, int(max_workers))

    def _log(self, level: str, message: str, detail: dict):
        self.log_func(level, "uploader", message, json.dumps(detail, ensure_ascii=False))

    def candidates(self) -> List[Track]:
        recording_id = self.store.recording_track_id
        return [t for t in self.store.tracks_without_drive_id() if t.id != recording_id]

    def _create(self, session: SyncSession, track: Track) -> Tuple[Track, Optional[RemoteFile], Optional[str]]:
        try:
            content = self.codec.encode(track)
            created = session.remote.create_file(
                file_metadata(self.codec.file_title(track), session.folder_id),
                content,
            )
        except RemoteStoreError as e:
            return track, None, str(e)
        return track, created, None

    def upload(self, session: SyncSession, summary: dict):
        tracks = self.candidates()
        if not tracks:
            return

        if self.max_workers == 1 or len(tracks) == 1:
            results = [self._create(session, t) for t in tracks]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                results = list(pool.map(lambda t: self._create(session, t), tracks))

        # Store writes stay on this thread.
        for track, created, error in results:
            if created is None:
                summary["errors"] += 1
                self._log("WARN", "upload_failed", {"track_id": track.id, "error": error})
                continue
            track.drive_id = created.id
            track.modified_time = created.modified_time
            self.store.update_track(track)
            summary["uploaded"] += 1
            self._log("INFO", "uploaded", {"track_id": track.id, "drive_id": created.id})
