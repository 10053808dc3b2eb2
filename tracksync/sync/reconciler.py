from __future__ import annotations

import json
from typing import Dict, Iterable, Optional, Set

from tracksync.core.errors import DuplicateRemoteLinkError, RemoteStoreError
from tracksync.store.tracks import UNSYNCED_MODIFIED_TIME, Track, TrackStore

from .models import KML_MIME_TYPE, ChangeSet, RemoteFile, SyncSession, is_valid_for_folder


class LinkIndex:
    """Who owns which remote file during one reconcile pass.

    Two lookups instead of tracks holding remote objects: local id -> remote
    id and remote id -> local id. A released id stays recorded as handled, so
    a second track claiming it later in the same pass is still caught.
    """

    def __init__(self):
        self.by_local: Dict[int, str] = {}
        self.by_remote: Dict[str, int] = {}
        # remote id -> track that held it before it was deleted or unlinked
        self.handled: Dict[str, int] = {}

    def claim(self, track_id: int, drive_id: str):
        owner = self.by_remote.get(drive_id, self.handled.get(drive_id))
        if owner is not None and owner != track_id:
            raise DuplicateRemoteLinkError(drive_id, owner, track_id)
        self.by_remote[drive_id] = track_id
        self.by_local[track_id] = drive_id

    def release(self, track_id: int):
        drive_id = self.by_local.pop(track_id, None)
        if drive_id is not None and self.by_remote.get(drive_id) == track_id:
            del self.by_remote[drive_id]
            self.handled[drive_id] = track_id

    def transfer(self, old_id: int, new_id: int):
        """Move ownership to the track that replaced `old_id`."""
        drive_id = self.by_local.pop(old_id)
        self.by_remote[drive_id] = new_id
        self.by_local[new_id] = drive_id

    def owner(self, drive_id: str) -> Optional[int]:
        return self.by_remote.get(drive_id)


def file_metadata(title: str, folder_id: str) -> dict:
    return {"title": title, "mimeType": KML_MIME_TYPE, "parents": [{"id": folder_id}]}


class Reconciler:
    def __init__(self, store: TrackStore, codec, log_func):
        self.store = store
        self.codec = codec
        self.log_func = log_func

    def _log(self, level: str, message: str, detail: Optional[dict] = None):
        self.log_func(level, "reconcile", message, json.dumps(detail, ensure_ascii=False) if detail else None)

    def reconcile(
        self,
        session: SyncSession,
        tracks: Iterable[Track],
        change_set: ChangeSet,
        summary: dict,
    ) -> Set[str]:
        """Apply the change set to the linked tracks, then import what is left.

        Returns the remote ids whose import failed on a transient error.
        """
        index = LinkIndex()

        for track in tracks:
            if not track.drive_id:
                continue
            index.claim(track.id, track.drive_id)
            present, remote = change_set.claim(track.drive_id)

            if present and remote is None:
                self.store.delete_track(track.id)
                index.release(track.id)
                summary["local_deleted"] += 1
                self._log("INFO", "local_deleted", {"track_id": track.id, "drive_id": track.drive_id})
                continue

            if not present:
                try:
                    remote = session.remote.get_file(track.drive_id)
                except RemoteStoreError as e:
                    summary["errors"] += 1
                    self._log("WARN", "remote_lookup_failed", {"track_id": track.id, "drive_id": track.drive_id, "error": str(e)})
                    continue
                if not is_valid_for_folder(remote, session.folder_id):
                    self._unlink(track, index, summary)
                    continue

            self.merge(session, track, remote, index, summary)

        return self.import_new_files(session, change_set, index, summary)

    def _unlink(self, track: Track, index: LinkIndex, summary: dict):
        # Remote file left the folder without the feed telling us; the track
        # becomes unsynced and is uploaded again as a new file.
        drive_id = track.drive_id
        track.drive_id = ""
        track.modified_time = UNSYNCED_MODIFIED_TIME
        self.store.update_track(track)
        index.release(track.id)
        summary["unlinked"] += 1
        self._log("INFO", "track_unlinked", {"track_id": track.id, "drive_id": drive_id})

    def _stamp(self, track: Track, remote: RemoteFile, summary: dict, reason: str):
        track.modified_time = remote.modified_time
        self.store.update_track(track)
        summary["conflict_fallbacks"] += 1
        self._log("WARN", "conflict_fallback", {"track_id": track.id, "drive_id": remote.id, "reason": reason})

    def merge(self, session: SyncSession, track: Track, remote: RemoteFile, index: LinkIndex, summary: dict):
        if track.modified_time > remote.modified_time:
            self._push(session, track, remote, summary)
        elif track.modified_time < remote.modified_time:
            self._pull(session, track, remote, index, summary)

    def _push(self, session: SyncSession, track: Track, remote: RemoteFile, summary: dict):
        try:
            content = self.codec.encode(track)
            updated = session.remote.update_file(
                remote.id,
                file_metadata(self.codec.file_title(track), session.folder_id),
                content,
            )
        except RemoteStoreError as e:
            summary["errors"] += 1
            self._log("WARN", "remote_update_failed", {"track_id": track.id, "drive_id": remote.id, "error": str(e)})
            # Known lossy fallback: the local edit loses to the remote copy
            # rather than being retried forever.
            self._stamp(track, remote, summary, "update_failed")
            return

        track.modified_time = updated.modified_time
        self.store.update_track(track)
        summary["pushed"] += 1
        self._log("INFO", "remote_updated", {"track_id": track.id, "drive_id": remote.id, "modified_time": updated.modified_time})

    def _pull(self, session: SyncSession, track: Track, remote: RemoteFile, index: LinkIndex, summary: dict):
        try:
            content = session.remote.download_content(remote.download_url)
        except RemoteStoreError as e:
            summary["errors"] += 1
            self._log("WARN", "download_failed", {"track_id": track.id, "drive_id": remote.id, "error": str(e)})
            self._stamp(track, remote, summary, "download_failed")
            return

        parsed = self.codec.parse(content)
        if len(parsed) != 1:
            # Not a usable single-track file; keep the local copy.
            self._stamp(track, remote, summary, f"decoded_{len(parsed)}_tracks")
            return

        replacement = parsed[0]
        replacement.drive_id = remote.id
        replacement.modified_time = remote.modified_time
        new_id = self.store.replace_linked_track(track.id, replacement)
        index.transfer(track.id, new_id)
        summary["pulled"] += 1
        self._log("INFO", "local_replaced", {"old_track_id": track.id, "track_id": new_id, "drive_id": remote.id})

    def import_new_files(self, session: SyncSession, change_set: ChangeSet, index: LinkIndex, summary: dict) -> Set[str]:
        failed: Set[str] = set()
        for remote_id, remote in change_set.remaining():
            change_set.claim(remote_id)
            if remote is None:
                # Deleted before we ever had it.
                continue
            if index.owner(remote_id) is not None:
                raise DuplicateRemoteLinkError(remote_id, index.owner(remote_id), -1)

            try:
                content = session.remote.download_content(remote.download_url)
            except RemoteStoreError as e:
                failed.add(remote_id)
                summary["errors"] += 1
                self._log("WARN", "import_download_failed", {"drive_id": remote_id, "error": str(e)})
                continue

            parsed = self.codec.parse(content)
            if len(parsed) != 1:
                summary["import_rejected"] += 1
                self._log("WARN", "import_rejected", {"drive_id": remote_id, "decoded": len(parsed)})
                continue

            track = parsed[0]
            track.drive_id = remote_id
            track.modified_time = remote.modified_time
            self.store.insert_track(track)
            index.claim(track.id, remote_id)
            summary["imported"] += 1
            self._log("INFO", "remote_imported", {"drive_id": remote_id, "track_id": track.id, "name": track.name})
        return failed
