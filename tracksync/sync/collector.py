from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from typing import AbstractSet, Dict, List, Optional, Set, Tuple

from tracksync.core.errors import RemoteStoreError
from tracksync.providers.drive.gateway import kml_files_query

from .models import ChangeEvent, ChangeSet, RemoteFile, SyncSession, is_valid_for_folder


class ChangeSetCollector:
    """Builds the cycle's ChangeSet from the remote change feed or a full listing.

    The returned cursor never moves past the last page whose events were all
    resolved, so a truncated feed is re-delivered from that point next cycle.
    """

    def __init__(self, log_func, max_workers: int = 1):
        self.log_func = log_func
        self.max_workers = max(1, int(max_workers))

    def _log(self, level: str, message: str, detail: Optional[dict] = None):
        self.log_func(level, "collector", message, json.dumps(detail, ensure_ascii=False) if detail else None)

    def _fetch_snapshot(self, session: SyncSession, event: ChangeEvent) -> Tuple[ChangeEvent, Optional[RemoteFile], Optional[str]]:
        if event.deleted or event.file is not None:
            return event, event.file, None
        try:
            return event, session.remote.get_file(event.file_id), None
        except RemoteStoreError as e:
            return event, None, str(e)

    def _resolve_page(self, session: SyncSession, events: List[ChangeEvent]):
        if self.max_workers == 1 or len(events) <= 1:
            return [self._fetch_snapshot(session, ev) for ev in events]
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            # map keeps feed order, which the fold below relies on.
            return list(pool.map(lambda ev: self._fetch_snapshot(session, ev), events))

    def _fold(
        self,
        change_set: ChangeSet,
        folder_id: str,
        event: ChangeEvent,
        snapshot: Optional[RemoteFile],
        linked_ids: AbstractSet[str],
    ):
        if event.deleted:
            change_set.put_tombstone(event.file_id)
        elif is_valid_for_folder(snapshot, folder_id):
            change_set.put(snapshot)
        elif (
            event.file_id in linked_ids
            or event.file_id in change_set
            or (snapshot is not None and snapshot.in_folder(folder_id))
        ):
            # Moved out of the folder, trashed or gone: same as deleted for us.
            change_set.put_tombstone(event.file_id)
        # Anything else is a change elsewhere in the Drive.

    def collect(
        self,
        session: SyncSession,
        since_change_id: int,
        summary: dict,
        linked_ids: AbstractSet[str] = frozenset(),
    ) -> Tuple[ChangeSet, int]:
        """Fold the change feed after `since_change_id`.

        `linked_ids` are remote ids local tracks point at; a change moving one of
        them out of the folder still yields a tombstone.
        """
        change_set = ChangeSet()
        cursor = int(since_change_id)
        page_token: Optional[str] = None
        pages = 0

        while True:
            try:
                page = session.remote.list_changes(int(since_change_id) + 1, page_token)
            except RemoteStoreError as e:
                summary["errors"] += 1
                self._log("WARN", "change_page_failed", {"page": pages + 1, "cursor": cursor, "error": str(e)})
                break
            pages += 1

            failed = []
            for event, snapshot, error in self._resolve_page(session, page.events):
                if error is not None:
                    failed.append({"file_id": event.file_id, "change_id": event.change_id, "error": error})
                    continue
                self._fold(change_set, session.folder_id, event, snapshot, linked_ids)

            if failed:
                summary["errors"] += len(failed)
                self._log("WARN", "change_snapshot_failed", {"page": pages, "cursor": cursor, "failed": failed})
                break

            for event in page.events:
                cursor = max(cursor, event.change_id)

            page_token = page.next_page_token
            if not page_token:
                cursor = max(cursor, page.largest_change_id)
                break

        self._log(
            "INFO",
            "changes_collected",
            {"since": since_change_id, "cursor": cursor, "pages": pages, "entries": len(change_set)},
        )
        return change_set, cursor

    def collect_initial(self, session: SyncSession, summary: dict) -> Tuple[ChangeSet, Optional[int]]:
        """Full listing of the folder; cursor is None when the listing was cut short."""
        # Taken before listing so changes landing between pages are replayed later.
        largest_change_id = session.remote.get_largest_change_id()

        change_set = ChangeSet()
        query = kml_files_query(session.folder_id)
        page_token: Optional[str] = None
        complete = False
        pages = 0

        while True:
            try:
                page = session.remote.list_files(query, page_token)
            except RemoteStoreError as e:
                summary["errors"] += 1
                self._log("WARN", "file_page_failed", {"page": pages + 1, "error": str(e)})
                break
            pages += 1
            for remote in page.files:
                if is_valid_for_folder(remote, session.folder_id):
                    change_set.put(remote)
            page_token = page.next_page_token
            if not page_token:
                complete = True
                break

        cursor = largest_change_id if complete else None
        self._log(
            "INFO",
            "initial_listing_collected",
            {"cursor": cursor, "pages": pages, "entries": len(change_set), "complete": complete},
        )
        return change_set, cursor

    def collect_retries(
        self,
        session: SyncSession,
        change_set: ChangeSet,
        pending_imports: Dict[str, int],
        summary: dict,
    ) -> Set[str]:
        """Fold files whose import failed earlier back in; returns ids that could not be checked."""
        deferred: Set[str] = set()
        for remote_id in sorted(pending_imports):
            if remote_id in change_set:
                continue
            try:
                remote = session.remote.get_file(remote_id)
            except RemoteStoreError as e:
                deferred.add(remote_id)
                summary["errors"] += 1
                self._log("WARN", "import_retry_lookup_failed", {"remote_id": remote_id, "error": str(e)})
                continue
            if is_valid_for_folder(remote, session.folder_id):
                change_set.put(remote)
        return deferred
