from __future__ import annotations

import json
from typing import Iterable, Set

from tracksync.core.errors import RemoteStoreError

from .models import SyncSession, is_valid_for_folder


class PendingDeletionFlusher:
    """Trash remote files whose tracks were deleted locally.

    Runs before the change feed is read, so a trashed id shows up in this
    cycle's feed as a deletion instead of being reimported. Every id is
    dropped from the queue afterwards, successful or not.
    """

    def __init__(self, log_func):
        self.log_func = log_func

    def flush(self, session: SyncSession, pending_ids: Iterable[str], summary: dict) -> Set[str]:
        handled: Set[str] = set()
        for remote_id in sorted(set(pending_ids)):
            try:
                remote = session.remote.get_file(remote_id)
                if is_valid_for_folder(remote, session.folder_id):
                    session.remote.trash_file(remote_id)
                    summary["trashed"] += 1
            except RemoteStoreError as e:
                summary["errors"] += 1
                self.log_func(
                    "WARN",
                    "flusher",
                    "remote_trash_failed",
                    json.dumps({"remote_id": remote_id, "error": str(e)}, ensure_ascii=False),
                )
            handled.add(remote_id)
        summary["flushed"] += len(handled)
        return handled
