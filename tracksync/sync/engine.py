import json
from datetime import datetime
from typing import Dict, Optional, Set

from tracksync.codec.kml import KmlCodec
from tracksync.core.logging_setup import make_log_func
from tracksync.store.db import get_conn
from tracksync.store.state import SyncState, SyncStateStore
from tracksync.store.tracks import TrackStore

from .collector import ChangeSetCollector
from .flusher import PendingDeletionFlusher
from .reconciler import Reconciler
from .uploader import NewItemUploader

SUMMARY_COUNTERS = (
    "flushed",
    "trashed",
    "changes",
    "local_deleted",
    "pushed",
    "pulled",
    "unlinked",
    "imported",
    "import_rejected",
    "import_retry_dropped",
    "uploaded",
    "conflict_fallbacks",
    "errors",
)


def now_iso():
    return datetime.now().isoformat(timespec="seconds")


def resolve_folder(remote, folder_title: str, folder_id: str = "") -> str:
    """Id of the synced folder: the configured id, else found or created by title."""
    if folder_id:
        return folder_id
    found = remote.find_folder(folder_title)
    if found:
        return found
    return remote.create_folder(folder_title)


class SyncEngine:
    """Runs sync cycles between the local track store and one remote folder.

    Phases per cycle: flush pending deletions, collect changes (full listing
    on the first cycle), reconcile, upload unsynced tracks, commit state.
    The cursor and pending sets are only written after every phase ran.

    Cycles for the same account must not overlap; the caller schedules them.
    """

    def __init__(self, cfg: dict, db_path: str, log_func=None, codec=None):
        self.cfg = cfg
        self.db_path = db_path
        self.log_func = log_func or make_log_func()

        sync_cfg = cfg.get("sync", {})
        self.max_workers = int(sync_cfg.get("max_workers", 4))
        self.max_import_retry = int(sync_cfg.get("max_import_retry", 5))

        self.store = TrackStore(db_path)
        self.state_store = SyncStateStore(db_path)
        self.codec = codec or KmlCodec(self.store)

        self.flusher = PendingDeletionFlusher(self.log_func)
        self.collector = ChangeSetCollector(self.log_func, max_workers=self.max_workers)
        self.reconciler = Reconciler(self.store, self.codec, self.log_func)
        self.uploader = NewItemUploader(self.store, self.codec, self.log_func, max_workers=self.max_workers)

    def _log(self, level: str, module: str, message: str, detail: Optional[str] = None):
        self.log_func(level, module, message, detail)

    def _db(self):
        return get_conn(self.db_path)

    def _insert_sync_run(self, account: str, run_type: str):
        conn = self._db()
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO sync_runs(account,run_type,status,started_at,summary_json) VALUES (?,?,?,?,?)",
            (account, run_type, "running", now_iso(), "{}"),
        )
        rid = cur.lastrowid
        conn.commit()
        conn.close()
        return rid

    def _finish_sync_run(self, run_id: int, status: str, summary: dict):
        conn = self._db()
        conn.execute(
            "UPDATE sync_runs SET status=?, finished_at=?, summary_json=? WHERE id=?",
            (status, now_iso(), json.dumps(summary, ensure_ascii=False), run_id),
        )
        conn.commit()
        conn.close()

    def recent_runs(self, limit: int = 10):
        conn = self._db()
        rows = conn.execute("SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (int(limit),)).fetchall()
        conn.close()
        return [dict(r) for r in rows]

    def _next_pending_imports(
        self,
        previous: Dict[str, int],
        failed: Set[str],
        deferred: Set[str],
        summary: dict,
    ) -> Dict[str, int]:
        pending: Dict[str, int] = {}
        for remote_id in deferred:
            pending[remote_id] = previous.get(remote_id, 0)
        for remote_id in failed:
            attempts = previous.get(remote_id, 0) + 1
            if attempts > self.max_import_retry:
                summary["import_retry_dropped"] += 1
                self._log("ERROR", "sync", "import_retry_discarded", json.dumps({"remote_id": remote_id, "attempts": attempts}))
                continue
            pending[remote_id] = attempts
        return pending

    def run_once(self, session, run_type: str = "manual"):
        run_id = self._insert_sync_run(session.account, run_type)
        summary = {
            "account": session.account,
            "run_type": run_type,
            "folder_id": session.folder_id,
            "initial": False,
            "largest_change_id": None,
            **{k: 0 for k in SUMMARY_COUNTERS},
        }

        try:
            state = self.state_store.load(session.account)
            summary["initial"] = state.initial
            summary["largest_change_id"] = state.largest_change_id

            flushed = self.flusher.flush(session, state.pending_deletion_ids, summary)

            linked = self.store.tracks_with_drive_id()
            if state.initial:
                change_set, cursor = self.collector.collect_initial(session, summary)
            else:
                change_set, cursor = self.collector.collect(
                    session,
                    state.largest_change_id,
                    summary,
                    linked_ids={t.drive_id for t in linked},
                )
            deferred = self.collector.collect_retries(session, change_set, state.pending_imports, summary)
            summary["changes"] = len(change_set)

            failed_imports = self.reconciler.reconcile(session, linked, change_set, summary)

            self.uploader.upload(session, summary)

            committed = self.state_store.commit(
                session.account,
                SyncState(
                    largest_change_id=cursor,
                    pending_deletion_ids=state.pending_deletion_ids - flushed,
                    pending_imports=self._next_pending_imports(state.pending_imports, failed_imports, deferred, summary),
                ),
                flushed_ids=flushed,
            )
            summary["largest_change_id"] = committed.largest_change_id

            self._finish_sync_run(run_id, "success", summary)
            self._log("INFO", "sync", "run_success", json.dumps(summary, ensure_ascii=False))
            return summary

        except Exception as e:
            summary["errors"] += 1
            summary["fatal_error"] = str(e)
            self._finish_sync_run(run_id, "failed", summary)
            self._log("ERROR", "sync", "run_failed", json.dumps(summary, ensure_ascii=False))
            return summary
