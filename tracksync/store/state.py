from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Set

from .db import get_conn


@dataclass
class SyncState:
    # None until the first full sync has committed.
    largest_change_id: Optional[int] = None
    pending_deletion_ids: Set[str] = field(default_factory=set)
    # remote id -> failed import attempts so far
    pending_imports: Dict[str, int] = field(default_factory=dict)

    @property
    def initial(self) -> bool:
        return self.largest_change_id is None


def _load_json(text: Optional[str], default):
    if not text:
        return default
    try:
        value = json.loads(text)
    except ValueError:
        return default
    return value if isinstance(value, type(default)) else default


class SyncStateStore:
    """Per-account cursor and pending-deletion bookkeeping.

    Read once at cycle start, written once after the cycle finished every
    phase. Pending deletions may be queued at any time; a commit only removes
    the ids that cycle actually flushed.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _db(self):
        return get_conn(self.db_path)

    @staticmethod
    def _ensure_row(conn, account: str):
        conn.execute("INSERT OR IGNORE INTO sync_state(account) VALUES (?)", (account,))

    def load(self, account: str) -> SyncState:
        conn = self._db()
        row = conn.execute("SELECT * FROM sync_state WHERE account=?", (account,)).fetchone()
        conn.close()
        if not row:
            return SyncState()
        pending_imports = _load_json(row["pending_imports_json"], {})
        return SyncState(
            largest_change_id=row["largest_change_id"],
            pending_deletion_ids=set(_load_json(row["pending_deletions_json"], [])),
            pending_imports={str(k): int(v) for k, v in pending_imports.items()},
        )

    def commit(self, account: str, state: SyncState, flushed_ids: Iterable[str] = ()) -> SyncState:
        conn = self._db()
        try:
            conn.execute("BEGIN IMMEDIATE")
            self._ensure_row(conn, account)
            row = conn.execute("SELECT * FROM sync_state WHERE account=?", (account,)).fetchone()

            cursor = state.largest_change_id
            persisted = row["largest_change_id"]
            if persisted is not None and (cursor is None or cursor < persisted):
                cursor = persisted

            pending = set(_load_json(row["pending_deletions_json"], [])) - set(flushed_ids)

            conn.execute(
                """
                UPDATE sync_state
                   SET largest_change_id=?, pending_deletions_json=?, pending_imports_json=?,
                       updated_at=CURRENT_TIMESTAMP
                 WHERE account=?
                """,
                (cursor, json.dumps(sorted(pending)), json.dumps(state.pending_imports, sort_keys=True), account),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return SyncState(cursor, pending, dict(state.pending_imports))

    def queue_deletion(self, account: str, drive_id: str):
        if not drive_id:
            return
        conn = self._db()
        try:
            conn.execute("BEGIN IMMEDIATE")
            self._ensure_row(conn, account)
            row = conn.execute(
                "SELECT pending_deletions_json FROM sync_state WHERE account=?", (account,)
            ).fetchone()
            pending = set(_load_json(row["pending_deletions_json"], []))
            pending.add(drive_id)
            conn.execute(
                "UPDATE sync_state SET pending_deletions_json=?, updated_at=CURRENT_TIMESTAMP WHERE account=?",
                (json.dumps(sorted(pending)), account),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def reset(self, account: str):
        """Forget the cursor so the next cycle runs a full initial sync."""
        conn = self._db()
        self._ensure_row(conn, account)
        conn.execute(
            """
            UPDATE sync_state
               SET largest_change_id=NULL, pending_imports_json='{}', updated_at=CURRENT_TIMESTAMP
             WHERE account=?
            """,
            (account,),
        )
        conn.commit()
        conn.close()
