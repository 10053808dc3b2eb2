from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .db import get_conn

# modified_time of a track that is not (or no longer) linked to a remote file.
UNSYNCED_MODIFIED_TIME = -1

RECORDING_TRACK_KEY = "recording_track_id"


@dataclass
class TrackPoint:
    latitude: float
    longitude: float
    altitude: Optional[float] = None


@dataclass
class Track:
    id: Optional[int] = None
    name: str = ""
    description: str = ""
    category: str = ""
    drive_id: str = ""
    modified_time: int = UNSYNCED_MODIFIED_TIME
    points: List[TrackPoint] = field(default_factory=list)

    @classmethod
    def from_row(cls, row) -> "Track":
        return cls(
            id=row["id"],
            name=row["name"] or "",
            description=row["description"] or "",
            category=row["category"] or "",
            drive_id=row["drive_id"] or "",
            modified_time=int(row["modified_time"]),
        )


class TrackStore:
    """SQLite-backed local track store.

    Enumerations return tracks without their points; use `get_track` or
    `points` when the content is needed.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _db(self):
        return get_conn(self.db_path)

    def _select(self, where: str = "", params: tuple = ()) -> List[Track]:
        conn = self._db()
        rows = conn.execute(f"SELECT * FROM tracks {where} ORDER BY id", params).fetchall()
        conn.close()
        return [Track.from_row(r) for r in rows]

    def list_tracks(self) -> List[Track]:
        return self._select()

    def tracks_with_drive_id(self) -> List[Track]:
        return self._select("WHERE drive_id != ''")

    def tracks_without_drive_id(self) -> List[Track]:
        return self._select("WHERE drive_id = ''")

    def find_by_drive_id(self, drive_id: str) -> List[Track]:
        if not drive_id:
            return []
        return self._select("WHERE drive_id = ?", (drive_id,))

    def points(self, track_id: int) -> List[TrackPoint]:
        conn = self._db()
        rows = conn.execute(
            "SELECT latitude, longitude, altitude FROM track_points WHERE track_id=? ORDER BY seq",
            (track_id,),
        ).fetchall()
        conn.close()
        return [TrackPoint(r["latitude"], r["longitude"], r["altitude"]) for r in rows]

    def get_track(self, track_id: int) -> Optional[Track]:
        conn = self._db()
        row = conn.execute("SELECT * FROM tracks WHERE id=?", (track_id,)).fetchone()
        conn.close()
        if not row:
            return None
        track = Track.from_row(row)
        track.points = self.points(track_id)
        return track

    @staticmethod
    def _insert(cur, track: Track) -> int:
        cur.execute(
            "INSERT INTO tracks(name,description,category,drive_id,modified_time) VALUES (?,?,?,?,?)",
            (track.name, track.description, track.category, track.drive_id, int(track.modified_time)),
        )
        track_id = cur.lastrowid
        TrackStore._write_points(cur, track_id, track.points)
        return track_id

    def insert_track(self, track: Track) -> int:
        conn = self._db()
        try:
            track_id = self._insert(conn.cursor(), track)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        track.id = track_id
        return track_id

    def update_track(self, track: Track):
        """Write track metadata. Points are left alone."""
        if track.id is None:
            raise ValueError("update_track requires a stored track")
        conn = self._db()
        conn.execute(
            """
            UPDATE tracks
               SET name=?, description=?, category=?, drive_id=?, modified_time=?
             WHERE id=?
            """,
            (track.name, track.description, track.category, track.drive_id, int(track.modified_time), track.id),
        )
        conn.commit()
        conn.close()

    def replace_linked_track(self, old_id: int, track: Track) -> int:
        """Insert `track` (already carrying its drive_id) and drop `old_id` in one transaction.

        An interrupted pull leaves either the old track or the new one linked,
        never both and never an unlinked copy.
        """
        conn = self._db()
        try:
            cur = conn.cursor()
            cur.execute("DELETE FROM tracks WHERE id=?", (old_id,))
            track_id = self._insert(cur, track)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        track.id = track_id
        return track_id

    def delete_track(self, track_id: int):
        conn = self._db()
        conn.execute("DELETE FROM tracks WHERE id=?", (track_id,))
        conn.commit()
        conn.close()

    @staticmethod
    def _write_points(cur, track_id: int, points: Iterable[TrackPoint]):
        cur.executemany(
            "INSERT INTO track_points(track_id,seq,latitude,longitude,altitude) VALUES (?,?,?,?,?)",
            [(track_id, seq, p.latitude, p.longitude, p.altitude) for seq, p in enumerate(points)],
        )

    def get_setting(self, key: str) -> Optional[str]:
        conn = self._db()
        row = conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
        conn.close()
        return row["value"] if row else None

    def set_setting(self, key: str, value: Optional[str]):
        conn = self._db()
        if value is None:
            conn.execute("DELETE FROM settings WHERE key=?", (key,))
        else:
            conn.execute(
                """
                INSERT INTO settings(key,value) VALUES (?,?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=CURRENT_TIMESTAMP
                """,
                (key, value),
            )
        conn.commit()
        conn.close()

    @property
    def recording_track_id(self) -> Optional[int]:
        """Id of the track currently being recorded, which must not be uploaded."""
        value = self.get_setting(RECORDING_TRACK_KEY)
        try:
            return int(value) if value else None
        except ValueError:
            return None

    @recording_track_id.setter
    def recording_track_id(self, track_id: Optional[int]):
        self.set_setting(RECORDING_TRACK_KEY, str(track_id) if track_id is not None else None)
