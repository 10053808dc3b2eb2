from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Tuple

if TYPE_CHECKING:
    from tracksync.providers.drive.gateway import RemoteStore

KML_MIME_TYPE = "application/vnd.google-earth.kml+xml"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"


def parse_drive_time(value) -> int:
    """Epoch milliseconds from an RFC 3339 string or a numeric epoch (s or ms)."""
    if value is None or value == "":
        return 0
    if isinstance(value, (int, float)):
        num = float(value)
    else:
        text = str(value).strip()
        try:
            num = float(text)
        except ValueError:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(round(dt.timestamp() * 1000))
    # Anything below 1e11 is seconds; 1e11 ms is already 1973.
    return int(num * 1000) if num < 1e11 else int(num)


@dataclass
class RemoteFile:
    id: str
    title: str = ""
    parents: List[str] = field(default_factory=list)
    modified_time: int = 0
    trashed: bool = False
    download_url: str = ""
    mime_type: str = KML_MIME_TYPE

    def in_folder(self, folder_id: str) -> bool:
        return folder_id in self.parents

    @classmethod
    def from_api(cls, item: dict) -> "RemoteFile":
        """Build from a Drive v2 `files` resource."""
        parents = []
        for p in item.get("parents") or []:
            if isinstance(p, dict) and p.get("id"):
                parents.append(str(p["id"]))
            elif isinstance(p, str):
                parents.append(p)
        labels = item.get("labels") or {}
        return cls(
            id=str(item.get("id") or ""),
            title=item.get("title") or "",
            parents=parents,
            modified_time=parse_drive_time(item.get("modifiedDate")),
            trashed=bool(labels.get("trashed") or item.get("explicitlyTrashed")),
            download_url=item.get("downloadUrl") or "",
            mime_type=item.get("mimeType") or "",
        )


def is_valid_for_folder(remote: Optional[RemoteFile], folder_id: str) -> bool:
    """A remote file the local replica should mirror: a KML file in the folder, not trashed."""
    return (
        remote is not None
        and not remote.trashed
        and remote.in_folder(folder_id)
        and remote.mime_type == KML_MIME_TYPE
    )


@dataclass
class ChangeEvent:
    change_id: int
    file_id: str
    deleted: bool = False
    file: Optional[RemoteFile] = None


@dataclass
class ChangePage:
    events: List[ChangeEvent]
    next_page_token: Optional[str]
    largest_change_id: int


@dataclass
class FilePage:
    files: List[RemoteFile]
    next_page_token: Optional[str]


class ChangeSet:
    """Remote id -> snapshot, or None for a tombstone. Later writes win."""

    def __init__(self):
        self._entries: Dict[str, Optional[RemoteFile]] = {}

    def put(self, remote: RemoteFile):
        self._entries[remote.id] = remote

    def put_tombstone(self, remote_id: str):
        self._entries[remote_id] = None

    def __contains__(self, remote_id: str) -> bool:
        return remote_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, remote_id: str) -> Optional[RemoteFile]:
        return self._entries.get(remote_id)

    def is_tombstone(self, remote_id: str) -> bool:
        return remote_id in self._entries and self._entries[remote_id] is None

    def claim(self, remote_id: str) -> Tuple[bool, Optional[RemoteFile]]:
        """Remove an entry; returns (was_present, snapshot_or_None)."""
        if remote_id not in self._entries:
            return False, None
        return True, self._entries.pop(remote_id)

    def remaining(self) -> Iterator[Tuple[str, Optional[RemoteFile]]]:
        return iter(list(self._entries.items()))

    def snapshots(self) -> List[RemoteFile]:
        return [r for r in self._entries.values() if r is not None]

    def tombstones(self) -> List[str]:
        return [k for k, v in self._entries.items() if v is None]

    def as_dict(self) -> Dict[str, Optional[RemoteFile]]:
        return dict(self._entries)


@dataclass
class SyncSession:
    """Everything one cycle needs to talk to one account's remote folder."""

    account: str
    remote: "RemoteStore"
    folder_id: str
