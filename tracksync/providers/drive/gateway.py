"""Contract the sync engine needs from a remote file store.

`DriveClient` implements it against Google Drive; tests use an in-memory fake.
Every method raises `RemoteStoreError` on failure, except `get_file` which
returns None when the file does not exist.
"""

from __future__ import annotations

from typing import Optional, Protocol

from tracksync.sync.models import KML_MIME_TYPE, ChangePage, FilePage, RemoteFile


def kml_files_query(folder_id: str) -> str:
    return f"'{folder_id}' in parents and mimeType = '{KML_MIME_TYPE}' and trashed = false"


class RemoteStore(Protocol):
    def list_files(self, query: str, page_token: Optional[str] = None) -> FilePage: ...

    def list_changes(self, start_change_id: int, page_token: Optional[str] = None) -> ChangePage: ...

    def get_file(self, file_id: str) -> Optional[RemoteFile]: ...

    def trash_file(self, file_id: str) -> None: ...

    def create_file(self, metadata: dict, content: bytes) -> RemoteFile: ...

    def update_file(self, file_id: str, metadata: dict, content: bytes) -> RemoteFile: ...

    def download_content(self, locator: str) -> bytes: ...

    def get_largest_change_id(self) -> int: ...

    def find_folder(self, title: str) -> Optional[str]: ...

    def create_folder(self, title: str) -> str: ...
