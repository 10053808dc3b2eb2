import json
import uuid
from pathlib import Path
from typing import Any, Optional

import requests

from tracksync.core.errors import RemoteStoreError
from tracksync.sync.models import FOLDER_MIME_TYPE, ChangeEvent, ChangePage, FilePage, RemoteFile

BASE = "https://www.googleapis.com/drive/v2"
UPLOAD_BASE = "https://www.googleapis.com/upload/drive/v2"


class DriveClient:
    """Drive v2 REST client implementing the `RemoteStore` contract.

    The bearer token is read from `token_file` on every call; obtaining and
    refreshing it belongs to whoever writes that file.
    """

    def __init__(self, token_file: str, timeout: int = 30, page_size: int = 100):
        self.token_file = token_file or ""
        self.timeout = timeout
        self.page_size = page_size

    def _access_token(self) -> str:
        if not self.token_file:
            raise RemoteStoreError("token_file_not_configured")
        p = Path(self.token_file).expanduser()
        if not p.exists():
            raise RemoteStoreError(f"token_file_missing: {p}")
        try:
            payload = json.loads(p.read_text(encoding="utf-8"))
        except ValueError as e:
            raise RemoteStoreError(f"token_file_invalid: {e}") from e
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token:
            raise RemoteStoreError("no_token")
        return token

    def _auth_headers(self, content_type: Optional[str] = "application/json") -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self._access_token()}"}
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def _request(self, method: str, url: str, op: str, **kwargs) -> requests.Response:
        try:
            res = requests.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise RemoteStoreError(f"{op}_failed: {e}") from e
        if res.status_code >= 400:
            text = (res.text or "").strip()
            raise RemoteStoreError(f"{op}_failed_status_{res.status_code}: {text[:200]}", status=res.status_code)
        return res

    def _json(self, res: requests.Response, op: str) -> dict[str, Any]:
        try:
            payload = res.json()
        except ValueError as e:
            raise RemoteStoreError(f"{op}_invalid_response: {e}") from e
        if not isinstance(payload, dict):
            raise RemoteStoreError(f"{op}_invalid_response")
        return payload

    def get_largest_change_id(self) -> int:
        res = self._request("GET", f"{BASE}/about", "about_get", params={"fields": "largestChangeId"},
                            headers=self._auth_headers())
        data = self._json(res, "about_get")
        try:
            return int(data["largestChangeId"])
        except (KeyError, TypeError, ValueError) as e:
            raise RemoteStoreError("largest_change_id_missing") from e

    def list_files(self, query: str, page_token: Optional[str] = None) -> FilePage:
        params: dict[str, str | int] = {"q": query, "maxResults": self.page_size}
        if page_token:
            params["pageToken"] = page_token
        res = self._request("GET", f"{BASE}/files", "list_files", params=params, headers=self._auth_headers())
        data = self._json(res, "list_files")
        items = data.get("items") or []
        files = [RemoteFile.from_api(item) for item in items if isinstance(item, dict) and item.get("id")]
        return FilePage(files=files, next_page_token=data.get("nextPageToken") or None)

    def list_changes(self, start_change_id: int, page_token: Optional[str] = None) -> ChangePage:
        params: dict[str, str | int] = {
            "startChangeId": int(start_change_id),
            "maxResults": self.page_size,
            "includeDeleted": "true",
        }
        if page_token:
            params["pageToken"] = page_token
        res = self._request("GET", f"{BASE}/changes", "list_changes", params=params, headers=self._auth_headers())
        data = self._json(res, "list_changes")

        events: list[ChangeEvent] = []
        for item in data.get("items") or []:
            if not isinstance(item, dict) or not item.get("fileId"):
                continue
            file_raw = item.get("file")
            events.append(
                ChangeEvent(
                    change_id=int(item.get("id") or 0),
                    file_id=str(item["fileId"]),
                    deleted=bool(item.get("deleted")),
                    file=RemoteFile.from_api(file_raw) if isinstance(file_raw, dict) else None,
                )
            )
        try:
            largest = int(data.get("largestChangeId") or 0)
        except (TypeError, ValueError):
            largest = 0
        return ChangePage(events=events, next_page_token=data.get("nextPageToken") or None, largest_change_id=largest)

    def get_file(self, file_id: str) -> Optional[RemoteFile]:
        try:
            res = self._request("GET", f"{BASE}/files/{file_id}", "get_file", headers=self._auth_headers())
        except RemoteStoreError as e:
            if e.not_found:
                return None
            raise
        return RemoteFile.from_api(self._json(res, "get_file"))

    def trash_file(self, file_id: str) -> None:
        self._request("POST", f"{BASE}/files/{file_id}/trash", "trash_file", headers=self._auth_headers())

    def _multipart(self, metadata: dict, content: bytes, mime_type: str) -> tuple[bytes, str]:
        boundary = f"tracksync-{uuid.uuid4().hex}"
        body = b"".join(
            [
                f"--{boundary}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n".encode("utf-8"),
                json.dumps(metadata, ensure_ascii=False).encode("utf-8"),
                f"\r\n--{boundary}\r\nContent-Type: {mime_type}\r\n\r\n".encode("utf-8"),
                content,
                f"\r\n--{boundary}--".encode("utf-8"),
            ]
        )
        return body, f"multipart/related; boundary={boundary}"

    def create_file(self, metadata: dict, content: bytes) -> RemoteFile:
        body, content_type = self._multipart(metadata, content, metadata.get("mimeType") or "application/octet-stream")
        res = self._request(
            "POST",
            f"{UPLOAD_BASE}/files",
            "create_file",
            params={"uploadType": "multipart"},
            data=body,
            headers=self._auth_headers(content_type),
        )
        created = RemoteFile.from_api(self._json(res, "create_file"))
        if not created.id:
            raise RemoteStoreError("create_file_no_id")
        return created

    def update_file(self, file_id: str, metadata: dict, content: bytes) -> RemoteFile:
        body, content_type = self._multipart(metadata, content, metadata.get("mimeType") or "application/octet-stream")
        res = self._request(
            "PUT",
            f"{UPLOAD_BASE}/files/{file_id}",
            "update_file",
            params={"uploadType": "multipart"},
            data=body,
            headers=self._auth_headers(content_type),
        )
        return RemoteFile.from_api(self._json(res, "update_file"))

    def download_content(self, locator: str) -> bytes:
        if not locator:
            raise RemoteStoreError("download_url_missing")
        res = self._request("GET", locator, "download", headers=self._auth_headers(content_type=None))
        return res.content

    def find_folder(self, title: str) -> Optional[str]:
        escaped = title.replace("\\", "\\\\").replace("'", "\\'")
        query = f"mimeType = '{FOLDER_MIME_TYPE}' and title = '{escaped}' and trashed = false"
        page = self.list_files(query)
        return page.files[0].id if page.files else None

    def create_folder(self, title: str) -> str:
        res = self._request(
            "POST",
            f"{BASE}/files",
            "create_folder",
            data=json.dumps({"title": title, "mimeType": FOLDER_MIME_TYPE}),
            headers=self._auth_headers(),
        )
        folder_id = self._json(res, "create_folder").get("id")
        if not isinstance(folder_id, str) or not folder_id:
            raise RemoteStoreError("create_folder_no_id")
        return folder_id
