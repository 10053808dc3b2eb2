from __future__ import annotations


class SyncError(RuntimeError):
    pass


class RemoteStoreError(SyncError):
    """A failed call against the remote file store.

    `status` is the HTTP status when the failure came from a response, else None
    (connection errors, timeouts, malformed payloads).
    """

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status

    @property
    def not_found(self) -> bool:
        return self.status == 404


class DuplicateRemoteLinkError(SyncError):
    """Two local tracks claim the same remote file id within one cycle."""

    def __init__(self, drive_id: str, owner_id: int, other_id: int):
        super().__init__(f"drive_id_claimed_twice: drive_id={drive_id} owner={owner_id} other={other_id}")
        self.drive_id = drive_id
        self.owner_id = owner_id
        self.other_id = other_id
