from .engine import SyncEngine, resolve_folder
from .models import ChangeSet, RemoteFile, SyncSession

__all__ = ["ChangeSet", "RemoteFile", "SyncEngine", "SyncSession", "resolve_folder"]
