from .drive_client import DriveClient
from .gateway import RemoteStore, kml_files_query

__all__ = ["DriveClient", "RemoteStore", "kml_files_query"]
