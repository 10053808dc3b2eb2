from pathlib import Path

import pytest

from fakes import FOLDER_ID, FakeDrive
from tracksync.codec.kml import KmlCodec
from tracksync.store.db import init_db
from tracksync.store.state import SyncStateStore
from tracksync.store.tracks import TrackStore
from tracksync.sync.engine import SUMMARY_COUNTERS, SyncEngine
from tracksync.sync.models import SyncSession


class LogSink:
    def __init__(self):
        self.records: list[tuple[str, str, str, str | None]] = []

    def __call__(self, level: str, module: str, message: str, detail: str | None = None):
        self.records.append((level, module, message, detail))

    def messages(self, level: str | None = None) -> list[str]:
        return [r[2] for r in self.records if level is None or r[0] == level]


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    path = str(tmp_path / "runtime" / "tracksync.db")
    init_db(path)
    return path


@pytest.fixture
def store(db_path: str) -> TrackStore:
    return TrackStore(db_path)


@pytest.fixture
def state_store(db_path: str) -> SyncStateStore:
    return SyncStateStore(db_path)


@pytest.fixture
def codec(store: TrackStore) -> KmlCodec:
    return KmlCodec(store)


@pytest.fixture
def drive() -> FakeDrive:
    return FakeDrive()


@pytest.fixture
def session(drive: FakeDrive) -> SyncSession:
    return SyncSession(account="acct@example.com", remote=drive, folder_id=FOLDER_ID)


@pytest.fixture
def log_sink() -> LogSink:
    return LogSink()


@pytest.fixture
def summary() -> dict:
    return {k: 0 for k in SUMMARY_COUNTERS}


@pytest.fixture
def engine(db_path: str, log_sink: LogSink) -> SyncEngine:
    cfg = {"sync": {"max_workers": 1, "max_import_retry": 2}}
    return SyncEngine(cfg=cfg, db_path=db_path, log_func=log_sink)
