from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from tracksync.codec.kml import KmlCodec
from tracksync.core.config import (
    DEFAULT_CONFIG_PATH,
    LAST_RUN_ONCE_PATH,
    load_config,
)
from tracksync.core.errors import RemoteStoreError
from tracksync.core.log_tail import build_log_tail_payload
from tracksync.core.logging_setup import make_log_func, setup_logging
from tracksync.providers.drive import DriveClient
from tracksync.store.db import init_db
from tracksync.store.state import SyncStateStore
from tracksync.store.tracks import TrackStore
from tracksync.sync import SyncEngine, SyncSession, resolve_folder

app = typer.Typer(add_completion=False)
console = Console()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _format_millis(value: int) -> str:
    if value is None or int(value) < 0:
        return "-"
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _load(path: Path = DEFAULT_CONFIG_PATH):
    cfg = load_config(path)
    init_db(cfg.database.path)
    return cfg


def _build_sync_engine(path: Path = DEFAULT_CONFIG_PATH) -> tuple:
    cfg = _load(path)
    setup_logging(cfg.logging.level, cfg.logging.file)

    client = DriveClient(
        token_file=cfg.auth.token_file,
        timeout=int(cfg.auth.timeout_sec),
        page_size=int(cfg.sync.page_size),
    )
    engine = SyncEngine(cfg.model_dump(), cfg.database.path, make_log_func())
    return cfg, engine, client


@app.command("config-show")
def config_show(path: Path = DEFAULT_CONFIG_PATH):
    """Show current config.yaml."""
    cfg = load_config(path)
    print(json.dumps(cfg.model_dump(), ensure_ascii=False, indent=2))


@app.command("config-validate")
def config_validate(
    path: Path = DEFAULT_CONFIG_PATH,
    strict: bool = typer.Option(False, "--strict", help="Return non-zero when validation fails."),
):
    """Validate config and runtime prerequisites."""
    out: dict[str, Any] = {
        "ok": True,
        "checked_at": _now_iso(),
        "config_path": str(path),
        "checks": {
            "config_exists": path.exists(),
            "token_file_configured": False,
            "token_file_exists": False,
            "folder_configured": False,
            "database_parent_ready": False,
            "log_parent_ready": False,
        },
        "warnings": [],
        "errors": [],
    }

    try:
        cfg = load_config(path)
    except Exception as e:
        out["ok"] = False
        out["errors"].append(f"load_config_failed: {e}")
        print(json.dumps(out, ensure_ascii=False, indent=2))
        if strict:
            raise typer.Exit(2)
        return

    out["checks"]["token_file_configured"] = bool(cfg.auth.token_file)
    if cfg.auth.token_file:
        token_path = Path(cfg.auth.token_file).expanduser()
        out["checks"]["token_file_exists"] = token_path.exists()
        if not token_path.exists():
            out["errors"].append(f"token_file_missing: {token_path}")
    else:
        out["errors"].append("token_file_not_configured")

    out["checks"]["folder_configured"] = bool(cfg.sync.folder_id or cfg.sync.folder_title.strip())
    if not out["checks"]["folder_configured"]:
        out["errors"].append("folder_missing: set sync.folder_id or sync.folder_title")

    if cfg.sync.max_workers > 8:
        out["warnings"].append(f"max_workers_high: {cfg.sync.max_workers} (may hit API rate limits)")

    for key, target in (("database_parent_ready", cfg.database.path), ("log_parent_ready", cfg.logging.file)):
        try:
            Path(target).parent.mkdir(parents=True, exist_ok=True)
            out["checks"][key] = True
        except OSError as e:
            out["errors"].append(f"{key.replace('_ready', '')}_unavailable: {e}")

    out["ok"] = len(out["errors"]) == 0
    print(json.dumps(out, ensure_ascii=False, indent=2))
    if strict and not out["ok"]:
        raise typer.Exit(2)


@app.command()
def status(path: Path = DEFAULT_CONFIG_PATH):
    """Show sync state for the configured account."""
    cfg = _load(path)
    state = SyncStateStore(cfg.database.path).load(cfg.sync.account)
    store = TrackStore(cfg.database.path)
    unsynced = store.tracks_without_drive_id()
    engine = SyncEngine(cfg.model_dump(), cfg.database.path, make_log_func())
    runs = engine.recent_runs(limit=1)

    table = Table(title="tracksync status")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("config", str(path))
    table.add_row("account", cfg.sync.account)
    table.add_row("folder", cfg.sync.folder_id or cfg.sync.folder_title)
    table.add_row("largest_change_id", "unset (initial sync pending)" if state.initial else str(state.largest_change_id))
    table.add_row("pending_deletions", str(len(state.pending_deletion_ids)))
    table.add_row("pending_imports", str(len(state.pending_imports)))
    table.add_row("tracks", str(len(store.list_tracks())))
    table.add_row("unsynced_tracks", str(len(unsynced)))
    if runs:
        last = runs[0]
        table.add_row("last_run", f"{last['status']} {last['finished_at'] or last['started_at']}")
    table.add_row("db", cfg.database.path)
    table.add_row("log", cfg.logging.file)
    console.print(table)


@app.command()
def tracks(path: Path = DEFAULT_CONFIG_PATH):
    """List local tracks and their remote links."""
    cfg = _load(path)
    store = TrackStore(cfg.database.path)
    recording_id = store.recording_track_id

    table = Table(title="tracks")
    table.add_column("ID", justify="right")
    table.add_column("Name")
    table.add_column("Drive ID")
    table.add_column("Modified (UTC)")
    for t in store.list_tracks():
        name = f"{t.name} (recording)" if t.id == recording_id else t.name
        table.add_row(str(t.id), name, t.drive_id or "-", _format_millis(t.modified_time))
    console.print(table)


@app.command("track-import")
def track_import(file: Path = typer.Argument(..., exists=True, dir_okay=False), path: Path = DEFAULT_CONFIG_PATH):
    """Import tracks from a local KML file; they upload on the next run."""
    cfg = _load(path)
    store = TrackStore(cfg.database.path)
    ids = KmlCodec(store).decode(file.read_bytes())
    print(json.dumps({"ok": bool(ids), "imported_ids": ids}, ensure_ascii=False, indent=2))
    if not ids:
        raise typer.Exit(2)


@app.command("track-export")
def track_export(track_id: int, out: Path, path: Path = DEFAULT_CONFIG_PATH):
    """Write one track as KML."""
    cfg = _load(path)
    store = TrackStore(cfg.database.path)
    track = store.get_track(track_id)
    if track is None:
        print(json.dumps({"ok": False, "error": f"track_not_found: {track_id}"}, ensure_ascii=False))
        raise typer.Exit(2)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(KmlCodec(store).encode(track))
    print(json.dumps({"ok": True, "track_id": track_id, "path": str(out)}, ensure_ascii=False))


@app.command("track-delete")
def track_delete(track_id: int, path: Path = DEFAULT_CONFIG_PATH):
    """Delete a local track; its remote file is trashed on the next run."""
    cfg = _load(path)
    store = TrackStore(cfg.database.path)
    track = store.get_track(track_id)
    if track is None:
        print(json.dumps({"ok": False, "error": f"track_not_found: {track_id}"}, ensure_ascii=False))
        raise typer.Exit(2)
    if track.drive_id:
        SyncStateStore(cfg.database.path).queue_deletion(cfg.sync.account, track.drive_id)
    store.delete_track(track_id)
    print(json.dumps({"ok": True, "track_id": track_id, "queued_drive_id": track.drive_id or None}, ensure_ascii=False))


@app.command("state-reset")
def state_reset(
    path: Path = DEFAULT_CONFIG_PATH,
    yes: bool = typer.Option(False, "--yes", help="Skip confirmation."),
):
    """Forget the change cursor; the next run does a full initial sync."""
    cfg = _load(path)
    if not yes:
        typer.confirm(f"Reset sync cursor for account {cfg.sync.account!r}?", abort=True)
    SyncStateStore(cfg.database.path).reset(cfg.sync.account)
    print(json.dumps({"ok": True, "account": cfg.sync.account}, ensure_ascii=False))


@app.command("logs-tail")
def logs_tail(
    n: int = typer.Option(200, "--n", min=1),
    level: str | None = typer.Option(None, "--level", help="Filter by log level (e.g. INFO)."),
    logger: str | None = typer.Option(None, "--logger", help="Filter by logger name prefix."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
    path: Path = DEFAULT_CONFIG_PATH,
):
    """Tail the service log file."""
    cfg = load_config(path)
    payload = build_log_tail_payload(cfg.logging.file, n=n, level=level, logger=logger)
    if json_output:
        print(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    print(payload.get("tail", ""))


@app.command("run-once")
def run_once(
    run_type: str = typer.Option("manual_cli", "--run-type", help="sync run_type label."),
    path: Path = DEFAULT_CONFIG_PATH,
):
    """Run one sync cycle and print summary JSON."""
    cfg, engine, client = _build_sync_engine(path)

    try:
        folder_id = resolve_folder(client, cfg.sync.folder_title, cfg.sync.folder_id)
    except RemoteStoreError as e:
        summary = {"account": cfg.sync.account, "run_type": run_type, "errors": 1, "fatal_error": f"folder_unavailable: {e}"}
    else:
        session = SyncSession(account=cfg.sync.account, remote=client, folder_id=folder_id)
        summary = engine.run_once(session, run_type=run_type)

    summary["checked_at"] = _now_iso()
    LAST_RUN_ONCE_PATH.parent.mkdir(parents=True, exist_ok=True)
    LAST_RUN_ONCE_PATH.write_text(json.dumps(summary, ensure_ascii=False, indent=2), encoding="utf-8")
    print(json.dumps(summary, ensure_ascii=False, indent=2))
    if summary.get("fatal_error") or int(summary.get("errors", 0)) > 0:
        raise typer.Exit(2)


def main():
    app()


if __name__ == "__main__":
    main()
