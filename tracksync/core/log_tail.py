from __future__ import annotations

import re
from collections import deque
from pathlib import Path

LOG_LINE_RE = re.compile(
    r"^(?P<ts>\S+\s+\S+)\s+\[(?P<level>[A-Z]+)\]\s+\[(?P<logger>[^\]]+)\]\s*(?P<message>.*)$"
)


def _read_last_lines(path: Path, n: int) -> list[str]:
    with path.open("r", encoding="utf-8", errors="replace") as fp:
        return [line.rstrip("\n") for line in deque(fp, maxlen=n)]


def parse_log_line(line: str) -> dict[str, str]:
    match = LOG_LINE_RE.match(line)
    if not match:
        return {"raw": line, "ts": "", "level": "", "logger": "", "message": line}
    return {"raw": line, **match.groupdict()}


def build_log_tail_payload(path: str, n: int = 200, level: str | None = None, logger: str | None = None) -> dict:
    """Last `n` lines of the service log, optionally filtered.

    `logger` matches the logger name or any of its parents, so "tracksync.sync"
    also selects "tracksync.sync.collector".
    """
    level_wanted = (level or "").strip().upper() or None
    logger_wanted = (logger or "").strip().lower() or None

    p = Path(path)
    lines = _read_last_lines(p, n) if p.exists() else []

    items: list[dict[str, str]] = []
    for line in lines:
        item = parse_log_line(line)
        if level_wanted and item["level"] != level_wanted:
            continue
        if logger_wanted:
            name = item["logger"].lower()
            if name != logger_wanted and not name.startswith(f"{logger_wanted}."):
                continue
        items.append(item)

    return {
        "path": path,
        "n": n,
        "level": level_wanted,
        "logger": logger_wanted,
        "count": len(items),
        "tail": "\n".join(item["raw"] for item in items),
        "items": items,
    }
