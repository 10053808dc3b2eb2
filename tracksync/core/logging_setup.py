from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"

# Chatty HTTP loggers stay at WARNING unless we run at DEBUG.
_QUIET_LOGGERS = ("urllib3", "requests")


def setup_logging(level: str, logfile: str | None = None):
    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)

    # Re-running setup (tests, repeated CLI calls) must not stack handlers.
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    fmt = logging.Formatter(LOG_FORMAT)

    if logfile:
        Path(logfile).parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile, encoding="utf-8")
        fh.setLevel(log_level)
        fh.setFormatter(fmt)
        root.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(log_level)
    ch.setFormatter(fmt)
    root.addHandler(ch)

    for logger_name in _QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(log_level if log_level <= logging.DEBUG else logging.WARNING)

    root.debug("logging initialized level=%s file=%s", level, logfile or "-")


def make_log_func(prefix: str = "tracksync"):
    """Bind the engine's `log_func(level, module, message, detail)` hook to stdlib logging."""

    def log_func(level: str, module: str, message: str, detail: str | None = None):
        name = f"{prefix}.{module}" if prefix else module
        lvl = "WARNING" if level.upper() == "WARN" else level.upper()
        logging.getLogger(name).log(
            getattr(logging, lvl, logging.INFO),
            f"{message} {detail or ''}".strip(),
        )

    return log_func
