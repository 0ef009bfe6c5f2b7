"""Operator messages and structured event logging for server setup."""

from __future__ import annotations

import datetime as _dt
import json
import os
import sys
from pathlib import Path
from typing import Any, Mapping, Sequence

_DEFAULT_LOG_FILE = Path("/var/log/ubuntu_server_setup.log")

LEVELS = ("info", "warning", "error")
_PREFIXES = {"info": "", "warning": "WARNING: ", "error": "ERROR: "}


def _serialise(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _serialise(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_serialise(item) for item in value]
    return repr(value)


def _check_level(level: str) -> str:
    if level not in LEVELS:
        raise ValueError(f"unknown log level {level!r}; expected one of {', '.join(LEVELS)}")
    return level


def _events_enabled() -> bool:
    value = os.environ.get("SERVER_SETUP_LOG_EVENTS", "")
    return value.strip().lower() not in {"", "0", "false", "no"}


def _log_file_path() -> Path:
    """Return ``SERVER_SETUP_LOG_FILE``, or the system setup log when unset."""

    value = os.environ.get("SERVER_SETUP_LOG_FILE", "").strip()
    return Path(value) if value else _DEFAULT_LOG_FILE


def log_event(event: str, *, level: str = "info", **fields: Any) -> None:
    """Record a structured event when ``SERVER_SETUP_LOG_EVENTS`` is enabled.

    The record is one sorted JSON object with a UTC timestamp, the event name
    and its severity *level*, followed by the caller's fields (anything not
    JSON-native is stringified). It goes to ``stderr`` and is appended to the
    setup log. An unknown *level* raises ``ValueError`` even while logging is
    disabled, so a typo cannot hide until production.
    """

    _check_level(level)
    if not _events_enabled():
        return

    record = {
        "timestamp": _dt.datetime.now(_dt.timezone.utc).isoformat(),
        "event": event,
        "level": level,
    }
    record.update((str(key), _serialise(value)) for key, value in fields.items())
    line = json.dumps(record, sort_keys=True)

    print(line, file=sys.stderr, flush=True)
    _append(line)


def announce(message: str, *, level: str = "info") -> None:
    """Tell the operator about progress, in the setup script's log format.

    Prints ``[YYYY-mm-dd HH:MM:SS] message`` with a ``WARNING:`` or ``ERROR:``
    prefix for those levels. Errors go to ``stderr``, everything else to
    ``stdout``. The message is also recorded as a ``server_setup.message``
    event.
    """

    _check_level(level)
    stamp = _dt.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    stream = sys.stderr if level == "error" else sys.stdout
    print(f"[{stamp}] {_PREFIXES[level]}{message}", file=stream, flush=True)
    log_event("server_setup.message", level=level, message=message)


def _append(line: str) -> None:
    log_file = _log_file_path()
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
    except OSError as exc:  # pragma: no cover - log file unavailable
        print(f"server-setup: cannot write {log_file}: {exc}", file=sys.stderr, flush=True)
