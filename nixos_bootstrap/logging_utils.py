"""JSON event log shared by the installer, diagnostics and flake adoption."""

from __future__ import annotations

import datetime as _dt
import json
import os
import sys
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

_ENV_PREFIX = "NIXOS_BOOTSTRAP_"
_DEFAULT_LOG_FILE = Path("/var/log/nixos-bootstrap/actions.log")
_DISABLED_VALUES = frozenset({"", "0", "false", "no", "off"})
_REDACTED = "<redacted>"
# Field names whose values are replaced before anything is written.
_SECRET_KEYS = frozenset({"password", "password_hash", "hashed_password", "input_text", "stdin"})


def _serialise(value: Any, key: Optional[str] = None) -> Any:
    if key is not None and key.lower() in _SECRET_KEYS:
        return _REDACTED
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, os.PathLike):
        return os.fspath(value)
    if isinstance(value, Mapping):
        return {str(k): _serialise(item, str(k)) for k, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [_serialise(item) for item in value]
    return repr(value)


def _env(name: str) -> Optional[str]:
    value = os.environ.get(_ENV_PREFIX + name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _logs_enabled() -> bool:
    value = _env("LOG_EVENTS")
    return value is not None and value.lower() not in _DISABLED_VALUES


def _log_file_path() -> Path:
    """Return ``NIXOS_BOOTSTRAP_LOG_FILE`` or the default action log."""

    value = _env("LOG_FILE")
    return Path(value) if value else _DEFAULT_LOG_FILE


def log_event(event: str, **fields: Any) -> None:
    """Write one JSON line describing *event* when event logging is enabled.

    Logging is off unless ``NIXOS_BOOTSTRAP_LOG_EVENTS`` is set. Each record
    holds a UTC timestamp, the event name, the process id and *fields*; it is
    written to ``stderr`` and appended to the action log so a failed run can
    be reviewed after the installer exits. Fields named like a password are
    replaced with ``<redacted>``.
    """

    if not _logs_enabled():
        return

    record = {
        "timestamp": _dt.datetime.now(_dt.timezone.utc).isoformat(),
        "event": event,
        "pid": os.getpid(),
    }
    record.update(_serialise(dict(fields)))
    line = json.dumps(record, sort_keys=True)

    sys.stderr.write(line + "\n")
    sys.stderr.flush()
    _append_to_log_file(line)


def _append_to_log_file(line: str) -> None:
    log_file = _log_file_path()
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_file, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as handle:
            handle.write(line + "\n")
    except OSError as exc:  # pragma: no cover - log directory not writable
        sys.stderr.write(f"nixos-bootstrap: cannot append to {log_file}: {exc}\n")
        sys.stderr.flush()
