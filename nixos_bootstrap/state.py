"""Helpers for recording the outcome of an installation run."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Optional

from .logging_utils import log_event

_INSTALL_STATUS_FILENAME = "install-status"


def _default_state_dir() -> Path:
    """Return the default directory for runtime state artifacts."""

    override = os.environ.get("NIXOS_BOOTSTRAP_STATE_DIR")
    if override:
        return Path(override)
    return Path("/run/nixos-bootstrap")


def install_status_path(*, state_dir: Optional[Path] = None) -> Path:
    """Return the path of the ``KEY=VALUE`` install status file."""

    base = state_dir if state_dir is not None else _default_state_dir()
    return base / _INSTALL_STATUS_FILENAME


def record_install_status(
    status: str,
    *,
    stage: Optional[str] = None,
    reason: Optional[str] = None,
    details: Optional[Dict[str, str]] = None,
    state_dir: Optional[Path] = None,
) -> Optional[Path]:
    """Persist the run outcome; return the written path or ``None`` on error."""

    path = install_status_path(state_dir=state_dir)
    lines = [f"STATE={status}\n"]
    if stage:
        lines.append(f"STAGE={stage}\n")
    if reason:
        lines.append(f"REASON={' '.join(reason.split())}\n")
    for key, value in sorted((details or {}).items()):
        normalized_key = key.upper()
        if normalized_key in {"STATE", "STAGE", "REASON"}:
            continue
        lines.append(f"{normalized_key}={value}\n")

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("".join(lines), encoding="utf-8")
    except OSError as error:
        log_event(
            "nixos_bootstrap.state.status_write_failed",
            error=str(error),
            status=status,
            path=path,
        )
        return None

    log_event("nixos_bootstrap.state.status_written", path=path, status=status)
    return path

