"""Subprocess helpers shared by the installer stages."""

from __future__ import annotations

import shlex
import subprocess
from typing import Mapping, Optional, Sequence

from .logging_utils import log_event

__all__ = [
    "CommandError",
    "StageError",
    "command_to_str",
    "run_command",
]


class StageError(RuntimeError):
    """A pipeline stage could not complete."""

    def __init__(self, message: str, *, stage: str) -> None:
        super().__init__(message)
        self.stage = stage


class CommandError(subprocess.CalledProcessError):
    """An external command failed while running ``stage``."""

    def __init__(
        self,
        returncode: int,
        cmd: Sequence[str],
        *,
        stage: str,
        output: Optional[str] = None,
        stderr: Optional[str] = None,
    ) -> None:
        super().__init__(returncode, list(cmd), output=output, stderr=stderr)
        self.stage = stage

    def __str__(self) -> str:
        text = f"'{command_to_str(self.cmd)}' exited with status {self.returncode}"
        detail = (self.stderr or "").strip()
        if detail:
            last_line = detail.splitlines()[-1]
            text += f": {last_line}"
        return text


def command_to_str(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(part)) for part in cmd)


def run_command(
    cmd: Sequence[str],
    *,
    stage: str,
    dry_run: bool = False,
    input_text: Optional[str] = None,
    capture: bool = False,
    env: Optional[Mapping[str, str]] = None,
) -> Optional[subprocess.CompletedProcess]:
    """Run ``cmd`` and raise :class:`CommandError` when it fails.

    With ``dry_run`` the command is printed and ``None`` is returned.
    ``input_text`` is fed to stdin and is never logged.
    """

    argv = [str(part) for part in cmd]
    log_event(
        "nixos_bootstrap.command.start",
        command=argv,
        stage=stage,
        dry_run=dry_run,
    )
    if dry_run:
        print(f"[dry-run] {command_to_str(argv)}")
        log_event(
            "nixos_bootstrap.command.skip",
            command=argv,
            stage=stage,
            reason="dry-run",
        )
        return None

    try:
        result = subprocess.run(
            argv,
            check=False,
            input=input_text,
            capture_output=capture,
            text=True,
            env=dict(env) if env is not None else None,
        )
    except FileNotFoundError as exc:
        log_event(
            "nixos_bootstrap.command.missing",
            command=argv,
            stage=stage,
        )
        raise CommandError(127, argv, stage=stage, stderr="executable not found") from exc

    status = "success" if result.returncode == 0 else "error"
    log_event(
        "nixos_bootstrap.command.finished",
        command=argv,
        stage=stage,
        status=status,
        returncode=result.returncode,
    )
    if result.returncode != 0:
        raise CommandError(
            result.returncode,
            argv,
            stage=stage,
            output=result.stdout if capture else None,
            stderr=result.stderr if capture else None,
        )
    return result
