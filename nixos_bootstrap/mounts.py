"""Staging root mount assembly and teardown."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import List, Tuple

from .commands import StageError, run_command
from .logging_utils import log_event
from .partition import PartitionLayout

MOUNT_STAGE = "mount"
TEARDOWN_STAGE = "teardown"
MOUNTINFO = Path("/proc/self/mountinfo")

# mountinfo escapes whitespace and backslashes as three-digit octal.
_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


class MountError(StageError):
    """The staging root could not be assembled."""

    def __init__(self, message: str) -> None:
        super().__init__(message, stage=MOUNT_STAGE)


def _unescape(field: str) -> str:
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field)


def _mount_table(mountinfo: Path = MOUNTINFO) -> List[Tuple[str, Path]]:
    """Return ``(source, target)`` for every entry of ``mountinfo``."""

    entries: List[Tuple[str, Path]] = []
    try:
        with open(mountinfo, "r", encoding="utf-8") as fp:
            for line in fp:
                parts = line.split()
                if len(parts) < 5:
                    continue
                source = ""
                # Optional fields end at a lone "-", followed by fstype and source.
                if "-" in parts[6:]:
                    separator = parts.index("-", 6)
                    if len(parts) > separator + 2:
                        source = _unescape(parts[separator + 2])
                entries.append((source, Path(_unescape(parts[4]))))
    except OSError:
        return entries
    return entries


def _mounted_paths(mountinfo: Path = MOUNTINFO) -> set[Path]:
    return {target for _, target in _mount_table(mountinfo)}


def is_mounted(path: Path, *, mountinfo: Path = MOUNTINFO) -> bool:
    """Return ``True`` when ``path`` is an active mount point."""

    try:
        if os.path.ismount(path):
            return True
    except OSError:
        return False
    resolved = Path(path).resolve(strict=False)
    return resolved in _mounted_paths(mountinfo)


def _on_disk(source: str, disk: str) -> bool:
    for base in {disk, os.path.realpath(disk)}:
        if source == base:
            return True
        if base.startswith("/dev/disk/by-"):
            separator = "-part"
        elif base[-1:].isdigit():
            separator = "p"
        else:
            separator = ""
        if re.fullmatch(re.escape(base + separator) + r"[0-9]+", source):
            return True
    return False


def busy_mounts(disk: str, root_path: Path, *, mountinfo: Path = MOUNTINFO) -> List[str]:
    """Describe active mounts that must be released before ``disk`` is wiped.

    Covers the staging root itself and any filesystem whose source is
    ``disk`` or one of its partitions.
    """

    busy: List[str] = []
    if is_mounted(root_path, mountinfo=mountinfo):
        busy.append(f"{root_path} is already a mount point")
    for source, target in _mount_table(mountinfo):
        if source and _on_disk(source, disk):
            busy.append(f"{source} is mounted at {target}")
    if busy:
        log_event("nixos_bootstrap.mounts.busy", disk=disk, root_path=root_path, mounts=busy)
    return busy


def mount_target(
    layout: PartitionLayout,
    root_path: Path,
    *,
    dry_run: bool = False,
) -> None:
    """Mount the root partition at ``root_path`` and EFI at ``root_path/boot``."""

    if not dry_run and is_mounted(root_path):
        raise MountError(f"Something is already mounted at {root_path}!")

    print(">>> Mounting filesystems...")
    boot_path = root_path / "boot"
    if not dry_run:
        root_path.mkdir(parents=True, exist_ok=True)
    run_command(["mount", layout.root, str(root_path)], stage=MOUNT_STAGE, dry_run=dry_run)
    if dry_run:
        print(f"[dry-run] mkdir -p {boot_path}")
    else:
        boot_path.mkdir(parents=True, exist_ok=True)
    run_command(
        ["mount", "-o", "umask=0077", layout.boot, str(boot_path)],
        stage=MOUNT_STAGE,
        dry_run=dry_run,
    )
    log_event(
        "nixos_bootstrap.mounts.mounted",
        root=layout.root,
        boot=layout.boot,
        root_path=root_path,
    )


def unmount_target(root_path: Path, *, dry_run: bool = False) -> None:
    """Recursively unmount everything below ``root_path``."""

    print(">>> Unmounting filesystems...")
    run_command(["umount", "-R", str(root_path)], stage=TEARDOWN_STAGE, dry_run=dry_run)
    log_event("nixos_bootstrap.mounts.unmounted", root_path=root_path)
