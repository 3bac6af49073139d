"""Disk and memory inventory utilities."""

from __future__ import annotations

import os
import stat
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List

import psutil

from .logging_utils import log_event

LSBLK_COMMAND = ["lsblk", "-dp", "-o", "NAME,SIZE,MODEL,TYPE"]


@dataclass
class Disk:
    """Representation of a block device."""

    name: str
    model: str = ""
    size: int = 0
    rotational: bool = False
    removable: bool = False

    @property
    def path(self) -> str:
        return f"/dev/{self.name}"


def _read_text(path: Path) -> str:
    try:
        return path.read_text().strip()
    except FileNotFoundError:
        return ""


def enumerate_disks(sys_block: Path = Path("/sys/block")) -> List[Disk]:
    """Enumerate candidate installation disks.

    Args:
        sys_block: Path to ``/sys/block`` (overridable for tests).

    Returns:
        A list of :class:`Disk` objects, skipping loop, ram, device-mapper,
        optical and md devices.
    """
    disks: List[Disk] = []
    try:
        entries = sorted(sys_block.iterdir())
    except FileNotFoundError:
        return disks
    for entry in entries:
        name = entry.name
        if name.startswith(("loop", "ram", "dm", "sr", "md", "zram")):
            continue
        size_str = _read_text(entry / "size")
        try:
            size = int(size_str) * 512
        except ValueError:
            size = 0
        disks.append(
            Disk(
                name=name,
                model=_read_text(entry / "device" / "model"),
                size=size,
                rotational=_read_text(entry / "queue" / "rotational") == "1",
                removable=_read_text(entry / "removable") == "1",
            )
        )
    return disks


def _format_size(size: int) -> str:
    units = ["B", "K", "M", "G", "T"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    if index == 0:
        return f"{size}B"
    return f"{value:.1f}{units[index]}"


def describe_block_devices(sys_block: Path = Path("/sys/block")) -> str:
    """Return a human readable table of available disks.

    ``lsblk`` is preferred; when it is unavailable the listing is built from
    ``sys_block`` so help output still works on minimal systems.
    """

    try:
        result = subprocess.run(
            LSBLK_COMMAND,
            check=False,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        result = None

    if result is not None and result.returncode == 0 and result.stdout.strip():
        return result.stdout.rstrip("\n")

    log_event(
        "nixos_bootstrap.inventory.lsblk_unavailable",
        returncode=None if result is None else result.returncode,
    )
    lines = [f"{'NAME':<20} {'SIZE':>8} {'MODEL':<24} TYPE"]
    for disk in enumerate_disks(sys_block):
        lines.append(f"{disk.path:<20} {_format_size(disk.size):>8} {disk.model:<24} disk")
    return "\n".join(lines)


def is_block_device(path: str) -> bool:
    """Return ``True`` when ``path`` exists and is a block special file."""

    try:
        mode = os.stat(path).st_mode
    except OSError:
        return False
    return stat.S_ISBLK(mode)


def detect_ram_mb() -> int:
    """Return the total installed memory in MiB."""

    total = psutil.virtual_memory().total
    ram_mb = total // (1024 * 1024)
    log_event("nixos_bootstrap.inventory.ram_detected", ram_mb=ram_mb)
    return int(ram_mb)
