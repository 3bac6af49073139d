"""Disk partitioning and formatting."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Callable, List, Sequence

from .commands import StageError, run_command
from .inventory import is_block_device
from .logging_utils import log_event

STAGE = "provision"

BOOT_LABEL = "boot"
ROOT_LABEL = "nixos"

_DEVICE_RE = re.compile(r"/dev/[A-Za-z0-9_./:-]+")


class ProvisioningError(StageError):
    """Disk provisioning could not complete."""

    def __init__(self, message: str) -> None:
        super().__init__(message, stage=STAGE)


@dataclass(frozen=True)
class PartitionLayout:
    """Device paths of the two partitions created on ``disk``."""

    disk: str
    boot: str
    root: str


def partition_device(disk: str, number: int) -> str:
    """Return the device path of partition ``number`` on ``disk``.

    ``/dev/disk/by-*`` links use the udev ``-partN`` suffix. Kernel names
    ending in a digit (``nvme0n1``, ``mmcblk0``, ``loop0``) take a ``p``
    separator; everything else gets the number appended directly.
    """

    if disk.startswith("/dev/disk/by-"):
        return f"{disk}-part{number}"
    if disk[-1:].isdigit():
        return f"{disk}p{number}"
    return f"{disk}{number}"


def partition_paths(disk: str) -> PartitionLayout:
    return PartitionLayout(
        disk=disk,
        boot=partition_device(disk, 1),
        root=partition_device(disk, 2),
    )


def _check_device(disk: str) -> None:
    if not _DEVICE_RE.fullmatch(disk):
        raise ProvisioningError(f"Unsafe device path: {disk}")


def create_partitions(
    disk: str,
    *,
    efi_size: str = "1G",
    dry_run: bool = False,
) -> List[str]:
    """Replace the partition table of ``disk`` with an EFI + root layout.

    * Partition 1: EFI System (type EF00) of ``efi_size``, labelled ``boot``.
    * Partition 2: Linux filesystem (type 8300) using the remaining space,
      labelled ``nixos``.

    Returns:
        The executed (or, with ``dry_run``, printed) commands.
    """

    _check_device(disk)

    cmds: List[List[str]] = [
        ["sgdisk", "--zap-all", disk],
        ["sgdisk", "-n", f"1:1M:+{efi_size}", "-t", "1:ef00", "-c", f"1:{BOOT_LABEL}", disk],
        ["sgdisk", "-n", "2:0:0", "-t", "2:8300", "-c", f"2:{ROOT_LABEL}", disk],
    ]
    for cmd in cmds:
        run_command(cmd, stage=STAGE, dry_run=dry_run)
    return [" ".join(cmd) for cmd in cmds]


def reread_partition_table(disk: str, *, dry_run: bool = False) -> None:
    """Ask the kernel to re-read ``disk`` and let udev finish processing."""

    run_command(["partprobe", disk], stage=STAGE, dry_run=dry_run)
    run_command(["udevadm", "settle"], stage=STAGE, dry_run=dry_run)


def wait_for_partitions(
    paths: Sequence[str],
    *,
    attempts: int = 30,
    delay: float = 0.5,
    exists: Callable[[str], bool] = is_block_device,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Poll until every path in ``paths`` is a block device."""

    log_event(
        "nixos_bootstrap.partition.wait.start",
        paths=list(paths),
        attempts=attempts,
        delay_seconds=delay,
    )
    missing: List[str] = list(paths)
    for attempt in range(1, attempts + 1):
        missing = [path for path in paths if not exists(path)]
        if not missing:
            log_event("nixos_bootstrap.partition.wait.ready", attempt=attempt)
            return
        sleep(delay)

    log_event("nixos_bootstrap.partition.wait.timeout", missing=missing)
    raise ProvisioningError(
        "Partition device(s) did not appear after re-reading the partition table: "
        + ", ".join(missing)
    )


def format_partitions(layout: PartitionLayout, *, dry_run: bool = False) -> None:
    """Create FAT32 on the EFI partition and ext4 on the root partition."""

    run_command(
        ["mkfs.fat", "-F", "32", "-n", BOOT_LABEL, layout.boot],
        stage=STAGE,
        dry_run=dry_run,
    )
    run_command(
        ["mkfs.ext4", "-F", "-L", ROOT_LABEL, layout.root],
        stage=STAGE,
        dry_run=dry_run,
    )


def provision_disk(
    disk: str,
    *,
    efi_size: str = "1G",
    dry_run: bool = False,
    wait: Callable[[Sequence[str]], None] = wait_for_partitions,
) -> PartitionLayout:
    """Wipe, partition and format ``disk``; return the resulting layout."""

    layout = partition_paths(disk)
    print(f">>> Partitioning {disk}...")
    create_partitions(disk, efi_size=efi_size, dry_run=dry_run)
    reread_partition_table(disk, dry_run=dry_run)
    if not dry_run:
        wait([layout.boot, layout.root])

    print(">>> Formatting partitions...")
    format_partitions(layout, dry_run=dry_run)
    log_event(
        "nixos_bootstrap.partition.provisioned",
        disk=disk,
        boot=layout.boot,
        root=layout.root,
    )
    return layout
