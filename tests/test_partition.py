"""Tests for disk partitioning and formatting."""

import pytest

from nixos_bootstrap import partition
from nixos_bootstrap.commands import CommandError
from nixos_bootstrap.partition import ProvisioningError


@pytest.mark.parametrize(
    "disk, boot, root",
    [
        ("/dev/sda", "/dev/sda1", "/dev/sda2"),
        ("/dev/vdb", "/dev/vdb1", "/dev/vdb2"),
        ("/dev/nvme0n1", "/dev/nvme0n1p1", "/dev/nvme0n1p2"),
        ("/dev/mmcblk0", "/dev/mmcblk0p1", "/dev/mmcblk0p2"),
        (
            "/dev/disk/by-id/ata-QEMU_HARDDISK_QM00001",
            "/dev/disk/by-id/ata-QEMU_HARDDISK_QM00001-part1",
            "/dev/disk/by-id/ata-QEMU_HARDDISK_QM00001-part2",
        ),
    ],
)
def test_partition_paths(disk, boot, root) -> None:
    layout = partition.partition_paths(disk)

    assert layout.disk == disk
    assert layout.boot == boot
    assert layout.root == root


def test_create_partitions_dry_run(capsys, fake_run) -> None:
    cmds = partition.create_partitions("/dev/sda", dry_run=True)

    assert cmds == [
        "sgdisk --zap-all /dev/sda",
        "sgdisk -n 1:1M:+1G -t 1:ef00 -c 1:boot /dev/sda",
        "sgdisk -n 2:0:0 -t 2:8300 -c 2:nixos /dev/sda",
    ]
    assert fake_run.calls == []
    out = capsys.readouterr().out
    assert "[dry-run] sgdisk --zap-all /dev/sda" in out


def test_create_partitions_uses_efi_size(fake_run) -> None:
    partition.create_partitions("/dev/nvme0n1", efi_size="512M")

    assert fake_run.calls[1] == [
        "sgdisk", "-n", "1:1M:+512M", "-t", "1:ef00", "-c", "1:boot", "/dev/nvme0n1",
    ]


def test_create_partitions_rejects_unsafe_path(fake_run) -> None:
    with pytest.raises(ProvisioningError):
        partition.create_partitions("/dev/sda; rm -rf /")

    assert fake_run.calls == []


def test_provision_disk_runs_commands_in_order(fake_run) -> None:
    waited = []

    layout = partition.provision_disk("/dev/sda", wait=waited.append)

    assert fake_run.calls == [
        ["sgdisk", "--zap-all", "/dev/sda"],
        ["sgdisk", "-n", "1:1M:+1G", "-t", "1:ef00", "-c", "1:boot", "/dev/sda"],
        ["sgdisk", "-n", "2:0:0", "-t", "2:8300", "-c", "2:nixos", "/dev/sda"],
        ["partprobe", "/dev/sda"],
        ["udevadm", "settle"],
        ["mkfs.fat", "-F", "32", "-n", "boot", "/dev/sda1"],
        ["mkfs.ext4", "-F", "-L", "nixos", "/dev/sda2"],
    ]
    assert waited == [["/dev/sda1", "/dev/sda2"]]
    assert layout.root == "/dev/sda2"


def test_provision_disk_dry_run_skips_wait(fake_run) -> None:
    def fail_wait(paths):
        raise AssertionError("wait should not run during a dry run")

    layout = partition.provision_disk("/dev/nvme0n1", dry_run=True, wait=fail_wait)

    assert fake_run.calls == []
    assert layout.boot == "/dev/nvme0n1p1"


def test_provision_disk_stops_on_command_failure(fake_run) -> None:
    fake_run.returncodes["partprobe"] = 1

    with pytest.raises(CommandError) as excinfo:
        partition.provision_disk("/dev/sda", wait=lambda paths: None)

    assert excinfo.value.stage == partition.STAGE
    assert excinfo.value.returncode == 1
    assert "mkfs.fat" not in fake_run.programs()


def test_wait_for_partitions_times_out() -> None:
    sleeps = []

    with pytest.raises(ProvisioningError) as excinfo:
        partition.wait_for_partitions(
            ["/dev/sda1", "/dev/sda2"],
            attempts=3,
            delay=0.1,
            exists=lambda path: path == "/dev/sda1",
            sleep=sleeps.append,
        )

    assert sleeps == [0.1, 0.1, 0.1]
    assert "/dev/sda2" in str(excinfo.value)
    assert "/dev/sda1" not in str(excinfo.value)


def test_wait_for_partitions_returns_once_present() -> None:
    seen = {"count": 0}

    def exists(path):
        seen["count"] += 1
        return seen["count"] > 2

    sleeps = []
    partition.wait_for_partitions(["/dev/sda1"], exists=exists, sleep=sleeps.append)

    assert len(sleeps) == 2
