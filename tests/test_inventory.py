"""Tests for the inventory module."""

from pathlib import Path
from types import SimpleNamespace

from nixos_bootstrap import inventory
from nixos_bootstrap.inventory import describe_block_devices, enumerate_disks, is_block_device


def create_disk(root: Path, name: str, *, removable: str = "0", rotational: str = "0", size: str = "0", model: str = "") -> None:
    disk = root / name
    (disk / "device").mkdir(parents=True)
    (disk / "queue").mkdir()
    (disk / "removable").write_text(removable)
    (disk / "queue" / "rotational").write_text(rotational)
    (disk / "size").write_text(size)
    (disk / "device" / "model").write_text(model)


def test_enumerate_disks(tmp_path: Path) -> None:
    create_disk(
        tmp_path,
        "sda",
        removable="0",
        rotational="1",
        size="2097152",
        model="TestDisk",
    )
    create_disk(tmp_path, "sdb", removable="1")
    (tmp_path / "loop0").mkdir()
    (tmp_path / "zram0").mkdir()

    disks = enumerate_disks(tmp_path)
    assert [d.name for d in disks] == ["sda", "sdb"]
    d = disks[0]
    assert d.path == "/dev/sda"
    assert d.model == "TestDisk"
    assert d.size == 2097152 * 512
    assert d.rotational is True
    assert disks[1].removable is True


def test_enumerate_disks_missing_sysfs(tmp_path: Path) -> None:
    assert enumerate_disks(tmp_path / "absent") == []


def test_describe_block_devices_prefers_lsblk(monkeypatch) -> None:
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return SimpleNamespace(returncode=0, stdout="NAME SIZE MODEL TYPE\n/dev/sda 20G QEMU disk\n")

    monkeypatch.setattr(inventory.subprocess, "run", fake_run)

    text = describe_block_devices()

    assert calls == [inventory.LSBLK_COMMAND]
    assert "/dev/sda 20G QEMU disk" in text


def test_describe_block_devices_falls_back_to_sysfs(monkeypatch, tmp_path: Path) -> None:
    create_disk(tmp_path, "vda", size=str(40 * 1024 * 1024 * 2), model="VirtIO")

    def missing(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(inventory.subprocess, "run", missing)

    text = describe_block_devices(tmp_path)

    assert text.splitlines()[0].startswith("NAME")
    assert "/dev/vda" in text
    assert "40.0G" in text
    assert "VirtIO" in text


def test_is_block_device_rejects_regular_files(tmp_path: Path) -> None:
    regular = tmp_path / "disk.img"
    regular.write_bytes(b"\0" * 16)

    assert is_block_device(str(regular)) is False
    assert is_block_device(str(tmp_path / "missing")) is False


def test_detect_ram_mb_uses_psutil(monkeypatch) -> None:
    monkeypatch.setattr(
        inventory.psutil,
        "virtual_memory",
        lambda: SimpleNamespace(total=3500 * 1024 * 1024 + 123),
    )

    assert inventory.detect_ram_mb() == 3500
