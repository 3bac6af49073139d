"""Drive the interactive installer prompts through a pseudo terminal."""

from __future__ import annotations

import importlib.util
import os
import sys
from pathlib import Path
from typing import Optional

import pytest

from nixos_bootstrap.inventory import enumerate_disks, is_block_device

pexpect_spec = importlib.util.find_spec("pexpect")
if pexpect_spec is None:  # pragma: no cover - environment specific
    pexpect = None  # type: ignore[assignment]
else:
    import pexpect  # type: ignore

pytestmark = pytest.mark.skipif(pexpect is None, reason="pexpect is not installed")

REPO_ROOT = Path(__file__).resolve().parents[1]
TIMEOUT = 30


def _spawn(*args: str):
    env = {
        key: value
        for key, value in os.environ.items()
        if not key.startswith("NIXOS_BOOTSTRAP_")
    }
    env["PYTHONPATH"] = str(REPO_ROOT)
    return pexpect.spawn(
        sys.executable,
        ["-m", "nixos_bootstrap.nixos_bootstrap", *args],
        cwd=str(REPO_ROOT),
        env=env,
        encoding="utf-8",
        timeout=TIMEOUT,
    )


def _answer_prompts(child, disk: str) -> None:
    child.expect_exact("Disk [")
    child.sendline(disk)
    for label in ("User [", "Hostname [", "Config repository [", "Timezone [", "Locale [", "Swap size in GB ["):
        child.expect_exact(label)
        child.sendline("")


def _first_block_device() -> Optional[str]:
    for disk in enumerate_disks():
        if is_block_device(disk.path):
            return disk.path
    return None


def test_interactive_rejects_missing_disk() -> None:
    child = _spawn("-i", "--dry-run")
    _answer_prompts(child, "/dev/nonexistent-disk")

    child.expect_exact("does not exist or is not a block device!")
    child.expect(pexpect.EOF)
    child.close()
    assert child.exitstatus == 1


def test_interactive_password_retry_and_decline() -> None:
    disk = _first_block_device()
    if disk is None:
        pytest.skip("no block device available")

    child = _spawn("-i", "--dry-run")
    _answer_prompts(child, disk)

    child.expect_exact("Enter password for user 'nixos': ")
    child.sendline("first")
    child.expect_exact("Confirm password: ")
    child.sendline("second")
    child.expect_exact("Passwords do not match. Please try again.")
    child.expect_exact("Enter password for user 'nixos': ")
    child.sendline("matching")
    child.expect_exact("Confirm password: ")
    child.sendline("matching")

    child.expect_exact("Installation Details")
    child.expect_exact(f"WARNING: This will WIPE ALL DATA on the disk {disk}.")
    child.expect_exact("Type 'yes' to confirm")
    child.sendline("no")
    child.expect_exact("Installation cancelled by user.")
    child.expect(pexpect.EOF)
    child.close()
    assert child.exitstatus == 0
