"""Read-only health checks for a freshly installed system."""

from __future__ import annotations

import argparse
import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, TextIO, Tuple

from .logging_utils import log_event

DEFAULT_PING_HOST = "google.com"

Runner = Callable[..., subprocess.CompletedProcess]


@dataclass(frozen=True)
class Check:
    """A single diagnostic command."""

    title: str
    command: Tuple[str, ...]
    tail: Optional[int] = None
    timeout: Optional[float] = None
    failure_hint: Optional[str] = None


@dataclass(frozen=True)
class CheckResult:
    """Outcome of running a :class:`Check`."""

    check: Check
    returncode: int
    output: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and self.error is None


def _privileged(argv: Sequence[str]) -> Tuple[str, ...]:
    if os.geteuid() == 0:
        return tuple(argv)
    return ("sudo", *argv)


def default_checks(
    config_dir: Path,
    *,
    ping_host: str = DEFAULT_PING_HOST,
    include_dry_build: bool = True,
) -> List[Check]:
    """Return the standard post-install check list."""

    checks = [
        Check("DISK LAYOUT", ("lsblk", "-f")),
        Check("DISK USAGE", ("df", "-h")),
        Check("SWAP STATUS", ("swapon", "--show")),
        Check("MEMORY", ("free", "-h")),
        Check("HOSTNAME", ("hostnamectl",)),
        Check("NETWORK TEST", ("ping", "-c", "3", ping_host), timeout=30),
        Check("USER INFO", ("id",)),
        Check("GROUPS", ("groups",)),
        Check("SYSTEMD FAILED SERVICES", ("systemctl", "--failed", "--no-pager")),
        Check(
            "CLONE SERVICE STATUS",
            ("systemctl", "status", "clone-config-repo.service", "--no-pager"),
        ),
        Check("SSH STATUS", ("systemctl", "status", "sshd", "--no-pager")),
        Check("NIXOS VERSION", ("nixos-version",)),
        Check(
            "CONFIG REPO",
            ("ls", "-la", str(config_dir)),
            failure_hint="Repo not found",
        ),
        Check("BOOT ENTRIES", _privileged(["bootctl", "list"])),
        Check(
            "RECENT ERRORS IN JOURNAL",
            _privileged(["journalctl", "-p", "3", "-b", "--no-pager"]),
            tail=20,
        ),
    ]
    if include_dry_build:
        checks.append(
            Check("CONFIGURATION TEST", _privileged(["nixos-rebuild", "dry-build"]))
        )
    return checks


def run_check(check: Check, *, runner: Optional[Runner] = None) -> CheckResult:
    """Run ``check``; command failures are captured, never raised."""

    runner = runner or subprocess.run
    log_event("nixos_bootstrap.diagnostics.check.start", title=check.title, command=check.command)
    try:
        completed = runner(
            list(check.command),
            check=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=check.timeout,
        )
    except FileNotFoundError:
        result = CheckResult(check, 127, "", error=f"{check.command[0]}: command not found")
    except subprocess.TimeoutExpired:
        result = CheckResult(check, 124, "", error=f"timed out after {check.timeout:g}s")
    else:
        output = completed.stdout or ""
        if check.tail is not None:
            output = "\n".join(output.splitlines()[-check.tail:])
        error = None
        if completed.returncode != 0:
            error = check.failure_hint or f"exited with status {completed.returncode}"
        result = CheckResult(check, completed.returncode, output, error=error)

    log_event(
        "nixos_bootstrap.diagnostics.check.finished",
        title=check.title,
        returncode=result.returncode,
        ok=result.ok,
    )
    return result


def run_diagnostics(
    checks: Sequence[Check],
    *,
    runner: Optional[Runner] = None,
    out: Optional[TextIO] = None,
) -> List[CheckResult]:
    """Run every check in order, reporting failures without stopping."""

    if out is None:
        out = sys.stdout
    results: List[CheckResult] = []
    for check in checks:
        out.write(f"=== {check.title} ===\n")
        result = run_check(check, runner=runner)
        if result.output:
            out.write(result.output.rstrip("\n") + "\n")
        if not result.ok:
            out.write(f"!!! {check.title} check failed: {result.error}\n")
        out.write("\n")
        out.flush()
        results.append(result)

    failed = [result.check.title for result in results if not result.ok]
    if failed:
        out.write(f"{len(failed)} of {len(results)} checks failed: {', '.join(failed)}\n")
    else:
        out.write(f"All {len(results)} checks passed.\n")
    return results


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``nixos-bootstrap-check``."""

    parser = argparse.ArgumentParser(
        description="Post-install diagnostics for a NixOS system (read-only)"
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=Path("~/nixos-config"),
        help="Location of the cloned configuration repository",
    )
    parser.add_argument(
        "--ping-host",
        default=DEFAULT_PING_HOST,
        help="Host used for the connectivity check",
    )
    parser.add_argument(
        "--skip-dry-build",
        action="store_true",
        help="Do not run 'nixos-rebuild dry-build'",
    )
    args = parser.parse_args(argv)

    checks = default_checks(
        args.config_dir.expanduser(),
        ping_host=args.ping_host,
        include_dry_build=not args.skip_dry_build,
    )
    results = run_diagnostics(checks)
    return 0 if all(result.ok for result in results) else 1


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
