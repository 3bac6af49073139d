"""Switch an installed system over to its cloned flake repository."""

from __future__ import annotations

import argparse
import os
import shutil
import socket
import subprocess
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from .commands import StageError, run_command
from .logging_utils import log_event

STAGE = "adopt"
DEFAULT_ETC_NIXOS = Path("/etc/nixos")


def _privileged(argv: List[str]) -> List[str]:
    if os.geteuid() == 0:
        return argv
    return ["sudo", *argv]


def host_hardware_path(config_dir: Path, host: str) -> Path:
    """Return where the flake expects ``host``'s hardware configuration."""

    return config_dir / "hosts" / host / "hardware-configuration.nix"


def adopt_flake(
    *,
    config_dir: Path,
    host: str,
    repo_url: Optional[str] = None,
    etc_nixos: Path = DEFAULT_ETC_NIXOS,
    dry_run: bool = False,
) -> Path:
    """Place the generated hardware configuration in the flake and switch to it.

    ``config_dir`` is cloned from ``repo_url`` when missing. The files under
    ``etc_nixos`` are copied, not removed, so the previous configuration keeps
    evaluating if the switch fails.
    """

    if not config_dir.exists():
        if not repo_url:
            raise StageError(
                f"{config_dir} does not exist; pass --repo to clone it",
                stage=STAGE,
            )
        print(f">>> Cloning {repo_url} to {config_dir}...")
        run_command(["git", "clone", "--", repo_url, str(config_dir)], stage=STAGE, dry_run=dry_run)

    source = etc_nixos / "hardware-configuration.nix"
    destination = host_hardware_path(config_dir, host)
    if dry_run:
        print(f"[dry-run] cp {source} {destination}")
    elif source.exists():
        print(f">>> Copying {source} to {destination}...")
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, destination)
    elif not destination.exists():
        raise StageError(
            f"{source} is missing and {destination} does not exist yet",
            stage=STAGE,
        )
    log_event(
        "nixos_bootstrap.flake.hardware_config_placed",
        source=source,
        destination=destination,
        dry_run=dry_run,
    )

    print(f">>> Switching to {config_dir}#{host}...")
    run_command(
        _privileged(["nixos-rebuild", "switch", "--flake", f"{config_dir}#{host}"]),
        stage=STAGE,
        dry_run=dry_run,
    )
    return destination


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``nixos-bootstrap-adopt``."""

    parser = argparse.ArgumentParser(
        description="Adopt the cloned flake configuration on an installed system"
    )
    parser.add_argument("-r", "--repo", help="Repository to clone when the config dir is missing")
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=Path("~/nixos-config"),
        help="Flake checkout (default: ~/nixos-config)",
    )
    parser.add_argument(
        "-H",
        "--host",
        default=socket.gethostname(),
        help="Flake host output to switch to (default: this machine's hostname)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print commands without executing them",
    )
    args = parser.parse_args(argv)

    try:
        adopt_flake(
            config_dir=args.config_dir.expanduser(),
            host=args.host,
            repo_url=args.repo,
            dry_run=args.dry_run,
        )
    except (StageError, subprocess.CalledProcessError, OSError) as exc:
        print(f"Adoption failed: {exc}", file=sys.stderr)
        return 1
    if not args.dry_run:
        print("Flake configuration is now active.")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
