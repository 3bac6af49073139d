"""CLI entry point for nixos-bootstrap."""

import argparse
import getpass
import os
import sys
from pathlib import Path
from typing import Callable, Optional, Sequence

from . import assemble, install, inventory, mounts, params as parameters, safety
from .logging_utils import log_event
from .params import Defaults, ParameterError


def _is_interactive() -> bool:
    """Return ``True`` when the CLI is connected to an interactive terminal."""

    try:
        return sys.stdin.isatty() and sys.stdout.isatty()
    except Exception:  # pragma: no cover - closed standard streams
        return False


def _build_parser(defaults: Defaults) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nixos-bootstrap",
        description=(
            "Partition a disk, generate a NixOS configuration and install NixOS. "
            "ALL DATA ON THE TARGET DISK IS DESTROYED."
        ),
        add_help=False,
        epilog=(
            "Defaults can be overridden with NIXOS_BOOTSTRAP_* environment variables "
            "(DISK, USER, HOSTNAME, REPO, CONFIG_PATH, TIMEZONE, LOCALE, SWAP_MIN_GB, "
            "ROOT, EFI_SIZE). NIXOS_BOOTSTRAP_PASSWORD supplies the password and is "
            "removed from the environment once read."
        ),
    )
    parser.add_argument("-h", "--help", action="store_true", help="Show available disks and this help")
    parser.add_argument("-d", "--disk", help=f"Target block device (default: {defaults.disk})")
    parser.add_argument("-u", "--user", help=f"User to create (default: {defaults.username})")
    parser.add_argument(
        "-p",
        "--password",
        help="Password for the user (required; prefer the prompt or --password-stdin)",
    )
    parser.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from the first line of standard input",
    )
    parser.add_argument("-H", "--hostname", help=f"Hostname (default: {defaults.hostname})")
    parser.add_argument(
        "-r",
        "--repo",
        help=f"Git repository holding your NixOS configuration (default: {defaults.repo_url or 'none'})",
    )
    parser.add_argument(
        "-c",
        "--config-path",
        help=(
            "File inside the repository to install as configuration.nix; "
            "without it the built-in template is used and the repository is "
            "cloned on first boot"
        ),
    )
    parser.add_argument(
        "-s",
        "--swap-size",
        help=(
            "Swap file size in GB (default: installed RAM rounded up, "
            f"at least {defaults.swap_min_gb}G)"
        ),
    )
    parser.add_argument("--timezone", help=f"Time zone (default: {defaults.timezone})")
    parser.add_argument("--locale", help=f"Default locale (default: {defaults.locale})")
    parser.add_argument("--root", type=Path, help=f"Staging mount point (default: {defaults.root_path})")
    parser.add_argument("--efi-size", help=f"EFI partition size (default: {defaults.efi_size})")
    parser.add_argument(
        "-i",
        "--interactive",
        action="store_true",
        help="Prompt for every value, offering the defaults",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print commands without executing them",
    )
    return parser


def _print_help(parser: argparse.ArgumentParser) -> None:
    print("")
    print("Available disks:")
    print(inventory.describe_block_devices())
    print("")
    print(parser.format_help())


def _ask(label: str, default: Optional[str], prompt: Callable[[str], str] = input) -> Optional[str]:
    shown = default if default else "none"
    try:
        answer = prompt(f"{label} [{shown}]: ").strip()
    except EOFError:
        return default
    if answer == "-":
        return None
    return answer or default


def _prompt_password(username: str, reader: Callable[[str], str] = getpass.getpass) -> Optional[str]:
    """Ask for the password twice until both entries match and are non-empty."""

    while True:
        try:
            first = reader(f"Enter password for user '{username}': ")
            second = reader("Confirm password: ")
        except EOFError:
            return None
        if first != second:
            print("Passwords do not match. Please try again.")
            continue
        if not first:
            print("Password cannot be empty. Please try again.")
            continue
        return first


def _default_swap_size(defaults: Defaults) -> int:
    ram_mb = inventory.detect_ram_mb()
    return parameters.compute_swap_size_gb(ram_mb, defaults.swap_min_gb)


def _collect_parameters(
    args: argparse.Namespace,
    defaults: Defaults,
    env_password: Optional[str],
) -> parameters.InstallParameters:
    """Merge flags, defaults and prompts; raise ``ParameterError`` when invalid."""

    disk = args.disk or defaults.disk
    username = args.user or defaults.username
    hostname = args.hostname or defaults.hostname
    repo_url = args.repo or defaults.repo_url
    config_path = args.config_path or defaults.config_path
    timezone = args.timezone or defaults.timezone
    locale = args.locale or defaults.locale
    swap_size = args.swap_size

    if args.interactive:
        print("")
        print("Available disks:")
        print(inventory.describe_block_devices())
        print("Enter '-' to clear an optional value.")
        disk = _ask("Disk", disk) or disk
        username = _ask("User", username) or username
        hostname = _ask("Hostname", hostname) or hostname
        repo_url = _ask("Config repository", repo_url)
        if repo_url:
            config_path = _ask("File in the repository to install (empty for template)", config_path)
        else:
            config_path = None
        timezone = _ask("Timezone", timezone) or timezone
        locale = _ask("Locale", locale) or locale
        swap_size = _ask("Swap size in GB", swap_size or str(_default_swap_size(defaults)))

    password = args.password or env_password
    if args.password_stdin:
        password = sys.stdin.readline().rstrip("\r\n")

    parameters.check_disk(disk)
    if swap_size is None:
        swap_size = _default_swap_size(defaults)
    if not password and (args.interactive or _is_interactive()):
        password = _prompt_password(username)
    return parameters.resolve_parameters(
        disk=disk,
        username=username,
        password=password,
        hostname=hostname,
        timezone=timezone,
        locale=locale,
        repo_url=repo_url,
        config_path=config_path,
        swap_size_gb=swap_size,
        root_path=args.root or defaults.root_path,
        efi_size=args.efi_size or defaults.efi_size,
        dry_run=args.dry_run,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Run the installer; return the process exit status."""

    args_list = list(sys.argv[1:] if argv is None else argv)
    env_password = parameters.pop_password_from_environment()

    try:
        defaults = parameters.defaults_from_environment()
    except ParameterError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    parser = _build_parser(defaults)
    if not args_list:
        _print_help(parser)
        return 0
    args = parser.parse_args(args_list)
    if args.help:
        _print_help(parser)
        return 0

    try:
        params = _collect_parameters(args, defaults, env_password)
    except ParameterError as exc:
        log_event("nixos_bootstrap.cli.invalid_parameter", name=exc.name, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        print(parser.format_usage(), file=sys.stderr, end="")
        return 1
    except KeyboardInterrupt:
        print("\nInstallation cancelled by user.")
        return 130

    if not params.dry_run and os.geteuid() != 0:
        print("Error: nixos-bootstrap must be run as root (use sudo).", file=sys.stderr)
        return 1

    if not params.dry_run:
        busy = mounts.busy_mounts(params.disk, params.root_path)
        if busy:
            print(f"Error: {params.disk} or {params.root_path} is still in use:", file=sys.stderr)
            for entry in busy:
                print(f"  {entry}", file=sys.stderr)
            print(
                f"Unmount them (e.g. 'umount -R {params.root_path}') and run again.",
                file=sys.stderr,
            )
            return 1

    try:
        confirmed = safety.confirm_destruction(params)
    except KeyboardInterrupt:
        print("\nInstallation cancelled by user.")
        return 130
    if not confirmed:
        return 0

    try:
        result = install.run_installation(params)
    except KeyboardInterrupt:
        print("", file=sys.stderr)
        print(
            f"Interrupted. {params.disk} is left in whatever state the last "
            "completed step produced; nothing was rolled back.",
            file=sys.stderr,
        )
        return 130

    if not result.ok:
        print(f"Installation failed during {result.stage}: {result.reason}", file=sys.stderr)
        if result.stage in {assemble.STAGE, install.INSTALL_STAGE} and not params.dry_run:
            print(
                f"Filesystems are still mounted at {params.root_path}; "
                f"run 'umount -R {params.root_path}' before retrying.",
                file=sys.stderr,
            )
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
