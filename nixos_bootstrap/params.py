"""Installation parameter resolution and validation."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Callable, Mapping, Optional

from .inventory import is_block_device
from .logging_utils import log_event

DEFAULT_DISK = "/dev/sda"
DEFAULT_USERNAME = "nixos"
DEFAULT_HOSTNAME = "nixos"
DEFAULT_TIMEZONE = "UTC"
DEFAULT_LOCALE = "en_US.UTF-8"
DEFAULT_ROOT = Path("/mnt")
DEFAULT_EFI_SIZE = "1G"
DEFAULT_SWAP_MIN_GB = 4

_ENV_PREFIX = "NIXOS_BOOTSTRAP_"
PASSWORD_ENV = _ENV_PREFIX + "PASSWORD"

_USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
_HOSTNAME_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")
_TIMEZONE_RE = re.compile(r"^[A-Za-z0-9_+\-]+(?:/[A-Za-z0-9_+\-]+)*$")
_LOCALE_RE = re.compile(r"^[A-Za-z]+(?:_[A-Za-z]+)?(?:\.[A-Za-z0-9-]+)?(?:@[A-Za-z]+)?$")
_EFI_SIZE_RE = re.compile(r"^[1-9][0-9]*[KMGT]$")
_SWAP_RE = re.compile(r"^([0-9]+)\s*[gG]?$")


class ParameterError(ValueError):
    """A user supplied installation parameter is missing or invalid."""

    def __init__(self, name: str, message: str) -> None:
        super().__init__(message)
        self.name = name


@dataclass(frozen=True)
class ConfigSource:
    """Where the system configuration comes from.

    When ``config_path`` is set, that file is copied out of a clone of
    ``repo_url``. Otherwise the built-in template is rendered and
    ``repo_url`` (if any) is cloned by a one-shot unit on first boot.
    """

    repo_url: Optional[str] = None
    config_path: Optional[str] = None

    @property
    def from_repository(self) -> bool:
        return self.config_path is not None


@dataclass(frozen=True)
class Defaults:
    """Built-in defaults, optionally overridden from the environment."""

    disk: str = DEFAULT_DISK
    username: str = DEFAULT_USERNAME
    hostname: str = DEFAULT_HOSTNAME
    repo_url: Optional[str] = None
    config_path: Optional[str] = None
    timezone: str = DEFAULT_TIMEZONE
    locale: str = DEFAULT_LOCALE
    swap_min_gb: int = DEFAULT_SWAP_MIN_GB
    root_path: Path = DEFAULT_ROOT
    efi_size: str = DEFAULT_EFI_SIZE


@dataclass(frozen=True)
class InstallParameters:
    """Validated, immutable parameter set for one installation run."""

    disk: str
    username: str
    password: str = field(repr=False)
    hostname: str
    timezone: str
    locale: str
    source: ConfigSource
    swap_size_gb: int
    root_path: Path = DEFAULT_ROOT
    efi_size: str = DEFAULT_EFI_SIZE
    dry_run: bool = False

    @property
    def swap_size_mb(self) -> int:
        return swap_size_mb(self.swap_size_gb)

    @property
    def config_dir(self) -> Path:
        return self.root_path / "etc/nixos"

    @property
    def clone_target_dir(self) -> str:
        return f"/home/{self.username}/nixos-config"


def _env_value(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(_ENV_PREFIX + name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def defaults_from_environment(environ: Optional[Mapping[str, str]] = None) -> Defaults:
    """Return :class:`Defaults` with ``NIXOS_BOOTSTRAP_*`` overrides applied."""

    env = os.environ if environ is None else environ
    base = Defaults()

    swap_min = base.swap_min_gb
    raw_swap_min = _env_value(env, "SWAP_MIN_GB")
    if raw_swap_min is not None:
        swap_min = parse_swap_size(raw_swap_min, name="NIXOS_BOOTSTRAP_SWAP_MIN_GB")

    root = _env_value(env, "ROOT")

    return Defaults(
        disk=_env_value(env, "DISK") or base.disk,
        username=_env_value(env, "USER") or base.username,
        hostname=_env_value(env, "HOSTNAME") or base.hostname,
        repo_url=_env_value(env, "REPO"),
        config_path=_env_value(env, "CONFIG_PATH"),
        timezone=_env_value(env, "TIMEZONE") or base.timezone,
        locale=_env_value(env, "LOCALE") or base.locale,
        swap_min_gb=swap_min,
        root_path=Path(root) if root else base.root_path,
        efi_size=_env_value(env, "EFI_SIZE") or base.efi_size,
    )


def pop_password_from_environment(environ: Optional[dict] = None) -> Optional[str]:
    """Remove and return the password passed through the environment."""

    env = os.environ if environ is None else environ
    value = env.pop(PASSWORD_ENV, None)
    return value or None


def compute_swap_size_gb(ram_mb: int, minimum_gb: int = DEFAULT_SWAP_MIN_GB) -> int:
    """Round ``ram_mb`` up to whole GiB, never going below ``minimum_gb``."""

    if ram_mb < 0:
        raise ValueError("RAM size cannot be negative")
    ram_gb = (ram_mb + 1023) // 1024
    return max(ram_gb, minimum_gb)


def swap_size_mb(swap_size_gb: int) -> int:
    return swap_size_gb * 1024


def parse_swap_size(value: object, *, name: str = "swap_size") -> int:
    """Return ``value`` as a positive number of GiB.

    Accepts integers and strings such as ``"8"`` or ``"8G"``.
    """

    if isinstance(value, bool):
        raise ParameterError(name, f"Swap size must be a number (got: {value})")
    if isinstance(value, int):
        number = value
    else:
        match = _SWAP_RE.fullmatch(str(value).strip())
        if match is None:
            raise ParameterError(name, f"Swap size must be a number (got: {value})")
        number = int(match.group(1))
    if number <= 0:
        raise ParameterError(name, f"Swap size must be positive (got: {value})")
    return number


def _validate_config_path(config_path: str) -> str:
    candidate = PurePosixPath(config_path)
    if candidate.is_absolute() or ".." in candidate.parts or not candidate.parts:
        raise ParameterError(
            "config_path",
            f"Config path must be relative to the repository root (got: {config_path})",
        )
    return str(candidate)


def check_disk(disk: str, *, block_device_check: Callable[[str], bool] = is_block_device) -> None:
    """Raise :class:`ParameterError` unless ``disk`` is an existing block device."""

    if not disk or not disk.startswith("/dev/"):
        raise ParameterError("disk", f"Disk must be a /dev path (got: {disk or 'none'})")
    if not block_device_check(disk):
        raise ParameterError("disk", f"Disk {disk} does not exist or is not a block device!")


def resolve_parameters(
    *,
    disk: str,
    username: str,
    password: Optional[str],
    hostname: str,
    timezone: str,
    locale: str,
    repo_url: Optional[str],
    config_path: Optional[str],
    swap_size_gb: object,
    root_path: Path = DEFAULT_ROOT,
    efi_size: str = DEFAULT_EFI_SIZE,
    dry_run: bool = False,
    block_device_check: Callable[[str], bool] = is_block_device,
) -> InstallParameters:
    """Validate raw values and return an :class:`InstallParameters`.

    Raises :class:`ParameterError` naming the first invalid value.
    """

    check_disk(disk, block_device_check=block_device_check)

    if not _USERNAME_RE.fullmatch(username or ""):
        raise ParameterError(
            "username",
            "Usernames must start with a lower case letter or underscore, followed by "
            f"lower case letters, digits, underscores or dashes (got: {username})",
        )
    if username == "root":
        raise ParameterError("username", "Choose a regular user name instead of root.")
    if not _HOSTNAME_RE.fullmatch(hostname or ""):
        raise ParameterError("hostname", f"Invalid hostname: {hostname}")
    if not _TIMEZONE_RE.fullmatch(timezone or ""):
        raise ParameterError("timezone", f"Invalid timezone: {timezone}")
    if not _LOCALE_RE.fullmatch(locale or ""):
        raise ParameterError("locale", f"Invalid locale: {locale}")
    if not _EFI_SIZE_RE.fullmatch(efi_size or ""):
        raise ParameterError("efi_size", f"Invalid EFI partition size: {efi_size}")

    if repo_url is not None:
        repo_url = repo_url.strip()
        if not repo_url or any(ch.isspace() for ch in repo_url):
            raise ParameterError("repo_url", f"Invalid repository URL: {repo_url!r}")
    if config_path is not None:
        if repo_url is None:
            raise ParameterError("config_path", "A config path requires a repository URL.")
        config_path = _validate_config_path(config_path)

    swap = parse_swap_size(swap_size_gb)

    if not password:
        raise ParameterError("password", "A password is required for the new user.")
    if "\n" in password or "\r" in password:
        raise ParameterError("password", "The password cannot contain line breaks.")

    params = InstallParameters(
        disk=disk,
        username=username,
        password=password,
        hostname=hostname,
        timezone=timezone,
        locale=locale,
        source=ConfigSource(repo_url=repo_url, config_path=config_path),
        swap_size_gb=swap,
        root_path=Path(root_path),
        efi_size=efi_size,
        dry_run=dry_run,
    )
    log_event(
        "nixos_bootstrap.params.resolved",
        disk=params.disk,
        username=params.username,
        hostname=params.hostname,
        timezone=params.timezone,
        locale=params.locale,
        repo_url=params.source.repo_url,
        config_path=params.source.config_path,
        swap_size_gb=params.swap_size_gb,
        root_path=params.root_path,
        dry_run=params.dry_run,
    )
    return params
