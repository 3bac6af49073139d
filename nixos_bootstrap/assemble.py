"""Assemble ``/etc/nixos/configuration.nix`` on the staging root."""

from __future__ import annotations

import os
import shlex
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from . import nixconfig
from .commands import StageError, run_command
from .logging_utils import log_event
from .params import ConfigSource, InstallParameters

STAGE = "configure"

PASSWORD_HASH_PLACEHOLDER = "__PASSWORD_HASH_PLACEHOLDER__"
DRY_RUN_HASH = "!dry-run!"


class ConfigurationError(StageError):
    """The target configuration could not be assembled."""

    def __init__(self, message: str) -> None:
        super().__init__(message, stage=STAGE)


def _nix_shell_command(package: str, argv: list[str]) -> list[str]:
    return ["nix-shell", "-p", package, "--run", " ".join(shlex.quote(arg) for arg in argv)]


def generate_hardware_config(root_path: Path, *, dry_run: bool = False) -> None:
    """Run ``nixos-generate-config`` against ``root_path``."""

    print(">>> Generating base NixOS configuration...")
    run_command(
        ["nixos-generate-config", "--root", str(root_path)],
        stage=STAGE,
        dry_run=dry_run,
    )


def hash_password(password: str, *, dry_run: bool = False) -> str:
    """Return a salted SHA-512 crypt hash of ``password``.

    The password is passed on stdin so it never shows up in the process list.
    ``mkpasswd`` comes from the ``whois`` package, pulled in with
    ``nix-shell`` when it is not installed on the live system.
    """

    argv = ["mkpasswd", "-m", "sha-512", "-s"]
    if shutil.which("mkpasswd") is None:
        argv = _nix_shell_command("whois", argv)

    result = run_command(
        argv,
        stage=STAGE,
        dry_run=dry_run,
        input_text=password + "\n",
        capture=True,
    )
    if result is None:
        return DRY_RUN_HASH

    hashed = (result.stdout or "").strip()
    if not hashed.startswith("$6$"):
        raise ConfigurationError("mkpasswd did not return a SHA-512 crypt hash")
    return hashed


def clone_repository(repo_url: str, destination: Path, *, dry_run: bool = False) -> None:
    argv = ["git", "clone", "--depth", "1", "--", repo_url, str(destination)]
    if shutil.which("git") is None:
        argv = _nix_shell_command("git", argv)
    run_command(argv, stage=STAGE, dry_run=dry_run)


def fetch_repository_config(
    source: ConfigSource,
    *,
    dry_run: bool = False,
    scratch_dir: Optional[Path] = None,
) -> Optional[str]:
    """Clone ``source.repo_url`` and return the text of ``source.config_path``.

    The clone lives in a temporary directory that is removed before
    returning, whether or not the copy succeeded.
    """

    if not source.repo_url or not source.config_path:
        raise ConfigurationError("Repository mode needs both a repository URL and a config path")

    with tempfile.TemporaryDirectory(prefix="nixos-bootstrap-", dir=scratch_dir) as scratch:
        clone_dir = Path(scratch) / "nixos-config"
        print(f">>> Cloning configuration repository from {source.repo_url}...")
        clone_repository(source.repo_url, clone_dir, dry_run=dry_run)
        if dry_run:
            return None

        candidate = (clone_dir / source.config_path).resolve()
        if clone_dir.resolve() not in candidate.parents:
            raise ConfigurationError(
                f"{source.config_path} points outside of the cloned repository"
            )
        if not candidate.is_file():
            raise ConfigurationError(
                f"{source.config_path} was not found in {source.repo_url}"
            )
        text = candidate.read_text(encoding="utf-8")

    log_event(
        "nixos_bootstrap.assemble.repository_config_fetched",
        repo_url=source.repo_url,
        config_path=source.config_path,
        scratch_removed=not Path(scratch).exists(),
    )
    return text


def _read_generated_config(config_path: Path) -> str:
    try:
        return config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""


def _prepare_repository_config(params: InstallParameters, text: str) -> str:
    try:
        text = nixconfig.ensure_hardware_import(text)
    except ValueError as exc:
        raise ConfigurationError(
            f"Cannot add the hardware-configuration import to {params.source.config_path}: {exc}"
        ) from exc
    text = nixconfig.substitute_swap_size(text, params.swap_size_mb)
    if PASSWORD_HASH_PLACEHOLDER in text:
        print(">>> Generating hashed password...")
        text = text.replace(PASSWORD_HASH_PLACEHOLDER, hash_password(params.password))
    else:
        print(
            f">>> Note: {params.source.config_path} has no {PASSWORD_HASH_PLACEHOLDER}; "
            f"the password entered for '{params.username}' is not used and the "
            "repository configuration decides how that user logs in."
        )
        log_event(
            "nixos_bootstrap.assemble.password_unused",
            config_path=params.source.config_path,
            username=params.username,
        )
    return text


def assemble_configuration(params: InstallParameters) -> Path:
    """Write the final ``configuration.nix`` under the staging root."""

    config_path = params.config_dir / "configuration.nix"
    generate_hardware_config(params.root_path, dry_run=params.dry_run)

    if params.source.from_repository:
        fetched = fetch_repository_config(params.source, dry_run=params.dry_run)
        if fetched is None:
            print(f"[dry-run] install {params.source.config_path} as {config_path}")
            return config_path
        print(">>> Setting up configuration from repository...")
        text = _prepare_repository_config(params, fetched)
        mode = "repository"
    else:
        print(">>> Generating hashed password...")
        password_hash = hash_password(params.password, dry_run=params.dry_run)
        state_version = nixconfig.detect_state_version(_read_generated_config(config_path))
        text = nixconfig.render_configuration(
            params,
            password_hash,
            state_version=state_version,
        )
        if params.dry_run:
            print(f"[dry-run] write {config_path}")
            return config_path
        mode = "template"

    print(f">>> Writing {config_path}...")
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(text, encoding="utf-8")
    # The file may hold a password hash.
    os.chmod(config_path, 0o600)
    log_event(
        "nixos_bootstrap.assemble.configuration_written",
        config_path=config_path,
        mode=mode,
        swap_size_mb=params.swap_size_mb,
    )
    return config_path
