"""Operator confirmation before destructive disk operations."""

from __future__ import annotations

from typing import Callable

from .assemble import PASSWORD_HASH_PLACEHOLDER
from .logging_utils import log_event
from .params import InstallParameters

CONFIRMATION_TOKEN = "yes"
CONFIRMATION_PROMPT = "Type 'yes' to confirm and proceed with the installation: "

_RULE = "=" * 70
_BANNER = "!" * 70


def format_summary(params: InstallParameters) -> str:
    """Return the resolved parameters as a printable block.

    The password is never included.
    """

    source = params.source
    if source.from_repository:
        config_line = f"{source.config_path} (copied from repository)"
        password_line = f"used only where the file contains {PASSWORD_HASH_PLACEHOLDER}"
    else:
        config_line = "built-in template"
        password_line = "hashed into initialHashedPassword"
    rows = [
        ("Disk", params.disk),
        ("User", params.username),
        ("Hostname", params.hostname),
        ("Swap Size", f"{params.swap_size_gb}G"),
        ("Timezone", params.timezone),
        ("Locale", params.locale),
        ("Config Repo", source.repo_url or "none"),
        ("Configuration", config_line),
        ("Password", password_line),
        ("Staging Root", str(params.root_path)),
    ]
    title = " Installation Details "
    lines = [title.center(len(_RULE), "=")]
    lines.extend(f"{label + ':':<16}{value}" for label, value in rows)
    lines.append(_RULE)
    return "\n".join(lines)


def format_warning(disk: str) -> str:
    body = [
        f"WARNING: This will WIPE ALL DATA on the disk {disk}.",
        "Make sure you have selected the correct disk and have backups.",
        "Interrupting the installation leaves the disk partially written.",
    ]
    width = len(_BANNER) - 6
    lines = [_BANNER]
    lines.extend(f"!! {line:<{width}} !!" for line in body)
    lines.append(_BANNER)
    return "\n".join(lines)


def confirm_destruction(
    params: InstallParameters,
    *,
    prompt: Callable[[str], str] = input,
) -> bool:
    """Show the plan and return ``True`` only for an exact ``yes``."""

    print("")
    print(format_summary(params))
    print("")
    print(format_warning(params.disk))
    try:
        response = prompt(CONFIRMATION_PROMPT)
    except EOFError:
        response = ""
    confirmed = response == CONFIRMATION_TOKEN
    log_event(
        "nixos_bootstrap.safety.confirmation",
        disk=params.disk,
        confirmed=confirmed,
    )
    if not confirmed:
        print("Installation cancelled by user.")
    return confirmed
