"""Rendering and editing of NixOS ``configuration.nix`` text."""

from __future__ import annotations

import re
import shlex
from typing import List, Optional

from jinja2 import Environment, PackageLoader, StrictUndefined

from .params import InstallParameters

HARDWARE_IMPORT = "./hardware-configuration.nix"
SWAP_PLACEHOLDER = "__SWAP_SIZE_PLACEHOLDER__"
DEFAULT_STATE_VERSION = "24.05"
TEMPLATE_NAME = "configuration.nix.j2"

LOCALE_CATEGORIES = (
    "LC_ADDRESS",
    "LC_IDENTIFICATION",
    "LC_MEASUREMENT",
    "LC_MONETARY",
    "LC_NAME",
    "LC_NUMERIC",
    "LC_PAPER",
    "LC_TELEPHONE",
    "LC_TIME",
)
BASE_PACKAGES = ("vim", "git", "wget", "curl", "htop", "tree")

_STATE_VERSION_RE = re.compile(r'system\.stateVersion\s*=\s*"([0-9]{2}\.[0-9]{2})"')
# Closing brace of the module argument set, e.g. ``{ config, pkgs, ... }:``
# or ``args@{ ... }:``, optionally followed by the body's opening brace.
_HEADER_RE = re.compile(r"\}\s*(?:@\s*[A-Za-z_][\w'-]*\s*)?:\s*(\{)?\s*$")
_HARDWARE_IMPORT_RE = re.compile(r"(?<![\w./-])\./hardware-configuration\.nix(?![\w./-])")


def escape_nix_string(value: str) -> str:
    """Return *value* escaped for inclusion inside a double quoted Nix string."""

    return (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("${", "\\${")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def nix_str(value: object) -> str:
    """Return *value* as a quoted Nix string literal."""

    return '"' + escape_nix_string(str(value)) + '"'


def escape_nix_indented(value: str) -> str:
    """Return *value* escaped for a Nix ``'' ... ''`` indented string.

    Every ``${`` is escaped, so the text is taken literally.
    """

    return value.replace("''", "'''").replace("${", "''${")


def _code(line: str) -> str:
    """Return ``line`` with any trailing ``#`` comment removed."""

    return line.split("#", 1)[0].rstrip()


def has_hardware_import(text: str) -> bool:
    return any(_HARDWARE_IMPORT_RE.search(_code(line)) for line in text.splitlines())


def _find_imports_bracket(lines: List[str]) -> Optional[tuple[int, int]]:
    """Return ``(line, column)`` of the ``[`` opening the top-level ``imports`` list.

    Only an ``imports`` attribute directly inside the module body counts;
    nested attrsets such as ``home-manager.users.<name>`` are skipped.
    """

    open_index = _find_body_open(lines)
    if open_index is None:
        return None

    depth = 1
    for index in range(open_index + 1, len(lines)):
        code = _code(lines[index])
        match = re.match(r"\s*imports\s*=", code) if depth == 1 else None
        if match is not None:
            column = match.end()
            for offset, candidate in enumerate(lines[index:]):
                candidate_code = _code(candidate)
                start = column if offset == 0 else 0
                bracket = candidate_code.find("[", start)
                terminator = candidate_code.find(";", start)
                if bracket != -1 and (terminator == -1 or bracket < terminator):
                    return index + offset, bracket
                if terminator != -1:
                    raise ValueError("imports is not a list literal; add the hardware import by hand")
            return None
        depth += code.count("{") - code.count("}")
        if depth <= 0:
            break
    return None


def _find_body_open(lines: List[str]) -> Optional[int]:
    """Return the index of the line opening the module's top-level attrset."""

    start = 0
    for index, line in enumerate(lines):
        match = _HEADER_RE.search(_code(line))
        if match is None:
            continue
        if match.group(1):
            return index
        start = index + 1
        break

    index = start
    while index < len(lines) and not _code(lines[index]).strip():
        index += 1
    if index < len(lines) and re.match(r"\s*let\b", _code(lines[index])):
        while index < len(lines) and not re.match(r"\s*in\b", _code(lines[index])):
            index += 1

    for candidate in range(index, len(lines)):
        if _code(lines[candidate]).endswith("{"):
            return candidate
    return None


def ensure_hardware_import(text: str) -> str:
    """Return ``text`` importing ``./hardware-configuration.nix`` exactly once.

    An existing ``imports`` list gains the entry; otherwise an ``imports``
    attribute is inserted at the top of the module's attribute set. Text that
    already imports the hardware configuration is returned unchanged.
    """

    if has_hardware_import(text):
        return text

    lines = text.splitlines()
    location = _find_imports_bracket(lines)
    if location is not None:
        line_index, column = location
        line = lines[line_index]
        lines[line_index] = line[: column + 1] + f" {HARDWARE_IMPORT}" + line[column + 1:]
    else:
        open_index = _find_body_open(lines)
        if open_index is None:
            raise ValueError("could not find the top-level attribute set")
        lines.insert(open_index + 1, f"  imports = [ {HARDWARE_IMPORT} ];")

    updated = "\n".join(lines)
    if text.endswith("\n") or not text:
        updated += "\n"
    return updated


def substitute_swap_size(text: str, swap_size_mb: int) -> str:
    """Replace the swap size placeholder with ``swap_size_mb``."""

    return text.replace(SWAP_PLACEHOLDER, str(swap_size_mb))


def detect_state_version(text: str) -> Optional[str]:
    """Return ``system.stateVersion`` from a generated configuration."""

    match = _STATE_VERSION_RE.search(text)
    return match.group(1) if match else None


def render_clone_script(
    repo_url: str,
    username: str,
    hostname: str,
    target_dir: Optional[str] = None,
    *,
    attempts: int = 5,
    retry_delay: int = 5,
) -> str:
    """Return the shell body of the first-boot clone unit.

    The script does nothing when ``target_dir`` already exists.
    """

    target = target_dir or f"/home/{username}/nixos-config"
    hint = f"Run: cd {target} && sudo nixos-rebuild switch --flake .#{hostname}"
    lines = [
        "set -eu",
        f"TARGET_DIR={shlex.quote(target)}",
        'if [ -d "$TARGET_DIR" ]; then',
        '  echo "Config repo directory already exists. Skipping clone."',
        "  exit 0",
        "fi",
        'echo "Cloning NixOS config repo to $TARGET_DIR..."',
        "attempt=1",
        f'until git clone -- {shlex.quote(repo_url)} "$TARGET_DIR"; do',
        f'  if [ "$attempt" -ge {int(attempts)} ]; then',
        '    echo "Failed to clone config repo." >&2',
        "    exit 1",
        "  fi",
        "  attempt=$((attempt + 1))",
        '  rm -rf "$TARGET_DIR"',
        f"  sleep {int(retry_delay)}",
        "done",
        f'chown -R {shlex.quote(username)}:users "$TARGET_DIR"',
        'echo "Repo cloned successfully to $TARGET_DIR"',
        f"echo {shlex.quote(hint)}",
    ]
    return "\n".join(lines)


def _environment() -> Environment:
    env = Environment(
        loader=PackageLoader("nixos_bootstrap", "templates"),
        autoescape=False,
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["nix_str"] = nix_str
    env.filters["nix_indented"] = escape_nix_indented
    return env


def render_configuration(
    params: InstallParameters,
    password_hash: str,
    *,
    state_version: Optional[str] = None,
) -> str:
    """Render ``configuration.nix`` for ``params``."""

    source = params.source
    clone_script = ""
    if source.repo_url:
        clone_script = render_clone_script(
            source.repo_url,
            params.username,
            params.hostname,
            params.clone_target_dir,
        )

    template = _environment().get_template(TEMPLATE_NAME)
    return template.render(
        hostname=params.hostname,
        timezone=params.timezone,
        locale=params.locale,
        locale_categories=LOCALE_CATEGORIES,
        username=params.username,
        password_hash=password_hash,
        swap_size_gb=params.swap_size_gb,
        swap_size_mb=params.swap_size_mb,
        packages=BASE_PACKAGES,
        state_version=state_version or DEFAULT_STATE_VERSION,
        clone_script=clone_script,
    )
