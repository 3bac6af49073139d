"""NixOS bootstrap installer package."""

from __future__ import annotations

from importlib import resources
from importlib.metadata import PackageNotFoundError, version as pkg_version

__all__ = [
    "assemble",
    "diagnostics",
    "flake",
    "install",
    "inventory",
    "mounts",
    "nixconfig",
    "params",
    "partition",
    "safety",
]


def _discover_version() -> str:
    try:
        return pkg_version("nixos-bootstrap")
    except PackageNotFoundError:
        try:
            return resources.files(__package__).joinpath("VERSION").read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return "unknown"


__version__ = _discover_version()
