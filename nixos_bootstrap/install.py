"""NixOS installation pipeline."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence, Tuple

from . import assemble, mounts, partition, state
from .commands import StageError, run_command
from .logging_utils import log_event
from .params import InstallParameters
from .partition import PartitionLayout

INSTALL_STAGE = "install"


@dataclass(frozen=True)
class StageResult:
    """Outcome of :func:`run_installation`."""

    status: str
    stage: Optional[str] = None
    reason: Optional[str] = None
    details: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass
class RunContext:
    """Values produced by earlier stages for the later ones."""

    params: InstallParameters
    layout: Optional[PartitionLayout] = None
    config_path: Optional[Path] = None


Stage = Tuple[str, Callable[[RunContext], None]]


def run_nixos_install(root_path: Path, *, dry_run: bool = False) -> None:
    """Install the assembled system; the root password comes from the config."""

    print(">>> Starting NixOS installation...")
    run_command(
        ["nixos-install", "--root", str(root_path), "--no-root-passwd"],
        stage=INSTALL_STAGE,
        dry_run=dry_run,
    )


def next_steps(params: InstallParameters) -> str:
    """Return the operator instructions printed after a successful install."""

    rule = "=" * 73
    lines = [
        "",
        rule,
        ">>> Installation finished successfully!",
        rule,
        "",
        "Next steps:",
        "  1. Remove the installation media",
        "  2. Reboot the system: reboot",
        f"  3. Log in as '{params.username}' with your password",
    ]
    if params.source.repo_url and not params.source.from_repository:
        lines.extend(
            [
                f"  4. Your config repo will be cloned to {params.clone_target_dir} on first boot",
                "  5. Apply your configuration:",
                f"     cd {params.clone_target_dir}",
                f"     sudo nixos-rebuild switch --flake .#{params.hostname}",
                "     (or run nixos-bootstrap-adopt to move the hardware configuration",
                "      into the flake before switching)",
            ]
        )
    else:
        lines.append("  4. Edit /etc/nixos/configuration.nix and run: sudo nixos-rebuild switch")
    lines.extend(["", rule])
    return "\n".join(lines)


def teardown(params: InstallParameters) -> None:
    mounts.unmount_target(params.root_path, dry_run=params.dry_run)
    print(next_steps(params))


def _provision(ctx: RunContext) -> None:
    ctx.layout = partition.provision_disk(
        ctx.params.disk,
        efi_size=ctx.params.efi_size,
        dry_run=ctx.params.dry_run,
    )


def _mount(ctx: RunContext) -> None:
    if ctx.layout is None:
        raise StageError("no partition layout available", stage=mounts.MOUNT_STAGE)
    mounts.mount_target(ctx.layout, ctx.params.root_path, dry_run=ctx.params.dry_run)


def _configure(ctx: RunContext) -> None:
    ctx.config_path = assemble.assemble_configuration(ctx.params)


def _install(ctx: RunContext) -> None:
    run_nixos_install(ctx.params.root_path, dry_run=ctx.params.dry_run)


def _teardown(ctx: RunContext) -> None:
    teardown(ctx.params)


PIPELINE: Tuple[Stage, ...] = (
    (partition.STAGE, _provision),
    (mounts.MOUNT_STAGE, _mount),
    (assemble.STAGE, _configure),
    (INSTALL_STAGE, _install),
    (mounts.TEARDOWN_STAGE, _teardown),
)


def _record_result(
    status: str,
    *,
    stage: Optional[str] = None,
    reason: Optional[str] = None,
    details: Optional[Dict[str, str]] = None,
    state_dir: Optional[Path] = None,
) -> StageResult:
    payload = dict(details or {})
    log_event(
        "nixos_bootstrap.install.result",
        status=status,
        stage=stage,
        reason=reason,
        details=payload,
    )
    state.record_install_status(
        status,
        stage=stage,
        reason=reason,
        details=payload,
        state_dir=state_dir,
    )
    return StageResult(status=status, stage=stage, reason=reason, details=payload)


def run_installation(
    params: InstallParameters,
    *,
    stages: Sequence[Stage] = PIPELINE,
    state_dir: Optional[Path] = None,
) -> StageResult:
    """Run every stage in order and stop at the first failure.

    Nothing is rolled back: a failed run leaves the disk as the last
    successful stage left it.
    """

    ctx = RunContext(params=params)
    log_event(
        "nixos_bootstrap.install.start",
        disk=params.disk,
        root_path=params.root_path,
        dry_run=params.dry_run,
        stages=[name for name, _ in stages],
    )

    for name, stage in stages:
        log_event("nixos_bootstrap.install.stage.start", stage=name)
        try:
            stage(ctx)
        except (StageError, subprocess.CalledProcessError) as exc:
            failed_stage = getattr(exc, "stage", None) or name
            return _record_result(
                "failed",
                stage=failed_stage,
                reason=str(exc),
                details={"disk": params.disk},
                state_dir=state_dir,
            )
        except OSError as exc:
            return _record_result(
                "failed",
                stage=name,
                reason=str(exc),
                details={"disk": params.disk},
                state_dir=state_dir,
            )
        except KeyboardInterrupt:
            _record_result(
                "interrupted",
                stage=name,
                reason="interrupted by the operator",
                details={"disk": params.disk},
                state_dir=state_dir,
            )
            raise
        log_event("nixos_bootstrap.install.stage.finished", stage=name)

    details = {"disk": params.disk, "root_path": str(params.root_path)}
    if ctx.config_path is not None:
        details["config_path"] = str(ctx.config_path)
    if params.dry_run:
        details["dry_run"] = "true"
    return _record_result("success", details=details, state_dir=state_dir)
