"""Grow the root logical volume and its filesystem into unused disk space."""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
import re
import sys
from typing import Optional, Sequence

from . import lvm
from .logging_utils import log_event

__all__ = [
    "DEFAULT_ROOT_LV",
    "DEFAULT_SAFETY_MARGIN_BYTES",
    "ExtensionPlan",
    "ExtensionResult",
    "FilesystemResizeError",
    "LogicalVolumeExtendError",
    "ResolutionError",
    "UnsupportedTopologyError",
    "VolumeError",
    "compute_plan",
    "describe_result",
    "extend_root_if_possible",
    "main",
]

DEFAULT_ROOT_LV = "/dev/mapper/ubuntu--vg-ubuntu--lv"
DEFAULT_SAFETY_MARGIN_BYTES = 4096 * 1024

INSUFFICIENT_HEADROOM = "insufficient headroom"
DRY_RUN = "dry run"

_DEVICE_PATTERN = re.compile(r"/dev/[A-Za-z0-9_.+/-]+")


class VolumeError(RuntimeError):
    """Base class for root volume extension failures."""


class ResolutionError(VolumeError):
    """The target logical volume, its volume group or backing disk is missing."""


class UnsupportedTopologyError(VolumeError):
    """The volume group is backed by more than one physical volume."""

    def __init__(self, vg_name: str, physical_volumes: Sequence[str]) -> None:
        self.vg_name = vg_name
        self.physical_volumes = tuple(physical_volumes)
        super().__init__(
            f"volume group {vg_name} spans {len(self.physical_volumes)} physical "
            f"volumes ({', '.join(self.physical_volumes)}); only single-disk "
            "volume groups can be extended"
        )


class LogicalVolumeExtendError(VolumeError):
    """``lvextend`` failed; nothing was changed on disk."""

    filesystem_resize_attempted = False

    def __init__(self, lv_path: str, extend_bytes: int, cause: Exception) -> None:
        self.lv_path = lv_path
        self.extend_bytes = extend_bytes
        super().__init__(f"failed to extend {lv_path} by {extend_bytes} bytes: {cause}")


class FilesystemResizeError(VolumeError):
    """The volume grew but its filesystem could not be resized to match.

    The change is partially applied: ``result`` reports ``performed=True`` and
    ``filesystem_resized=False``. No rollback is attempted.
    """

    filesystem_resize_attempted = True

    def __init__(self, result: "ExtensionResult", lv_path: str, cause: Exception) -> None:
        self.result = result
        self.lv_path = lv_path
        self.extend_bytes = result.extend_bytes
        super().__init__(
            f"{lv_path} was extended by {result.extend_bytes} bytes but the "
            f"filesystem resize failed: {cause}"
        )


@dataclass(frozen=True)
class ExtensionPlan:
    """Byte quantities behind a single extension decision."""

    lv_path: str
    vg_name: str
    pv_name: str
    pv_capacity: int
    lv_size: int
    safety_margin: int

    @property
    def extend_bytes(self) -> int:
        return self.pv_capacity - self.lv_size - self.safety_margin


@dataclass(frozen=True)
class ExtensionResult:
    """Outcome of :func:`extend_root_if_possible`."""

    performed: bool
    filesystem_resized: bool = False
    reason: Optional[str] = None
    extend_bytes: Optional[int] = None
    commands: tuple[str, ...] = field(default_factory=tuple)


def compute_plan(
    lv: lvm.LogicalVolume,
    pv: lvm.PhysicalVolume,
    device: lvm.BlockDevice,
    safety_margin_bytes: int,
) -> ExtensionPlan:
    """Combine freshly queried records into an :class:`ExtensionPlan`."""

    return ExtensionPlan(
        lv_path=lv.path,
        vg_name=lv.vg_name,
        pv_name=pv.name,
        pv_capacity=device.size,
        lv_size=lv.size,
        safety_margin=safety_margin_bytes,
    )


def _validate_inputs(root_lv: str, safety_margin_bytes: int) -> None:
    if not isinstance(root_lv, str) or not _DEVICE_PATTERN.fullmatch(root_lv):
        raise ValueError(f"Unsafe device path: {root_lv!r}")
    if isinstance(safety_margin_bytes, bool) or not isinstance(safety_margin_bytes, int):
        raise ValueError("safety margin must be an integer number of bytes")
    if safety_margin_bytes < 0:
        raise ValueError("safety margin must be non-negative")


def _discover(
    env: lvm.LvmEnvironment, root_lv: str
) -> tuple[lvm.LogicalVolume, lvm.PhysicalVolume, lvm.BlockDevice]:
    try:
        lv = lvm.logical_volume(env, root_lv)
    except (lvm.CommandError, ValueError) as exc:
        raise ResolutionError(f"cannot resolve logical volume {root_lv}: {exc}") from exc
    if not lv.active:
        raise ResolutionError(f"logical volume {root_lv} is not active (attr {lv.attr!r})")

    try:
        group = lvm.volume_group(env, lv.vg_name)
    except (lvm.CommandError, ValueError) as exc:
        raise ResolutionError(
            f"cannot list physical volumes of volume group {lv.vg_name}: {exc}"
        ) from exc
    if not group.physical_volumes:
        raise ResolutionError(f"volume group {lv.vg_name} has no physical volumes")
    if len(group.physical_volumes) > 1:
        raise UnsupportedTopologyError(
            lv.vg_name, [pv.name for pv in group.physical_volumes]
        )
    pv = group.physical_volumes[0]

    try:
        device = lvm.block_device(env, pv.name)
    except (lvm.CommandError, ValueError) as exc:
        raise ResolutionError(f"cannot read capacity of {pv.name}: {exc}") from exc
    return lv, pv, device


def extend_root_if_possible(
    root_lv: str = DEFAULT_ROOT_LV,
    safety_margin_bytes: int = DEFAULT_SAFETY_MARGIN_BYTES,
    *,
    env: lvm.LvmEnvironment | None = None,
    execute: bool = True,
) -> ExtensionResult:
    """Extend *root_lv* to fill its single backing disk, less a safety margin.

    Every quantity is re-read from the system on each call, so repeating the
    call after a successful extension is a no-op unless the disk grew in the
    meantime. When *execute* is ``False`` the mutation commands are logged and
    returned but never issued.

    The caller must hold exclusive access to the volume group for the duration
    of the call.
    """

    _validate_inputs(root_lv, safety_margin_bytes)
    env = env or lvm.LvmEnvironment()

    lv, pv, device = _discover(env, root_lv)
    log_event(
        "server_setup.volume.discover",
        lv_path=root_lv,
        vg_name=lv.vg_name,
        pv_name=pv.name,
        pv_capacity=device.size,
        lv_size=lv.size,
    )

    plan = compute_plan(lv, pv, device, safety_margin_bytes)
    extend_bytes = plan.extend_bytes
    log_event(
        "server_setup.volume.compute",
        lv_path=root_lv,
        pv_capacity=plan.pv_capacity,
        lv_size=plan.lv_size,
        safety_margin=plan.safety_margin,
        extend_bytes=extend_bytes,
    )

    if extend_bytes <= 0:
        log_event(
            "server_setup.volume.decision",
            lv_path=root_lv,
            extend_bytes=extend_bytes,
            action="skip",
            reason=INSUFFICIENT_HEADROOM,
        )
        return ExtensionResult(
            performed=False,
            reason=INSUFFICIENT_HEADROOM,
            extend_bytes=extend_bytes,
        )

    log_event(
        "server_setup.volume.decision",
        lv_path=root_lv,
        extend_bytes=extend_bytes,
        action="extend",
        execute=execute,
    )

    extend_cmd = " ".join(["lvextend", "-L", f"+{extend_bytes}b", root_lv])
    resize_cmd = " ".join(["resize2fs", root_lv])
    if not execute:
        for phase, cmd in (("extend", extend_cmd), ("resize", resize_cmd)):
            log_event(
                f"server_setup.volume.{phase}",
                lv_path=root_lv,
                extend_bytes=extend_bytes,
                command=cmd,
                status="skipped",
                reason="execution disabled",
            )
        return ExtensionResult(
            performed=False,
            reason=DRY_RUN,
            extend_bytes=extend_bytes,
            commands=(extend_cmd, resize_cmd),
        )

    try:
        lvm.extend_logical_volume(env, root_lv, extend_bytes)
    except lvm.CommandError as exc:
        log_event(
            "server_setup.volume.extend",
            level="error",
            lv_path=root_lv,
            extend_bytes=extend_bytes,
            command=extend_cmd,
            status="error",
            error=str(exc),
        )
        raise LogicalVolumeExtendError(root_lv, extend_bytes, exc) from exc
    log_event(
        "server_setup.volume.extend",
        lv_path=root_lv,
        extend_bytes=extend_bytes,
        command=extend_cmd,
        status="success",
    )

    try:
        lvm.resize_filesystem(env, root_lv)
    except lvm.CommandError as exc:
        log_event(
            "server_setup.volume.resize",
            level="error",
            lv_path=root_lv,
            extend_bytes=extend_bytes,
            command=resize_cmd,
            status="error",
            error=str(exc),
        )
        partial = ExtensionResult(
            performed=True,
            filesystem_resized=False,
            reason="filesystem resize failed",
            extend_bytes=extend_bytes,
            commands=(extend_cmd, resize_cmd),
        )
        raise FilesystemResizeError(partial, root_lv, exc) from exc
    log_event(
        "server_setup.volume.resize",
        lv_path=root_lv,
        extend_bytes=extend_bytes,
        command=resize_cmd,
        status="success",
    )

    return ExtensionResult(
        performed=True,
        filesystem_resized=True,
        extend_bytes=extend_bytes,
        commands=(extend_cmd, resize_cmd),
    )


def describe_result(result: ExtensionResult) -> str:
    """Return a one-line operator summary of *result*."""

    if result.performed:
        mib = (result.extend_bytes or 0) // (1024 * 1024)
        return f"Extended the root logical volume by {mib}MB."
    if result.reason == DRY_RUN:
        mib = (result.extend_bytes or 0) // (1024 * 1024)
        return f"Would extend the root logical volume by {mib}MB."
    return "No significant space available for LVM extension."


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Extend the root volume once and report the outcome."""

    parser = argparse.ArgumentParser(
        description="Grow the root logical volume into unused disk space"
    )
    parser.add_argument("--root-lv", default=DEFAULT_ROOT_LV, help="Root logical volume path")
    parser.add_argument(
        "--safety-margin-kib",
        type=int,
        default=DEFAULT_SAFETY_MARGIN_BYTES // 1024,
        help="Space to leave unallocated, in KiB (default: %(default)s)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the commands without executing them",
    )
    args = parser.parse_args(argv)

    try:
        result = extend_root_if_possible(
            args.root_lv,
            args.safety_margin_kib * 1024,
            execute=not args.dry_run,
        )
    except FilesystemResizeError as exc:
        print(f"server-setup-extend-root: {exc}", file=sys.stderr)
        print(
            "The logical volume is larger than its filesystem; run resize2fs "
            "manually once the cause is fixed.",
            file=sys.stderr,
        )
        return 1
    except (VolumeError, ValueError) as exc:
        print(f"server-setup-extend-root: {exc}", file=sys.stderr)
        return 2

    print(describe_result(result))
    if args.dry_run:
        for cmd in result.commands:
            print(cmd)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
