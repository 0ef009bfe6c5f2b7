"""Typed queries and mutations against the LVM tooling layer."""

from __future__ import annotations

from dataclasses import dataclass, field
import shlex
import subprocess
from typing import Callable, Iterable, Sequence

from .logging_utils import log_event

__all__ = [
    "BlockDevice",
    "CommandError",
    "CommandOutput",
    "LogicalVolume",
    "LvmEnvironment",
    "PhysicalVolume",
    "VolumeGroup",
    "block_device",
    "extend_logical_volume",
    "logical_volume",
    "physical_volumes",
    "resize_filesystem",
    "volume_group",
]

_SEPARATOR = "|"
_REPORT_OPTIONS = (
    "--noheadings",
    "--nosuffix",
    "--units",
    "b",
    "--separator",
    _SEPARATOR,
)


@dataclass
class CommandOutput:
    """Minimal command result container for dependency injection."""

    stdout: str
    returncode: int = 0
    stderr: str = ""


class CommandError(RuntimeError):
    """Raised when an LVM or block-layer command exits unsuccessfully."""

    def __init__(self, cmd: Sequence[str], result: CommandOutput) -> None:
        self.cmd = list(cmd)
        self.returncode = result.returncode
        self.stderr = result.stderr.strip()
        message = f"command {_command_to_str(cmd)} exited with status {result.returncode}"
        if self.stderr:
            message = f"{message}: {self.stderr}"
        super().__init__(message)


class LvmEnvironment:
    """Encapsulate command execution for LVM queries and mutations."""

    def __init__(self, *, run: Callable[[Sequence[str]], CommandOutput] | None = None) -> None:
        self.run = run or self._default_run

    @staticmethod
    def _default_run(cmd: Sequence[str]) -> CommandOutput:
        completed = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=False,
        )
        return CommandOutput(
            stdout=completed.stdout,
            returncode=completed.returncode,
            stderr=completed.stderr,
        )


@dataclass(frozen=True)
class BlockDevice:
    """A block device and its raw capacity in bytes."""

    path: str
    size: int


@dataclass(frozen=True)
class PhysicalVolume:
    """An LVM physical volume as reported by ``pvs``."""

    name: str
    vg_name: str
    size: int


@dataclass(frozen=True)
class VolumeGroup:
    """A volume group and the physical volumes backing it."""

    name: str
    physical_volumes: tuple[PhysicalVolume, ...] = field(default_factory=tuple)

    @property
    def size(self) -> int:
        return sum(pv.size for pv in self.physical_volumes)


@dataclass(frozen=True)
class LogicalVolume:
    """An LVM logical volume as reported by ``lvs``."""

    path: str
    vg_name: str
    size: int
    attr: str = ""

    @property
    def active(self) -> bool:
        """Return ``True`` when the attribute string marks the volume active."""

        return len(self.attr) > 4 and self.attr[4] == "a"


def _command_to_str(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(part) for part in cmd)


def _run_command(env: LvmEnvironment, cmd: Sequence[str]) -> str:
    result = env.run(cmd)
    if result.returncode != 0:
        raise CommandError(cmd, result)
    return result.stdout


def _parse_bytes(value: str, *, what: str) -> int:
    token = value.strip()
    # Some LVM builds print a trailing "B" even with --nosuffix.
    if token.endswith(("B", "b")):
        token = token[:-1]
    try:
        size = int(token)
    except ValueError:
        raise ValueError(f"unparseable {what} size: {value!r}") from None
    if size < 0:
        raise ValueError(f"negative {what} size: {value!r}")
    return size


def _iter_report_rows(output: str, columns: int) -> Iterable[list[str]]:
    for line in output.splitlines():
        if not line.strip():
            continue
        parts = [part.strip() for part in line.split(_SEPARATOR)]
        if len(parts) != columns:
            raise ValueError(f"unexpected report row: {line.strip()!r}")
        yield parts


def logical_volume(env: LvmEnvironment, lv_path: str) -> LogicalVolume:
    """Return the logical volume identified by *lv_path*."""

    cmd = ["lvs", *_REPORT_OPTIONS, "-o", "lv_path,vg_name,lv_size,lv_attr", lv_path]
    rows = list(_iter_report_rows(_run_command(env, cmd), 4))
    if len(rows) != 1:
        raise ValueError(f"expected one logical volume for {lv_path}, found {len(rows)}")
    path, vg_name, size, attr = rows[0]
    if not vg_name:
        raise ValueError(f"logical volume {lv_path} reports no volume group")
    lv = LogicalVolume(
        path=path or lv_path,
        vg_name=vg_name,
        size=_parse_bytes(size, what="logical volume"),
        attr=attr,
    )
    log_event(
        "server_setup.lvm.logical_volume",
        lv_path=lv_path,
        vg_name=lv.vg_name,
        size=lv.size,
        attr=lv.attr,
    )
    return lv


def physical_volumes(env: LvmEnvironment, vg_name: str) -> list[PhysicalVolume]:
    """Return every physical volume that belongs to *vg_name*."""

    cmd = ["pvs", *_REPORT_OPTIONS, "-o", "pv_name,vg_name,pv_size"]
    members: list[PhysicalVolume] = []
    for name, owner, size in _iter_report_rows(_run_command(env, cmd), 3):
        if owner != vg_name:
            continue
        members.append(
            PhysicalVolume(name=name, vg_name=owner, size=_parse_bytes(size, what="physical volume"))
        )
    log_event(
        "server_setup.lvm.physical_volumes",
        vg_name=vg_name,
        physical_volumes=[pv.name for pv in members],
    )
    return members


def volume_group(env: LvmEnvironment, vg_name: str) -> VolumeGroup:
    """Return *vg_name* together with its member physical volumes."""

    return VolumeGroup(name=vg_name, physical_volumes=tuple(physical_volumes(env, vg_name)))


def block_device(env: LvmEnvironment, path: str) -> BlockDevice:
    """Return the raw byte capacity of the block device at *path*."""

    cmd = ["lsblk", "-bdno", "SIZE", path]
    lines = [line for line in _run_command(env, cmd).splitlines() if line.strip()]
    if len(lines) != 1:
        raise ValueError(f"expected one size line for {path}, found {len(lines)}")
    device = BlockDevice(path=path, size=_parse_bytes(lines[0], what="block device"))
    log_event("server_setup.lvm.block_device", path=path, size=device.size)
    return device


def extend_logical_volume(env: LvmEnvironment, lv_path: str, extend_bytes: int) -> list[str]:
    """Grow *lv_path* by *extend_bytes* and return the issued command."""

    if extend_bytes <= 0:
        raise ValueError("extend_bytes must be positive")
    cmd = ["lvextend", "-L", f"+{extend_bytes}b", lv_path]
    _run_command(env, cmd)
    return cmd


def resize_filesystem(env: LvmEnvironment, lv_path: str) -> list[str]:
    """Grow the ext2/3/4 filesystem on *lv_path* to fill the volume."""

    cmd = ["resize2fs", lv_path]
    _run_command(env, cmd)
    return cmd
