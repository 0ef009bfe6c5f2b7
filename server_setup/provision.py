"""Provisioning steps for a fresh Ubuntu server."""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from . import volume
from .logging_utils import log_event

__all__ = [
    "ESSENTIAL_PACKAGES",
    "ConfigLine",
    "ProvisionResult",
    "SetupOptions",
    "Step",
    "build_steps",
    "detect_nvidia_gpu",
    "ensure_line",
    "provision_server",
    "run_step",
]

CommandRunner = Callable[[str, Dict[str, str]], subprocess.CompletedProcess]

ESSENTIAL_PACKAGES: Tuple[str, ...] = (
    "curl",
    "wget",
    "git",
    "build-essential",
    "software-properties-common",
    "apt-transport-https",
    "ca-certificates",
    "gnupg",
    "lsb-release",
    "make",
    "sysstat",
    "p7zip",
    "bzip2",
    "unzip",
    "tar",
    "gdebi",
    "htop",
    "neofetch",
    "bpytop",
    "nala",
)

DOCKER_PACKAGES: Tuple[str, ...] = (
    "docker-ce",
    "docker-ce-cli",
    "containerd.io",
    "docker-compose-plugin",
)

_KEYRINGS = "/usr/share/keyrings"
_DOCKER_KEYRING = f"{_KEYRINGS}/docker-archive-keyring.gpg"
_NVIDIA_KEYRING = f"{_KEYRINGS}/nvidia-container-toolkit-keyring.gpg"
_UPDATE_ALIAS = (
    "alias update='sudo apt update && sudo apt upgrade -y && sudo apt autoremove -y'"
)
EXTEND_ROOT_STEP = "extend-root-volume"


@dataclass(frozen=True)
class ConfigLine:
    """A line that must be present in a configuration file."""

    path: Path
    line: str


@dataclass(frozen=True)
class Step:
    """One idempotent provisioning step."""

    name: str
    description: str
    commands: Tuple[str, ...] = ()
    config_lines: Tuple[ConfigLine, ...] = ()
    # Commands whose failure is logged instead of aborting the run.
    tolerated: Tuple[str, ...] = ()
    gpu_only: bool = False


@dataclass
class SetupOptions:
    """Operator-provided settings for :func:`provision_server`."""

    dry_run: bool = False
    git_name: Optional[str] = None
    git_email: Optional[str] = None
    root_lv: str = volume.DEFAULT_ROOT_LV
    safety_margin_bytes: int = volume.DEFAULT_SAFETY_MARGIN_BYTES
    skip_extend: bool = False
    etc_dir: Path = Path("/etc")


@dataclass
class ProvisionResult:
    """Commands scheduled and steps completed by :func:`provision_server`."""

    commands: List[str] = field(default_factory=list)
    completed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    extension: Optional[volume.ExtensionResult] = None


def _prepare_command_environment() -> Dict[str, str]:
    """Return the environment for command execution.

    ``apt-get`` and ``dpkg`` prompt for configuration choices unless told the
    session is non-interactive, which would stall an unattended run.
    """

    env = os.environ.copy()
    if not env.get("DEBIAN_FRONTEND"):
        env["DEBIAN_FRONTEND"] = "noninteractive"
        log_event(
            "server_setup.provision.command.frontend_injected",
            frontend="noninteractive",
        )
    return env


def _default_runner(cmd: str, env: Dict[str, str]) -> subprocess.CompletedProcess:
    return subprocess.run(cmd, shell=True, check=False, env=env)


def _run(
    cmd: str,
    execute: bool,
    *,
    runner: CommandRunner | None = None,
    tolerate_failure: bool = False,
) -> None:
    """Run ``cmd`` when ``execute`` is ``True``."""

    log_event("server_setup.provision.command.start", command=cmd, execute=execute)
    if not execute:
        log_event(
            "server_setup.provision.command.skip",
            command=cmd,
            reason="execution disabled",
        )
        return
    exe = shlex.split(cmd)[0]
    if shutil.which(exe) is None:
        log_event(
            "server_setup.provision.command.skip",
            command=cmd,
            reason="executable not found",
        )
        return
    result = (runner or _default_runner)(cmd, _prepare_command_environment())
    status = "success" if result.returncode == 0 else "error"
    log_event(
        "server_setup.provision.command.finished",
        level="info" if result.returncode == 0 else "error",
        command=cmd,
        status=status,
        returncode=result.returncode,
    )
    if result.returncode != 0 and not tolerate_failure:
        raise subprocess.CalledProcessError(result.returncode, cmd)


def ensure_line(path: Path, line: str, *, execute: bool) -> bool:
    """Append *line* to *path* unless it is already present.

    Returns ``True`` when the file needed (or, without *execute*, would need)
    the line.
    """

    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        text = ""
    if line in (entry.strip() for entry in text.splitlines()):
        log_event("server_setup.provision.config.present", path=path, line=line)
        return False

    log_event("server_setup.provision.config.append", path=path, line=line, execute=execute)
    if not execute:
        return True
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        if text and not text.endswith("\n"):
            handle.write("\n")
        handle.write(line + "\n")
    return True


def detect_nvidia_gpu(runner: Callable[[Sequence[str]], str] | None = None) -> bool:
    """Return ``True`` when ``lspci`` lists an NVIDIA device."""

    if runner is None:
        if shutil.which("lspci") is None:
            log_event("server_setup.provision.gpu", detected=False, reason="lspci not found")
            return False

        def runner(cmd: Sequence[str]) -> str:
            completed = subprocess.run(cmd, capture_output=True, text=True, check=False)
            return completed.stdout

    output = runner(["lspci"])
    detected = "nvidia" in output.lower()
    log_event("server_setup.provision.gpu", detected=detected)
    return detected


def build_steps(options: SetupOptions) -> List[Step]:
    """Return the ordered provisioning steps for *options*."""

    git_commands = [
        "git config --global submodule.recurse true",
        "git config --global credential.helper store",
    ]
    if options.git_email:
        git_commands.append(f"git config --global user.email {shlex.quote(options.git_email)}")
    if options.git_name:
        git_commands.append(f"git config --global user.name {shlex.quote(options.git_name)}")

    return [
        Step(
            "update-system",
            "Updating and upgrading system",
            ("apt-get update", "apt-get upgrade -y", "apt-get autoremove -y"),
        ),
        Step(
            "install-essentials",
            "Installing essential utilities",
            ("apt-get install -y " + " ".join(ESSENTIAL_PACKAGES),),
        ),
        Step(
            "install-nvidia-driver",
            "Installing NVIDIA drivers and CUDA",
            (
                "apt-get install -y linux-headers-$(uname -r)",
                "add-apt-repository ppa:graphics-drivers/ppa -y",
                "apt-get update",
                "ubuntu-drivers install",
                "apt-get install -y nvidia-cuda-toolkit",
            ),
            gpu_only=True,
        ),
        Step(
            "install-docker",
            "Installing Docker",
            (
                f"install -m 0755 -d {_KEYRINGS}",
                "curl -fsSL https://download.docker.com/linux/ubuntu/gpg"
                f" | gpg --dearmor --yes -o {_DOCKER_KEYRING}",
                'echo "deb [arch=$(dpkg --print-architecture)'
                f' signed-by={_DOCKER_KEYRING}]'
                ' https://download.docker.com/linux/ubuntu $(lsb_release -cs) stable"'
                " > /etc/apt/sources.list.d/docker.list",
                "apt-get update",
                "apt-get install -y " + " ".join(DOCKER_PACKAGES),
            ),
        ),
        Step(
            "install-nvidia-container-toolkit",
            "Installing NVIDIA Container Toolkit",
            (
                "curl -fsSL https://nvidia.github.io/libnvidia-container/gpgkey"
                f" | gpg --dearmor --yes -o {_NVIDIA_KEYRING}",
                "curl -s -L https://nvidia.github.io/libnvidia-container/stable/deb/"
                "nvidia-container-toolkit.list"
                f" | sed 's#deb https://#deb [signed-by={_NVIDIA_KEYRING}] https://#g'"
                " > /etc/apt/sources.list.d/nvidia-container-toolkit.list",
                "apt-get update",
                "apt-get install -y nvidia-container-toolkit",
                "nvidia-ctk runtime configure --runtime=docker",
                "systemctl restart docker",
            ),
            gpu_only=True,
        ),
        Step("configure-git", "Configuring Git", tuple(git_commands)),
        Step(EXTEND_ROOT_STEP, "Extending the root logical volume"),
        Step(
            "install-nodejs",
            "Installing Node.js and Yarn",
            (
                "curl -fsSL https://deb.nodesource.com/setup_18.x | bash -",
                "apt-get install -y nodejs",
                "npm install --global yarn",
            ),
        ),
        Step(
            "install-cockpit",
            "Installing Cockpit",
            ("apt-get install -y cockpit", "systemctl enable --now cockpit.socket"),
        ),
        Step(
            "create-aliases",
            "Creating aliases",
            config_lines=(ConfigLine(options.etc_dir / "bash.bashrc", _UPDATE_ALIAS),),
        ),
        Step(
            "optimize-system",
            "Optimizing system for server use",
            (
                "systemctl enable fstrim.timer",
                "systemctl disable bluetooth.service",
                "systemctl disable cups.service",
            ),
            config_lines=(
                ConfigLine(options.etc_dir / "sysctl.conf", "vm.swappiness=10"),
                ConfigLine(options.etc_dir / "security" / "limits.conf", "* soft nofile 65535"),
                ConfigLine(options.etc_dir / "security" / "limits.conf", "* hard nofile 65535"),
            ),
            # Minimal server images often ship without these units.
            tolerated=("systemctl disable bluetooth.service", "systemctl disable cups.service"),
        ),
    ]


def run_step(step: Step, *, execute: bool, runner: CommandRunner | None = None) -> List[str]:
    """Run the commands and configuration edits of *step*."""

    log_event(
        "server_setup.provision.step.start",
        step=step.name,
        description=step.description,
        execute=execute,
    )
    scheduled: List[str] = []
    for cmd in step.commands:
        scheduled.append(cmd)
        _run(cmd, execute, runner=runner, tolerate_failure=cmd in step.tolerated)
    for entry in step.config_lines:
        ensure_line(entry.path, entry.line, execute=execute)
    log_event("server_setup.provision.step.finished", step=step.name, commands=scheduled)
    return scheduled


def _extend_root(
    options: SetupOptions,
    execute: bool,
    extender: Callable[..., volume.ExtensionResult] | None,
) -> Optional[volume.ExtensionResult]:
    if extender is not None:
        return extender(options.root_lv, options.safety_margin_bytes, execute=execute)
    if shutil.which("lvs") is None:
        log_event(
            "server_setup.provision.step.skip",
            step=EXTEND_ROOT_STEP,
            reason="executable not found",
        )
        return None
    return volume.extend_root_if_possible(
        options.root_lv, options.safety_margin_bytes, execute=execute
    )


def provision_server(
    options: SetupOptions,
    *,
    gpu: Optional[bool] = None,
    runner: CommandRunner | None = None,
    extender: Callable[..., volume.ExtensionResult] | None = None,
) -> ProvisionResult:
    """Run every provisioning step in order, stopping at the first failure.

    Commands execute only when ``options.dry_run`` is ``False`` and
    ``SERVER_SETUP_EXEC=1`` is set; otherwise they are only scheduled.
    """

    execute = not options.dry_run and os.environ.get("SERVER_SETUP_EXEC") == "1"
    if gpu is None:
        gpu = detect_nvidia_gpu()

    log_event("server_setup.provision.start", dry_run=options.dry_run, execute=execute, gpu=gpu)
    result = ProvisionResult()
    for step in build_steps(options):
        if step.gpu_only and not gpu:
            log_event(
                "server_setup.provision.step.skip",
                step=step.name,
                reason="no NVIDIA GPU detected",
            )
            result.skipped.append(step.name)
            continue
        if step.name == EXTEND_ROOT_STEP:
            if options.skip_extend:
                log_event(
                    "server_setup.provision.step.skip",
                    step=step.name,
                    reason="disabled by operator",
                )
                result.skipped.append(step.name)
                continue
            try:
                result.extension = _extend_root(options, execute, extender)
            except volume.VolumeError as exc:
                if execute:
                    raise
                # Discovery commonly needs root; a dry run reports and moves on.
                log_event(
                    "server_setup.provision.step.skip",
                    level="warning",
                    step=step.name,
                    reason=str(exc),
                )
                result.skipped.append(step.name)
                continue
            result.commands.extend(result.extension.commands if result.extension else ())
            result.completed.append(step.name)
            continue
        result.commands.extend(run_step(step, execute=execute, runner=runner))
        result.completed.append(step.name)

    log_event(
        "server_setup.provision.finished",
        completed=result.completed,
        skipped=result.skipped,
    )
    return result
