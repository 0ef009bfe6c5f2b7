"""CLI entry point for server-setup."""

import argparse
import os
import shutil
import subprocess
import sys

from . import provision, volume
from .logging_utils import announce, log_event

SYSTEM_INFO_COMMANDS = (
    ["uname", "-a"],
    ["nvidia-smi"],
    ["docker", "--version"],
    ["node", "--version"],
    ["yarn", "--version"],
    ["df", "-h"],
    ["lsblk"],
)


def _is_root() -> bool:
    """Return ``True`` when running with an effective UID of 0."""

    return os.geteuid() == 0


def _print_system_info() -> None:
    """Print versions and disk usage for the tools that were installed."""

    print("System Information:")
    for cmd in SYSTEM_INFO_COMMANDS:
        if shutil.which(cmd[0]) is None:
            continue
        subprocess.run(cmd, check=False)


def main(argv: list[str] | None = None) -> None:
    """Run the server-setup tool."""
    parser = argparse.ArgumentParser(description="Ubuntu server setup")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print commands without executing them",
    )
    parser.add_argument(
        "--root-lv",
        default=volume.DEFAULT_ROOT_LV,
        help="Root logical volume to grow (default: %(default)s)",
    )
    parser.add_argument(
        "--safety-margin-kib",
        type=int,
        default=volume.DEFAULT_SAFETY_MARGIN_BYTES // 1024,
        help="Space to leave unallocated on the volume group, in KiB",
    )
    parser.add_argument(
        "--skip-extend",
        action="store_true",
        help="Do not grow the root logical volume",
    )
    parser.add_argument(
        "--extend-only",
        action="store_true",
        help="Only grow the root logical volume and exit",
    )
    parser.add_argument("--git-name", help="Global git user.name to configure")
    parser.add_argument("--git-email", help="Global git user.email to configure")
    parser.add_argument(
        "--gpu",
        dest="gpu",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Force NVIDIA steps on or off instead of probing lspci",
    )
    parser.add_argument(
        "--allow-non-root",
        action="store_true",
        help="Skip the effective UID check",
    )
    args = parser.parse_args(argv)

    if args.skip_extend and args.extend_only:
        parser.error("--skip-extend cannot be combined with --extend-only")
    if args.safety_margin_kib < 0:
        parser.error("--safety-margin-kib must be non-negative")

    if not (args.dry_run or args.allow_non_root or _is_root()):
        announce("This script must be run as root", level="error")
        sys.exit(1)

    if args.extend_only:
        extend_argv = ["--root-lv", args.root_lv, "--safety-margin-kib", str(args.safety_margin_kib)]
        if args.dry_run:
            extend_argv.append("--dry-run")
        status = volume.main(extend_argv)
        if status:
            sys.exit(status)
        return

    options = provision.SetupOptions(
        dry_run=args.dry_run,
        git_name=args.git_name,
        git_email=args.git_email,
        root_lv=args.root_lv,
        safety_margin_bytes=args.safety_margin_kib * 1024,
        skip_extend=args.skip_extend,
    )

    announce("Starting Ubuntu server setup...")
    try:
        result = provision.provision_server(options, gpu=args.gpu)
    except subprocess.CalledProcessError as exc:
        log_event(
            "server_setup.cli.failed", level="error", command=exc.cmd, returncode=exc.returncode
        )
        announce(f"Setup failed: {exc}", level="error")
        sys.exit(1)
    except volume.FilesystemResizeError as exc:
        announce(f"Setup failed: {exc}", level="error")
        print(
            "The logical volume is larger than its filesystem; run resize2fs "
            "manually once the cause is fixed.",
            file=sys.stderr,
        )
        sys.exit(1)
    except (volume.VolumeError, ValueError) as exc:
        announce(f"Setup failed: {exc}", level="error")
        sys.exit(1)

    if result.extension is not None:
        print(volume.describe_result(result.extension))

    if args.dry_run or os.environ.get("SERVER_SETUP_EXEC") != "1":
        for cmd in result.commands:
            print(cmd)
        return

    announce("Setup completed successfully.")
    announce("A system reboot is recommended to complete the installation.", level="warning")
    _print_system_info()


if __name__ == "__main__":
    main()
