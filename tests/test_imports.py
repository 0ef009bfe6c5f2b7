"""Basic import tests for the server_setup package."""

from pathlib import Path
import sys

# Ensure repository root is on sys.path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))


def test_import_package() -> None:
    import server_setup  # noqa: F401


def test_import_modules() -> None:
    from server_setup import lvm, provision, volume  # noqa: F401


def test_import_cli_entrypoint() -> None:
    """Ensure the CLI module imports without missing dependencies."""

    __import__("server_setup.cli")
