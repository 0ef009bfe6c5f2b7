from pathlib import Path
import sys

import pytest


@pytest.fixture(autouse=True)
def _isolate_log_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep structured logs out of ``/var/log`` during tests."""

    monkeypatch.setenv("SERVER_SETUP_LOG_FILE", str(tmp_path / "setup.log"))
    monkeypatch.delenv("SERVER_SETUP_LOG_EVENTS", raising=False)
    monkeypatch.delenv("SERVER_SETUP_EXEC", raising=False)


# Ensure repository root is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
