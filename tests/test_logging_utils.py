import json
from pathlib import Path

import re

import pytest

from server_setup.logging_utils import _DEFAULT_LOG_FILE, _log_file_path, announce, log_event


def test_log_event_emits_json_to_stderr(capsys, monkeypatch) -> None:
    monkeypatch.setenv("SERVER_SETUP_LOG_EVENTS", "1")

    log_event("server_setup.test", path=Path("/tmp/demo"), value=5)

    captured = capsys.readouterr()
    assert captured.out == ""
    lines = [line for line in captured.err.splitlines() if line.strip()]
    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["event"] == "server_setup.test"
    assert record["path"] == "/tmp/demo"
    assert record["value"] == 5
    assert record["level"] == "info"
    assert "timestamp" in record


def test_log_event_disabled_by_default(capsys, tmp_path, monkeypatch) -> None:
    log_path = tmp_path / "quiet.log"
    monkeypatch.setenv("SERVER_SETUP_LOG_FILE", str(log_path))

    log_event("server_setup.test.quiet", value=1)

    assert capsys.readouterr().err == ""
    assert not log_path.exists()


def test_log_event_false_values_disable_logging(capsys, monkeypatch) -> None:
    monkeypatch.setenv("SERVER_SETUP_LOG_EVENTS", "no")

    log_event("server_setup.test.off")

    assert capsys.readouterr().err == ""


def test_log_file_defaults_to_system_log(monkeypatch) -> None:
    monkeypatch.setenv("SERVER_SETUP_LOG_FILE", "  ")
    assert _log_file_path() == _DEFAULT_LOG_FILE == Path("/var/log/ubuntu_server_setup.log")


def test_log_event_appends_to_file(tmp_path, capsys, monkeypatch) -> None:
    monkeypatch.setenv("SERVER_SETUP_LOG_EVENTS", "1")
    log_path = tmp_path / "logs" / "setup.log"
    monkeypatch.setenv("SERVER_SETUP_LOG_FILE", str(log_path))

    log_event("server_setup.test.file", payload={"key": "value"}, items=(1, Path("/a")))

    captured = capsys.readouterr()
    stderr_lines = [line for line in captured.err.splitlines() if line.strip()]
    assert len(stderr_lines) == 1
    stderr_record = json.loads(stderr_lines[0])

    file_lines = log_path.read_text(encoding="utf-8").splitlines()
    assert len(file_lines) == 1
    file_record = json.loads(file_lines[0])

    assert file_record == stderr_record
    assert file_record["payload"] == {"key": "value"}
    assert file_record["items"] == [1, "/a"]


def test_log_event_records_level(capsys, monkeypatch) -> None:
    monkeypatch.setenv("SERVER_SETUP_LOG_EVENTS", "1")

    log_event("server_setup.test.warn", level="warning", reason="slow mirror")

    record = json.loads(capsys.readouterr().err.strip())
    assert record["level"] == "warning"
    assert record["reason"] == "slow mirror"


def test_log_event_rejects_unknown_level() -> None:
    with pytest.raises(ValueError, match="unknown log level"):
        log_event("server_setup.test.bad", level="debug")


def test_announce_info_goes_to_stdout(capsys) -> None:
    announce("Installing Docker")

    captured = capsys.readouterr()
    assert captured.err == ""
    assert re.fullmatch(r"\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\] Installing Docker\n", captured.out)


def test_announce_prefixes_warnings_and_errors(capsys) -> None:
    announce("Reboot required", level="warning")
    announce("Docker install failed", level="error")

    captured = capsys.readouterr()
    assert "] WARNING: Reboot required" in captured.out
    assert "Docker install failed" not in captured.out
    assert "] ERROR: Docker install failed" in captured.err


def test_announce_records_message_event(tmp_path, capsys, monkeypatch) -> None:
    monkeypatch.setenv("SERVER_SETUP_LOG_EVENTS", "1")
    log_path = tmp_path / "setup.log"
    monkeypatch.setenv("SERVER_SETUP_LOG_FILE", str(log_path))

    announce("Setup failed", level="error")

    capsys.readouterr()
    record = json.loads(log_path.read_text(encoding="utf-8"))
    assert record["event"] == "server_setup.message"
    assert record["level"] == "error"
    assert record["message"] == "Setup failed"
