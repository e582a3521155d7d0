from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from as2_gateway.__main__ import main
from conftest import ASYNC, SYNC


@pytest.fixture
def as2_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, partnership_dir: Path) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("AS2_FILE_DIR", "files")
    monkeypatch.setenv("AS2_PARTNERSHIP_DIR", str(partnership_dir))
    monkeypatch.setenv("AS2_CERTIFICATE_DIR", "certificates")
    monkeypatch.setenv("AS2_ENGINE_FACTORY", "conftest:FakeEngine")
    monkeypatch.setenv("AS2_LOCK_TIMEOUT_SECONDS", "0")
    monkeypatch.setenv("AS2_LOG_LEVEL", "INFO")
    return tmp_path


def test_init_creates_configured_directories(tmp_path: Path) -> None:
    env = dict(os.environ)
    env.update(
        {
            "AS2_FILE_DIR": "files",
            "AS2_PARTNERSHIP_DIR": "partnerships",
            "AS2_CERTIFICATE_DIR": "certificates",
            "AS2_ENGINE_FACTORY": "",
            "AS2_LOG_LEVEL": "INFO",
        }
    )

    result = subprocess.run(
        [sys.executable, "-m", "as2_gateway", "init"],
        cwd=tmp_path,
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )

    assert result.returncode == 0, result.stderr
    for name in ("files", "partnerships", "certificates"):
        assert (tmp_path / name).is_dir()
        assert f"created={tmp_path / name}" in result.stdout


def test_init_without_certificate_directory_warns(
    as2_env: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    monkeypatch.setenv("AS2_CERTIFICATE_DIR", "")

    assert main(["init"]) == 0

    assert (as2_env / "files").is_dir()
    assert not (as2_env / "certificates").exists()
    assert "AS2_CERTIFICATE_DIR is not set" in caplog.text


def test_status_reports_both_directions(as2_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["status", SYNC, "m1"]) == 0

    assert capsys.readouterr().out.splitlines() == ["send=none", "receive=none"]


def test_view_prints_masked_partnership(as2_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["view", SYNC]) == 0

    view = json.loads(capsys.readouterr().out)
    assert view["MyPrivateKey"] == "..."
    assert view["MyId"] == "ME"


def test_deliver_receipt_without_state_fails(as2_env: Path, caplog: pytest.LogCaptureFixture) -> None:
    assert main(["deliver-receipt", ASYNC, "never-received"]) == 1
    assert "state file not found" in caplog.text


def test_missing_engine_factory_is_reported(as2_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AS2_ENGINE_FACTORY", "")
    assert main(["status", SYNC, "m1"]) == 1


def test_invalid_settings_exit_nonzero(as2_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AS2_LOG_LEVEL", "chatty")
    assert main(["status", SYNC, "m1"]) == 1
