from __future__ import annotations

import logging
from pathlib import Path

import pytest

from as2_gateway.settings import RuntimeSettings

_ENV_VARS = (
    "AS2_FILE_DIR",
    "AS2_PARTNERSHIP_DIR",
    "AS2_CERTIFICATE_DIR",
    "AS2_ENGINE_FACTORY",
    "AS2_LOCK_TIMEOUT_SECONDS",
    "AS2_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Start every test from an empty AS2 environment and no .env file.

    Each variable is set before being deleted so monkeypatch restores the
    original state even when python-dotenv writes into os.environ.
    """
    for name in _ENV_VARS:
        monkeypatch.setenv(name, "placeholder")
        monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)


def test_runtime_settings_defaults() -> None:
    settings = RuntimeSettings.from_env()

    assert settings.file_dir == "as2_files"
    assert settings.partnership_dir == "as2_partnerships"
    assert settings.certificate_dir == ""
    assert settings.engine_factory == ""
    assert settings.lock_timeout_seconds == 0.0
    assert settings.log_level == "INFO"
    assert settings.log_level_value == logging.INFO


def test_runtime_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AS2_FILE_DIR", "/srv/as2/files")
    monkeypatch.setenv("AS2_CERTIFICATE_DIR", " certs ")
    monkeypatch.setenv("AS2_ENGINE_FACTORY", "acme_as2.engine:build")
    monkeypatch.setenv("AS2_LOCK_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("AS2_LOG_LEVEL", "debug")

    settings = RuntimeSettings.from_env()

    assert settings.file_dir == "/srv/as2/files"
    assert settings.certificate_dir == "certs"
    assert settings.engine_factory == "acme_as2.engine:build"
    assert settings.lock_timeout_seconds == 2.5
    assert settings.log_level == "DEBUG"


def test_runtime_settings_reads_dotenv(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("AS2_PARTNERSHIP_DIR=from-dotenv\n", encoding="utf-8")

    settings = RuntimeSettings.from_env()

    assert settings.partnership_dir == "from-dotenv"


@pytest.mark.parametrize(
    "name, value, message",
    [
        ("AS2_LOCK_TIMEOUT_SECONDS", "soon", "must be a number"),
        ("AS2_LOCK_TIMEOUT_SECONDS", "-1", "must be >= 0"),
        ("AS2_LOCK_TIMEOUT_SECONDS", "99999", "must be <= 3600"),
        ("AS2_LOG_LEVEL", "chatty", "AS2_LOG_LEVEL"),
        ("AS2_ENGINE_FACTORY", "acme_as2.engine", "module:callable"),
        ("AS2_FILE_DIR", "   ", "AS2_FILE_DIR"),
    ],
)
def test_runtime_settings_rejects_invalid_values(
    monkeypatch: pytest.MonkeyPatch, name: str, value: str, message: str
) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=message):
        RuntimeSettings.from_env()


def test_relative_paths_resolve_against_root(tmp_path: Path) -> None:
    settings = RuntimeSettings(file_dir="files", partnership_dir="/abs/partners", certificate_dir="certs")

    assert settings.file_path(tmp_path) == tmp_path / "files"
    assert settings.partnership_path(tmp_path) == Path("/abs/partners")
    assert settings.certificate_path(tmp_path) == tmp_path / "certs"
    assert RuntimeSettings().certificate_path(tmp_path) is None
