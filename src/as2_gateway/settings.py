from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    file_dir: str = "as2_files"
    partnership_dir: str = "as2_partnerships"
    certificate_dir: str = ""
    engine_factory: str = ""
    lock_timeout_seconds: float = 0.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, *, dotenv_path: Path | None = None) -> "RuntimeSettings":
        env_path = dotenv_path if dotenv_path is not None else Path.cwd() / ".env"
        if env_path.is_file():
            load_dotenv(env_path)
        return cls(
            file_dir=os.getenv("AS2_FILE_DIR", "as2_files"),
            partnership_dir=os.getenv("AS2_PARTNERSHIP_DIR", "as2_partnerships"),
            certificate_dir=os.getenv("AS2_CERTIFICATE_DIR", ""),
            engine_factory=os.getenv("AS2_ENGINE_FACTORY", ""),
            lock_timeout_seconds=_get_env_float("AS2_LOCK_TIMEOUT_SECONDS", default=0.0, minimum=0.0),
            log_level=os.getenv("AS2_LOG_LEVEL", "INFO"),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.file_dir.strip():
            raise ValueError("AS2_FILE_DIR must be non-empty")
        if not self.partnership_dir.strip():
            raise ValueError("AS2_PARTNERSHIP_DIR must be non-empty")
        if self.lock_timeout_seconds < 0:
            raise ValueError(f"AS2_LOCK_TIMEOUT_SECONDS must be >= 0, got: {self.lock_timeout_seconds}")

        engine_factory = self.engine_factory.strip()
        if engine_factory and ":" not in engine_factory:
            raise ValueError(f"AS2_ENGINE_FACTORY must look like 'module:callable', got: {engine_factory!r}")

        log_level = self.log_level.strip().upper()
        if log_level not in _LOG_LEVELS:
            raise ValueError(f"AS2_LOG_LEVEL must be one of: {', '.join(sorted(_LOG_LEVELS))}")
        return RuntimeSettings(
            file_dir=self.file_dir.strip(),
            partnership_dir=self.partnership_dir.strip(),
            certificate_dir=self.certificate_dir.strip(),
            engine_factory=engine_factory,
            lock_timeout_seconds=self.lock_timeout_seconds,
            log_level=log_level,
        )

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level)

    def file_path(self, root: Path) -> Path:
        path = Path(self.file_dir)
        return path if path.is_absolute() else root / path

    def partnership_path(self, root: Path) -> Path:
        path = Path(self.partnership_dir)
        return path if path.is_absolute() else root / path

    def certificate_path(self, root: Path) -> Path | None:
        if not self.certificate_dir:
            return None
        path = Path(self.certificate_dir)
        return path if path.is_absolute() else root / path


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 3_600.0) -> float:
    """Parse a float from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not a number or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
