from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .directory_store import validate_partnership_name
from .engine import EngineFactory
from .errors import ConfigurationError
from .models import PartnershipConfig, TransferContext

logger = logging.getLogger(__name__)

_MASK = "..."


class PartnershipResolver:
    """Resolve partnership names into transfer contexts.

    A partnership is the path of a JSON file below ``partnership_dir``
    without its ``.json`` extension. Contexts are cached per resolver
    instance and a cached entry is dropped as soon as the file's
    modification time changes.
    """

    def __init__(
        self,
        partnership_dir: Path,
        *,
        engine_factory: EngineFactory | None,
        certificate_dir: Path | None = None,
    ) -> None:
        self.partnership_dir = partnership_dir
        self.certificate_dir = certificate_dir
        self.engine_factory = engine_factory
        self._cache: dict[str, tuple[int, TransferContext]] = {}
        self._guard = threading.Lock()

    def config_path(self, partnership: str) -> Path:
        return self.partnership_dir / f"{validate_partnership_name(partnership)}.json"

    def load_config(self, partnership: str) -> PartnershipConfig:
        """Read and validate a partnership file.

        Raises:
            ConfigurationError: If the file is missing, not JSON, or invalid.
        """
        path = self.config_path(partnership)
        if not path.is_file():
            raise ConfigurationError(f"No partnership file {path}")
        try:
            params = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"partnership file {path} is unreadable: {exc}") from exc
        if not isinstance(params, dict):
            raise ConfigurationError(f"partnership file {path} must contain a JSON object")
        if self.certificate_dir is not None:
            params.setdefault("CertificateDirectory", str(self.certificate_dir))
        try:
            return PartnershipConfig.model_validate(params)
        except PydanticValidationError as exc:
            raise ConfigurationError(f"partnership file {path} failed validation: {exc}") from exc

    def resolve(self, partnership: str) -> TransferContext:
        """Return the transfer context for *partnership*, building it if stale."""
        name = validate_partnership_name(partnership)
        path = self.config_path(name)
        try:
            mtime = path.stat().st_mtime_ns
        except FileNotFoundError as exc:
            self.invalidate(name)
            raise ConfigurationError(f"No partnership file {path}") from exc

        with self._guard:
            cached = self._cache.get(name)
            if cached is not None and cached[0] == mtime:
                return cached[1]

        context = self._build(name)
        with self._guard:
            self._cache[name] = (mtime, context)
        logger.debug("Resolved partnership %s (mode=%s)", name, context.mode.value)
        return context

    def invalidate(self, partnership: str | None = None) -> None:
        with self._guard:
            if partnership is None:
                self._cache.clear()
            else:
                self._cache.pop(validate_partnership_name(partnership), None)

    def view(self, partnership: str) -> dict[str, Any]:
        """Return the partnership settings with key material masked.

        Nested values are dropped; any key naming a key or certificate,
        other than file references, is replaced by ``"..."``.
        """
        config = self.load_config(partnership)
        visible = {
            key: value
            for key, value in config.model_dump(mode="json", by_alias=True).items()
            if not isinstance(value, (dict, list))
        }
        for key in visible:
            if ("Key" in key or "Certificate" in key) and "File" not in key:
                visible[key] = _MASK
        return visible

    def _build(self, name: str) -> TransferContext:
        config = self.load_config(name)
        if self.engine_factory is None:
            raise ConfigurationError("no protocol engine factory configured (AS2_ENGINE_FACTORY)")
        try:
            engine = self.engine_factory(config)
        except (ValueError, TypeError, KeyError, OSError) as exc:
            raise ConfigurationError(f"partnership {name} rejected by protocol engine: {exc}") from exc
        return TransferContext(partnership=name, config=config, engine=engine)
