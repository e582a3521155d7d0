from __future__ import annotations

import importlib
import logging
from collections.abc import Callable, Mapping
from typing import Protocol

from .errors import ConfigurationError
from .models import HttpOutcome, Message, PartnershipConfig, Receipt, SendResult, TransportFailure

logger = logging.getLogger(__name__)


class ProtocolEngine(Protocol):
    """Protocol for the AS2 codec bound to one partnership.

    Implementations own MIME encoding, signatures, encryption and the wire
    format of receipts. Decoding failures are raised as ``ProtocolError``.
    """

    def normalize_message_id(self, raw: str) -> str:
        ...

    def encode_and_send(
        self,
        content: bytes,
        *,
        message_id: str,
        content_type: str,
        subject: str,
    ) -> SendResult | TransportFailure:
        ...

    def decode_incoming(self, headers: Mapping[str, str], body: bytes) -> Message:
        ...

    def build_receipt(self, message: Message) -> Receipt:
        ...

    def render_receipt(self, receipt: Receipt) -> tuple[dict[str, str], bytes]:
        ...

    def send_receipt(self, receipt: Receipt, message_id: str) -> HttpOutcome:
        ...

    def decode_receipt(self, headers: Mapping[str, str], body: bytes) -> Receipt:
        ...

    def restore_message(self, serialized_state: str) -> Message:
        ...


EngineFactory = Callable[[PartnershipConfig], ProtocolEngine]


def load_engine_factory(import_path: str) -> EngineFactory:
    """Import an engine factory from a ``module:callable`` path.

    Raises:
        ConfigurationError: If the path is malformed or does not resolve to a callable.
    """
    module_name, sep, attr = import_path.strip().partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"engine factory must look like 'module:callable', got: {import_path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"cannot import engine module {module_name!r}: {exc}") from exc
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigurationError(f"engine factory {import_path!r} is not callable")
    logger.debug("Loaded protocol engine factory %s", import_path)
    return factory
