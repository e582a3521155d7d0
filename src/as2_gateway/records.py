"""On-disk records written while a message is in flight.

Records are flat JSON objects serialized per RFC 8785 so the same receipt
always produces byte-identical files. Fields vary by stage and carry no
schema version. The ``.state`` file is the engine's own serialization and
is stored verbatim.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import rfc8785
from pydantic import BaseModel, ConfigDict

from .engine import ProtocolEngine
from .errors import ProtocolError, StateCorruptionError
from .models import DispositionMode, HttpOutcome, Message, Receipt, TransportFailure

AUDIT_TIMESTAMP_FORMAT = "%Y-%m-%d-%H-%M-%S"


class PendingMarker(BaseModel):
    """Written into SENDING before the outbound POST is attempted."""

    mdn: DispositionMode
    pending: bool = True


class ReceiptRecord(Receipt):
    """Receipt detail that replaces the pending marker once known."""

    match_mic: bool | None = None
    successful: bool | None = None


class TransportFailureRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    status_code: int
    reason: str = ""
    status_text: str


def _normalize(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Reduce *value* to the JSON primitives ``rfc8785.dumps`` accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(mode="json"))
    if isinstance(value, Enum):
        return _normalize(value.value)
    if isinstance(value, dict):
        return {str(key): _normalize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    raise TypeError(f"Cannot serialize type {type(value).__name__} into a message record")


def to_canonical_json(value: Any) -> str:
    return rfc8785.dumps(_normalize(value)).decode("utf-8")


def encode_pending(mode: DispositionMode) -> str:
    return to_canonical_json(PendingMarker(mdn=mode))


def encode_receipt(receipt: Receipt, *, match_mic: bool | None = None, successful: bool | None = None) -> str:
    record = ReceiptRecord.model_validate(
        {**receipt.model_dump(), "match_mic": match_mic, "successful": successful}
    )
    return to_canonical_json(record)


def encode_transport_failure(failure: TransportFailure) -> str:
    record = TransportFailureRecord.model_validate(
        {
            **failure.details,
            "status_code": failure.status_code,
            "reason": failure.reason,
            "status_text": failure.status_text,
        }
    )
    return to_canonical_json(record)


def encode_delivery_failure(outcome: HttpOutcome, when: datetime) -> bytes:
    """Render the audit written when a deferred receipt could not be delivered.

    Layout: status code, timestamp, then the partner's response body.
    """
    header = f"{outcome.status_code}\n{when.strftime(AUDIT_TIMESTAMP_FORMAT)}\n"
    return header.encode("utf-8") + outcome.body


def encode_state(message: Message) -> str:
    if not message.serialized_state.strip():
        raise ProtocolError(f"<{message.message_id}> engine returned an empty serialized state")
    return message.serialized_state


def load_state(path: Path) -> str:
    """Read the serialized receive state left by an asynchronous receive.

    Raises:
        StateCorruptionError: If the file is missing, unreadable, or empty.
    """
    if not path.is_file():
        raise StateCorruptionError(f"state file not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise StateCorruptionError(f"state file {path} is unreadable: {exc}") from exc
    if not text.strip():
        raise StateCorruptionError(f"state file {path} is empty")
    return text


def restore_message(path: Path, engine: ProtocolEngine) -> Message:
    """Rebuild the received message from its ``.state`` file.

    There is no partial recovery: any engine failure is reported as
    corruption.
    """
    state = load_state(path)
    try:
        return engine.restore_message(state)
    except (ProtocolError, ValueError, KeyError, TypeError) as exc:
        raise StateCorruptionError(f"state file {path} cannot be restored: {exc}") from exc
