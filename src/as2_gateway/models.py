from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    from .engine import ProtocolEngine


class DispositionMode(str, Enum):
    SYNC = "sync"
    ASYNC = "async"
    NONE = "none"


class Direction(str, Enum):
    SEND = "send"
    RECEIVE = "receive"


class Role(str, Enum):
    """Role directories created under each partnership root."""

    SENDING = "SENDING"
    SENT = "SENT"
    RECEIVING = "RECEIVING"
    RECEIVED = "RECEIVED"


class Stage(str, Enum):
    PENDING_SEND = "pending_send"
    SENT = "sent"
    SENT_FAILED = "sent_failed"
    PENDING_RECEIVE = "pending_receive"
    RECEIVED = "received"
    RECEIVED_FAILED = "received_failed"
    RECEIVED_ERROR = "received_error"


# Filename suffixes, one place so every operation agrees on them.
FAILED_SUFFIX = ".failed"
ERROR_SUFFIX = ".error"
STATE_SUFFIX = ".state"
STATE_SENT_SUFFIX = ".state.sent"
UNKNOWN_RECEIPT_SUFFIX = ".UNKNOWN.MDN"
DELIVERY_AUDIT_SUFFIX = ".mdn.error"


# Where each stage lives on disk. Terminal stages are listed first per
# direction so a scan reports the furthest stage reached.
STAGE_LOCATIONS: dict[Stage, tuple[Role, str]] = {
    Stage.SENT: (Role.SENT, ""),
    Stage.SENT_FAILED: (Role.SENT, FAILED_SUFFIX),
    Stage.PENDING_SEND: (Role.SENDING, ""),
    Stage.RECEIVED: (Role.RECEIVED, ""),
    Stage.RECEIVED_FAILED: (Role.RECEIVED, FAILED_SUFFIX),
    Stage.RECEIVED_ERROR: (Role.RECEIVED, ERROR_SUFFIX),
    Stage.PENDING_RECEIVE: (Role.RECEIVING, ""),
}

DIRECTION_STAGES: dict[Direction, tuple[Stage, ...]] = {
    Direction.SEND: (Stage.SENT, Stage.SENT_FAILED, Stage.PENDING_SEND),
    Direction.RECEIVE: (
        Stage.RECEIVED,
        Stage.RECEIVED_FAILED,
        Stage.RECEIVED_ERROR,
        Stage.PENDING_RECEIVE,
    ),
}

_SENT_TERMINAL = frozenset({Stage.SENT, Stage.SENT_FAILED})
_RECEIVED_TERMINAL = frozenset({Stage.RECEIVED, Stage.RECEIVED_FAILED, Stage.RECEIVED_ERROR})

# Terminal stages may replace each other (duplicate receipts, partner resends)
# but never fall back to a pending stage.
STAGE_TRANSITIONS: dict[Stage | None, frozenset[Stage]] = {
    None: frozenset({Stage.PENDING_SEND, Stage.PENDING_RECEIVE}) | _SENT_TERMINAL | _RECEIVED_TERMINAL,
    Stage.PENDING_SEND: frozenset({Stage.PENDING_SEND}) | _SENT_TERMINAL,
    Stage.SENT: _SENT_TERMINAL,
    Stage.SENT_FAILED: _SENT_TERMINAL,
    Stage.PENDING_RECEIVE: frozenset({Stage.PENDING_RECEIVE}) | _RECEIVED_TERMINAL,
    Stage.RECEIVED: _RECEIVED_TERMINAL,
    Stage.RECEIVED_FAILED: _RECEIVED_TERMINAL,
    Stage.RECEIVED_ERROR: _RECEIVED_TERMINAL,
}


def terminal_suffixes(direction: Direction) -> tuple[str, ...]:
    """Return every suffix a terminal file may carry for *direction*."""
    return tuple(
        STAGE_LOCATIONS[stage][1]
        for stage in DIRECTION_STAGES[direction]
        if stage in _SENT_TERMINAL | _RECEIVED_TERMINAL
    )


@dataclass(frozen=True)
class Message:
    """A decoded inbound transfer as reported by the protocol engine."""

    message_id: str
    content: bytes
    success: bool
    error: bool = False
    mdn_async: bool = False
    serialized_state: str = ""

    @property
    def outcome_suffix(self) -> str:
        if self.success:
            return ""
        return ERROR_SUFFIX if self.error else FAILED_SUFFIX


class Receipt(BaseModel):
    """A disposition notification built or parsed by the protocol engine.

    Engine-specific attributes are carried as extra fields and persisted
    verbatim in the JSON record.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    success: bool
    error: bool = False
    original_message_id: str | None = None
    status_text: str = ""
    mic: str | None = None
    mic_alg: str | None = None
    unparsable: bool = False

    def matches_mic(self, mic: str | None, mic_alg: str | None) -> bool:
        if not mic or not self.mic:
            return False
        if (self.mic_alg or "").lower() != (mic_alg or "").lower():
            return False
        return self.mic == mic


@dataclass(frozen=True)
class SendResult:
    """Engine answer to a successful outbound POST."""

    receipt: Receipt
    mic: str | None = None
    mic_alg: str | None = None


@dataclass(frozen=True)
class TransportFailure:
    """The outbound POST never reached a 2xx answer from the partner."""

    status_code: int
    reason: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def status_text(self) -> str:
        return f"HTTP failure: {self.status_code} {self.reason}".rstrip()


@dataclass(frozen=True)
class HttpOutcome:
    status_code: int
    body: bytes = b""

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass(frozen=True)
class Outcome:
    """Result of one lifecycle operation, ready for the HTTP adapter."""

    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)


class PartnershipConfig(BaseModel):
    """Partnership file contents; unknown keys pass through to the engine."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    my_id: str = Field(default="", alias="MyId")
    partner_id: str = Field(default="", alias="PartnerId")
    mdn: DispositionMode = Field(default=DispositionMode.SYNC, alias="Mdn")
    certificate_directory: str | None = Field(default=None, alias="CertificateDirectory")

    @field_validator("mdn", mode="before")
    @classmethod
    def _lowercase_mdn(cls, value: Any) -> Any:
        if value is None or value == "":
            return DispositionMode.NONE
        return value.lower() if isinstance(value, str) else value


@dataclass(frozen=True)
class TransferContext:
    """Ready-to-use partnership view handed to the lifecycle core."""

    partnership: str
    config: PartnershipConfig
    engine: ProtocolEngine

    @property
    def mode(self) -> DispositionMode:
        return self.config.mdn

    @property
    def my_id(self) -> str:
        return self.config.my_id

    @property
    def partner_id(self) -> str:
        return self.config.partner_id
