from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .directory_store import DirectoryStore, sanitize_message_id
from .engine import ProtocolEngine
from .errors import ValidationError
from .models import Direction, Receipt, Stage

logger = logging.getLogger(__name__)


class Correlation(str, Enum):
    MATCHED = "matched"  # a pending marker is waiting in SENDING
    DUPLICATE = "duplicate"  # the message already reached SENT
    ORPHAN = "orphan"  # no trace of the original message on disk


@dataclass(frozen=True)
class CorrelationResult:
    kind: Correlation
    original_message_id: str
    stage: Stage | None


class ReceiptCorrelator:
    """Tie an incoming receipt back to the outbound message it acknowledges."""

    def __init__(self, store: DirectoryStore) -> None:
        self.store = store

    def original_message_id(self, receipt: Receipt, engine: ProtocolEngine) -> str | None:
        """Extract the normalized original message id, or None when unusable."""
        raw = (receipt.original_message_id or "").strip()
        if not raw:
            return None
        normalized = engine.normalize_message_id(raw)
        try:
            sanitize_message_id(normalized)
        except ValidationError:
            logger.warning("Receipt original message id %r is not usable as a filename", raw)
            return None
        return normalized

    def correlate(self, partnership: str, original_message_id: str) -> CorrelationResult:
        """Classify the receipt against what the sending side has on disk.

        Must be called while holding the send lock for *original_message_id*.
        """
        stage = self.store.stage(partnership, Direction.SEND, original_message_id)
        if stage is Stage.PENDING_SEND:
            kind = Correlation.MATCHED
        elif stage is None:
            kind = Correlation.ORPHAN
        else:
            kind = Correlation.DUPLICATE
        return CorrelationResult(kind=kind, original_message_id=original_message_id, stage=stage)
