from __future__ import annotations

import hashlib
import json
from collections import deque
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from as2_gateway import (
    DirectoryStore,
    DispositionMode,
    HttpOutcome,
    LifecycleStateMachine,
    Message,
    PartnershipConfig,
    PartnershipResolver,
    ProtocolError,
    Receipt,
    SendResult,
    TransportFailure,
)

SYNC = "acme/sync"
ASYNC = "acme/async"
NO_RECEIPT = "acme/none"
FIXED_NOW = datetime(2026, 10, 19, 12, 30, 5)

PARTNERSHIPS = {
    SYNC: {"MyId": "ME", "PartnerId": "ACME", "Mdn": "sync", "MyPrivateKey": "-----BEGIN-----", "PartnerCertificateFile": "acme.pem"},
    ASYNC: {"MyId": "ME", "PartnerId": "ACME", "Mdn": "async", "MdnAsyncUrl": "https://me.example/MDNreceive/acme/async"},
    NO_RECEIPT: {"MyId": "ME", "PartnerId": "ACME", "Mdn": "none"},
}


class FakeEngine:
    """Deterministic stand-in for the AS2 codec.

    Inbound messages are plain bodies; the ``X-Test-Outcome`` header picks
    success, failure or error, and a ``Receipt-Delivery-Option`` header
    requests an asynchronous receipt. Receipts travel as JSON.
    ``during_send`` runs while the outbound POST is in flight.
    """

    def __init__(self, config: PartnershipConfig) -> None:
        self.config = config
        self.send_results: deque[SendResult | TransportFailure] = deque()
        self.delivery_outcomes: deque[HttpOutcome] = deque()
        self.sent: list[dict[str, object]] = []
        self.delivered: list[tuple[Receipt, str]] = []
        self.during_send: Callable[[str], None] | None = None

    def normalize_message_id(self, raw: str) -> str:
        value = raw.strip()
        if value.startswith("<") and value.endswith(">"):
            value = value[1:-1]
        return value

    def encode_and_send(
        self,
        content: bytes,
        *,
        message_id: str,
        content_type: str,
        subject: str,
    ) -> SendResult | TransportFailure:
        self.sent.append(
            {"content": content, "message_id": message_id, "content_type": content_type, "subject": subject}
        )
        if self.during_send is not None:
            self.during_send(message_id)
        if self.send_results:
            return self.send_results.popleft()
        mic = hashlib.sha256(content).hexdigest()
        if self.config.mdn is DispositionMode.ASYNC:
            return SendResult(receipt=Receipt(success=False, unparsable=True, status_text="awaiting async receipt"))
        receipt = Receipt(
            success=True,
            original_message_id=message_id,
            status_text="processed",
            mic=mic,
            mic_alg="sha256",
        )
        return SendResult(receipt=receipt, mic=mic, mic_alg="sha256")

    def decode_incoming(self, headers: Mapping[str, str], body: bytes) -> Message:
        lowered = {key.lower(): value for key, value in headers.items()}
        outcome = lowered.get("x-test-outcome", "success")
        fields = {
            "message_id": self.normalize_message_id(lowered.get("message-id", "")),
            "content": body.decode("latin-1"),
            "success": outcome == "success",
            "error": outcome == "error",
            "mdn_async": "receipt-delivery-option" in lowered,
        }
        return self._message(fields, json.dumps(fields, sort_keys=True))

    def restore_message(self, serialized_state: str) -> Message:
        return self._message(json.loads(serialized_state), serialized_state)

    def build_receipt(self, message: Message) -> Receipt:
        status = "processed" if message.success else "processed/error: decryption-failed"
        return Receipt(
            success=message.success,
            error=message.error,
            original_message_id=message.message_id,
            status_text=status,
        )

    def render_receipt(self, receipt: Receipt) -> tuple[dict[str, str], bytes]:
        body = f"MDN {receipt.status_text} <{receipt.original_message_id}>".encode("utf-8")
        return {"Content-Type": "text/plain"}, body

    def send_receipt(self, receipt: Receipt, message_id: str) -> HttpOutcome:
        self.delivered.append((receipt, message_id))
        if self.delivery_outcomes:
            return self.delivery_outcomes.popleft()
        return HttpOutcome(status_code=200, body=b"thanks")

    def decode_receipt(self, headers: Mapping[str, str], body: bytes) -> Receipt:
        try:
            return Receipt.model_validate(json.loads(body))
        except (ValueError, PydanticValidationError) as exc:
            raise ProtocolError(f"cannot decode receipt: {exc}") from exc

    @staticmethod
    def _message(fields: dict[str, object], state: str) -> Message:
        return Message(
            message_id=str(fields["message_id"]),
            content=str(fields["content"]).encode("latin-1"),
            success=bool(fields["success"]),
            error=bool(fields["error"]),
            mdn_async=bool(fields["mdn_async"]),
            serialized_state=state,
        )


def write_partnership(partnership_dir: Path, name: str, params: dict[str, object]) -> Path:
    path = partnership_dir / f"{name}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(params), encoding="utf-8")
    return path


def engine_for(machine: LifecycleStateMachine, partnership: str) -> FakeEngine:
    return machine.resolver.resolve(partnership).engine


def receipt_body(**fields: object) -> bytes:
    return json.dumps(fields).encode("utf-8")


def listing(directory: Path) -> list[str]:
    if not directory.is_dir():
        return []
    return sorted(path.name for path in directory.iterdir() if not path.name.startswith("."))


@pytest.fixture
def partnership_dir(tmp_path: Path) -> Path:
    root = tmp_path / "partnerships"
    for name, params in PARTNERSHIPS.items():
        write_partnership(root, name, params)
    return root


@pytest.fixture
def resolver(partnership_dir: Path, tmp_path: Path) -> PartnershipResolver:
    return PartnershipResolver(
        partnership_dir,
        engine_factory=FakeEngine,
        certificate_dir=tmp_path / "certificates",
    )


@pytest.fixture
def store(tmp_path: Path) -> DirectoryStore:
    return DirectoryStore(tmp_path / "files")


@pytest.fixture
def machine(resolver: PartnershipResolver, store: DirectoryStore) -> LifecycleStateMachine:
    return LifecycleStateMachine(resolver, store, clock=lambda: FIXED_NOW)
