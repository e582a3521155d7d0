from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path

from . import records
from .correlator import Correlation, ReceiptCorrelator
from .directory_store import DirectoryStore, sanitize_message_id
from .engine import load_engine_factory
from .errors import IllegalTransitionError, StateCorruptionError
from .models import (
    DELIVERY_AUDIT_SUFFIX,
    FAILED_SUFFIX,
    STAGE_LOCATIONS,
    STAGE_TRANSITIONS,
    STATE_SENT_SUFFIX,
    STATE_SUFFIX,
    UNKNOWN_RECEIPT_SUFFIX,
    Direction,
    DispositionMode,
    Outcome,
    Role,
    SendResult,
    Stage,
    TransferContext,
    TransportFailure,
    terminal_suffixes,
)
from .partnerships import PartnershipResolver
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

HTTP_OK = 200
JSON_CONTENT_TYPE = "application/json; charset=utf-8"

_SENT_STAGE_BY_SUFFIX = {"": Stage.SENT, FAILED_SUFFIX: Stage.SENT_FAILED}
_RECEIVED_STAGE_BY_SUFFIX = {
    suffix: stage
    for stage, (role, suffix) in STAGE_LOCATIONS.items()
    if role is Role.RECEIVED
}


def _header(headers: Mapping[str, str], name: str) -> str:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return ""


class LifecycleStateMachine:
    """Drive each message through its stages on the filesystem.

    Sending: ``begin_send`` writes a pending marker into SENDING and moves it
    into SENT once a receipt is known, either inline (synchronous mode) or
    later through ``accept_receipt`` (asynchronous mode).

    Receiving: ``begin_receive`` stores the content in RECEIVING and moves
    it into RECEIVED with the inline receipt, or keeps it there with the
    engine state until ``deliver_deferred_receipt`` posts the receipt.

    Every transition holds the lock for its ``(partnership, direction,
    message id)`` and is checked against ``STAGE_TRANSITIONS``.
    """

    def __init__(
        self,
        resolver: PartnershipResolver,
        store: DirectoryStore,
        *,
        correlator: ReceiptCorrelator | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.resolver = resolver
        self.store = store
        self.correlator = correlator if correlator is not None else ReceiptCorrelator(store)
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, root: Path | None = None) -> "LifecycleStateMachine":
        base = root if root is not None else Path.cwd()
        engine_factory = load_engine_factory(settings.engine_factory) if settings.engine_factory else None
        resolver = PartnershipResolver(
            settings.partnership_path(base),
            engine_factory=engine_factory,
            certificate_dir=settings.certificate_path(base),
        )
        store = DirectoryStore(settings.file_path(base), lock_timeout=settings.lock_timeout_seconds)
        return cls(resolver, store)

    # ------------------------------------------------------------------
    # Sending path
    # ------------------------------------------------------------------

    def begin_send(
        self,
        partnership: str,
        message_id: str,
        content: bytes,
        headers: Mapping[str, str],
    ) -> Outcome:
        logger.debug("%s : Starting to send data to %s", message_id, partnership)
        context = self.resolver.resolve(partnership)
        message_id = context.engine.normalize_message_id(message_id)
        sanitize_message_id(message_id)

        self.store.ensure(partnership, Role.SENDING, Role.SENT, message_id=message_id)
        marker = self.store.locate(partnership, Role.SENDING, message_id)

        # The outbound reservation spans the POST and rejects a second send of
        # the same identifier. The transition lock is only held around disk
        # changes so an asynchronous receipt can land while the POST is open.
        with self.store.outbound(partnership, message_id):
            with self.store.lock(partnership, Direction.SEND, message_id):
                self._check_transition(partnership, Direction.SEND, message_id, Stage.PENDING_SEND)
                self.store.write(marker, records.encode_pending(context.mode))
                logger.debug("<%s> : Created message file %s", message_id, marker)

            result = context.engine.encode_and_send(
                content,
                message_id=message_id,
                content_type=_header(headers, "Content-Type"),
                subject=_header(headers, "Subject"),
            )

            if context.mode is DispositionMode.ASYNC and not isinstance(result, TransportFailure):
                # The receipt arrives later through accept_receipt.
                if not result.receipt.unparsable:
                    logger.debug("<%s> : Ignoring inline receipt in async mode", message_id)
                logger.info("<%s> : Sent async message to %s, awaiting receipt", message_id, partnership)
                return Outcome(status=HTTP_OK)

            with self.store.lock(partnership, Direction.SEND, message_id):
                return self._complete_send(context, partnership, message_id, marker, result)

    def _complete_send(
        self,
        context: TransferContext,
        partnership: str,
        message_id: str,
        marker: Path,
        result: SendResult | TransportFailure,
    ) -> Outcome:
        """Record the outcome of the POST unless a receipt already did.

        Must be called while holding the send lock for *message_id*.
        """
        still_pending = self.store.stage(partnership, Direction.SEND, message_id) is Stage.PENDING_SEND
        if not still_pending:
            logger.warning("<%s> : Message completed by a receipt while sending, keeping it", message_id)

        if isinstance(result, TransportFailure):
            if still_pending:
                self.store.write(marker, records.encode_transport_failure(result))
                self._finish_send(partnership, message_id, marker, successful=False)
            logger.info("<%s> : Send to %s failed (%s)", message_id, partnership, result.status_text)
            return Outcome(status=result.status_code, body=result.reason.encode("utf-8"))

        if context.mode is DispositionMode.NONE:
            if still_pending:
                self._finish_send(partnership, message_id, marker, successful=True)
            logger.info("<%s> : Sent message to %s without receipt", message_id, partnership)
            return Outcome(status=HTTP_OK)

        receipt = result.receipt
        match_mic = receipt.matches_mic(result.mic, result.mic_alg)
        successful = receipt.success and match_mic
        body = records.encode_receipt(receipt, match_mic=match_mic, successful=successful)
        if still_pending:
            self.store.write(marker, body)
            self._finish_send(partnership, message_id, marker, successful=successful)

        logger.info("<%s> : Sent sync message to %s (successful=%s)", message_id, partnership, successful)
        return Outcome(
            status=HTTP_OK,
            body=body.encode("utf-8"),
            headers={
                "OriginalMessageId": receipt.original_message_id or "",
                "Content-Type": JSON_CONTENT_TYPE,
            },
        )

    def accept_receipt(
        self,
        partnership: str,
        message_id: str,
        headers: Mapping[str, str],
        body: bytes,
    ) -> Outcome:
        """Complete an asynchronous send with the receipt posted by the partner.

        The partner always gets 200 once the receipt decodes, whether or not
        it correlates to anything on disk.
        """
        logger.debug("%s : Starting to receive receipt from %s", message_id, partnership)
        context = self.resolver.resolve(partnership)
        message_id = context.engine.normalize_message_id(message_id)
        sanitize_message_id(message_id)

        self.store.ensure(partnership, Role.SENDING, Role.SENT, message_id=message_id)
        receipt = context.engine.decode_receipt(headers, body)

        original = self.correlator.original_message_id(receipt, context.engine)
        if original is None:
            with self.store.lock(partnership, Direction.SEND, message_id):
                unknown = self.store.locate(partnership, Role.SENDING, message_id, UNKNOWN_RECEIPT_SUFFIX)
                self.store.write(unknown, body)
            logger.warning(
                "<%s> : Receipt from %s did not contain a valid original message id, saved %s",
                message_id,
                partnership,
                unknown,
            )
            return Outcome(status=HTTP_OK)

        logger.debug("<%s> : Receipt original message id <%s> from %s", message_id, original, partnership)
        with self.store.lock(partnership, Direction.SEND, original):
            correlation = self.correlator.correlate(partnership, original)
            if correlation.kind is Correlation.DUPLICATE:
                logger.warning("<%s> : Receipt already received for <%s> (%s)", message_id, original, correlation.stage.value)
            elif correlation.kind is Correlation.ORPHAN:
                logger.warning("<%s> : No pending message for <%s>, recording receipt anyway", message_id, original)

            marker = self.store.locate(partnership, Role.SENDING, original)
            self.store.write(marker, records.encode_receipt(receipt))
            self._finish_send(partnership, original, marker, successful=receipt.success)

        logger.info(
            "<%s> : Received receipt%s for <%s> from %s",
            message_id,
            "" if receipt.success else FAILED_SUFFIX,
            original,
            partnership,
        )
        return Outcome(status=HTTP_OK)

    # ------------------------------------------------------------------
    # Receiving path
    # ------------------------------------------------------------------

    def begin_receive(
        self,
        partnership: str,
        message_id: str,
        headers: Mapping[str, str],
        body: bytes,
    ) -> Outcome:
        logger.debug("%s : Starting to receive data from %s", message_id, partnership)
        context = self.resolver.resolve(partnership)
        message_id = context.engine.normalize_message_id(message_id)
        sanitize_message_id(message_id)

        self.store.ensure(partnership, Role.RECEIVING, Role.RECEIVED, message_id=message_id)
        message = context.engine.decode_incoming(headers, body)

        if message.mdn_async:
            logger.info("<%s> : Receiving async message from %s", message_id, partnership)
            state = records.encode_state(message)
            with self.store.lock(partnership, Direction.RECEIVE, message_id):
                self._check_transition(partnership, Direction.RECEIVE, message_id, Stage.PENDING_RECEIVE)
                state_file = self.store.locate(partnership, Role.RECEIVING, message_id, STATE_SUFFIX)
                self.store.write(state_file, state)
                logger.debug("<%s> : Created serialized state file %s", message_id, state_file)
                content_file = self.store.locate(partnership, Role.RECEIVING, message_id)
                self.store.write(content_file, message.content)
                logger.debug("<%s> : Created message file %s", message_id, content_file)
            return Outcome(status=HTTP_OK)

        logger.info("<%s> : Receiving sync message from %s", message_id, partnership)
        receipt = context.engine.build_receipt(message)
        receipt_headers, receipt_body = context.engine.render_receipt(receipt)
        suffix = "" if message.success else FAILED_SUFFIX

        with self.store.lock(partnership, Direction.RECEIVE, message_id):
            target = _RECEIVED_STAGE_BY_SUFFIX[suffix]
            self._check_transition(partnership, Direction.RECEIVE, message_id, target)
            content_file = self.store.locate(partnership, Role.RECEIVING, message_id)
            self.store.write(content_file, message.content)
            destination = self._commit_terminal(partnership, Direction.RECEIVE, message_id, content_file, suffix)

        logger.debug("<%s> : Moved message file to %s", message_id, destination)
        return Outcome(status=HTTP_OK, body=receipt_body, headers=dict(receipt_headers))

    def deliver_deferred_receipt(self, partnership: str, message_id: str) -> Outcome:
        """Post the receipt for an asynchronously received message.

        On delivery failure an audit file is written into RECEIVED and both
        the content and the ``.state`` file stay in RECEIVING, so a later
        call retries. After a successful delivery the state file is gone
        from RECEIVING and further calls fail.
        """
        logger.debug("%s : Starting to send receipt to %s", message_id, partnership)
        context = self.resolver.resolve(partnership)
        message_id = context.engine.normalize_message_id(message_id)
        sanitize_message_id(message_id)

        self.store.ensure(partnership, Role.RECEIVING, Role.RECEIVED, message_id=message_id)
        with self.store.lock(partnership, Direction.RECEIVE, message_id):
            state_file = self.store.locate(partnership, Role.RECEIVING, message_id, STATE_SUFFIX)
            content_file = self.store.locate(partnership, Role.RECEIVING, message_id)
            message = records.restore_message(state_file, context.engine)
            if not content_file.is_file():
                raise StateCorruptionError(f"content file missing next to {state_file}")
            logger.debug("<%s> : Read receipt details for %s", message_id, partnership)

            suffix = message.outcome_suffix
            self._check_transition(partnership, Direction.RECEIVE, message_id, _RECEIVED_STAGE_BY_SUFFIX[suffix])

            receipt = context.engine.build_receipt(message)
            delivery = context.engine.send_receipt(receipt, message.message_id)

            if not delivery.is_success:
                audit = self.store.locate(partnership, Role.RECEIVED, message_id, DELIVERY_AUDIT_SUFFIX)
                self.store.write(audit, records.encode_delivery_failure(delivery, self.clock()))
                logger.warning(
                    "<%s> : Failed to send receipt to %s (HTTP %d), wrote %s",
                    message_id,
                    partnership,
                    delivery.status_code,
                    audit,
                )
                return Outcome(status=delivery.status_code, body=delivery.body)

            destination = self._commit_terminal(partnership, Direction.RECEIVE, message_id, content_file, suffix)
            logger.debug("<%s> : Moved message file to %s", message_id, destination)
            sent_state = self.store.locate(partnership, Role.RECEIVED, message_id, STATE_SENT_SUFFIX)
            self.store.commit(state_file, sent_state)
            logger.debug("<%s> : Moved state file to %s", message_id, sent_state)

        logger.info("<%s> : Sent receipt to %s", message_id, partnership)
        return Outcome(status=HTTP_OK)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def stage(self, partnership: str, message_id: str, direction: Direction) -> Stage | None:
        context = self.resolver.resolve(partnership)
        return self.store.stage(partnership, direction, context.engine.normalize_message_id(message_id))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_transition(
        self,
        partnership: str,
        direction: Direction,
        message_id: str,
        target: Stage,
    ) -> None:
        current = self.store.stage(partnership, direction, message_id)
        if target not in STAGE_TRANSITIONS[current]:
            current_name = current.value if current is not None else "none"
            raise IllegalTransitionError(
                f"Illegal stage transition for <{message_id}>: {current_name} -> {target.value}"
            )

    def _finish_send(
        self,
        partnership: str,
        message_id: str,
        marker: Path,
        *,
        successful: bool,
    ) -> Path:
        suffix = "" if successful else FAILED_SUFFIX
        self._check_transition(partnership, Direction.SEND, message_id, _SENT_STAGE_BY_SUFFIX[suffix])
        destination = self._commit_terminal(partnership, Direction.SEND, message_id, marker, suffix)
        logger.debug("<%s> : Moved message file to %s", message_id, destination)
        return destination

    def _commit_terminal(
        self,
        partnership: str,
        direction: Direction,
        message_id: str,
        source: Path,
        suffix: str,
    ) -> Path:
        terminal_role = Role.SENT if direction is Direction.SEND else Role.RECEIVED
        destination = self.store.locate(partnership, terminal_role, message_id, suffix)
        siblings = [
            self.store.locate(partnership, terminal_role, message_id, other)
            for other in terminal_suffixes(direction)
        ]
        if self.store.commit(source, destination, supersedes=siblings):
            logger.warning("<%s> : Overwrote existing file %s", message_id, destination)
        return destination
