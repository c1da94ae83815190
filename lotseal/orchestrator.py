"""
Certification orchestrator.

Drives one payload at a time through the certification workflow:

    IDLE -> VALIDATING -> REJECTED
                       -> PERSISTING -> FAILED                    (store error)
                                     -> AWAITING_LEDGER -> FAILED (submission error / declined)
                                                        -> CONFIRMING -> CERTIFIED
                                                                      -> RECONCILIATION_REQUIRED

Everything up to the ledger submission happens inside ``submit_payload``.
The ledger verdict arrives later through ``on_confirmed`` / ``on_failed``,
which the ledger adapter calls for its subscribers (or the HTTP layer calls
on behalf of a remote relay).

Failures are reported in the returned result, never retried here. An
unexpected exception from the store or the ledger is treated like their
documented errors, so no attempt is left stuck half way. A provisional
record whose ledger transaction fails or never confirms is left as it is
for manual reconciliation.

Settled attempts leave the live indexes for a bounded history, so recent
ones can still be looked up. Attempts needing reconciliation stay live.
A record whose attempt is no longer known, e.g. after a restart, is
confirmed by record id through ``on_confirmed_for_record``.
"""

import logging
import threading
import uuid
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Type, Union

from .errors import (
    InvalidTransitionError,
    LedgerConfirmationInconsistency,
    LedgerSubmissionError,
    LotSealError,
    RecordAlreadyConfirmedError,
    StoreError,
    UnknownHandleError,
)
from .fingerprint import fingerprint
from .ledger import LedgerAdapter
from .logging_config import AuditLogger, audit_log, bind_attempt
from .models import (
    AttemptState,
    BatchRecord,
    CertificationAttempt,
    CertificationResult,
    LedgerHandle,
    Payload,
    RecordState,
)
from .store import RecordStore
from .validator import Validator

logger = logging.getLogger(__name__)

DEFAULT_SETTLED_HISTORY = 1000

_TRANSITIONS = {
    AttemptState.IDLE: {AttemptState.VALIDATING},
    AttemptState.VALIDATING: {AttemptState.REJECTED, AttemptState.PERSISTING},
    AttemptState.PERSISTING: {AttemptState.AWAITING_LEDGER, AttemptState.FAILED},
    AttemptState.AWAITING_LEDGER: {AttemptState.CONFIRMING, AttemptState.FAILED},
    AttemptState.CONFIRMING: {AttemptState.CERTIFIED, AttemptState.RECONCILIATION_REQUIRED},
}


def _unexpected(error_type: Type[LotSealError], message: str, cause: Exception) -> LotSealError:
    """Wrap a collaborator's undocumented exception in the workflow's own type."""
    logger.error("%s: %r", message, cause, exc_info=cause)
    err = error_type(message, f"{type(cause).__name__}: {cause}")
    err.__cause__ = cause
    return err


class CertificationOrchestrator:
    """
    Coordinates validator, fingerprinter, record store and ledger.

    Usage:
        orchestrator = CertificationOrchestrator(store, ledger)
        result = orchestrator.submit_payload('{"lote": "A1"}')
        if result.ok():
            # wallet signs, chain confirms ...
            orchestrator.on_confirmed(result.handle_id, tx_id)
    """

    def __init__(
        self,
        store: RecordStore,
        ledger: LedgerAdapter,
        validator: Optional[Validator] = None,
        fingerprinter: Callable[[str], str] = fingerprint,
        audit: Optional[AuditLogger] = None,
        settled_history: int = DEFAULT_SETTLED_HISTORY
    ):
        self.store = store
        self.ledger = ledger
        self.validator = validator or Validator()
        self.fingerprinter = fingerprinter
        self.audit = audit or audit_log
        self.settled_history = settled_history

        # Live attempts: in flight or needing reconciliation.
        self._attempts: Dict[str, CertificationAttempt] = {}
        self._by_handle: Dict[str, CertificationAttempt] = {}
        self._by_record: Dict[object, CertificationAttempt] = {}
        # Recently settled attempts, oldest first.
        self._settled: "OrderedDict[str, CertificationAttempt]" = OrderedDict()
        self._settled_handles: Dict[str, str] = {}
        self._lock = threading.RLock()

        ledger.subscribe(self)

    # ------------------------------------------------------------------
    # Inbound from the capture collaborator
    # ------------------------------------------------------------------

    def submit_payload(self, payload: Union[str, Payload]) -> CertificationResult:
        """
        Validate, fingerprint and persist a payload, then hand its digest to
        the ledger.

        Returns:
            CertificationResult in state REJECTED, FAILED or AWAITING_LEDGER
        """
        text = payload.text if isinstance(payload, Payload) else payload
        attempt = CertificationAttempt(attempt_id=uuid.uuid4().hex)
        with self._lock:
            self._attempts[attempt.attempt_id] = attempt

        with bind_attempt(attempt.attempt_id):
            return self._certify(attempt, text)

    def _certify(self, attempt: CertificationAttempt, text: str) -> CertificationResult:
        self.audit.payload_received(attempt.attempt_id, len(text))
        self._advance(attempt, AttemptState.VALIDATING)

        outcome = self.validator.validate(text)
        if not outcome.accepted:
            attempt.reason_code = outcome.reason_code
            self._advance(attempt, AttemptState.REJECTED)
            self.audit.validation_rejected(attempt.attempt_id, outcome.reason_code.value)
            return CertificationResult.from_attempt(attempt)

        self._advance(attempt, AttemptState.PERSISTING)
        attempt.digest = self.fingerprinter(text)
        try:
            record = self.store.create_provisional(text, outcome.parsed, attempt.digest)
        except Exception as e:
            err = e if isinstance(e, StoreError) else _unexpected(StoreError, "record store create failed", e)
            attempt.error = err
            self._advance(attempt, AttemptState.FAILED)
            self.audit.store_error(attempt.attempt_id, "create_provisional", str(err), err.transient)
            return CertificationResult.from_attempt(attempt)

        attempt.record_id = record.record_id
        with self._lock:
            self._by_record[record.record_id] = attempt
        self.audit.provisional_created(attempt.attempt_id, record.record_id, attempt.digest)

        self._advance(attempt, AttemptState.AWAITING_LEDGER)
        try:
            handle = self.ledger.submit(attempt.digest)
        except Exception as e:
            if isinstance(e, LedgerSubmissionError):
                err = e
            else:
                err = _unexpected(LedgerSubmissionError, "ledger submission failed", e)
            attempt.error = err
            self._advance(attempt, AttemptState.FAILED)
            self.audit.ledger_failed(attempt.attempt_id, attempt.record_id, str(err))
            return CertificationResult.from_attempt(attempt)

        with self._lock:
            attempt.handle = handle
            self._by_handle[handle.handle_id] = attempt
        self.audit.ledger_submitted(attempt.attempt_id, handle.handle_id, attempt.digest)
        return CertificationResult.from_attempt(attempt)

    # ------------------------------------------------------------------
    # Inbound from the ledger
    # ------------------------------------------------------------------

    def on_confirmed(self, handle: Union[LedgerHandle, str], tx_id: str) -> CertificationResult:
        """
        Promote the attempt's record once the ledger has confirmed the
        anchoring transaction.

        The store is called at most once per attempt: a repeated or late
        notification raises InvalidTransitionError before touching it.
        """
        with self._lock:
            attempt = self.attempt_for_handle(handle)
            self._advance(attempt, AttemptState.CONFIRMING)
            attempt.tx_id = tx_id

        with bind_attempt(attempt.attempt_id):
            return self._promote(attempt, tx_id)

    def on_confirmed_for_record(self, record_id, tx_id: str) -> CertificationResult:
        """
        Promote a record named by id once its transaction is confirmed.

        A live attempt for the record moves on exactly as in
        ``on_confirmed``. Otherwise the record is read back from the store
        and, if still Provisional, a resumed attempt is opened for it in
        AWAITING_LEDGER. The store's conditional promotion keeps this at
        most once even across processes.

        Raises:
            RecordNotFoundError: no record with that id
            RecordAlreadyConfirmedError: the record is already Confirmed
            InvalidTransitionError: the live attempt is not awaiting the ledger
            StoreError: the record could not be read
        """
        with self._lock:
            attempt = self._by_record.get(record_id)

        if attempt is None:
            record = self.store.get(record_id)
            if record.state == RecordState.CONFIRMED:
                raise RecordAlreadyConfirmedError(record_id, record.tx_id)
            with self._lock:
                attempt = self._by_record.get(record_id) or self._resume(record)

        with self._lock:
            self._advance(attempt, AttemptState.CONFIRMING)
            attempt.tx_id = tx_id

        with bind_attempt(attempt.attempt_id):
            return self._promote(attempt, tx_id)

    def _resume(self, record: BatchRecord) -> CertificationAttempt:
        attempt = CertificationAttempt(
            attempt_id=uuid.uuid4().hex,
            state=AttemptState.AWAITING_LEDGER,
            digest=record.digest,
            record_id=record.record_id,
        )
        self._attempts[attempt.attempt_id] = attempt
        self._by_record[record.record_id] = attempt
        logger.info("resumed attempt %s for provisional record %s", attempt.attempt_id, record.record_id)
        return attempt

    def _promote(self, attempt: CertificationAttempt, tx_id: str) -> CertificationResult:
        try:
            self.store.promote_to_confirmed(attempt.record_id, tx_id)
        except Exception as e:
            err = e if isinstance(e, StoreError) else _unexpected(StoreError, "record store promotion failed", e)
            # The transaction is on chain and cannot be undone.
            attempt.error = LedgerConfirmationInconsistency(attempt.record_id, tx_id, str(err))
            self._advance(attempt, AttemptState.RECONCILIATION_REQUIRED)
            self.audit.reconciliation_required(attempt.attempt_id, attempt.record_id, tx_id, str(err))
            return CertificationResult.from_attempt(attempt)

        self._advance(attempt, AttemptState.CERTIFIED)
        self.audit.record_confirmed(attempt.attempt_id, attempt.record_id, tx_id)
        return CertificationResult.from_attempt(attempt)

    def on_failed(self, handle: Union[LedgerHandle, str], reason: str) -> CertificationResult:
        """Mark the attempt failed; its record stays Provisional."""
        with self._lock:
            attempt = self.attempt_for_handle(handle)
            self._advance(attempt, AttemptState.FAILED)
            attempt.error = LedgerSubmissionError(
                "ledger transaction failed", reason, handle_id=attempt.handle.handle_id
            )

        self.audit.ledger_failed(attempt.attempt_id, attempt.record_id, reason)
        return CertificationResult.from_attempt(attempt)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_attempt(self, attempt_id: str) -> Optional[CertificationAttempt]:
        """Live or recently settled attempt; None once it has aged out."""
        with self._lock:
            return self._attempts.get(attempt_id) or self._settled.get(attempt_id)

    def attempt_for_handle(self, handle: Union[LedgerHandle, str]) -> CertificationAttempt:
        handle_id = handle.handle_id if isinstance(handle, LedgerHandle) else handle
        with self._lock:
            attempt = self._by_handle.get(handle_id)
            if attempt is None and handle_id in self._settled_handles:
                attempt = self._settled.get(self._settled_handles[handle_id])
        if attempt is None:
            raise UnknownHandleError(handle_id)
        return attempt

    def attempt_for_record(self, record_id) -> Optional[CertificationAttempt]:
        """Live attempt holding the record, if any."""
        with self._lock:
            return self._by_record.get(record_id)

    def pending_attempts(self) -> List[CertificationAttempt]:
        """Attempts still waiting on the ledger or another collaborator."""
        with self._lock:
            return [a for a in self._attempts.values() if not a.state.terminal]

    def attempts_needing_reconciliation(self) -> List[CertificationAttempt]:
        with self._lock:
            return [
                a for a in self._attempts.values()
                if a.state == AttemptState.RECONCILIATION_REQUIRED
            ]

    # ------------------------------------------------------------------

    def _advance(self, attempt: CertificationAttempt, target: AttemptState) -> None:
        with self._lock:
            allowed = _TRANSITIONS.get(attempt.state, set())
            if target not in allowed:
                raise InvalidTransitionError(attempt.attempt_id, attempt.state.value, target.value)
            logger.debug("attempt %s: %s -> %s", attempt.attempt_id, attempt.state.value, target.value)
            attempt.state = target
            if target.terminal and target != AttemptState.RECONCILIATION_REQUIRED:
                self._settle(attempt)

    def _settle(self, attempt: CertificationAttempt) -> None:
        """Move a finished attempt from the live indexes into the history."""
        self._attempts.pop(attempt.attempt_id, None)
        if self._by_record.get(attempt.record_id) is attempt:
            del self._by_record[attempt.record_id]
        if attempt.handle is not None:
            self._by_handle.pop(attempt.handle.handle_id, None)
            self._settled_handles[attempt.handle.handle_id] = attempt.attempt_id

        self._settled[attempt.attempt_id] = attempt
        while len(self._settled) > self.settled_history:
            _, oldest = self._settled.popitem(last=False)
            if oldest.handle is not None:
                self._settled_handles.pop(oldest.handle.handle_id, None)
