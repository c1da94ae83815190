"""
Exception taxonomy for lotseal.

Validation rejections are not exceptions: they are returned as
``ValidationOutcome`` values. Everything below is a failure of a
collaborator (store, ledger) or of the caller driving the workflow.
"""

from typing import Optional


class LotSealError(Exception):
    """Base class for all lotseal errors."""

    def __init__(self, message: str, detail: Optional[str] = None):
        self.message = message
        self.detail = detail
        super().__init__(message if detail is None else f"{message}: {detail}")


class ConfigurationError(LotSealError):
    """Raised when settings are missing or inconsistent for the chosen backend."""


class StoreError(LotSealError):
    """
    Record store failure.

    ``transient`` tells the caller whether retrying the same operation may
    succeed (network hiccup, locked database) or not (constraint violation,
    bad credentials).
    """

    def __init__(self, message: str, detail: Optional[str] = None, transient: bool = False):
        self.transient = transient
        super().__init__(message, detail)


class RecordNotFoundError(StoreError):
    """No record exists with the given identifier."""

    def __init__(self, record_id):
        self.record_id = record_id
        super().__init__("record not found", f"no record with id {record_id}")


class RecordAlreadyConfirmedError(StoreError):
    """Promotion was requested for a record that is already Confirmed."""

    def __init__(self, record_id, tx_id: Optional[str] = None):
        self.record_id = record_id
        self.tx_id = tx_id
        super().__init__("record already confirmed", f"record {record_id} is bound to {tx_id}")


class LedgerSubmissionError(LotSealError):
    """The anchoring transaction could not be submitted or was declined by the signer."""

    def __init__(self, message: str, detail: Optional[str] = None, handle_id: Optional[str] = None):
        self.handle_id = handle_id
        super().__init__(message, detail)


class LedgerConfirmationInconsistency(LotSealError):
    """
    The ledger confirmed the anchoring transaction but the off-chain record
    could not be promoted. The ledger state stands; the record needs
    reconciliation.
    """

    def __init__(self, record_id, tx_id: str, detail: Optional[str] = None):
        self.record_id = record_id
        self.tx_id = tx_id
        super().__init__("reconciliation required", detail)


class UnknownHandleError(LotSealError):
    """A ledger notification referenced a handle no attempt is waiting on."""

    def __init__(self, handle_id: str):
        self.handle_id = handle_id
        super().__init__("unknown ledger handle", handle_id)


class InvalidTransitionError(LotSealError):
    """The workflow was asked to move between states that are not connected."""

    def __init__(self, attempt_id: str, current: str, target: str):
        self.attempt_id = attempt_id
        self.current = current
        self.target = target
        super().__init__("invalid transition", f"attempt {attempt_id}: {current} -> {target}")
