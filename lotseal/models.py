"""
Data model for batch certification.

``BatchRecord`` is the durable off-chain entity; everything else here lives
only for the duration of one certification attempt.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .util import now_utc, utc_rfc3339


class ReasonCode(str, Enum):
    """Why the validator rejected a payload. Closed set."""
    COUNTERFEIT = "COUNTERFEIT"
    EXPIRED = "EXPIRED"
    MALFORMED = "MALFORMED"
    INCOMPLETE = "INCOMPLETE"
    SUSPICIOUS = "SUSPICIOUS"


REASON_MESSAGES: Dict[ReasonCode, str] = {
    ReasonCode.COUNTERFEIT: "ALERT: counterfeit product detected",
    ReasonCode.EXPIRED: "ALERT: batch is expired",
    ReasonCode.MALFORMED: "Invalid QR format: payload must be valid JSON",
    ReasonCode.INCOMPLETE: "Incomplete data: QR must contain at least lote, producto or id",
    ReasonCode.SUSPICIOUS: "SECURITY: suspicious pattern detected",
}


class RecordState(str, Enum):
    """Lifecycle state of a BatchRecord."""
    PROVISIONAL = "provisional"
    CONFIRMED = "confirmed"


class AttemptState(str, Enum):
    """State of one certification attempt in the orchestrator."""
    IDLE = "idle"
    VALIDATING = "validating"
    REJECTED = "rejected"
    PERSISTING = "persisting"
    AWAITING_LEDGER = "awaiting_ledger"
    CONFIRMING = "confirming"
    CERTIFIED = "certified"
    FAILED = "failed"
    RECONCILIATION_REQUIRED = "reconciliation_required"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({
    AttemptState.REJECTED,
    AttemptState.CERTIFIED,
    AttemptState.FAILED,
    AttemptState.RECONCILIATION_REQUIRED,
})


@dataclass(frozen=True)
class Payload:
    """Decoded QR content handed over by the capture collaborator."""
    text: str
    parsed: Optional[Dict[str, Any]] = None


@dataclass
class BatchRecord:
    """
    Off-chain record of a batch.

    ``tx_id`` and ``confirmed_at`` are both set exactly when the record is
    Confirmed.
    """
    record_id: Any
    payload_text: str
    digest: str
    parsed_payload: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=now_utc)
    state: RecordState = RecordState.PROVISIONAL
    tx_id: Optional[str] = None
    confirmed_at: Optional[datetime] = None

    def __post_init__(self):
        self.check_invariant()

    def check_invariant(self) -> None:
        bound = self.tx_id is not None
        if bound != (self.confirmed_at is not None):
            raise ValueError(f"record {self.record_id}: tx_id and confirmed_at must be set together")
        if bound != (self.state == RecordState.CONFIRMED):
            raise ValueError(f"record {self.record_id}: state {self.state.value} does not match tx binding")

    def is_confirmed(self) -> bool:
        return self.state == RecordState.CONFIRMED

    def confirmed(self, tx_id: str, confirmed_at: Optional[datetime] = None) -> "BatchRecord":
        """Return the Confirmed version of this record."""
        return BatchRecord(
            record_id=self.record_id,
            payload_text=self.payload_text,
            digest=self.digest,
            parsed_payload=self.parsed_payload,
            created_at=self.created_at,
            state=RecordState.CONFIRMED,
            tx_id=tx_id,
            confirmed_at=confirmed_at or now_utc(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.record_id,
            "payload_text": self.payload_text,
            "parsed_payload": self.parsed_payload,
            "created_at": utc_rfc3339(self.created_at),
            "digest": self.digest,
            "state": self.state.value,
            "tx_id": self.tx_id,
            "confirmed_at": utc_rfc3339(self.confirmed_at) if self.confirmed_at else None,
        }


@dataclass(frozen=True)
class ValidationOutcome:
    """Accepted (with the parsed payload) or Rejected (with a reason code)."""
    accepted: bool
    parsed: Optional[Dict[str, Any]] = None
    reason_code: Optional[ReasonCode] = None

    @classmethod
    def accept(cls, parsed: Dict[str, Any]) -> "ValidationOutcome":
        return cls(accepted=True, parsed=parsed)

    @classmethod
    def reject(cls, reason_code: ReasonCode) -> "ValidationOutcome":
        return cls(accepted=False, reason_code=reason_code)

    @property
    def message(self) -> Optional[str]:
        if self.accepted:
            return None
        return REASON_MESSAGES[self.reason_code]


@dataclass(frozen=True)
class LedgerHandle:
    """Reference to an anchoring transaction that has been handed to the ledger."""
    handle_id: str
    digest: str
    submitted_at: datetime = field(default_factory=now_utc)
    envelope: Optional[Dict[str, Any]] = None


@dataclass
class CertificationAttempt:
    """Book-keeping for one payload moving through the workflow."""
    attempt_id: str
    state: AttemptState = AttemptState.IDLE
    digest: Optional[str] = None
    record_id: Any = None
    handle: Optional[LedgerHandle] = None
    tx_id: Optional[str] = None
    reason_code: Optional[ReasonCode] = None
    error: Optional[Exception] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "state": self.state.value,
            "digest": self.digest,
            "record_id": self.record_id,
            "handle_id": self.handle.handle_id if self.handle else None,
            "tx_id": self.tx_id,
            "reason_code": self.reason_code.value if self.reason_code else None,
            "error": str(self.error) if self.error else None,
        }


@dataclass(frozen=True)
class CertificationResult:
    """What ``submit_payload`` hands back to the capture collaborator."""
    attempt_id: str
    state: AttemptState
    digest: Optional[str] = None
    record_id: Any = None
    handle_id: Optional[str] = None
    tx_id: Optional[str] = None
    reason_code: Optional[ReasonCode] = None
    error: Optional[Exception] = None

    def ok(self) -> bool:
        return self.state in (AttemptState.AWAITING_LEDGER, AttemptState.CERTIFIED)

    def rejected(self) -> bool:
        return self.state == AttemptState.REJECTED

    @property
    def message(self) -> Optional[str]:
        if self.reason_code is not None:
            return REASON_MESSAGES[self.reason_code]
        if self.error is not None:
            return getattr(self.error, "message", str(self.error))
        return None

    @classmethod
    def from_attempt(cls, attempt: CertificationAttempt) -> "CertificationResult":
        return cls(
            attempt_id=attempt.attempt_id,
            state=attempt.state,
            digest=attempt.digest,
            record_id=attempt.record_id,
            handle_id=attempt.handle.handle_id if attempt.handle else None,
            tx_id=attempt.tx_id,
            reason_code=attempt.reason_code,
            error=attempt.error,
        )
