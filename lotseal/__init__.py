"""
lotseal: pharmaceutical batch certification

Links an off-chain batch record to a tamper-evident seal on a ledger.

A decoded QR payload is validated against anti-fraud rules, stored as a
Provisional record, fingerprinted with SHA-256, and the fingerprint is
anchored on the ledger through a signed transaction. When the ledger
confirms, the record is promoted to Confirmed and bound to the transaction
id. A record is never Confirmed without a transaction id.

Usage:
    from lotseal import (
        CertificationOrchestrator,
        InMemoryLedger,
        SqliteRecordStore,
    )

    ledger = InMemoryLedger()
    orchestrator = CertificationOrchestrator(SqliteRecordStore("data/lotseal.db"), ledger)

    result = orchestrator.submit_payload('{"lote":"A1","producto":"Paracetamol"}')
    if result.rejected():
        print(result.reason_code, result.message)
    elif result.ok():
        # the wallet signs and the chain confirms, later:
        orchestrator.on_confirmed(result.handle_id, "0xabc")
"""

__version__ = "1.0.0"

from .errors import (
    ConfigurationError,
    InvalidTransitionError,
    LedgerConfirmationInconsistency,
    LedgerSubmissionError,
    LotSealError,
    RecordAlreadyConfirmedError,
    RecordNotFoundError,
    StoreError,
    UnknownHandleError,
)
from .fingerprint import fingerprint, verify_fingerprint
from .ledger import InMemoryLedger, LedgerAdapter, LedgerListener, SignedRelayLedger
from .models import (
    REASON_MESSAGES,
    AttemptState,
    BatchRecord,
    CertificationAttempt,
    CertificationResult,
    LedgerHandle,
    Payload,
    ReasonCode,
    RecordState,
    ValidationOutcome,
)
from .orchestrator import CertificationOrchestrator
from .signing import (
    AwsKmsTransactionSigner,
    FileTransactionSigner,
    TransactionSigner,
    verify_ed25519,
)
from .store import InMemoryRecordStore, RecordStore, RestRecordStore, SqliteRecordStore
from .validator import ValidationRules, Validator, validate

__all__ = [
    "__version__",

    # Errors
    "LotSealError",
    "ConfigurationError",
    "StoreError",
    "RecordNotFoundError",
    "RecordAlreadyConfirmedError",
    "LedgerSubmissionError",
    "LedgerConfirmationInconsistency",
    "UnknownHandleError",
    "InvalidTransitionError",

    # Models
    "Payload",
    "BatchRecord",
    "RecordState",
    "ReasonCode",
    "REASON_MESSAGES",
    "ValidationOutcome",
    "CertificationResult",
    "CertificationAttempt",
    "AttemptState",
    "LedgerHandle",

    # Validation and fingerprinting
    "Validator",
    "ValidationRules",
    "validate",
    "fingerprint",
    "verify_fingerprint",

    # Stores
    "RecordStore",
    "InMemoryRecordStore",
    "SqliteRecordStore",
    "RestRecordStore",

    # Ledger
    "LedgerAdapter",
    "LedgerListener",
    "InMemoryLedger",
    "SignedRelayLedger",
    "TransactionSigner",
    "FileTransactionSigner",
    "AwsKmsTransactionSigner",
    "verify_ed25519",

    # Workflow
    "CertificationOrchestrator",
]
