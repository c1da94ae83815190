"""
Ledger adapters.

A ledger adapter takes a digest, hands an anchoring transaction to the
ledger, and returns a handle straight away. The verdict (transaction id on
success, reason on failure) comes back later as a notification delivered to
subscribed listeners; the adapter never blocks waiting for it.

Implementations:
- InMemoryLedger: test double; confirmations are triggered by the caller
- SignedRelayLedger: signs the transaction with Ed25519 and posts it to a
  relay service that broadcasts it to the chain
"""

import itertools
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

import requests

from .errors import LedgerSubmissionError, UnknownHandleError
from .models import LedgerHandle
from .signing import TransactionSigner
from .util import canonicalize, generate_nonce, now_utc, sha256_hex, utc_rfc3339

SCROLL_SEPOLIA_CHAIN_ID = 534351
ANCHOR_METHOD = "sellarHash"


class LedgerListener(Protocol):
    """Receives ledger verdicts for submitted handles."""

    def on_confirmed(self, handle: Union[LedgerHandle, str], tx_id: str) -> Any:
        ...

    def on_failed(self, handle: Union[LedgerHandle, str], reason: str) -> Any:
        ...


class LedgerAdapter(ABC):
    """Abstract interface for anchoring digests on a ledger."""

    def __init__(self):
        self._listeners: List[LedgerListener] = []

    def subscribe(self, listener: LedgerListener) -> None:
        """Register a listener for confirmation and failure notifications."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def _notify_confirmed(self, handle_id: str, tx_id: str) -> None:
        self._deliver(handle_id, lambda listener: listener.on_confirmed(handle_id, tx_id))

    def _notify_failed(self, handle_id: str, reason: str) -> None:
        self._deliver(handle_id, lambda listener: listener.on_failed(handle_id, reason))

    def _deliver(self, handle_id: str, call: Callable[[LedgerListener], Any]) -> None:
        """
        Offer a verdict to every listener. Listeners that do not own the
        handle raise UnknownHandleError and are skipped; any other error
        propagates. Raises UnknownHandleError if no listener owns it.
        """
        listeners = list(self._listeners)
        claimed = False
        for listener in listeners:
            try:
                call(listener)
            except UnknownHandleError:
                continue
            claimed = True
        if listeners and not claimed:
            raise UnknownHandleError(handle_id)

    @abstractmethod
    def submit(self, digest: str) -> LedgerHandle:
        """
        Start anchoring a digest.

        Returns:
            Handle identifying the pending transaction

        Raises:
            LedgerSubmissionError: if the transaction could not be handed over
        """
        pass

    def transaction_url(self, tx_id: str) -> Optional[str]:
        """Link to the transaction in a block explorer, when one is configured."""
        return None


class InMemoryLedger(LedgerAdapter):
    """
    In-memory ledger for development/testing.

    ``confirm`` and ``reject`` play the part of the wallet and the chain.
    """

    def __init__(self):
        super().__init__()
        self.submissions: Dict[str, LedgerHandle] = {}
        self._counter = itertools.count(1)
        self._fail_next: Optional[str] = None
        self._lock = threading.Lock()

    def fail_next_submission(self, reason: str = "user rejected the request") -> None:
        """Make the next ``submit`` call raise LedgerSubmissionError."""
        self._fail_next = reason

    def submit(self, digest: str) -> LedgerHandle:
        with self._lock:
            if self._fail_next is not None:
                reason, self._fail_next = self._fail_next, None
                raise LedgerSubmissionError("ledger submission failed", reason)
            handle = LedgerHandle(handle_id=f"mem-{next(self._counter)}", digest=digest)
            self.submissions[handle.handle_id] = handle
            return handle

    def confirm(self, handle: Union[LedgerHandle, str], tx_id: Optional[str] = None) -> str:
        """Deliver a success notification. Returns the transaction id used."""
        handle_id = handle.handle_id if isinstance(handle, LedgerHandle) else handle
        if tx_id is None:
            tx_id = "0x" + sha256_hex(handle_id)
        self._notify_confirmed(handle_id, tx_id)
        return tx_id

    def reject(self, handle: Union[LedgerHandle, str], reason: str = "user rejected the request") -> None:
        """Deliver a failure notification."""
        handle_id = handle.handle_id if isinstance(handle, LedgerHandle) else handle
        self._notify_failed(handle_id, reason)


class SignedRelayLedger(LedgerAdapter):
    """
    Ledger adapter that signs anchoring transactions and posts them to a relay.

    The signed body is canonical JSON:
        {"args": [digest], "chain_id": ..., "contract": ..., "issued_at": ...,
         "method": "sellarHash", "nonce": ...}

    The relay answers the POST as soon as it has accepted the envelope. It
    reports the on-chain result later through the confirm/fail endpoints.
    """

    def __init__(
        self,
        signer: TransactionSigner,
        relay_url: str,
        contract_address: str,
        chain_id: int = SCROLL_SEPOLIA_CHAIN_ID,
        explorer_url: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None
    ):
        super().__init__()
        self._signer = signer
        self._relay_url = relay_url.rstrip("/")
        self._contract_address = contract_address
        self._chain_id = chain_id
        self._explorer_url = explorer_url.rstrip("/") if explorer_url else None
        self._timeout = timeout
        self._session = session or requests.Session()

    def build_transaction(self, digest: str) -> Dict[str, Any]:
        return {
            "chain_id": self._chain_id,
            "contract": self._contract_address,
            "method": ANCHOR_METHOD,
            "args": [digest],
            "nonce": generate_nonce(16),
            "issued_at": utc_rfc3339(now_utc()),
        }

    def submit(self, digest: str) -> LedgerHandle:
        body = self.build_transaction(digest)
        payload = canonicalize(body)
        handle_id = f"anchor-{sha256_hex(payload)[:32]}"

        try:
            kid, sig_b64 = self._signer.sign(payload)
        except Exception as e:
            raise LedgerSubmissionError("transaction signing failed", str(e), handle_id=handle_id) from e

        envelope = dict(body)
        envelope["signatures"] = [{"kid": kid, "alg": "ed25519", "sig_b64": sig_b64}]

        try:
            resp = self._session.post(
                f"{self._relay_url}/transactions",
                json={"handle_id": handle_id, "transaction": envelope},
                timeout=self._timeout
            )
        except requests.RequestException as e:
            raise LedgerSubmissionError("ledger relay unreachable", str(e), handle_id=handle_id) from e

        if resp.status_code >= 400:
            raise LedgerSubmissionError(
                f"ledger relay refused transaction ({resp.status_code})", resp.text, handle_id=handle_id
            )

        return LedgerHandle(handle_id=handle_id, digest=digest, envelope=envelope)

    def transaction_url(self, tx_id: str) -> Optional[str]:
        if not self._explorer_url:
            return None
        return f"{self._explorer_url}/tx/{tx_id}"
