"""
Certification workflow test suite.

Covers the end-to-end paths through the orchestrator:
- accepted payload anchored and confirmed
- rejected payload never reaches store or ledger
- store and ledger failures leave the record where it was
- a record is promoted at most once, however often the ledger says so
- records can be confirmed by id, including after a restart
"""

import hashlib
import os
import shutil
import tempfile
import threading
import unittest

from lotseal.errors import (
    InvalidTransitionError,
    LedgerConfirmationInconsistency,
    LedgerSubmissionError,
    RecordAlreadyConfirmedError,
    RecordNotFoundError,
    StoreError,
    UnknownHandleError,
)
from lotseal.ledger import InMemoryLedger
from lotseal.models import AttemptState, Payload, ReasonCode, RecordState
from lotseal.orchestrator import CertificationOrchestrator
from lotseal.store import InMemoryRecordStore, SqliteRecordStore

SCENARIO_PAYLOAD = '{"lote":"A1","producto":"Paracetamol"}'


class CountingStore(InMemoryRecordStore):
    """In-memory store that counts calls and can be told to fail."""

    def __init__(self):
        super().__init__()
        self.create_calls = 0
        self.promote_calls = 0
        self.fail_create = None
        self.fail_promote = None

    def create_provisional(self, payload_text, parsed_payload, digest):
        self.create_calls += 1
        if self.fail_create is not None:
            raise self.fail_create
        return super().create_provisional(payload_text, parsed_payload, digest)

    def promote_to_confirmed(self, record_id, tx_id):
        self.promote_calls += 1
        if self.fail_promote is not None:
            raise self.fail_promote
        return super().promote_to_confirmed(record_id, tx_id)


class CountingLedger(InMemoryLedger):

    def __init__(self):
        super().__init__()
        self.submit_calls = 0
        self.submit_error = None

    def submit(self, digest):
        self.submit_calls += 1
        if self.submit_error is not None:
            raise self.submit_error
        return super().submit(digest)


class WorkflowTestCase(unittest.TestCase):

    def setUp(self):
        self.store = CountingStore()
        self.ledger = CountingLedger()
        self.orchestrator = CertificationOrchestrator(self.store, self.ledger)

    def assertRecordInvariant(self, record):
        self.assertEqual(record.state == RecordState.CONFIRMED, record.tx_id is not None)
        self.assertEqual(record.tx_id is None, record.confirmed_at is None)


class TestHappyPath(WorkflowTestCase):

    def test_accepted_payload_is_confirmed(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)

        self.assertTrue(result.ok())
        self.assertEqual(result.state, AttemptState.AWAITING_LEDGER)
        self.assertEqual(result.digest, hashlib.sha256(SCENARIO_PAYLOAD.encode("utf-8")).hexdigest())

        record = self.store.get(result.record_id)
        self.assertEqual(record.state, RecordState.PROVISIONAL)
        self.assertEqual(record.digest, result.digest)
        self.assertEqual(record.parsed_payload, {"lote": "A1", "producto": "Paracetamol"})
        self.assertIsNone(record.tx_id)

        self.ledger.confirm(result.handle_id, "0xabc")

        record = self.store.get(result.record_id)
        self.assertEqual(record.state, RecordState.CONFIRMED)
        self.assertEqual(record.tx_id, "0xabc")
        self.assertRecordInvariant(record)

        attempt = self.orchestrator.get_attempt(result.attempt_id)
        self.assertEqual(attempt.state, AttemptState.CERTIFIED)
        self.assertEqual(attempt.tx_id, "0xabc")

    def test_ledger_receives_digest(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        self.assertEqual(self.ledger.submissions[result.handle_id].digest, result.digest)

    def test_on_confirmed_returns_result(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        confirmed = self.orchestrator.on_confirmed(result.handle_id, "0xabc")
        self.assertEqual(confirmed.state, AttemptState.CERTIFIED)
        self.assertEqual(confirmed.tx_id, "0xabc")
        self.assertTrue(confirmed.ok())

    def test_payload_object_accepted(self):
        result = self.orchestrator.submit_payload(Payload(text='{"id": 7}'))
        self.assertEqual(result.state, AttemptState.AWAITING_LEDGER)

    def test_duplicate_payloads_create_separate_records(self):
        a = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        b = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        self.assertNotEqual(a.record_id, b.record_id)
        self.assertNotEqual(a.handle_id, b.handle_id)
        self.assertEqual(a.digest, b.digest)

    def test_lookups(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        attempt = self.orchestrator.get_attempt(result.attempt_id)
        self.assertIs(self.orchestrator.attempt_for_handle(result.handle_id), attempt)
        self.assertIs(self.orchestrator.attempt_for_record(result.record_id), attempt)
        self.assertEqual(self.orchestrator.pending_attempts(), [attempt])

        self.ledger.confirm(result.handle_id, "0xabc")
        self.assertEqual(self.orchestrator.pending_attempts(), [])


class TestRejection(WorkflowTestCase):

    def test_counterfeit_makes_no_collaborator_calls(self):
        for text in ['{"lote":"A1","producto":"PRODUCTO_FALSO"}', '{"lote":"producto_falso"}']:
            with self.subTest(text=text):
                result = self.orchestrator.submit_payload(text)
                self.assertTrue(result.rejected())
                self.assertEqual(result.reason_code, ReasonCode.COUNTERFEIT)
                self.assertIsNone(result.digest)
                self.assertIsNone(result.record_id)
        self.assertEqual(self.store.create_calls, 0)
        self.assertEqual(self.ledger.submit_calls, 0)

    def test_not_json_is_malformed(self):
        result = self.orchestrator.submit_payload("not json at all")
        self.assertEqual(result.state, AttemptState.REJECTED)
        self.assertEqual(result.reason_code, ReasonCode.MALFORMED)
        self.assertEqual(result.message, "Invalid QR format: payload must be valid JSON")
        self.assertEqual(self.store.create_calls, 0)

    def test_rejected_attempt_is_terminal(self):
        result = self.orchestrator.submit_payload("not json at all")
        attempt = self.orchestrator.get_attempt(result.attempt_id)
        self.assertTrue(attempt.state.terminal)
        self.assertEqual(self.orchestrator.pending_attempts(), [])


class TestStoreFailure(WorkflowTestCase):

    def test_create_failure_fails_attempt(self):
        self.store.fail_create = StoreError("record store insert failed", "timeout", transient=True)
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)

        self.assertEqual(result.state, AttemptState.FAILED)
        self.assertIsInstance(result.error, StoreError)
        self.assertTrue(result.error.transient)
        self.assertIsNone(result.record_id)
        self.assertIsNotNone(result.digest)
        self.assertEqual(self.ledger.submit_calls, 0)


class TestLedgerFailure(WorkflowTestCase):

    def test_submission_declined_leaves_record_provisional(self):
        self.ledger.fail_next_submission("user rejected the request")
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)

        self.assertEqual(result.state, AttemptState.FAILED)
        self.assertIsInstance(result.error, LedgerSubmissionError)
        self.assertEqual(result.error.detail, "user rejected the request")
        self.assertIsNone(result.handle_id)

        record = self.store.get(result.record_id)
        self.assertEqual(record.state, RecordState.PROVISIONAL)
        self.assertEqual(self.store.promote_calls, 0)

    def test_transaction_failure_after_submission(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        self.ledger.reject(result.handle_id, "transaction reverted")

        attempt = self.orchestrator.get_attempt(result.attempt_id)
        self.assertEqual(attempt.state, AttemptState.FAILED)
        self.assertIsInstance(attempt.error, LedgerSubmissionError)
        self.assertEqual(attempt.error.handle_id, result.handle_id)
        self.assertEqual(self.store.get(result.record_id).state, RecordState.PROVISIONAL)
        self.assertEqual(self.store.promote_calls, 0)

    def test_confirmation_after_failure_is_refused(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        self.ledger.reject(result.handle_id, "transaction reverted")
        with self.assertRaises(InvalidTransitionError):
            self.orchestrator.on_confirmed(result.handle_id, "0xabc")
        self.assertEqual(self.store.promote_calls, 0)


class TestAtMostOncePromotion(WorkflowTestCase):

    def test_duplicate_confirmation_refused(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        self.ledger.confirm(result.handle_id, "0xabc")

        with self.assertRaises(InvalidTransitionError):
            self.ledger.confirm(result.handle_id, "0xdef")

        self.assertEqual(self.store.promote_calls, 1)
        self.assertEqual(self.store.get(result.record_id).tx_id, "0xabc")

    def test_concurrent_confirmations_promote_once(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        outcomes = []
        barrier = threading.Barrier(8)

        def confirm(n):
            barrier.wait()
            try:
                self.orchestrator.on_confirmed(result.handle_id, f"0x{n}")
                outcomes.append("ok")
            except InvalidTransitionError:
                outcomes.append("refused")

        threads = [threading.Thread(target=confirm, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(outcomes.count("ok"), 1)
        self.assertEqual(outcomes.count("refused"), 7)
        self.assertEqual(self.store.promote_calls, 1)
        self.assertRecordInvariant(self.store.get(result.record_id))

    def test_unknown_handle(self):
        with self.assertRaises(UnknownHandleError):
            self.orchestrator.on_confirmed("mem-404", "0xabc")
        with self.assertRaises(UnknownHandleError):
            self.orchestrator.on_failed("mem-404", "whatever")
        self.assertEqual(self.store.promote_calls, 0)


class TestReconciliation(WorkflowTestCase):

    def test_promotion_failure_requires_reconciliation(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        self.store.discard(result.record_id)

        confirmed = self.orchestrator.on_confirmed(result.handle_id, "0xabc")

        self.assertEqual(confirmed.state, AttemptState.RECONCILIATION_REQUIRED)
        self.assertFalse(confirmed.ok())
        self.assertIsInstance(confirmed.error, LedgerConfirmationInconsistency)
        self.assertEqual(confirmed.error.tx_id, "0xabc")
        self.assertEqual(confirmed.error.record_id, result.record_id)
        self.assertEqual(confirmed.tx_id, "0xabc")

        needing = self.orchestrator.attempts_needing_reconciliation()
        self.assertEqual([a.attempt_id for a in needing], [result.attempt_id])

    def test_reconciliation_is_terminal(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        self.store.discard(result.record_id)
        self.orchestrator.on_confirmed(result.handle_id, "0xabc")

        with self.assertRaises(InvalidTransitionError):
            self.orchestrator.on_confirmed(result.handle_id, "0xabc")
        with self.assertRaises(InvalidTransitionError):
            self.orchestrator.on_failed(result.handle_id, "late failure")


class TestUnexpectedCollaboratorErrors(WorkflowTestCase):
    """Errors outside the documented types still settle the attempt."""

    def test_create_raising_value_error_fails_attempt(self):
        self.store.fail_create = ValueError("row without id")
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)

        self.assertEqual(result.state, AttemptState.FAILED)
        self.assertIsInstance(result.error, StoreError)
        self.assertFalse(result.error.transient)
        self.assertIsInstance(result.error.__cause__, ValueError)
        self.assertIn("row without id", result.error.detail)
        self.assertEqual(self.orchestrator.pending_attempts(), [])
        self.assertEqual(self.ledger.submit_calls, 0)

    def test_submit_raising_runtime_error_fails_attempt(self):
        self.ledger.submit_error = RuntimeError("relay client crashed")
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)

        self.assertEqual(result.state, AttemptState.FAILED)
        self.assertIsInstance(result.error, LedgerSubmissionError)
        self.assertIsInstance(result.error.__cause__, RuntimeError)
        self.assertEqual(self.store.get(result.record_id).state, RecordState.PROVISIONAL)
        self.assertEqual(self.orchestrator.pending_attempts(), [])

    def test_promote_raising_value_error_requires_reconciliation(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        self.store.fail_promote = ValueError("Invalid isoformat string")

        confirmed = self.ledger.confirm(result.handle_id, "0xabc")
        attempt = self.orchestrator.get_attempt(result.attempt_id)

        self.assertEqual(confirmed, "0xabc")
        self.assertEqual(attempt.state, AttemptState.RECONCILIATION_REQUIRED)
        self.assertIsInstance(attempt.error, LedgerConfirmationInconsistency)
        self.assertIn("Invalid isoformat string", attempt.error.detail)
        self.assertEqual(self.orchestrator.attempts_needing_reconciliation(), [attempt])
        self.assertEqual(self.orchestrator.pending_attempts(), [])

        with self.assertRaises(InvalidTransitionError):
            self.orchestrator.on_confirmed(result.handle_id, "0xabc")
        self.assertEqual(self.store.promote_calls, 1)


class TestSettledHistory(unittest.TestCase):

    def setUp(self):
        self.store = CountingStore()
        self.ledger = CountingLedger()
        self.orchestrator = CertificationOrchestrator(self.store, self.ledger, settled_history=5)

    def test_rejected_attempts_are_bounded(self):
        ids = [self.orchestrator.submit_payload("not json").attempt_id for _ in range(50)]

        kept = [i for i in ids if self.orchestrator.get_attempt(i) is not None]
        self.assertEqual(kept, ids[-5:])
        self.assertEqual(self.orchestrator.pending_attempts(), [])

    def test_certified_attempt_leaves_live_indexes(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        self.ledger.confirm(result.handle_id, "0xabc")

        self.assertIsNone(self.orchestrator.attempt_for_record(result.record_id))
        self.assertEqual(self.orchestrator.get_attempt(result.attempt_id).state, AttemptState.CERTIFIED)
        with self.assertRaises(InvalidTransitionError):
            self.orchestrator.on_confirmed(result.handle_id, "0xdef")

    def test_aged_out_handle_is_unknown_and_never_promotes_again(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        self.ledger.confirm(result.handle_id, "0xabc")
        for _ in range(5):
            self.orchestrator.submit_payload("not json")

        self.assertIsNone(self.orchestrator.get_attempt(result.attempt_id))
        with self.assertRaises(UnknownHandleError):
            self.orchestrator.on_confirmed(result.handle_id, "0xdef")
        self.assertEqual(self.store.promote_calls, 1)
        self.assertEqual(self.store.get(result.record_id).tx_id, "0xabc")

    def test_reconciliation_attempts_are_kept(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        self.store.discard(result.record_id)
        self.ledger.confirm(result.handle_id, "0xabc")
        for _ in range(20):
            self.orchestrator.submit_payload("not json")

        attempt = self.orchestrator.get_attempt(result.attempt_id)
        self.assertEqual(attempt.state, AttemptState.RECONCILIATION_REQUIRED)
        self.assertEqual(self.orchestrator.attempts_needing_reconciliation(), [attempt])


class TestConfirmByRecord(WorkflowTestCase):

    def test_live_attempt_is_used(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        confirmed = self.orchestrator.on_confirmed_for_record(result.record_id, "0xabc")

        self.assertEqual(confirmed.state, AttemptState.CERTIFIED)
        self.assertEqual(confirmed.attempt_id, result.attempt_id)
        with self.assertRaises(InvalidTransitionError):
            self.orchestrator.on_confirmed(result.handle_id, "0xabc")
        self.assertEqual(self.store.promote_calls, 1)

    def test_unknown_record(self):
        with self.assertRaises(RecordNotFoundError):
            self.orchestrator.on_confirmed_for_record(404, "0xabc")
        self.assertEqual(self.store.promote_calls, 0)

    def test_already_confirmed_record_refused(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        self.ledger.confirm(result.handle_id, "0xabc")

        with self.assertRaises(RecordAlreadyConfirmedError) as ctx:
            self.orchestrator.on_confirmed_for_record(result.record_id, "0xdef")
        self.assertEqual(ctx.exception.tx_id, "0xabc")
        self.assertEqual(self.store.promote_calls, 1)

    def test_record_needing_reconciliation_refused(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        self.store.fail_promote = ValueError("bad row")
        self.ledger.confirm(result.handle_id, "0xabc")

        with self.assertRaises(InvalidTransitionError):
            self.orchestrator.on_confirmed_for_record(result.record_id, "0xabc")

    def test_record_of_failed_attempt_can_be_confirmed(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        self.ledger.reject(result.handle_id, "wallet timed out")

        confirmed = self.orchestrator.on_confirmed_for_record(result.record_id, "0xabc")
        self.assertEqual(confirmed.state, AttemptState.CERTIFIED)
        self.assertNotEqual(confirmed.attempt_id, result.attempt_id)
        self.assertEqual(self.store.get(result.record_id).tx_id, "0xabc")


class TestConfirmAfterRestart(unittest.TestCase):
    """A provisional record outlives the process that created it."""

    def setUp(self):
        tmpdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmpdir, True)
        self.db_path = os.path.join(tmpdir, "lotseal.db")

    def _orchestrator(self):
        store = SqliteRecordStore(self.db_path)
        self.addCleanup(store.close)
        return CertificationOrchestrator(store, InMemoryLedger())

    def test_confirm_by_record_after_restart(self):
        before = self._orchestrator()
        result = before.submit_payload(SCENARIO_PAYLOAD)

        after = self._orchestrator()
        with self.assertRaises(UnknownHandleError):
            after.on_confirmed(result.handle_id, "0xabc")

        confirmed = after.on_confirmed_for_record(result.record_id, "0xabc")
        self.assertEqual(confirmed.state, AttemptState.CERTIFIED)
        self.assertEqual(confirmed.digest, result.digest)

        record = after.store.get(result.record_id)
        self.assertEqual(record.state, RecordState.CONFIRMED)
        self.assertEqual(record.tx_id, "0xabc")

        with self.assertRaises(RecordAlreadyConfirmedError):
            after.on_confirmed_for_record(result.record_id, "0xdef")

    def test_stale_process_cannot_promote_twice(self):
        before = self._orchestrator()
        result = before.submit_payload(SCENARIO_PAYLOAD)
        self._orchestrator().on_confirmed_for_record(result.record_id, "0xabc")

        # The old process still holds the live attempt; the store refuses.
        late = before.on_confirmed(result.handle_id, "0xdef")
        self.assertEqual(late.state, AttemptState.RECONCILIATION_REQUIRED)
        self.assertEqual(before.store.get(result.record_id).tx_id, "0xabc")


class TestSharedLedger(unittest.TestCase):

    def test_each_orchestrator_gets_its_own_verdicts(self):
        ledger = InMemoryLedger()
        first = CertificationOrchestrator(InMemoryRecordStore(), ledger)
        second = CertificationOrchestrator(InMemoryRecordStore(), ledger)

        result = second.submit_payload(SCENARIO_PAYLOAD)
        ledger.confirm(result.handle_id, "0xabc")

        self.assertEqual(second.get_attempt(result.attempt_id).state, AttemptState.CERTIFIED)
        self.assertEqual(second.store.get(result.record_id).tx_id, "0xabc")
        self.assertEqual(first.pending_attempts(), [])


class TestAuditTrail(WorkflowTestCase):

    def test_events_logged_without_payload_text(self):
        with self.assertLogs("lotseal.audit", level="INFO") as logs:
            result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
            self.ledger.confirm(result.handle_id, "0xabc")

        joined = "\n".join(logs.output)
        for event in ("PAYLOAD_RECEIVED", "PROVISIONAL_CREATED", "LEDGER_SUBMITTED", "RECORD_CONFIRMED"):
            self.assertIn(event, joined)
        self.assertNotIn("Paracetamol", joined)

    def test_reconciliation_logged_critical(self):
        result = self.orchestrator.submit_payload(SCENARIO_PAYLOAD)
        self.store.discard(result.record_id)
        with self.assertLogs("lotseal.audit", level="CRITICAL") as logs:
            self.orchestrator.on_confirmed(result.handle_id, "0xabc")
        self.assertIn("RECONCILIATION_REQUIRED", logs.output[0])


if __name__ == "__main__":
    unittest.main()
