"""
Structured logging tests.
"""

import io
import json
import logging
import unittest

from lotseal.logging_config import (
    AuditLogger,
    StructuredFormatter,
    attempt_id_var,
    bind_attempt,
    configure_logging,
    request_id_var,
    set_request_id,
)


def _record(msg="hello", **attrs):
    record = logging.LogRecord("lotseal.test", logging.INFO, __file__, 10, msg, (), None)
    for k, v in attrs.items():
        setattr(record, k, v)
    return record


class TestStructuredFormatter(unittest.TestCase):

    def setUp(self):
        self.formatter = StructuredFormatter()

    def test_json_line(self):
        entry = json.loads(self.formatter.format(_record()))
        self.assertEqual(entry["msg"], "hello")
        self.assertEqual(entry["level"], "INFO")
        self.assertEqual(entry["logger"], "lotseal.test")
        self.assertIn("ts", entry)

    def test_context_ids(self):
        token = request_id_var.set("req-1")
        self.addCleanup(request_id_var.reset, token)
        with bind_attempt("att-1"):
            entry = json.loads(self.formatter.format(_record()))
        self.assertEqual(entry["request_id"], "req-1")
        self.assertEqual(entry["attempt_id"], "att-1")

        entry = json.loads(self.formatter.format(_record()))
        self.assertNotIn("attempt_id", entry)

    def test_event_fields_merged(self):
        entry = json.loads(self.formatter.format(_record(event_fields={"event": "X", "record_id": 3})))
        self.assertEqual(entry["event"], "X")
        self.assertEqual(entry["record_id"], 3)


class TestAuditLogger(unittest.TestCase):

    def test_event_fields_attached(self):
        audit = AuditLogger("lotseal.audit.test")
        with self.assertLogs("lotseal.audit.test", level="INFO") as logs:
            audit.provisional_created("att-1", 7, "f" * 64)
        record = logs.records[0]
        self.assertEqual(record.event_fields["event"], "PROVISIONAL_CREATED")
        self.assertEqual(record.event_fields["record_id"], 7)
        self.assertEqual(record.event_fields["digest"], "f" * 64)

    def test_disabled_level_skipped(self):
        audit = AuditLogger("lotseal.audit.quiet")
        logging.getLogger("lotseal.audit.quiet").setLevel(logging.ERROR)
        self.addCleanup(logging.getLogger("lotseal.audit.quiet").setLevel, logging.NOTSET)
        with self.assertLogs("lotseal.audit.quiet", level="ERROR") as logs:
            audit.payload_received("att-1", 10)
            audit.store_error("att-1", "create_provisional", "boom", True)
        self.assertEqual(len(logs.records), 1)
        self.assertEqual(logs.records[0].event_fields["event"], "STORE_ERROR")


class TestConfigureLogging(unittest.TestCase):

    def setUp(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level

        def restore():
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
        self.addCleanup(restore)

    def test_json_output(self):
        stream = io.StringIO()
        configure_logging("DEBUG", json_format=True, stream=stream)
        logging.getLogger("lotseal.test").info("sealed %s", "0xabc")
        entry = json.loads(stream.getvalue().strip())
        self.assertEqual(entry["msg"], "sealed 0xabc")

    def test_set_request_id_generates(self):
        token = request_id_var.set("")
        self.addCleanup(request_id_var.reset, token)
        rid = set_request_id()
        self.assertTrue(rid)
        self.assertEqual(request_id_var.get(), rid)
        self.assertEqual(set_request_id("given"), "given")

    def test_attempt_binding_restores(self):
        self.assertEqual(attempt_id_var.get(), "")
        with bind_attempt("outer"):
            with bind_attempt("inner"):
                self.assertEqual(attempt_id_var.get(), "inner")
            self.assertEqual(attempt_id_var.get(), "outer")
        self.assertEqual(attempt_id_var.get(), "")


if __name__ == "__main__":
    unittest.main()
