"""
Structured logging for lotseal.

Every line is one JSON object. The HTTP request id and the certification
attempt id, when set, are attached from context variables so that events
emitted deep in a store or ledger adapter can still be tied back to the
request that caused them.
"""

import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

request_id_var: ContextVar[str] = ContextVar('lotseal_request_id', default='')
attempt_id_var: ContextVar[str] = ContextVar('lotseal_attempt_id', default='')

# Third-party loggers that are chatty at INFO.
_NOISY_LOGGERS = ("botocore", "boto3", "urllib3", "httpx")


class StructuredFormatter(logging.Formatter):
    """Render a log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        for key, var in (("request_id", request_id_var), ("attempt_id", attempt_id_var)):
            value = var.get()
            if value:
                entry[key] = value

        fields = getattr(record, "event_fields", None)
        if fields:
            entry.update(fields)

        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str, ensure_ascii=False)


class AuditLogger:
    """
    Emits one event per certification milestone.

    Events carry identifiers, the digest and the payload length. The payload
    text itself is never logged.
    """

    def __init__(self, name: str = "lotseal.audit"):
        self._logger = logging.getLogger(name)

    def _emit(self, level: int, event: str, summary: str, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        fields["event"] = event
        self._logger.log(level, "%s: %s", event, summary, extra={"event_fields": fields})

    def payload_received(self, attempt_id: str, payload_length: int) -> None:
        self._emit(
            logging.INFO, "PAYLOAD_RECEIVED",
            f"{payload_length} characters",
            attempt_id=attempt_id, payload_length=payload_length,
        )

    def validation_rejected(self, attempt_id: str, reason_code: str) -> None:
        self._emit(
            logging.WARNING, "VALIDATION_REJECTED",
            reason_code,
            attempt_id=attempt_id, reason_code=reason_code,
        )

    def provisional_created(self, attempt_id: str, record_id: Any, digest: str) -> None:
        self._emit(
            logging.INFO, "PROVISIONAL_CREATED",
            f"record {record_id}",
            attempt_id=attempt_id, record_id=record_id, digest=digest,
        )

    def store_error(self, attempt_id: str, operation: str, error: str, transient: bool) -> None:
        self._emit(
            logging.ERROR, "STORE_ERROR",
            f"{operation} failed ({'transient' if transient else 'permanent'})",
            attempt_id=attempt_id, operation=operation, error=error, transient=transient,
        )

    def ledger_submitted(self, attempt_id: str, handle_id: str, digest: str) -> None:
        self._emit(
            logging.INFO, "LEDGER_SUBMITTED",
            f"handle {handle_id}",
            attempt_id=attempt_id, handle_id=handle_id, digest=digest,
        )

    def ledger_failed(self, attempt_id: str, record_id: Any, reason: str) -> None:
        self._emit(
            logging.WARNING, "LEDGER_FAILED",
            f"record {record_id} left provisional",
            attempt_id=attempt_id, record_id=record_id, reason=reason,
        )

    def record_confirmed(self, attempt_id: str, record_id: Any, tx_id: str) -> None:
        self._emit(
            logging.INFO, "RECORD_CONFIRMED",
            f"record {record_id} sealed by {tx_id}",
            attempt_id=attempt_id, record_id=record_id, tx_id=tx_id,
        )

    def reconciliation_required(self, attempt_id: str, record_id: Any, tx_id: str, detail: str) -> None:
        self._emit(
            logging.CRITICAL, "RECONCILIATION_REQUIRED",
            f"transaction {tx_id} has no promotable record {record_id}",
            attempt_id=attempt_id, record_id=record_id, tx_id=tx_id, detail=detail,
        )


def configure_logging(level: str = "INFO", json_format: bool = True, stream=None) -> None:
    """
    Install a single handler on the root logger.

    Args:
        level: Name of the root log level
        json_format: One JSON object per line when true, plain text otherwise
        stream: Where to write; defaults to stdout
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-8s %(name)s %(message)s"))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def bind_attempt(attempt_id: str) -> Iterator[None]:
    """Attach an attempt id to every log line emitted inside the block."""
    token = attempt_id_var.set(attempt_id)
    try:
        yield
    finally:
        attempt_id_var.reset(token)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request id to the current context, generating one if absent."""
    request_id = request_id or uuid.uuid4().hex
    request_id_var.set(request_id)
    return request_id


audit_log = AuditLogger()
