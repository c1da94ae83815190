"""
HTTP surface for batch certification.

    POST /certify   validate + persist a QR payload, hand its digest to the ledger
    POST /confirm   ledger confirmed a handle or record id: promote the record
    POST /fail      ledger rejected a handle: record stays provisional
    GET  /records/{id}
    GET  /attempts/{id}
    GET  /health
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Response

from .config import Settings, build_orchestrator
from .errors import (
    InvalidTransitionError,
    LedgerSubmissionError,
    RecordAlreadyConfirmedError,
    RecordNotFoundError,
    StoreError,
    UnknownHandleError,
)
from .logging_config import configure_logging, set_request_id
from .models import AttemptState
from .orchestrator import CertificationOrchestrator
from .schemas import (
    CertifyRequest,
    CertifyResponse,
    ConfirmRequest,
    FailRequest,
    NotificationResponse,
)
from .util import compact_json


def _store_status(e: StoreError) -> int:
    return 503 if e.transient else 500


def _error(status: int, error: str, details: Optional[str] = None, **extra) -> HTTPException:
    body = {"error": error, "details": details}
    body.update(extra)
    return HTTPException(status, body)


def create_app(
    orchestrator: Optional[CertificationOrchestrator] = None,
    settings: Optional[Settings] = None
) -> FastAPI:
    """
    Build the application.

    When no orchestrator is given, one is built from the environment at
    startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "orchestrator", None) is None:
            cfg = settings or Settings.from_env()
            configure_logging(cfg.log_level, json_format=cfg.log_json)
            app.state.orchestrator = build_orchestrator(cfg)
        yield

    app = FastAPI(title="lotseal", lifespan=lifespan)
    app.state.orchestrator = orchestrator

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        rid = set_request_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response

    def _orchestrator(request: Request) -> CertificationOrchestrator:
        return request.app.state.orchestrator

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/certify", response_model=CertifyResponse)
    def certify(req: CertifyRequest, request: Request):
        if not req.qr_data:
            raise _error(400, "QR data required", "the qr_data field is mandatory")

        text = req.qr_data if isinstance(req.qr_data, str) else compact_json(req.qr_data)
        result = _orchestrator(request).submit_payload(text)

        if result.state == AttemptState.REJECTED:
            raise _error(
                400, result.message,
                reason_code=result.reason_code.value, attempt_id=result.attempt_id
            )

        if result.state == AttemptState.FAILED:
            err = result.error
            if isinstance(err, StoreError):
                raise _error(_store_status(err), "could not save batch record", err.detail)
            if isinstance(err, LedgerSubmissionError):
                raise _error(
                    502, "ledger submission failed", err.detail,
                    hash=result.digest, record_id=result.record_id
                )
            raise _error(500, "certification failed", str(err))

        return CertifyResponse(
            hash=result.digest,
            record_id=result.record_id,
            handle_id=result.handle_id,
            attempt_id=result.attempt_id,
            state=result.state.value,
            message="Validation succeeded. Digest computed. Awaiting ledger seal.",
        )

    @app.post("/confirm", response_model=NotificationResponse)
    def confirm(req: ConfirmRequest, request: Request, response: Response):
        orch = _orchestrator(request)
        try:
            if req.handle_id is not None:
                result = orch.on_confirmed(req.handle_id, req.tx_id)
            else:
                result = orch.on_confirmed_for_record(req.record_id, req.tx_id)
        except UnknownHandleError as e:
            raise _error(404, "unknown ledger handle", e.handle_id)
        except InvalidTransitionError as e:
            raise _error(409, "handle already settled", e.detail)
        except RecordNotFoundError as e:
            raise _error(404, "record not found", e.detail)
        except RecordAlreadyConfirmedError as e:
            raise _error(409, "record already confirmed", e.detail, tx_id=e.tx_id)
        except StoreError as e:
            raise _error(_store_status(e), "record store error", e.detail)

        if result.state == AttemptState.RECONCILIATION_REQUIRED:
            response.status_code = 202
            return NotificationResponse(
                success=False,
                state=result.state.value,
                record_id=result.record_id,
                tx_id=result.tx_id,
                tx_url=orch.ledger.transaction_url(result.tx_id),
                message=f"Sealed on ledger but record needs reconciliation: {result.error.detail}",
            )

        return NotificationResponse(
            success=True,
            state=result.state.value,
            record_id=result.record_id,
            tx_id=result.tx_id,
            tx_url=orch.ledger.transaction_url(result.tx_id),
            message="Certification confirmed on ledger and in the record store",
        )

    @app.post("/fail", response_model=NotificationResponse)
    def fail(req: FailRequest, request: Request):
        try:
            result = _orchestrator(request).on_failed(req.handle_id, req.reason)
        except UnknownHandleError as e:
            raise _error(404, "unknown ledger handle", e.handle_id)
        except InvalidTransitionError as e:
            raise _error(409, "handle already settled", e.detail)

        return NotificationResponse(
            success=False,
            state=result.state.value,
            record_id=result.record_id,
            message=f"Ledger transaction failed, record left provisional: {req.reason}",
        )

    @app.get("/records/{record_id}")
    def get_record(record_id: int, request: Request):
        try:
            record = _orchestrator(request).store.get(record_id)
        except RecordNotFoundError:
            raise _error(404, "record not found", f"no record with id {record_id}")
        except StoreError as e:
            raise _error(_store_status(e), "record store error", e.detail)
        return record.to_dict()

    @app.get("/attempts/{attempt_id}")
    def get_attempt(attempt_id: str, request: Request):
        attempt = _orchestrator(request).get_attempt(attempt_id)
        if attempt is None:
            raise _error(404, "attempt not found", attempt_id)
        return attempt.to_dict()

    return app


app = create_app()
