"""
Off-chain record stores.

The orchestrator needs two operations from a store: create a Provisional
record, and promote it to Confirmed once the ledger has anchored its digest.
Every store enforces at-most-once promotion on its own side as well: a second
promotion of the same record raises ``RecordAlreadyConfirmedError`` and
leaves the record unchanged.

Implementations:
- InMemoryRecordStore: test double, process-local
- SqliteRecordStore: durable local storage
- RestRecordStore: PostgREST-style table API (hosted Postgres)
"""

import itertools
import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import requests

from .errors import RecordAlreadyConfirmedError, RecordNotFoundError, StoreError
from .models import BatchRecord, RecordState
from .util import compact_json, now_utc, parse_rfc3339, utc_rfc3339


class RecordStore(ABC):
    """
    Abstract interface for the durable batch record.

    Implementations must make create and promote atomic; the orchestrator
    does no locking of its own around store calls.
    """

    @abstractmethod
    def create_provisional(
        self,
        payload_text: str,
        parsed_payload: Optional[Dict[str, Any]],
        digest: str
    ) -> BatchRecord:
        """
        Create a record in Provisional state.

        Raises:
            StoreError: if the record could not be written
        """
        pass

    @abstractmethod
    def promote_to_confirmed(self, record_id: Any, tx_id: str) -> BatchRecord:
        """
        Bind a ledger transaction to a Provisional record.

        Raises:
            RecordNotFoundError: no record with this id
            RecordAlreadyConfirmedError: record was promoted before
            StoreError: any other storage failure
        """
        pass

    @abstractmethod
    def get(self, record_id: Any) -> BatchRecord:
        """Fetch a record. Raises RecordNotFoundError if absent."""
        pass

    @abstractmethod
    def list_by_state(self, state: RecordState) -> List[BatchRecord]:
        """List records in a given state, oldest first."""
        pass


class InMemoryRecordStore(RecordStore):
    """Process-local record store used by tests and the dev server."""

    def __init__(self):
        self._records: Dict[int, BatchRecord] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create_provisional(self, payload_text, parsed_payload, digest):
        with self._lock:
            record_id = next(self._ids)
            record = BatchRecord(
                record_id=record_id,
                payload_text=payload_text,
                parsed_payload=parsed_payload,
                digest=digest,
            )
            self._records[record_id] = record
            return record

    def promote_to_confirmed(self, record_id, tx_id):
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise RecordNotFoundError(record_id)
            if record.is_confirmed():
                raise RecordAlreadyConfirmedError(record_id, record.tx_id)
            promoted = record.confirmed(tx_id)
            self._records[record_id] = promoted
            return promoted

    def get(self, record_id):
        with self._lock:
            record = self._records.get(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    def list_by_state(self, state):
        with self._lock:
            records = list(self._records.values())
        return [r for r in records if r.state == state]

    def discard(self, record_id) -> None:
        """Drop a record, simulating an external deletion."""
        with self._lock:
            self._records.pop(record_id, None)


class SqliteRecordStore(RecordStore):
    """
    SQLite-backed record store.

    Uses one connection per thread, WAL journaling, and a conditional
    UPDATE for promotion so two racing confirmations cannot both succeed.
    """

    def __init__(self, db_path: Union[str, Path] = "data/lotseal.db"):
        self._db_path = Path(db_path)
        self._local = threading.local()
        self.init_db()

    def _get_connection(self) -> sqlite3.Connection:
        # One connection per thread; sqlite3 connections are not shared.
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    @contextmanager
    def _transaction(self):
        """Run a unit of work, translating sqlite errors into StoreError."""
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise StoreError("cannot open record database", str(e), transient=True) from e
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            raise StoreError("record database unavailable", str(e), transient=True) from e
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError("record database error", str(e)) from e
        except Exception:
            conn.rollback()
            raise

    def init_db(self) -> None:
        """Create the batch_records table and its indexes if missing."""
        with self._transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS batch_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                payload_text TEXT NOT NULL,
                parsed_payload TEXT,
                created_at TEXT NOT NULL,
                digest TEXT NOT NULL,
                state TEXT NOT NULL DEFAULT 'provisional',
                tx_id TEXT,
                confirmed_at TEXT,
                CHECK ((tx_id IS NULL) = (confirmed_at IS NULL)),
                CHECK ((state = 'confirmed') = (tx_id IS NOT NULL))
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_batch_records_digest
            ON batch_records(digest);""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_batch_records_state
            ON batch_records(state);""")

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> BatchRecord:
        return BatchRecord(
            record_id=row["id"],
            payload_text=row["payload_text"],
            parsed_payload=json.loads(row["parsed_payload"]) if row["parsed_payload"] else None,
            created_at=parse_rfc3339(row["created_at"]),
            digest=row["digest"],
            state=RecordState(row["state"]),
            tx_id=row["tx_id"],
            confirmed_at=parse_rfc3339(row["confirmed_at"]) if row["confirmed_at"] else None,
        )

    def _fetch(self, conn: sqlite3.Connection, record_id: Any) -> Optional[sqlite3.Row]:
        cur = conn.execute("SELECT * FROM batch_records WHERE id=?", (record_id,))
        return cur.fetchone()

    def create_provisional(self, payload_text, parsed_payload, digest):
        created_at = utc_rfc3339(now_utc())
        parsed_json = json.dumps(parsed_payload, ensure_ascii=False) if parsed_payload is not None else None
        with self._transaction() as conn:
            cur = conn.execute(
                "INSERT INTO batch_records(payload_text, parsed_payload, created_at, digest, state) "
                "VALUES(?,?,?,?,?)",
                (payload_text, parsed_json, created_at, digest, RecordState.PROVISIONAL.value)
            )
            row = self._fetch(conn, cur.lastrowid)
        return self._row_to_record(row)

    def promote_to_confirmed(self, record_id, tx_id):
        confirmed_at = utc_rfc3339(now_utc())
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE batch_records SET state=?, tx_id=?, confirmed_at=? WHERE id=? AND state=?",
                (RecordState.CONFIRMED.value, tx_id, confirmed_at, record_id, RecordState.PROVISIONAL.value)
            )
            row = self._fetch(conn, record_id)
            if cur.rowcount == 1:
                return self._row_to_record(row)
        if row is None:
            raise RecordNotFoundError(record_id)
        raise RecordAlreadyConfirmedError(record_id, row["tx_id"])

    def get(self, record_id):
        with self._transaction() as conn:
            row = self._fetch(conn, record_id)
        if row is None:
            raise RecordNotFoundError(record_id)
        return self._row_to_record(row)

    def list_by_state(self, state):
        with self._transaction() as conn:
            cur = conn.execute(
                "SELECT * FROM batch_records WHERE state=? ORDER BY id ASC", (state.value,)
            )
            rows = cur.fetchall()
        return [self._row_to_record(r) for r in rows]

    def close(self) -> None:
        """Close this thread's connection."""
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None


# PostgREST table layout used by the hosted deployment.
_REST_STATE = {
    RecordState.PROVISIONAL: "pendiente",
    RecordState.CONFIRMED: "certificado",
}
_REST_STATE_REVERSE = {v: k for k, v in _REST_STATE.items()}


class RestRecordStore(RecordStore):
    """
    Record store over a PostgREST table API (e.g. a Supabase project).

    Table columns: id, datos_qr, datos_qr_string, timestamp, estado,
    hash_calculado, tx_hash, blockchain_timestamp.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str = "lotes",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None
    ):
        self._endpoint = f"{base_url.rstrip('/')}/rest/v1/{table}"
        self._timeout = timeout
        self._session = session or requests.Session()
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    def _request(self, method: str, operation: str, **kwargs) -> List[Dict[str, Any]]:
        try:
            resp = self._session.request(
                method, self._endpoint, headers=self._headers, timeout=self._timeout, **kwargs
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise StoreError(f"record store {operation} failed", str(e), transient=True) from e
        except requests.RequestException as e:
            raise StoreError(f"record store {operation} failed", str(e)) from e

        if resp.status_code >= 400:
            try:
                detail = resp.json().get("message") or resp.text
            except ValueError:
                detail = resp.text
            transient = resp.status_code == 429 or resp.status_code >= 500
            raise StoreError(f"record store {operation} failed ({resp.status_code})", detail, transient=transient)

        if not resp.content:
            return []
        try:
            return resp.json()
        except ValueError as e:
            raise StoreError(f"record store {operation} failed", f"response is not JSON: {e}") from e

    @classmethod
    def _decode(cls, row: Dict[str, Any]) -> BatchRecord:
        try:
            return cls._row_to_record(row)
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError("record store returned an unexpected row", f"{type(e).__name__}: {e}") from e

    @staticmethod
    def _row_to_record(row: Dict[str, Any]) -> BatchRecord:
        parsed = row.get("datos_qr")
        confirmed_at = row.get("blockchain_timestamp")
        return BatchRecord(
            record_id=row["id"],
            payload_text=row["datos_qr_string"],
            parsed_payload=parsed if isinstance(parsed, dict) else None,
            created_at=parse_rfc3339(row["timestamp"]),
            digest=row["hash_calculado"],
            state=_REST_STATE_REVERSE[row["estado"]],
            tx_id=row.get("tx_hash"),
            confirmed_at=parse_rfc3339(confirmed_at) if confirmed_at else None,
        )

    def create_provisional(self, payload_text, parsed_payload, digest):
        row = {
            "datos_qr": parsed_payload,
            "datos_qr_string": payload_text,
            "timestamp": utc_rfc3339(now_utc()),
            "estado": _REST_STATE[RecordState.PROVISIONAL],
            "hash_calculado": digest,
        }
        rows = self._request("POST", "insert", data=compact_json([row]))
        if not rows:
            raise StoreError("record store insert failed", "insert returned no row")
        return self._decode(rows[0])

    def promote_to_confirmed(self, record_id, tx_id):
        update = {
            "estado": _REST_STATE[RecordState.CONFIRMED],
            "tx_hash": tx_id,
            "blockchain_timestamp": utc_rfc3339(now_utc()),
        }
        params = {"id": f"eq.{record_id}", "estado": f"eq.{_REST_STATE[RecordState.PROVISIONAL]}"}
        rows = self._request("PATCH", "update", params=params, data=compact_json(update))
        if rows:
            return self._decode(rows[0])
        existing = self.get(record_id)
        raise RecordAlreadyConfirmedError(record_id, existing.tx_id)

    def get(self, record_id):
        rows = self._request("GET", "select", params={"id": f"eq.{record_id}", "select": "*"})
        if not rows:
            raise RecordNotFoundError(record_id)
        return self._decode(rows[0])

    def list_by_state(self, state):
        rows = self._request(
            "GET", "select",
            params={"estado": f"eq.{_REST_STATE[state]}", "select": "*", "order": "id.asc"}
        )
        return [self._decode(r) for r in rows]
