"""
Nudge -- Document Store

SQLite-backed JSON document store for clients, invoices, email flows and
workspaces, plus the audit trail and batch-run history.

Features:
    - One ``documents`` table; each row is a JSON body keyed by
      (collection, id) with the owning user id in its own column
    - Ownership-scoped reads and writes (pass ``user_id``)
    - Atomic read-modify-write via ``BEGIN IMMEDIATE`` transactions
    - ``append_reminder_if_absent``: the conditional ledger append that
      stops two runs from recording the same reminder slot twice
    - Send claims: a short lease on (invoice, slot) taken before an email
      goes out, so overlapping runs do not both send it

Database schema:
    documents     - JSON documents by collection
    send_claims   - In-flight (invoice, slot) sends
    audit_log     - Every mutation, for support and debugging
    batch_runs    - One row per daily reminder run

Usage:
    from nudge.store import DocumentStore

    store = DocumentStore("nudge.db")
    doc = store.insert("clients", {"user_id": "u1", "name": "Ada", "email": "a@x.io"})
    store.find("invoices", user_id="u1", status=["sent", "overdue"])
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterator, Optional

from .models import ReminderKind, ReminderRecord, format_timestamp, normalize_reminder_records, utc_now

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

COLLECTIONS = ("clients", "invoices", "email_flows", "workspaces")

# A claim older than this is considered abandoned by a crashed run.
CLAIM_TTL = timedelta(minutes=10)

_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA busy_timeout=5000;",
]

_FIELD_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


# ---------------------------------------------------------------------------
# Database Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
-- All records, one JSON body per row
CREATE TABLE IF NOT EXISTS documents (
    collection  TEXT NOT NULL,
    doc_id      TEXT NOT NULL,
    user_id     TEXT NOT NULL DEFAULT '',
    body        TEXT NOT NULL DEFAULT '{}',       -- JSON object
    created_at  TEXT NOT NULL DEFAULT '',
    updated_at  TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (collection, doc_id)
);

-- In-flight reminder sends
CREATE TABLE IF NOT EXISTS send_claims (
    invoice_id  TEXT NOT NULL,
    slot_id     TEXT NOT NULL,
    claimed_at  TEXT NOT NULL,
    PRIMARY KEY (invoice_id, slot_id)
);

-- Audit log: every mutation on every document
CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    collection  TEXT NOT NULL,
    doc_id      TEXT NOT NULL,
    action      TEXT NOT NULL,
    actor       TEXT NOT NULL DEFAULT 'system',
    details     TEXT NOT NULL DEFAULT '{}',
    timestamp   TEXT NOT NULL DEFAULT ''
);

-- Daily reminder run tracking
CREATE TABLE IF NOT EXISTS batch_runs (
    batch_id        TEXT PRIMARY KEY,
    run_date        TEXT NOT NULL,
    processed       INTEGER NOT NULL DEFAULT 0,
    reminders_sent  INTEGER NOT NULL DEFAULT 0,
    failures        INTEGER NOT NULL DEFAULT 0,
    details         TEXT NOT NULL DEFAULT '{}',
    started_at      TEXT NOT NULL DEFAULT '',
    completed_at    TEXT
);

CREATE INDEX IF NOT EXISTS idx_documents_user ON documents(collection, user_id);
CREATE INDEX IF NOT EXISTS idx_documents_created ON documents(collection, created_at);
CREATE INDEX IF NOT EXISTS idx_audit_doc ON audit_log(collection, doc_id);
"""


def _now_iso() -> str:
    return format_timestamp(utc_now())


def new_id() -> str:
    return uuid.uuid4().hex


def _encode(doc: dict[str, Any]) -> str:
    return json.dumps(doc, ensure_ascii=False, default=str)


def _decode(body: str) -> dict[str, Any]:
    try:
        data = json.loads(body or "{}")
    except json.JSONDecodeError:
        logger.error("Corrupt document body: %.80s", body)
        return {}
    return data if isinstance(data, dict) else {}


class DocumentStore:
    """JSON documents in SQLite.

    Each method opens and closes its own connection.  Connections run in
    autocommit mode; multi-statement writes wrap themselves in
    ``BEGIN IMMEDIATE`` so the read and the write hold the same lock.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # ------------------------------------------------------------------
    # Database connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        """Open a new SQLite connection with row_factory and pragmas."""
        conn = sqlite3.connect(str(self.db_path), isolation_level=None)
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        return conn

    def _init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA_SQL)
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside ``BEGIN IMMEDIATE``; commit or roll back."""
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @staticmethod
    def _load_row(conn: sqlite3.Connection, collection: str, doc_id: str,
                  user_id: Optional[str]) -> Optional[dict[str, Any]]:
        row = conn.execute(
            "SELECT * FROM documents WHERE collection = ? AND doc_id = ?",
            (collection, doc_id),
        ).fetchone()
        if row is None:
            return None
        if user_id is not None and row["user_id"] != user_id:
            return None
        return _decode(row["body"])

    @staticmethod
    def _write_row(conn: sqlite3.Connection, collection: str, doc: dict[str, Any]) -> None:
        conn.execute(
            """UPDATE documents
               SET body = ?, updated_at = ?
               WHERE collection = ? AND doc_id = ?""",
            (_encode(doc), doc.get("updated_at") or _now_iso(), collection, doc["id"]),
        )

    # ------------------------------------------------------------------
    # CRUD Operations
    # ------------------------------------------------------------------

    def insert(self, collection: str, doc: dict[str, Any], actor: str = "system") -> dict[str, Any]:
        """Insert a new document, assigning ``id`` and timestamps if absent.

        Returns:
            The stored document.

        Raises:
            sqlite3.IntegrityError: If a document with the same id exists.
        """
        doc = dict(doc)
        doc.setdefault("id", new_id())
        now = _now_iso()
        doc["created_at"] = doc.get("created_at") or now
        doc["updated_at"] = doc.get("updated_at") or now

        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO documents (collection, doc_id, user_id, body, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (collection, doc["id"], str(doc.get("user_id", "")), _encode(doc),
                 doc["created_at"], doc["updated_at"]),
            )
            self._log_action(conn, collection, doc["id"], "created", actor)
        return doc

    def get(self, collection: str, doc_id: str, user_id: Optional[str] = None) -> Optional[dict[str, Any]]:
        """Fetch one document.  With ``user_id``, other users' documents read as absent."""
        conn = self._get_conn()
        try:
            return self._load_row(conn, collection, doc_id, user_id)
        finally:
            conn.close()

    def find(
        self,
        collection: str,
        user_id: Optional[str] = None,
        newest_first: bool = True,
        **filters: Any,
    ) -> list[dict[str, Any]]:
        """Query a collection by top-level field equality.

        Args:
            collection: Collection name.
            user_id: Restrict to one owner.
            newest_first: Order by creation time, descending if True.
            **filters: ``field=value``; a list/tuple/set value matches any
                of its members.

        Returns:
            Matching documents.
        """
        clauses = ["collection = ?"]
        params: list[Any] = [collection]

        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)

        for name, value in filters.items():
            if not _FIELD_NAME_RE.match(name):
                raise ValueError(f"Invalid filter field: {name!r}")
            column = f"json_extract(body, '$.{name}')"
            if isinstance(value, (list, tuple, set, frozenset)):
                values = list(value)
                if not values:
                    return []
                clauses.append(f"{column} IN ({', '.join('?' * len(values))})")
                params.extend(values)
            else:
                clauses.append(f"{column} = ?")
                params.append(value)

        order = "DESC" if newest_first else "ASC"
        sql = (
            f"SELECT body FROM documents WHERE {' AND '.join(clauses)} "
            f"ORDER BY created_at {order}, rowid {order}"
        )

        conn = self._get_conn()
        try:
            rows = conn.execute(sql, params).fetchall()
            return [_decode(r["body"]) for r in rows]
        finally:
            conn.close()

    def replace(self, collection: str, doc_id: str, doc: dict[str, Any],
                user_id: Optional[str] = None, actor: str = "system") -> Optional[dict[str, Any]]:
        """Overwrite a document's body, keeping its id, owner and created_at."""
        with self._transaction() as conn:
            existing = self._load_row(conn, collection, doc_id, user_id)
            if existing is None:
                return None
            new_doc = dict(doc)
            new_doc["id"] = doc_id
            new_doc["user_id"] = existing.get("user_id", "")
            new_doc["created_at"] = existing.get("created_at")
            new_doc["updated_at"] = _now_iso()
            self._write_row(conn, collection, new_doc)
            self._log_action(conn, collection, doc_id, "replaced", actor)
            return new_doc

    def update_fields(self, collection: str, doc_id: str, fields: dict[str, Any],
                      user_id: Optional[str] = None, actor: str = "system") -> Optional[dict[str, Any]]:
        """Set top-level fields atomically.  Returns the updated document or None."""
        with self._transaction() as conn:
            existing = self._load_row(conn, collection, doc_id, user_id)
            if existing is None:
                return None
            existing.update(fields)
            existing["updated_at"] = _now_iso()
            self._write_row(conn, collection, existing)
            self._log_action(conn, collection, doc_id, "updated", actor,
                             details={"fields": sorted(fields)})
            return existing

    def upsert(self, collection: str, doc_id: str, doc: dict[str, Any],
               actor: str = "system") -> dict[str, Any]:
        """Insert or merge fields into the document with this id."""
        with self._transaction() as conn:
            existing = self._load_row(conn, collection, doc_id, None)
            now = _now_iso()
            if existing is None:
                new_doc = dict(doc, id=doc_id, created_at=now, updated_at=now)
                conn.execute(
                    """INSERT INTO documents (collection, doc_id, user_id, body, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (collection, doc_id, str(new_doc.get("user_id", "")), _encode(new_doc), now, now),
                )
                self._log_action(conn, collection, doc_id, "created", actor)
                return new_doc

            existing.update(doc)
            existing["id"] = doc_id
            existing["updated_at"] = now
            self._write_row(conn, collection, existing)
            self._log_action(conn, collection, doc_id, "updated", actor,
                             details={"fields": sorted(doc)})
            return existing

    def delete(self, collection: str, doc_id: str, user_id: Optional[str] = None,
               actor: str = "system") -> bool:
        with self._transaction() as conn:
            if self._load_row(conn, collection, doc_id, user_id) is None:
                return False
            conn.execute(
                "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            )
            self._log_action(conn, collection, doc_id, "deleted", actor)
            return True

    # ------------------------------------------------------------------
    # Reminder ledger
    # ------------------------------------------------------------------

    def load_ledger(self, invoice_id: str) -> list[ReminderRecord]:
        """Read an invoice's current ``reminders_sent``, normalized.

        Used after taking a send claim, since the caller's copy of the
        invoice may predate a send by another run.
        """
        doc = self.get("invoices", invoice_id)
        if doc is None:
            return []
        return normalize_reminder_records(doc.get("reminders_sent") or doc.get("remindersSent") or [])

    def append_reminder_if_absent(
        self,
        invoice_id: str,
        record: ReminderRecord,
        extra_fields: Optional[dict[str, Any]] = None,
        actor: str = "system",
    ) -> bool:
        """Append to an invoice's ``reminders_sent`` unless the slot is taken.

        For ``scheduled`` records the append is refused when another
        scheduled record already names the same slot.  Manual resends
        are always appended.  Existing entries are never rewritten, only
        appended to.

        Args:
            invoice_id: The invoice document id.
            record: The record to append.
            extra_fields: Other top-level fields to set in the same write
                (e.g. clearing the last-error fields).

        Returns:
            True if the record was appended.
        """
        with self._transaction() as conn:
            doc = self._load_row(conn, "invoices", invoice_id, None)
            if doc is None:
                return False

            raw_records = list(doc.get("reminders_sent") or doc.get("remindersSent") or [])
            if record.kind is ReminderKind.SCHEDULED:
                taken = {
                    r.slot_id for r in normalize_reminder_records(raw_records)
                    if r.kind is ReminderKind.SCHEDULED
                }
                if record.slot_id in taken:
                    logger.info("Invoice %s already has slot %s recorded", invoice_id, record.slot_id)
                    return False

            raw_records.append(record.to_dict())
            doc["reminders_sent"] = raw_records
            doc.pop("remindersSent", None)
            if extra_fields:
                doc.update(extra_fields)
            doc["updated_at"] = _now_iso()
            self._write_row(conn, "invoices", doc)
            self._log_action(conn, "invoices", invoice_id, "reminder_recorded", actor, details={
                "kind": record.kind.value,
                "slot_id": record.slot_id,
            })
            return True

    @contextmanager
    def claim_slot(self, invoice_id: str, slot_id: str,
                   now: Optional[datetime] = None) -> Iterator[bool]:
        """Hold a lease on (invoice, slot) while an email is being sent.

        Yields True when this caller holds the claim.  A False yield means
        another run is sending the same slot and the caller should skip it.
        The claim is released on exit either way.
        """
        now = now or utc_now()
        cutoff = format_timestamp(now - CLAIM_TTL)
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                """INSERT INTO send_claims (invoice_id, slot_id, claimed_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT (invoice_id, slot_id)
                   DO UPDATE SET claimed_at = excluded.claimed_at
                   WHERE send_claims.claimed_at < ?""",
                (invoice_id, slot_id, format_timestamp(now), cutoff),
            )
            claimed = cursor.rowcount > 0
        finally:
            conn.close()

        try:
            yield claimed
        finally:
            if claimed:
                conn = self._get_conn()
                try:
                    conn.execute(
                        "DELETE FROM send_claims WHERE invoice_id = ? AND slot_id = ?",
                        (invoice_id, slot_id),
                    )
                finally:
                    conn.close()

    # ------------------------------------------------------------------
    # Audit & batch history
    # ------------------------------------------------------------------

    def _log_action(
        self,
        conn: sqlite3.Connection,
        collection: str,
        doc_id: str,
        action: str,
        actor: str = "system",
        details: dict[str, Any] | None = None,
    ) -> None:
        """Write an audit log entry (internal, must be within a transaction)."""
        conn.execute(
            """INSERT INTO audit_log (collection, doc_id, action, actor, details, timestamp)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (collection, doc_id, action, actor, json.dumps(details or {}), _now_iso()),
        )

    def get_audit_log(self, doc_id: str | None = None, limit: int = 200) -> list[dict[str, Any]]:
        """Audit entries, newest first, optionally for one document."""
        conn = self._get_conn()
        try:
            if doc_id:
                rows = conn.execute(
                    "SELECT * FROM audit_log WHERE doc_id = ? ORDER BY id DESC LIMIT ?",
                    (doc_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,),
                ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def record_batch_run(
        self,
        run_date: str,
        processed: int,
        reminders_sent: int,
        failures: int,
        started_at: datetime,
        completed_at: datetime,
        details: dict[str, Any] | None = None,
    ) -> str:
        """Persist a summary of one daily reminder run.  Returns its batch id."""
        batch_id = new_id()
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO batch_runs
                   (batch_id, run_date, processed, reminders_sent, failures,
                    details, started_at, completed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (batch_id, run_date, processed, reminders_sent, failures,
                 json.dumps(details or {}), format_timestamp(started_at),
                 format_timestamp(completed_at)),
            )
        finally:
            conn.close()
        return batch_id

    def get_batch_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        """Get recent batch run records."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM batch_runs ORDER BY started_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()
