# apps/api/services/sql_store.py

import json
import logging
import os
import sqlite3
from contextlib import closing
from typing import Any, Dict, Optional

from .errors import NotFound
from .store import PROTECTED_KEYS, LamsStore, _kind_key, _matches, _now_iso

_logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    kind TEXT NOT NULL,
    id INTEGER NOT NULL,
    status TEXT,
    data TEXT NOT NULL,
    PRIMARY KEY (kind, id)
);
CREATE TABLE IF NOT EXISTS sequence_counters (
    name TEXT NOT NULL,
    year INTEGER NOT NULL,
    current_value INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT,
    PRIMARY KEY (name, year)
);
"""


class SqliteStore(LamsStore):
    """
    SQLite-backed store. Every write that must be atomic is either a single
    statement or runs inside ``BEGIN IMMEDIATE`` so concurrent writers queue
    on the database lock instead of interleaving.
    """

    def __init__(self, path: str, timeout: float = 30.0):
        self.path = os.path.abspath(path)
        self.timeout = timeout
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        with closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: autocommit, transactions are opened explicitly
        return sqlite3.connect(self.path, timeout=self.timeout, isolation_level=None)

    @staticmethod
    def _load(row) -> Optional[Dict[str, Any]]:
        return json.loads(row[0]) if row else None

    def get_entity(self, kind, entity_id):
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT data FROM records WHERE kind = ? AND id = ?",
                (_kind_key(kind), int(entity_id)),
            ).fetchone()
        return self._load(row)

    def create_entity(self, kind, values):
        key = _kind_key(kind)
        with closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                (entity_id,) = conn.execute(
                    "SELECT COALESCE(MAX(id), 0) + 1 FROM records WHERE kind = ?", (key,)
                ).fetchone()
                record = self._new_record(entity_id, values)
                conn.execute(
                    "INSERT INTO records (kind, id, status, data) VALUES (?, ?, ?, ?)",
                    (key, entity_id, record.get("status"), json.dumps(record, ensure_ascii=False)),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return record

    def update_entity(self, kind, entity_id, values):
        key = _kind_key(kind)
        with closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                record = self._load(conn.execute(
                    "SELECT data FROM records WHERE kind = ? AND id = ?", (key, int(entity_id))
                ).fetchone())
                if record is None:
                    raise NotFound(f"{key} {entity_id} not found", kind=key, id=entity_id)
                for k, v in (values or {}).items():
                    if k in PROTECTED_KEYS:
                        continue
                    record[k] = v
                record["updated_at"] = _now_iso()
                conn.execute(
                    "UPDATE records SET data = ? WHERE kind = ? AND id = ?",
                    (json.dumps(record, ensure_ascii=False), key, int(entity_id)),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return record

    def set_entity_status(self, kind, entity_id, expected_status, status, values=None):
        key = _kind_key(kind)
        with closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                record = self._load(conn.execute(
                    "SELECT data FROM records WHERE kind = ? AND id = ?", (key, int(entity_id))
                ).fetchone())
                if record is None:
                    raise NotFound(f"{key} {entity_id} not found", kind=key, id=entity_id)
                self._apply_status(record, status, values)
                cur = conn.execute(
                    "UPDATE records SET status = ?, data = ? WHERE kind = ? AND id = ? AND status = ?",
                    (status, json.dumps(record, ensure_ascii=False), key, int(entity_id), expected_status),
                )
                if cur.rowcount != 1:
                    conn.execute("ROLLBACK")
                    return False
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return True

    @staticmethod
    def _select(conn, key, entity_id):
        return SqliteStore._load(conn.execute(
            "SELECT data FROM records WHERE kind = ? AND id = ?", (key, int(entity_id))
        ).fetchone())

    @staticmethod
    def _write(conn, key, record):
        conn.execute(
            "UPDATE records SET status = ?, data = ? WHERE kind = ? AND id = ?",
            (record.get("status"), json.dumps(record, ensure_ascii=False), key, int(record["id"])),
        )

    def list_entities(self, kind, **filters):
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT data FROM records WHERE kind = ? ORDER BY id", (_kind_key(kind),)
            ).fetchall()
        records = [json.loads(r[0]) for r in rows]
        return [r for r in records if _matches(r, filters)]

    def next_sequence_value(self, name, year):
        with closing(self._connect()) as conn:
            rows = conn.execute(
                """
                INSERT INTO sequence_counters (name, year, current_value, updated_at)
                VALUES (?, ?, 1, ?)
                ON CONFLICT (name, year)
                DO UPDATE SET current_value = current_value + 1, updated_at = excluded.updated_at
                RETURNING current_value
                """,
                (name, int(year), _now_iso()),
            ).fetchall()
        value = rows[0][0]
        _logger.debug("Allocated %s:%s = %s", name, year, value)
        return value

    def apply_draw(self, updates, audit_record, scheme_id=None):
        with closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                applications = {}
                for app_id in updates:
                    record = self._select(conn, "application", app_id)
                    if record is None or record.get("status") != "verified":
                        conn.execute("ROLLBACK")
                        _logger.warning(f"Application {app_id} is no longer verified; draw not recorded")
                        return None
                    applications[app_id] = record
                for app_id, (status, values) in updates.items():
                    self._write(conn, "application", self._apply_status(applications[app_id], status, values))

                (audit_id,) = conn.execute(
                    "SELECT COALESCE(MAX(id), 0) + 1 FROM records WHERE kind = ?", ("draw_audit",)
                ).fetchone()
                audit = self._new_record(audit_id, audit_record)
                conn.execute(
                    "INSERT INTO records (kind, id, status, data) VALUES (?, ?, ?, ?)",
                    ("draw_audit", audit_id, audit.get("status"), json.dumps(audit, ensure_ascii=False)),
                )

                scheme = self._select(conn, "scheme", scheme_id) if scheme_id is not None else None
                if scheme is not None:
                    self._write(conn, "scheme", self._close_scheme(scheme, audit_record.get("draw_id")))
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return audit
