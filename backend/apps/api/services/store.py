# apps/api/services/store.py

import json
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .errors import NotFound

_logger = logging.getLogger(__name__)

TERMINAL_OBJECTION_STATUSES = ("resolved", "rejected")

# never taken from caller-supplied values
PROTECTED_KEYS = ("id", "status", "state_entered_at", "created_at")

# One lock per database file, shared by every store opened on that path
# inside this process.
_FILE_LOCKS: Dict[str, threading.Lock] = {}
_FILE_LOCKS_GUARD = threading.Lock()


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _kind_key(kind) -> str:
    return str(getattr(kind, "value", kind))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, expected in filters.items():
        if expected is None:
            continue
        value = record.get(key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


class LamsStore:
    """
    Persistence collaborator used by the workflow core.

    Entities are plain dicts keyed by ``(kind, id)``. ``set_entity_status`` is
    the only way workflow state changes and must be an atomic
    compare-and-set; ``next_sequence_value`` must be an atomic increment.
    """

    def get_entity(self, kind, entity_id) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def create_entity(self, kind, values: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def update_entity(self, kind, entity_id, values: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def set_entity_status(self, kind, entity_id, expected_status: str, status: str,
                          values: Optional[Dict[str, Any]] = None) -> bool:
        """
        Set ``status`` only if the stored status still equals ``expected_status``.
        Returns False when another writer got there first.
        Raises NotFound when the entity does not exist.
        """
        raise NotImplementedError

    def list_entities(self, kind, **filters) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def next_sequence_value(self, name: str, year: int) -> int:
        raise NotImplementedError

    def apply_draw(self, updates: Dict[int, Any], audit_record: Dict[str, Any],
                   scheme_id=None) -> Optional[Dict[str, Any]]:
        """
        Record a draw in one atomic write: every application in ``updates``
        (``{application_id: (status, values)}``) leaves ``verified``, the
        ``draw_audit`` record is created and the scheme is closed.
        Returns None and writes nothing when any application is no longer
        ``verified``.
        """
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Derived queries
    # ------------------------------------------------------------------
    def require_entity(self, kind, entity_id) -> Dict[str, Any]:
        record = self.get_entity(kind, entity_id)
        if record is None:
            raise NotFound(f"{_kind_key(kind)} {entity_id} not found", kind=_kind_key(kind), id=entity_id)
        return record

    def get_objections(self, notification_id=None, statuses: Optional[Iterable[str]] = None,
                       exclude_statuses: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        objections = self.list_entities(
            "objection",
            notification_id=notification_id,
            status=tuple(statuses) if statuses is not None else None,
        )
        if exclude_statuses:
            excluded = set(exclude_statuses)
            objections = [o for o in objections if o.get("status") not in excluded]
        return objections

    def get_unresolved_objections(self, notification_id) -> List[Dict[str, Any]]:
        return self.get_objections(notification_id=notification_id,
                                   exclude_statuses=TERMINAL_OBJECTION_STATUSES)

    def get_user_role(self, user_id) -> Optional[str]:
        return self.require_entity("user", user_id).get("role")

    def get_applications(self, **filters) -> List[Dict[str, Any]]:
        return self.list_entities("application", **filters)

    # ------------------------------------------------------------------
    # Helpers shared by the implementations
    # ------------------------------------------------------------------
    @staticmethod
    def _new_record(entity_id: int, values: Dict[str, Any]) -> Dict[str, Any]:
        now = _now_iso()
        record = dict(values)
        record["id"] = entity_id
        record["created_at"] = now
        record["updated_at"] = now
        if record.get("status"):
            record["state_entered_at"] = {record["status"]: now}
        return record

    @staticmethod
    def _apply_status(record: Dict[str, Any], status: str, values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        now = _now_iso()
        for k, v in (values or {}).items():
            if k in PROTECTED_KEYS:
                continue
            record[k] = v
        record["status"] = status
        entered = dict(record.get("state_entered_at") or {})
        entered[status] = now
        record["state_entered_at"] = entered
        record["updated_at"] = now
        return record

    @staticmethod
    def _close_scheme(record: Dict[str, Any], draw_id: str) -> Dict[str, Any]:
        values = {"draw_completed": True, "last_draw_id": draw_id}
        if record.get("status") != "closed":
            return LamsStore._apply_status(record, "closed", values)
        record.update(values)
        record["updated_at"] = _now_iso()
        return record


class JsonFileStore(LamsStore):
    """
    Single JSON file guarded by a process-wide lock, rewritten atomically.
    Suitable for a single-process deployment and for tests.
    """

    def __init__(self, path: str):
        self.path = os.path.abspath(path)
        with _FILE_LOCKS_GUARD:
            self._lock = _FILE_LOCKS.setdefault(self.path, threading.Lock())
        self.init_db_if_missing()

    def init_db_if_missing(self) -> str:
        with self._lock:
            if not os.path.exists(self.path):
                os.makedirs(os.path.dirname(self.path), exist_ok=True)
                self._atomic_write(self._empty())
        return self.path

    @staticmethod
    def _empty() -> Dict[str, Any]:
        return {"sequences": {}, "lastIds": {}, "records": {}}

    def _read_db(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return self._empty()
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        data.setdefault("sequences", {})
        data.setdefault("lastIds", {})
        data.setdefault("records", {})
        return data

    def _atomic_write(self, data: Dict[str, Any]) -> None:
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp, self.path)

    def get_entity(self, kind, entity_id):
        with self._lock:
            db = self._read_db()
        return (db["records"].get(_kind_key(kind)) or {}).get(str(entity_id))

    def create_entity(self, kind, values):
        key = _kind_key(kind)
        with self._lock:
            db = self._read_db()
            entity_id = int(db["lastIds"].get(key) or 0) + 1
            db["lastIds"][key] = entity_id
            record = self._new_record(entity_id, values)
            db["records"].setdefault(key, {})[str(entity_id)] = record
            self._atomic_write(db)
        return record

    def update_entity(self, kind, entity_id, values):
        key = _kind_key(kind)
        with self._lock:
            db = self._read_db()
            record = (db["records"].get(key) or {}).get(str(entity_id))
            if record is None:
                raise NotFound(f"{key} {entity_id} not found", kind=key, id=entity_id)
            for k, v in (values or {}).items():
                if k in PROTECTED_KEYS:
                    continue
                record[k] = v
            record["updated_at"] = _now_iso()
            self._atomic_write(db)
        return record

    def set_entity_status(self, kind, entity_id, expected_status, status, values=None):
        key = _kind_key(kind)
        with self._lock:
            db = self._read_db()
            record = (db["records"].get(key) or {}).get(str(entity_id))
            if record is None:
                raise NotFound(f"{key} {entity_id} not found", kind=key, id=entity_id)
            if record.get("status") != expected_status:
                return False
            self._apply_status(record, status, values)
            self._atomic_write(db)
        return True

    def list_entities(self, kind, **filters):
        with self._lock:
            db = self._read_db()
        records = (db["records"].get(_kind_key(kind)) or {}).values()
        return sorted((r for r in records if _matches(r, filters)), key=lambda r: r["id"])

    def next_sequence_value(self, name, year):
        counter_key = f"{name}:{int(year)}"
        with self._lock:
            db = self._read_db()
            value = int(db["sequences"].get(counter_key) or 0) + 1
            db["sequences"][counter_key] = value
            self._atomic_write(db)
        _logger.debug("Allocated %s = %s", counter_key, value)
        return value

    def apply_draw(self, updates, audit_record, scheme_id=None):
        with self._lock:
            db = self._read_db()
            applications = db["records"].get("application") or {}
            for app_id in updates:
                record = applications.get(str(app_id))
                if record is None or record.get("status") != "verified":
                    _logger.warning(f"Application {app_id} is no longer verified; draw not recorded")
                    return None
            for app_id, (status, values) in updates.items():
                self._apply_status(applications[str(app_id)], status, values)

            audit_id = int(db["lastIds"].get("draw_audit") or 0) + 1
            db["lastIds"]["draw_audit"] = audit_id
            audit = self._new_record(audit_id, audit_record)
            db["records"].setdefault("draw_audit", {})[str(audit_id)] = audit

            scheme = (db["records"].get("scheme") or {}).get(str(scheme_id))
            if scheme is not None:
                self._close_scheme(scheme, audit_record.get("draw_id"))
            self._atomic_write(db)
        return audit
