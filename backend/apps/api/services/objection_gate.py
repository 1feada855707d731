# apps/api/services/objection_gate.py

import logging
from typing import Dict, List

from .errors import ObjectionsPending
from .store import TERMINAL_OBJECTION_STATUSES

_logger = logging.getLogger(__name__)

OBJECTION_STATUSES = ("received", "under_review", "resolved", "rejected")


def is_terminal_objection(objection: Dict) -> bool:
    return objection.get("status") in TERMINAL_OBJECTION_STATUSES


def unresolved_objections(store, notification_id) -> List[Dict]:
    """Objections of the notification whose status is not resolved/rejected."""
    return store.get_unresolved_objections(notification_id)


def ensure_objections_cleared(store, notification: Dict) -> None:
    """
    A sec11 notification may only enter ``objection_resolved`` once every
    linked objection is terminal. Raises ObjectionsPending listing the blockers.
    Only sec11 notifications ever reach the objection window.
    """
    blockers = unresolved_objections(store, notification["id"])
    if blockers:
        ids = [o["id"] for o in blockers]
        _logger.warning(f"Notification {notification.get('ref_no') or notification['id']} has {len(ids)} unresolved objection(s): {ids}")
        raise ObjectionsPending(
            f"{len(ids)} objection(s) are still pending for notification {notification.get('ref_no') or notification['id']}",
            blockers=ids,
        )
