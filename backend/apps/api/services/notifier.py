# apps/api/services/notifier.py

import logging
from typing import Any, Dict, List, Optional

from .utils import add_hours, to_iso, utcnow

_logger = logging.getLogger(__name__)


class Notifier:
    """Notification collaborator: tell a user about a workflow event."""

    def notify(self, user_id, title: str, message: str, event_type: str = "status_update",
               related_type: Optional[str] = None, related_id=None) -> None:
        raise NotImplementedError


class StoreNotifier(Notifier):
    """Writes in-app notifications as ``user_notification`` records."""

    def __init__(self, store):
        self.store = store

    def notify(self, user_id, title, message, event_type="status_update", related_type=None, related_id=None):
        self.store.create_entity("user_notification", {
            "user_id": user_id,
            "title": title,
            "message": message,
            "type": event_type,
            "related_type": related_type,
            "related_id": related_id,
            "is_read": False,
        })


def safe_notify(notifier: Optional[Notifier], user_id, title: str, message: str, **kwargs: Any) -> bool:
    """
    Fire-and-forget delivery. A failing notifier is logged and never fails
    the workflow step that triggered it.
    """
    if notifier is None or not user_id:
        return False
    try:
        notifier.notify(user_id, title, message, **kwargs)
        return True
    except Exception as e:
        _logger.error(f"Error sending notification '{title}' to user {user_id}: {str(e)}", exc_info=True)
        return False


def notify_role(store, notifier: Optional[Notifier], roles, title: str, message: str, **kwargs) -> int:
    sent = 0
    for user in store.list_entities("user", role=tuple(roles)):
        if safe_notify(notifier, user["id"], title, message, **kwargs):
            sent += 1
    return sent


def create_role_tasks(store, roles, request_type: str, request_id, title: str,
                      description: str = "", due_in_hours: int = 48) -> List[Dict[str, Any]]:
    """Open a review task for every user holding one of ``roles``."""
    due = to_iso(add_hours(utcnow(), due_in_hours))
    tasks = []
    for user in store.list_entities("user", role=tuple(roles)):
        tasks.append(store.create_entity("task", {
            "request_type": request_type,
            "request_id": request_id,
            "assignee_id": user["id"],
            "title": title,
            "description": description,
            "status": "open",
            "due_at": due,
        }))
    return tasks
