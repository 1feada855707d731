# apps/api/services/objection_service.py

import logging
from typing import Any, Dict, Optional

from .errors import ConcurrencyConflict, InvalidTransition, LamsError, Unauthorized, ValidationError
from .notifier import notify_role, safe_notify
from .objection_gate import is_terminal_objection, unresolved_objections
from .transition_executor import TransitionExecutor
from .utils import parse_datetime, to_iso, utcnow
from .workflow_registry import EntityKind, LandNotificationState, NotificationType, Role

_logger = logging.getLogger(__name__)

RECEIVED = "received"
UNDER_REVIEW = "under_review"
RESOLVED = "resolved"
REJECTED = "rejected"

OBJECTION_TRANSITIONS = {
    RECEIVED: (UNDER_REVIEW, RESOLVED, REJECTED),
    UNDER_REVIEW: (RESOLVED, REJECTED),
}

RESOLVER_ROLES = (Role.CASE_OFFICER, Role.LEGAL_OFFICER, Role.ADMIN)

_OPEN_FOR_OBJECTIONS = (LandNotificationState.PUBLISHED.value, LandNotificationState.OBJECTION_WINDOW_OPEN.value)


class ObjectionService:
    """
    Objections against a sec11 notification. Resolving the last open
    objection moves the notification to ``objection_resolved`` when
    ``auto_advance`` is on.
    """

    def __init__(self, executor: TransitionExecutor, auto_advance: bool = True):
        self.executor = executor
        self.store = executor.store
        self.auto_advance = auto_advance

    def submit_objection(self, data: Dict[str, Any], user_id=None, submitted_at=None) -> Dict[str, Any]:
        notification = self.store.require_entity(EntityKind.LAND_NOTIFICATION, data.get("notification_id"))
        if notification.get("type") != NotificationType.SEC11:
            raise ValidationError("Objections can only be submitted against a Section 11 notification")
        if notification.get("status") not in _OPEN_FOR_OBJECTIONS:
            raise ValidationError("Objections can only be submitted for published notifications",
                                  status=notification.get("status"))

        submitted = parse_datetime(submitted_at, "submitted_at") if submitted_at else utcnow()
        deadline = notification.get("objection_deadline")
        if deadline and submitted > parse_datetime(deadline, "objection_deadline"):
            raise ValidationError("The objection period for this notification has ended", deadline=deadline)

        parcel_id = data.get("parcel_id")
        if parcel_id is None:
            raise ValidationError("Parcel is required")
        if parcel_id not in (notification.get("parcel_ids") or []):
            raise ValidationError("Parcel is not part of this notification", parcel_id=parcel_id)
        text = (data.get("text") or "").strip()
        if not text:
            raise ValidationError("Objection text is required")

        record = self.store.create_entity("objection", {
            "notification_id": notification["id"],
            "parcel_id": parcel_id,
            "owner_id": data.get("owner_id") or user_id,
            "text": text,
            "attachments": list(data.get("attachments") or []),
            "status": RECEIVED,
            "submitted_at": to_iso(submitted),
            "created_by": user_id,
        })
        _logger.info(f"Objection {record['id']} received for notification {notification.get('ref_no')}")
        notify_role(self.store, self.executor.notifier, [Role.CASE_OFFICER],
                    "New Objection", f"Objection received for notification {notification.get('ref_no')}",
                    event_type="objection", related_type="objection", related_id=record["id"])
        return record

    def _move(self, objection: Dict[str, Any], status: str, values: Dict[str, Any]) -> Dict[str, Any]:
        current = objection.get("status")
        if is_terminal_objection(objection):
            raise InvalidTransition("Objection has already been resolved", current_state=current, target_state=status)
        if status not in OBJECTION_TRANSITIONS.get(current, ()):
            raise InvalidTransition(f"Invalid objection status change from {current} to {status}",
                                    current_state=current, target_state=status)
        if not self.store.set_entity_status("objection", objection["id"], current, status, values):
            raise ConcurrencyConflict(f"Objection {objection['id']} changed; reload and retry", expected_state=current)
        return self.store.require_entity("objection", objection["id"])

    def _check_resolver(self, user_id) -> None:
        role = self.store.get_user_role(user_id) if user_id is not None else None
        if role not in RESOLVER_ROLES:
            raise Unauthorized("User does not have permission to handle objections",
                               required_roles=list(RESOLVER_ROLES), actor_role=role)

    def start_review(self, objection_id, user_id) -> Dict[str, Any]:
        self._check_resolver(user_id)
        objection = self.store.require_entity("objection", objection_id)
        return self._move(objection, UNDER_REVIEW, {"reviewer_id": user_id})

    def resolve_objection(self, objection_id, resolution_text: str, status: str, resolver_id) -> Dict[str, Any]:
        if status not in (RESOLVED, REJECTED):
            raise ValidationError("Status must be resolved or rejected", status=status)
        if not (resolution_text or "").strip():
            raise ValidationError("Resolution text is required")
        self._check_resolver(resolver_id)

        objection = self.store.require_entity("objection", objection_id)
        updated = self._move(objection, status, {
            "resolution_text": resolution_text,
            "resolved_by": resolver_id,
            "resolved_at": to_iso(utcnow()),
        })
        _logger.info(f"Objection {objection_id} {status} by user {resolver_id}")

        safe_notify(self.executor.notifier, updated.get("owner_id"), "Objection Update",
                    f"Your objection has been {status}", event_type="objection",
                    related_type="objection", related_id=updated["id"])
        if self.auto_advance:
            self._advance_notification(updated["notification_id"], resolver_id)
        return updated

    def _advance_notification(self, notification_id, actor_id) -> None:
        notification = self.store.get_entity(EntityKind.LAND_NOTIFICATION, notification_id)
        if notification is None or notification.get("status") != LandNotificationState.OBJECTION_WINDOW_OPEN.value:
            return
        if unresolved_objections(self.store, notification_id):
            return
        try:
            self.executor.transition(EntityKind.LAND_NOTIFICATION, notification_id,
                                     LandNotificationState.OBJECTION_RESOLVED, actor_id,
                                     values={"objections_resolved_at": to_iso(utcnow())})
        except LamsError as e:
            # the objection itself is committed; the notification can still be moved explicitly
            _logger.info(f"Notification {notification_id} not advanced after objection resolution: {e.message}")

    def list_for_notification(self, notification_id, status: Optional[str] = None):
        return self.store.get_objections(notification_id=notification_id,
                                         statuses=[status] if status else None)
