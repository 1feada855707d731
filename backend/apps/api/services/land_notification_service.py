# apps/api/services/land_notification_service.py
"""
Sec 11 / Sec 19 land notifications.

draft -> legal_review -> approved -> published
  sec11: published -> objection_window_open -> objection_resolved -> published (Sec 19) -> closed
  sec19: published -> closed
"""

import logging
from typing import Any, Dict, Iterable, Optional

from . import sequence
from .errors import ValidationError
from .notifier import create_role_tasks, notify_role
from .objection_gate import OBJECTION_STATUSES
from .transition_executor import TransitionExecutor, TransitionResult
from .utils import add_days, parse_datetime, to_iso, utcnow
from .workflow_registry import EntityKind, LandNotificationState, NotificationType, Role

_logger = logging.getLogger(__name__)

KIND = EntityKind.LAND_NOTIFICATION
_N = LandNotificationState

# never written through create/update; owned by the workflow
PROTECTED_FIELDS = ("id", "status", "ref_no", "type", "created_by", "state_entered_at", "document_uuids")


class LandNotificationService:
    def __init__(self, executor: TransitionExecutor, objection_window_days: int = 30, ref_padding: int = 3):
        self.executor = executor
        self.store = executor.store
        self.objection_window_days = objection_window_days
        self.ref_padding = ref_padding

    # ------------------------------------------------------------------
    # Draft handling
    # ------------------------------------------------------------------
    def create_notification(self, data: Dict[str, Any], parcel_ids: Iterable[int], created_by) -> Dict[str, Any]:
        ntype = data.get("type")
        if ntype not in NotificationType.ALL:
            raise ValidationError("Invalid notification type. Must be sec11 or sec19", type=ntype)
        if not (data.get("title") or "").strip():
            raise ValidationError("Title is required")
        parcel_ids = list(parcel_ids or [])
        if not parcel_ids:
            raise ValidationError("At least one parcel is required")

        prefix = sequence.SEC11 if ntype == NotificationType.SEC11 else sequence.SEC19
        ref_no = sequence.next_reference(self.store, prefix, padding=self.ref_padding)
        values = {k: v for k, v in data.items() if k not in PROTECTED_FIELDS}
        values.update({
            "type": ntype,
            "ref_no": ref_no,
            "status": _N.DRAFT.value,
            "parcel_ids": parcel_ids,
            "created_by": created_by,
        })
        record = self.store.create_entity(KIND, values)
        _logger.info(f"Created {ntype} notification {ref_no} (id={record['id']}) with {len(parcel_ids)} parcel(s)")
        return record

    def update_notification(self, notification_id, data: Dict[str, Any], user_id,
                            parcel_ids: Optional[Iterable[int]] = None) -> Dict[str, Any]:
        existing = self.store.require_entity(KIND, notification_id)
        if existing.get("status") != _N.DRAFT.value:
            raise ValidationError("Notification can only be updated when in draft status",
                                  status=existing.get("status"))
        values = {k: v for k, v in data.items() if k not in PROTECTED_FIELDS}
        if parcel_ids is not None:
            parcel_ids = list(parcel_ids)
            if not parcel_ids:
                raise ValidationError("At least one parcel is required")
            values["parcel_ids"] = parcel_ids
        values["last_actor_id"] = user_id
        return self.store.update_entity(KIND, notification_id, values)

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------
    def submit_for_legal_review(self, notification_id, user_id) -> TransitionResult:
        result = self.executor.transition(KIND, notification_id, _N.LEGAL_REVIEW, user_id,
                                          values={"submitted_by": user_id, "submitted_at": to_iso(utcnow())})
        ref = result.entity.get("ref_no")
        notify_role(self.store, self.executor.notifier, [Role.LEGAL_OFFICER],
                    "Legal Review Required", f"Notification {ref} requires legal review",
                    event_type="approval_required", related_type=KIND.value, related_id=notification_id)
        create_role_tasks(self.store, [Role.LEGAL_OFFICER], KIND.value, notification_id,
                          f"Legal review: {ref}", due_in_hours=48)
        return result

    def approve(self, notification_id, approver_id, comments: Optional[str] = None) -> TransitionResult:
        return self.executor.transition(KIND, notification_id, _N.APPROVED, approver_id, values={
            "approved_by": approver_id,
            "approved_at": to_iso(utcnow()),
            "approval_comments": comments,
        })

    def send_back(self, notification_id, user_id, reason: str) -> TransitionResult:
        if not (reason or "").strip():
            raise ValidationError("A reason is required when sending a notification back")
        return self.executor.transition(KIND, notification_id, _N.DRAFT, user_id,
                                        values={"send_back_reason": reason})

    # ------------------------------------------------------------------
    # Publication
    # ------------------------------------------------------------------
    def publish(self, notification_id, user_id, publish_date=None) -> TransitionResult:
        """
        Publish an approved notification and seal its PDF. A sec11
        notification then opens its objection window immediately.
        """
        published_on = parse_datetime(publish_date, "publish_date") if publish_date else utcnow()
        notification = self.store.require_entity(KIND, notification_id)
        values = {"publish_date": to_iso(published_on)}
        opens_window = (notification.get("type") == NotificationType.SEC11
                        and notification.get("status") == _N.APPROVED.value)
        if opens_window:
            values["objection_deadline"] = to_iso(add_days(published_on, self.objection_window_days))
        result = self.executor.transition(KIND, notification_id, _N.PUBLISHED, user_id, values=values)
        if not opens_window:
            return result

        opened = self.open_objection_window(notification_id, user_id)
        opened.document = result.document
        return opened

    def open_objection_window(self, notification_id, user_id) -> TransitionResult:
        """
        published -> objection_window_open for a sec11 notification. Also
        reopens the window of one left at published by a failed publish.
        """
        opened = self.executor.transition(KIND, notification_id, _N.OBJECTION_WINDOW_OPEN, user_id)
        _logger.info(f"Objection window for {opened.entity.get('ref_no')} open until "
                     f"{opened.entity.get('objection_deadline')}")
        return opened

    def resolve_objections(self, notification_id, user_id) -> TransitionResult:
        return self.executor.transition(KIND, notification_id, _N.OBJECTION_RESOLVED, user_id,
                                        values={"objections_resolved_at": to_iso(utcnow())})

    def publish_declaration(self, notification_id, user_id, publish_date=None) -> TransitionResult:
        """Second (Sec 19) publication of a sec11 notification after its objections are resolved."""
        published_on = parse_datetime(publish_date, "publish_date") if publish_date else utcnow()
        return self.executor.transition(KIND, notification_id, _N.PUBLISHED, user_id,
                                        values={"declaration_date": to_iso(published_on)})

    def close(self, notification_id, user_id) -> TransitionResult:
        return self.executor.transition(KIND, notification_id, _N.CLOSED, user_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_details(self, notification_id) -> Dict[str, Any]:
        notification = self.store.require_entity(KIND, notification_id)
        objections = self.store.get_objections(notification_id=notification["id"])
        counts = {status: 0 for status in OBJECTION_STATUSES}
        for objection in objections:
            counts[objection.get("status")] = counts.get(objection.get("status"), 0) + 1
        return dict(notification, objection_counts=counts, objection_total=len(objections))
