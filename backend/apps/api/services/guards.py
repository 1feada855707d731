# apps/api/services/guards.py
"""
Preconditions a target state needs beyond the graph and the role gate.
They run inside every transition, whether it comes from a service or from
the generic workflow endpoint.
"""

import logging
from decimal import Decimal

from .errors import ValidationError
from .transition_executor import TransitionExecutor
from .utils import add_days, parse_datetime, to_iso, utcnow
from .workflow_registry import (
    AwardState,
    EntityKind,
    LandNotificationState,
    NotificationType,
    PossessionState,
)

_logger = logging.getLogger(__name__)


def total_paid(store, award_id) -> Decimal:
    payments = store.list_entities("payment", award_id=award_id, status="success")
    return sum((Decimal(str(p["amount"])) for p in payments), Decimal("0"))


def objection_deadline_on_publish(window_days: int):
    """First publication of a sec11 notification fixes its objection deadline."""
    def guard(store, entity, values):
        if entity.get("type") != NotificationType.SEC11:
            return None
        if entity.get("status") != LandNotificationState.APPROVED.value:
            return None
        if values.get("objection_deadline") or entity.get("objection_deadline"):
            return None
        published_on = values.get("publish_date") or entity.get("publish_date")
        start = parse_datetime(published_on, "publish_date") if published_on else utcnow()
        deadline = to_iso(add_days(start, window_days))
        _logger.info(f"Objection deadline for notification {entity.get('id')} set to {deadline}")
        return {"objection_deadline": deadline}
    return guard


def require_objection_deadline(store, entity, values):
    if not (values.get("objection_deadline") or entity.get("objection_deadline")):
        raise ValidationError("Objection window cannot open without an objection deadline",
                              notification_id=entity.get("id"))
    return None


def require_full_payment(store, entity, values):
    amount = Decimal(str(entity.get("amount") or 0))
    paid = total_paid(store, entity.get("id"))
    if paid < amount:
        raise ValidationError(
            "Award cannot be marked paid before successful payments cover the award amount",
            award_id=entity.get("id"), amount=float(amount), paid=float(paid),
        )
    return None


def require_evidence(store, entity, values):
    media = store.list_entities("possession_media", possession_id=entity.get("id"))
    if not media:
        raise ValidationError("Cannot generate certificate without evidence photos",
                              possession_id=entity.get("id"))
    return {"photo_count": len(media)}


def register_default_guards(executor: TransitionExecutor, objection_window_days: int = 30) -> TransitionExecutor:
    executor.register_guard(EntityKind.LAND_NOTIFICATION, LandNotificationState.PUBLISHED,
                            objection_deadline_on_publish(objection_window_days))
    executor.register_guard(EntityKind.LAND_NOTIFICATION, LandNotificationState.OBJECTION_WINDOW_OPEN,
                            require_objection_deadline)
    executor.register_guard(EntityKind.AWARD, AwardState.PAID, require_full_payment)
    executor.register_guard(EntityKind.POSSESSION, PossessionState.CERTIFICATE_ISSUED, require_evidence)
    return executor
