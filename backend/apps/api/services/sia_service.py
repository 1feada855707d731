# apps/api/services/sia_service.py

import logging
from typing import Any, Dict

from . import sequence
from .errors import ValidationError
from .transition_executor import TransitionExecutor, TransitionResult
from .utils import parse_datetime, to_iso, utcnow
from .workflow_registry import EntityKind, SiaState

_logger = logging.getLogger(__name__)

KIND = EntityKind.SIA
_S = SiaState

PROTECTED_FIELDS = ("id", "status", "notice_no", "created_by", "state_entered_at", "document_uuids")


def _check_period(start, end) -> None:
    if parse_datetime(end, "end_date") < parse_datetime(start, "start_date"):
        raise ValidationError("End date must be after start date")


class SiaService:
    """Social Impact Assessment: publish, hear objections in person, report."""

    def __init__(self, executor: TransitionExecutor, ref_padding: int = 3):
        self.executor = executor
        self.store = executor.store
        self.ref_padding = ref_padding

    def create_sia(self, data: Dict[str, Any], created_by) -> Dict[str, Any]:
        if not (data.get("title") or "").strip():
            raise ValidationError("Title is required")
        _check_period(data.get("start_date"), data.get("end_date"))
        values = {k: v for k, v in data.items() if k not in PROTECTED_FIELDS}
        values.update({
            "notice_no": sequence.next_reference(self.store, sequence.SIA, padding=self.ref_padding),
            "status": _S.DRAFT.value,
            "created_by": created_by,
        })
        record = self.store.create_entity(KIND, values)
        _logger.info(f"Created SIA {record['notice_no']} (id={record['id']})")
        return record

    def update_sia(self, sia_id, data: Dict[str, Any], user_id) -> Dict[str, Any]:
        existing = self.store.require_entity(KIND, sia_id)
        if existing.get("status") != _S.DRAFT.value:
            raise ValidationError("SIA can only be updated when in draft status", status=existing.get("status"))
        values = {k: v for k, v in data.items() if k not in PROTECTED_FIELDS}
        merged = dict(existing, **values)
        _check_period(merged.get("start_date"), merged.get("end_date"))
        values["last_actor_id"] = user_id
        return self.store.update_entity(KIND, sia_id, values)

    def publish(self, sia_id, user_id) -> TransitionResult:
        return self.executor.transition(KIND, sia_id, _S.PUBLISHED, user_id,
                                        values={"published_at": to_iso(utcnow())})

    def submit_feedback(self, sia_id, data: Dict[str, Any], user_id=None) -> Dict[str, Any]:
        sia = self.store.require_entity(KIND, sia_id)
        if sia.get("status") != _S.PUBLISHED.value:
            raise ValidationError("Feedback can only be submitted for published SIAs", status=sia.get("status"))
        text = (data.get("text") or "").strip()
        if not text:
            raise ValidationError("Feedback text is required")
        record = self.store.create_entity("sia_feedback", {
            "sia_id": sia["id"],
            "citizen_name": data.get("citizen_name"),
            "contact": data.get("contact"),
            "text": text,
            "attachments": list(data.get("attachments") or []),
            "status": "received",
            "submitted_by": user_id,
        })
        _logger.info(f"Feedback {record['id']} received for SIA {sia.get('notice_no')}")
        return record

    def schedule_hearing(self, sia_id, hearing_date, venue: str, user_id) -> TransitionResult:
        if not (venue or "").strip():
            raise ValidationError("Hearing venue is required")
        when = parse_datetime(hearing_date, "hearing_date")
        return self.executor.transition(KIND, sia_id, _S.HEARING_SCHEDULED, user_id,
                                        values={"hearing_date": to_iso(when), "venue": venue})

    def complete_hearing(self, sia_id, user_id, minutes: str = None) -> TransitionResult:
        return self.executor.transition(KIND, sia_id, _S.HEARING_COMPLETED, user_id,
                                        values={"hearing_minutes": minutes, "hearing_completed_at": to_iso(utcnow())})

    def generate_report(self, sia_id, user_id, summary: str = None) -> TransitionResult:
        """Seal the SIA report; the feedback count is frozen into it."""
        feedback = self.store.list_entities("sia_feedback", sia_id=int(sia_id))
        return self.executor.transition(KIND, sia_id, _S.REPORT_GENERATED, user_id,
                                        values={"report_summary": summary, "feedback_count": len(feedback)})

    def close(self, sia_id, user_id) -> TransitionResult:
        return self.executor.transition(KIND, sia_id, _S.CLOSED, user_id)
