# apps/api/services/possession_service.py

import logging
import math
from typing import Any, Dict, List

from . import sequence
from .errors import ValidationError
from .notifier import safe_notify
from .transition_executor import TransitionExecutor, TransitionResult
from .utils import parse_datetime, to_iso, utcnow
from .workflow_registry import EntityKind, PossessionState

_logger = logging.getLogger(__name__)

KIND = EntityKind.POSSESSION
_P = PossessionState

GPS_SOURCES = ("manual", "exif", "device")


def _coordinate(value, name: str, limit: float) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {name}: {value!r}") from None
    if not math.isfinite(result) or abs(result) > limit:
        raise ValidationError(f"Invalid {name}: {value!r}")
    return result


def normalize_media(item: Dict[str, Any]) -> Dict[str, Any]:
    """Validate one evidence photo: stored path, its hash and GPS position."""
    if not item.get("photo_path"):
        raise ValidationError("Photo path is required for every media item")
    if not item.get("hash_sha256"):
        raise ValidationError("Photo hash is required for every media item")
    source = item.get("gps_source") or "manual"
    if source not in GPS_SOURCES:
        raise ValidationError("Invalid GPS source", gps_source=source)
    return {
        "photo_path": item["photo_path"],
        "hash_sha256": str(item["hash_sha256"]).lower(),
        "gps_lat": _coordinate(item.get("gps_lat"), "gps_lat", 90),
        "gps_lng": _coordinate(item.get("gps_lng"), "gps_lng", 180),
        "gps_source": source,
        "taken_at": item.get("taken_at"),
    }


class PossessionService:
    def __init__(self, executor: TransitionExecutor, ref_padding: int = 3):
        self.executor = executor
        self.store = executor.store
        self.ref_padding = ref_padding

    def schedule_possession(self, data: Dict[str, Any], user_id, now=None) -> Dict[str, Any]:
        parcel_id = data.get("parcel_id")
        if parcel_id is None:
            raise ValidationError("Parcel is required")
        schedule_dt = parse_datetime(data.get("schedule_dt"), "schedule_dt")
        if schedule_dt < (now or utcnow()):
            raise ValidationError("Possession date must be in the future")

        active = [p for p in self.store.list_entities(KIND, parcel_id=parcel_id)
                  if p.get("status") != _P.CLOSED.value]
        if active:
            raise ValidationError("Possession already scheduled for this parcel",
                                  possession_id=active[0]["id"])

        record = self.store.create_entity(KIND, {
            "ref_no": sequence.next_reference(self.store, sequence.POSSESSION, padding=self.ref_padding),
            "parcel_id": parcel_id,
            "award_id": data.get("award_id"),
            "officer_id": data.get("officer_id") or user_id,
            "schedule_dt": to_iso(schedule_dt),
            "remarks": data.get("remarks"),
            "status": _P.SCHEDULED.value,
            "photo_count": 0,
            "created_by": user_id,
        })
        if record["officer_id"] != user_id:
            safe_notify(self.executor.notifier, record["officer_id"], "Possession Scheduled",
                        f"Possession {record['ref_no']} scheduled for {record['schedule_dt']}",
                        event_type="task", related_type=KIND.value, related_id=record["id"])
        _logger.info(f"Possession {record['ref_no']} scheduled for parcel {parcel_id}")
        return record

    def start(self, possession_id, user_id, now=None) -> TransitionResult:
        possession = self.store.require_entity(KIND, possession_id)
        started = now or utcnow()
        if started < parse_datetime(possession.get("schedule_dt"), "schedule_dt"):
            raise ValidationError("Cannot start possession before scheduled date")
        return self.executor.transition(KIND, possession_id, _P.IN_PROGRESS, user_id,
                                        values={"started_at": to_iso(started)})

    def upload_evidence(self, possession_id, media: List[Dict[str, Any]], user_id) -> Dict[str, Any]:
        possession = self.store.require_entity(KIND, possession_id)
        status = possession.get("status")
        if status not in (_P.IN_PROGRESS.value, _P.EVIDENCE_CAPTURED.value):
            raise ValidationError("Evidence can only be uploaded while possession is in progress", status=status)
        if not media:
            raise ValidationError("At least one photo is required")
        items = [normalize_media(m) for m in media]

        existing = len(self.store.list_entities("possession_media", possession_id=possession["id"]))
        # media rows are written only once the state change has committed
        if status == _P.IN_PROGRESS.value:
            self.executor.transition(KIND, possession_id, _P.EVIDENCE_CAPTURED, user_id,
                                     values={"photo_count": existing + len(items)})
        for item in items:
            self.store.create_entity("possession_media", dict(item, possession_id=possession["id"],
                                                              uploaded_by=user_id))
        photo_count = len(self.store.list_entities("possession_media", possession_id=possession["id"]))
        self.store.update_entity(KIND, possession_id, {"photo_count": photo_count})
        _logger.info(f"Possession {possession.get('ref_no')}: {len(items)} photo(s) added, {photo_count} total")
        return self.store.require_entity(KIND, possession_id)

    def generate_certificate(self, possession_id, user_id) -> TransitionResult:
        possession = self.store.require_entity(KIND, possession_id)
        result = self.executor.transition(KIND, possession_id, _P.CERTIFICATE_ISSUED, user_id,
                                          values={"certificate_date": to_iso(utcnow())})
        parcel_id = possession.get("parcel_id")
        if self.store.get_entity("parcel", parcel_id) is not None:
            self.store.update_entity("parcel", parcel_id, {"possession_status": "possessed"})
        return result

    def update_registry(self, possession_id, user_id, registry_reference: str) -> TransitionResult:
        if not (registry_reference or "").strip():
            raise ValidationError("Registry reference is required")
        return self.executor.transition(KIND, possession_id, _P.REGISTRY_UPDATED, user_id,
                                        values={"registry_reference": registry_reference})

    def close(self, possession_id, user_id) -> TransitionResult:
        return self.executor.transition(KIND, possession_id, _P.CLOSED, user_id)
