"""
Possession: scheduling rules, evidence capture and the sealed certificate.
"""

from datetime import datetime, timedelta, timezone

import pytest

from apps.api.services.document_integrity import verify_document
from apps.api.services.errors import ConcurrencyConflict, InvalidTransition, ValidationError
from apps.api.services.possession_service import PossessionService, normalize_media
from apps.api.services.workflow_registry import Role


def _photo(**overrides):
    photo = {"photo_path": "media/p1.jpg", "hash_sha256": "AB" * 32, "gps_lat": 21.25, "gps_lng": 81.63}
    photo.update(overrides)
    return photo


class TestNormalizeMedia:

    def test_defaults_gps_source_and_lowercases_hash(self):
        item = normalize_media(_photo())
        assert item["gps_source"] == "manual"
        assert item["hash_sha256"] == "ab" * 32

    @pytest.mark.parametrize("overrides", [
        {"photo_path": ""},
        {"hash_sha256": None},
        {"gps_lat": "nan"},
        {"gps_lng": float("inf")},
        {"gps_lat": 91},
        {"gps_lng": None},
        {"gps_source": "satellite"},
    ])
    def test_rejects_bad_items(self, overrides):
        with pytest.raises(ValidationError):
            normalize_media(_photo(**overrides))


class TestPossessionLifecycle:

    def setup_method(self):
        self.now = datetime(2025, 5, 1, 9, 0, tzinfo=timezone.utc)
        self.when = self.now + timedelta(days=2)

    def _schedule(self, service, users, parcel_id=7):
        return service.schedule_possession(
            {"parcel_id": parcel_id, "schedule_dt": self.when.isoformat(), "officer_id": users[Role.CASE_OFFICER]},
            users[Role.ADMIN], now=self.now,
        )

    def test_full_path(self, executor, store, users, renderer):
        store.create_entity("parcel", {"khasra_no": "7/1"})
        service = PossessionService(executor)
        possession = self._schedule(service, users, parcel_id=1)
        assert possession["ref_no"].startswith("POSSESSION-")
        assert store.list_entities("user_notification", user_id=users[Role.CASE_OFFICER])

        with pytest.raises(ValidationError):
            service.start(possession["id"], users[Role.CASE_OFFICER], now=self.now)
        service.start(possession["id"], users[Role.CASE_OFFICER], now=self.when + timedelta(hours=1))

        with pytest.raises(ValidationError):
            service.upload_evidence(possession["id"], [], users[Role.CASE_OFFICER])
        updated = service.upload_evidence(possession["id"], [_photo(), _photo(photo_path="media/p2.jpg")],
                                          users[Role.CASE_OFFICER])
        assert updated["status"] == "evidence_captured" and updated["photo_count"] == 2
        updated = service.upload_evidence(possession["id"], [_photo(photo_path="media/p3.jpg", gps_source="exif")],
                                          users[Role.CASE_OFFICER])
        assert updated["status"] == "evidence_captured" and updated["photo_count"] == 3

        certified = service.generate_certificate(possession["id"], users[Role.CASE_OFFICER]).entity
        assert verify_document(certified["certificate_pdf_path"], certified["hash_sha256"])
        assert "Possession Certificate" in renderer.calls[-1]["title"]
        assert store.get_entity("parcel", 1)["possession_status"] == "possessed"

        with pytest.raises(ValidationError):
            service.update_registry(possession["id"], users[Role.CASE_OFFICER], "")
        service.update_registry(possession["id"], users[Role.CASE_OFFICER], "BHU-REG-2025-19")
        assert service.close(possession["id"], users[Role.ADMIN]).state == "closed"

        # parcel is free for a new possession once the previous one is closed
        assert self._schedule(service, users, parcel_id=1)["status"] == "scheduled"

    def test_schedule_rules(self, executor, users):
        service = PossessionService(executor)
        with pytest.raises(ValidationError):
            service.schedule_possession({"parcel_id": 7, "schedule_dt": "2025-04-01T00:00:00Z"},
                                        users[Role.ADMIN], now=self.now)
        self._schedule(service, users)
        with pytest.raises(ValidationError):
            self._schedule(service, users)

    def test_certificate_requires_evidence(self, executor, store, users):
        service = PossessionService(executor)
        possession = self._schedule(service, users)
        with pytest.raises(InvalidTransition):
            service.generate_certificate(possession["id"], users[Role.CASE_OFFICER])
        with pytest.raises(ValidationError):
            service.upload_evidence(possession["id"], [_photo()], users[Role.CASE_OFFICER])

        # state forced past evidence capture without any media
        store.set_entity_status("possession", possession["id"], "scheduled", "evidence_captured")
        with pytest.raises(ValidationError):
            service.generate_certificate(possession["id"], users[Role.CASE_OFFICER])
        stored = store.get_entity("possession", possession["id"])
        assert stored["status"] == "evidence_captured"
        assert stored.get("certificate_pdf_path") is None

    def test_failed_evidence_transition_leaves_no_media(self, executor, store, users):
        service = PossessionService(executor)
        possession = self._schedule(service, users)
        store.set_entity_status("possession", possession["id"], "scheduled", "in_progress")
        original = store.set_entity_status

        def lose_race(kind, entity_id, expected, status, values=None):
            if kind == "possession":
                return False
            return original(kind, entity_id, expected, status, values)

        store.set_entity_status = lose_race
        with pytest.raises(ConcurrencyConflict):
            service.upload_evidence(possession["id"], [_photo()], users[Role.CASE_OFFICER])
        store.set_entity_status = original

        assert store.list_entities("possession_media", possession_id=possession["id"]) == []
        assert store.get_entity("possession", possession["id"])["status"] == "in_progress"

        updated = service.upload_evidence(possession["id"], [_photo()], users[Role.CASE_OFFICER])
        assert updated["status"] == "evidence_captured" and updated["photo_count"] == 1
