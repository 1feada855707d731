"""
Transition executor: role gates, documents sealed before the state write,
lost races, and post-commit side effects.
"""

import os
import threading

import pytest

from apps.api.services.document_integrity import verify_document
from apps.api.services.documents import register_default_documents
from apps.api.services.errors import ConcurrencyConflict, DocumentGenerationError, Unauthorized
from apps.api.services.land_notification_service import LandNotificationService
from apps.api.services.transition_executor import TransitionExecutor
from apps.api.services.workflow_registry import Role

from conftest import FailingRenderer, RecordingNotifier


def _award(store, status="fin_review", created_by=None):
    return store.create_entity("award", {
        "status": status,
        "award_no": "AWARD-2025-001",
        "owner_name": "Ramesh",
        "amount": 250000.0,
        "created_by": created_by,
    })


# =========================================================================
# Role gates
# =========================================================================

class TestRoleGates:

    def test_legal_review_requires_legal_officer(self, executor, store, users):
        service = LandNotificationService(executor)
        notification = service.create_notification(
            {"type": "sec11", "title": "Ring road phase 2"}, [11, 12], users[Role.CASE_OFFICER]
        )
        assert notification["status"] == "draft"

        with pytest.raises(Unauthorized) as exc:
            executor.transition("land_notification", notification["id"], "legal_review", users[Role.CASE_OFFICER])
        assert exc.value.details["actor_role"] == Role.CASE_OFFICER
        assert store.get_entity("land_notification", notification["id"])["status"] == "draft"

        result = executor.transition("land_notification", notification["id"], "legal_review",
                                     users[Role.LEGAL_OFFICER])
        assert result.state == "legal_review"
        assert store.get_entity("land_notification", notification["id"])["status"] == "legal_review"

    def test_admin_always_passes(self, executor, store, users):
        award = _award(store, status="draft")
        assert executor.transition("award", award["id"], "fin_review", users[Role.ADMIN]).state == "fin_review"

    def test_anonymous_actor_rejected_on_gated_state(self, executor, store):
        award = _award(store, status="draft")
        with pytest.raises(Unauthorized):
            executor.transition("award", award["id"], "fin_review", None)

    def test_ungated_state_needs_no_user(self, store):
        executor = TransitionExecutor(store)
        sia = store.create_entity("sia", {"status": "draft"})
        assert executor.transition("sia", sia["id"], "published", None).state == "published"


# =========================================================================
# Documents and atomicity
# =========================================================================

class TestDocumentBeforeState:

    def test_issue_seals_award_order(self, executor, store, users, renderer):
        award = _award(store)
        result = executor.transition("award", award["id"], "issued", users[Role.FINANCE_OFFICER])

        stored = store.get_entity("award", award["id"])
        assert stored["status"] == "issued"
        assert stored["award_pdf_path"] == result.document.file_path
        assert stored["hash_sha256"] == result.document.hash_sha256
        assert verify_document(stored["award_pdf_path"], stored["hash_sha256"])
        assert stored["document_uuids"] == [result.document.document_uuid]
        assert renderer.calls[-1]["url"] == stored["qr_verification_url"]
        assert executor.vault.verify_by_hash("award", stored["hash_sha256"])["verified"] is True

    def test_render_failure_keeps_fin_review(self, store, vault, users):
        executor = register_default_documents(TransitionExecutor(store, vault=vault), FailingRenderer())
        award = _award(store)
        with pytest.raises(DocumentGenerationError):
            executor.transition("award", award["id"], "issued", users[Role.FINANCE_OFFICER])
        stored = store.get_entity("award", award["id"])
        assert stored["status"] == "fin_review"
        assert "award_pdf_path" not in stored
        assert store.list_entities("document") == []

    def test_lost_race_discards_document(self, executor, store, users):
        award = _award(store)
        original = store.set_entity_status

        def racing_set_status(kind, entity_id, expected, status, values=None):
            # another writer issues the award between our read and our write
            original(kind, entity_id, expected, status, {"issued_by_other": True})
            return original(kind, entity_id, expected, status, values)

        store.set_entity_status = racing_set_status
        with pytest.raises(ConcurrencyConflict):
            executor.transition("award", award["id"], "issued", users[Role.FINANCE_OFFICER])

        stored = store.get_entity("award", award["id"])
        assert stored["issued_by_other"] is True
        assert "award_pdf_path" not in stored
        documents = store.list_entities("document")
        assert len(documents) == 1 and documents[0]["voided"] is True
        assert not os.path.exists(documents[0]["file_path"])

    def test_concurrent_transitions_one_winner(self, executor, store, users):
        award = _award(store)
        outcomes = []
        lock = threading.Lock()
        barrier = threading.Barrier(4)

        def worker():
            barrier.wait()
            try:
                executor.transition("award", award["id"], "issued", users[Role.FINANCE_OFFICER])
                outcome = "ok"
            except ConcurrencyConflict:
                outcome = "conflict"
            except Exception as e:
                outcome = type(e).__name__
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert all(o in ("conflict", "InvalidTransition") for o in outcomes if o != "ok")
        live = [d for d in store.list_entities("document") if not d.get("voided")]
        assert len(live) == 1
        assert store.get_entity("award", award["id"])["hash_sha256"] == live[0]["hash_sha256"]


# =========================================================================
# After commit
# =========================================================================

class TestAfterCommit:

    def test_creator_notified_not_actor(self, store, vault, users):
        notifier = RecordingNotifier()
        executor = TransitionExecutor(store, vault=vault, notifier=notifier)
        sia = store.create_entity("sia", {"status": "draft", "created_by": users[Role.CASE_OFFICER]})
        result = executor.transition("sia", sia["id"], "published", users[Role.ADMIN])
        assert result.notified == [users[Role.CASE_OFFICER]]
        assert notifier.sent[0]["related_type"] == "sia"

        executor.transition("sia", sia["id"], "hearing_scheduled", users[Role.CASE_OFFICER])
        assert len(notifier.sent) == 1

    def test_failing_notifier_and_hook_do_not_undo_commit(self, store, users):
        class BrokenNotifier:
            def notify(self, *args, **kwargs):
                raise ConnectionError("smtp down")

        executor = TransitionExecutor(store, notifier=BrokenNotifier())
        calls = []

        def hook(result, actor_id):
            calls.append(result.state)
            raise ValueError("hook failed")

        executor.on_commit("sia", "published", hook)
        sia = store.create_entity("sia", {"status": "draft", "created_by": users[Role.CASE_OFFICER]})
        result = executor.transition("sia", sia["id"], "published", users[Role.ADMIN])
        assert result.notified == []
        assert calls == ["published"]
        assert store.get_entity("sia", sia["id"])["status"] == "published"

    def test_values_written_with_status(self, store, users):
        executor = TransitionExecutor(store)
        sia = store.create_entity("sia", {"status": "published"})
        executor.transition("sia", sia["id"], "hearing_scheduled", users[Role.ADMIN],
                            values={"venue": "Tehsil office"})
        stored = store.get_entity("sia", sia["id"])
        assert stored["venue"] == "Tehsil office"
        assert stored["last_actor_id"] == users[Role.ADMIN]
        assert "hearing_scheduled" in stored["state_entered_at"]

    def test_workflow_owned_values_dropped(self, executor, store, users):
        sia = store.create_entity("sia", {"status": "hearing_completed", "notice_no": "SIA-2025-001",
                                          "created_by": users[Role.CASE_OFFICER]})
        result = executor.transition("sia", sia["id"], "report_generated", users[Role.ADMIN], values={
            "notice_no": "SIA-FORGED", "report_pdf_path": "/tmp/forged.pdf", "hash_sha256": "00" * 32,
            "created_by": users[Role.ADMIN], "report_summary": "Hearing held, 4 submissions",
        })
        stored = store.get_entity("sia", sia["id"])
        assert stored["notice_no"] == "SIA-2025-001"
        assert stored["created_by"] == users[Role.CASE_OFFICER]
        assert stored["report_pdf_path"] == result.document.file_path
        assert stored["hash_sha256"] == result.document.hash_sha256
        assert stored["report_summary"] == "Hearing held, 4 submissions"
