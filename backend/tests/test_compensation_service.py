"""
Valuation, award review and payment settlement.
"""

import pytest

from apps.api.services.compensation_service import CompensationService, calculate_compensation
from apps.api.services.document_integrity import verify_document
from apps.api.services.errors import NotFound, Unauthorized, ValidationError
from apps.api.services.workflow_registry import Role


class TestCalculateCompensation:

    def test_rate_times_area_times_multipliers(self):
        assert calculate_compensation(1500, 200, [2, 1.1]) == 660000.0

    def test_rounds_to_paise(self):
        assert calculate_compensation("10.005", 1) == 10.01
        assert calculate_compensation(1, "3.333") == 3.33

    @pytest.mark.parametrize("rate, area, multipliers", [
        (-1, 10, None),
        (10, 0, None),
        ("abc", 10, None),
        (10, 10, [0]),
        (10, "nan", None),
    ])
    def test_invalid_inputs(self, rate, area, multipliers):
        with pytest.raises(ValidationError):
            calculate_compensation(rate, area, multipliers)


class TestAwardLifecycle:

    def setup_method(self):
        self.owner = {"parcel_id": 42, "parcel_no": "KH-42", "owner_id": 9, "owner_name": "Sunita Devi"}

    def _service(self, executor, renderer):
        return CompensationService(executor, renderer=renderer)

    def test_create_award_issues_loi(self, executor, store, users, renderer):
        service = self._service(executor, renderer)
        service.create_valuation(42, 1000, 500, [2], users[Role.CASE_OFFICER])
        award = service.create_award(dict(self.owner, share_pct=50), users[Role.CASE_OFFICER])

        assert award["status"] == "draft"
        assert award["amount"] == 500000.0
        assert award["loi_no"].startswith("LOI-") and award["award_no"].startswith("AWARD-")
        assert verify_document(award["loi_pdf_path"], award["loi_hash"])
        document = executor.vault.get_by_uuid(award["document_uuids"][0])
        assert document.entity_id == award["id"] and document.document_type == "loi"

    def test_award_needs_valuation_and_valid_share(self, executor, users, renderer):
        service = self._service(executor, renderer)
        with pytest.raises(NotFound):
            service.create_award(self.owner, users[Role.CASE_OFFICER])
        service.create_valuation(42, 1000, 500)
        with pytest.raises(ValidationError):
            service.create_award(dict(self.owner, share_pct=120), users[Role.CASE_OFFICER])

    def test_review_issue_and_pay(self, executor, store, users, renderer):
        service = self._service(executor, renderer)
        service.create_valuation(42, 1000, 100)
        award = service.create_award(self.owner, users[Role.CASE_OFFICER])

        with pytest.raises(Unauthorized):
            service.submit_for_finance_review(award["id"], users[Role.CASE_OFFICER])
        service.submit_for_finance_review(award["id"], users[Role.FINANCE_OFFICER])
        assert store.list_entities("task", request_type="award", request_id=award["id"])

        issued = service.approve_award(award["id"], users[Role.FINANCE_OFFICER], "Approved").entity
        assert issued["status"] == "issued"
        assert verify_document(issued["award_pdf_path"], issued["hash_sha256"])

        first = service.record_payment(award["id"], 40000, "neft", "UTR001", users[Role.FINANCE_OFFICER],
                                       status="success")
        assert verify_document(first["receipt_pdf_path"], first["receipt_hash"])
        assert store.get_entity("award", award["id"])["status"] == "issued"

        pending = service.record_payment(award["id"], 60000, "pfms", "PFMS-77", users[Role.FINANCE_OFFICER])
        assert store.get_entity("award", award["id"])["status"] == "issued"
        service.confirm_payment(pending["id"], users[Role.FINANCE_OFFICER])
        assert store.get_entity("award", award["id"])["status"] == "paid"

        assert service.close(award["id"], users[Role.ADMIN]).state == "closed"

    def test_payment_rules(self, executor, users, renderer):
        service = self._service(executor, renderer)
        service.create_valuation(42, 1000, 100)
        award = service.create_award(self.owner, users[Role.CASE_OFFICER])
        with pytest.raises(ValidationError):
            service.record_payment(award["id"], 100, "neft", "UTR", users[Role.FINANCE_OFFICER])

        service.submit_for_finance_review(award["id"], users[Role.FINANCE_OFFICER])
        service.approve_award(award["id"], users[Role.FINANCE_OFFICER])
        with pytest.raises(ValidationError):
            service.record_payment(award["id"], 100, "cash", "UTR", users[Role.FINANCE_OFFICER])
        with pytest.raises(ValidationError):
            service.record_payment(award["id"], 0, "upi", "UTR", users[Role.FINANCE_OFFICER])
        with pytest.raises(ValidationError):
            service.record_payment(award["id"], 10, "upi", " ", users[Role.FINANCE_OFFICER])

    def test_send_back_to_draft(self, executor, users, renderer):
        service = self._service(executor, renderer)
        service.create_valuation(42, 1000, 100)
        award = service.create_award(self.owner, users[Role.CASE_OFFICER])
        service.submit_for_finance_review(award["id"], users[Role.FINANCE_OFFICER])
        assert service.send_back(award["id"], users[Role.FINANCE_OFFICER], "Wrong share").state == "draft"

    def test_without_renderer_no_loi(self, executor, users):
        service = CompensationService(executor)
        service.create_valuation(42, 1000, 100)
        award = service.create_award(self.owner, users[Role.CASE_OFFICER])
        assert "loi_pdf_path" not in award
