# apps/api/services/compensation_service.py

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Optional

from . import guards, sequence
from .documents import loi_renderer, receipt_renderer
from .errors import ConcurrencyConflict, NotFound, ValidationError
from .notifier import create_role_tasks, notify_role
from .transition_executor import TransitionExecutor, TransitionResult
from .utils import to_iso, utcnow
from .workflow_registry import AwardState, EntityKind, Role

_logger = logging.getLogger(__name__)

KIND = EntityKind.AWARD
_A = AwardState

PAYMENT_MODES = ("neft", "upi", "pfms")
PAYMENT_STATUSES = ("initiated", "success", "failed")

_PAISE = Decimal("0.01")


def _decimal(value, field_name: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid {field_name}: {value!r}") from None
    if not result.is_finite():
        raise ValidationError(f"Invalid {field_name}: {value!r}")
    return result


def calculate_compensation(circle_rate, area_sq_m, multipliers: Optional[Iterable] = None) -> float:
    """
    circle rate x area x every multiplier, rounded to paise.

    >>> calculate_compensation(1500, 200, [2, 1.1])
    660000.0
    """
    rate = _decimal(circle_rate, "circle_rate")
    area = _decimal(area_sq_m, "area_sq_m")
    if rate < 0 or area <= 0:
        raise ValidationError("Circle rate must be non-negative and area positive")
    amount = rate * area
    for m in multipliers or []:
        factor = _decimal(m, "multiplier")
        if factor <= 0:
            raise ValidationError("Multipliers must be positive", multiplier=str(m))
        amount *= factor
    return float(amount.quantize(_PAISE, rounding=ROUND_HALF_UP))


class CompensationService:
    def __init__(self, executor: TransitionExecutor, renderer=None, ref_padding: int = 3):
        self.executor = executor
        self.store = executor.store
        self.renderer = renderer
        self.ref_padding = ref_padding

    @property
    def vault(self):
        if self.executor.vault is None:
            raise ValidationError("No document vault configured")
        return self.executor.vault

    # ------------------------------------------------------------------
    # Valuation
    # ------------------------------------------------------------------
    def create_valuation(self, parcel_id, circle_rate, area_sq_m, multipliers=None, user_id=None) -> Dict[str, Any]:
        multipliers = list(multipliers or [])
        amount = calculate_compensation(circle_rate, area_sq_m, multipliers)
        record = self.store.create_entity("valuation", {
            "parcel_id": parcel_id,
            "circle_rate": float(circle_rate),
            "area_sq_m": float(area_sq_m),
            "multipliers": [float(m) for m in multipliers],
            "computed_amount": amount,
            "created_by": user_id,
        })
        _logger.info(f"Valuation {record['id']} for parcel {parcel_id}: {amount}")
        return record

    def latest_valuation(self, parcel_id) -> Dict[str, Any]:
        valuations = self.store.list_entities("valuation", parcel_id=parcel_id)
        if not valuations:
            raise NotFound("Valuation not found for this parcel", parcel_id=parcel_id)
        return valuations[-1]

    # ------------------------------------------------------------------
    # Award
    # ------------------------------------------------------------------
    def create_award(self, data: Dict[str, Any], user_id) -> Dict[str, Any]:
        """
        Create a draft award from the parcel's latest valuation and issue
        its Letter of Intent. The LOI is sealed before the award is stored.
        """
        parcel_id = data.get("parcel_id")
        if parcel_id is None:
            raise ValidationError("Parcel is required")
        if not data.get("owner_id"):
            raise ValidationError("Owner is required")
        share = _decimal(data.get("share_pct", 100), "share_pct")
        if share <= 0 or share > 100:
            raise ValidationError("Share must be between 0 and 100", share_pct=float(share))

        valuation = self.latest_valuation(parcel_id)
        amount = (Decimal(str(valuation["computed_amount"])) * share / 100).quantize(_PAISE, rounding=ROUND_HALF_UP)

        values = {
            "parcel_id": parcel_id,
            "parcel_no": data.get("parcel_no"),
            "owner_id": data.get("owner_id"),
            "owner_name": data.get("owner_name"),
            "share_pct": float(share),
            "valuation_id": valuation["id"],
            "amount": float(amount),
            "status": _A.DRAFT.value,
            "created_by": user_id,
            "loi_no": sequence.next_reference(self.store, sequence.LOI, padding=self.ref_padding),
            "award_no": sequence.next_reference(self.store, sequence.AWARD, padding=self.ref_padding),
        }

        loi = None
        if self.renderer is not None:
            loi = self.vault.issue("loi", loi_renderer(self.renderer, values), entity_kind=KIND.value)
            values.update({
                "loi_pdf_path": loi.file_path,
                "loi_hash": loi.hash_sha256,
                "document_uuids": [loi.document_uuid],
            })
        try:
            award = self.store.create_entity(KIND, values)
        except Exception:
            if loi is not None:
                self.vault.discard(loi)
            raise
        if loi is not None:
            loi.entity_id = award["id"]
            self.vault.register(loi)
        _logger.info(f"Award {award['award_no']} created for parcel {parcel_id}, amount {award['amount']}")
        return award

    def submit_for_finance_review(self, award_id, user_id) -> TransitionResult:
        result = self.executor.transition(KIND, award_id, _A.FIN_REVIEW, user_id,
                                          values={"submitted_at": to_iso(utcnow())})
        award_no = result.entity.get("award_no")
        notify_role(self.store, self.executor.notifier, [Role.FINANCE_OFFICER],
                    "Finance Review Required", f"Award {award_no} requires finance approval",
                    event_type="approval_required", related_type=KIND.value, related_id=award_id)
        create_role_tasks(self.store, [Role.FINANCE_OFFICER], KIND.value, award_id,
                          f"Finance review: {award_no}", due_in_hours=24)
        return result

    def approve_award(self, award_id, approver_id, comments: Optional[str] = None) -> TransitionResult:
        """Issue the award; the award order PDF is sealed as part of the transition."""
        return self.executor.transition(KIND, award_id, _A.ISSUED, approver_id, values={
            "approved_by": approver_id,
            "approval_comments": comments,
            "award_date": to_iso(utcnow()),
        })

    def send_back(self, award_id, user_id, reason: str) -> TransitionResult:
        if not (reason or "").strip():
            raise ValidationError("A reason is required when sending an award back")
        return self.executor.transition(KIND, award_id, _A.DRAFT, user_id, values={"send_back_reason": reason})

    def close(self, award_id, user_id) -> TransitionResult:
        return self.executor.transition(KIND, award_id, _A.CLOSED, user_id)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------
    def record_payment(self, award_id, amount, mode: str, reference_no: str, user_id,
                       status: str = "initiated") -> Dict[str, Any]:
        award = self.store.require_entity(KIND, award_id)
        if award.get("status") != _A.ISSUED.value:
            raise ValidationError("Payment can only be recorded for issued awards", status=award.get("status"))
        if mode not in PAYMENT_MODES:
            raise ValidationError("Invalid payment mode", mode=mode, allowed=list(PAYMENT_MODES))
        if status not in PAYMENT_STATUSES:
            raise ValidationError("Invalid payment status", status=status)
        value = _decimal(amount, "amount")
        if value <= 0:
            raise ValidationError("Payment amount must be positive")
        if not (reference_no or "").strip():
            raise ValidationError("Payment reference number is required")

        payment = {
            "award_id": award["id"],
            "amount": float(value.quantize(_PAISE, rounding=ROUND_HALF_UP)),
            "mode": mode,
            "reference_no": reference_no,
            "status": status,
            "paid_on": to_iso(utcnow()),
            "recorded_by": user_id,
        }
        receipt = None
        if self.renderer is not None:
            receipt = self.vault.issue("receipt", receipt_renderer(self.renderer, award, payment), entity_kind="payment")
            payment.update({"receipt_pdf_path": receipt.file_path, "receipt_hash": receipt.hash_sha256})
        try:
            record = self.store.create_entity("payment", payment)
        except Exception:
            if receipt is not None:
                self.vault.discard(receipt)
            raise
        if receipt is not None:
            receipt.entity_id = record["id"]
            self.vault.register(receipt)
        _logger.info(f"Payment {record['id']} ({status}) of {record['amount']} recorded for award {award.get('award_no')}")

        if status == "success":
            self._settle_if_paid(award["id"], user_id)
        return record

    def confirm_payment(self, payment_id, user_id) -> Dict[str, Any]:
        payment = self.store.require_entity("payment", payment_id)
        if not self.store.set_entity_status("payment", payment_id, "initiated", "success",
                                            {"confirmed_by": user_id, "confirmed_at": to_iso(utcnow())}):
            raise ConcurrencyConflict("Only initiated payments can be confirmed", status=payment.get("status"))
        self._settle_if_paid(payment["award_id"], user_id)
        return self.store.require_entity("payment", payment_id)

    def total_paid(self, award_id) -> Decimal:
        return guards.total_paid(self.store, award_id)

    def _settle_if_paid(self, award_id, user_id) -> Optional[TransitionResult]:
        award = self.store.require_entity(KIND, award_id)
        if award.get("status") != _A.ISSUED.value:
            return None
        if self.total_paid(award_id) < Decimal(str(award.get("amount") or 0)):
            return None
        return self.executor.transition(KIND, award_id, _A.PAID, user_id, values={"paid_at": to_iso(utcnow())})
