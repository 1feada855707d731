# apps/api/services/documents.py
"""
Content of the sealed documents: one builder per document type. Each builder
takes the entity record (with the values of the pending state change merged
in) and returns a renderer ``render(verification_url) -> bytes``.
"""

from typing import Any, Dict, List, Tuple

from .transition_executor import DocumentHook, TransitionExecutor
from .workflow_registry import (
    AwardState,
    EntityKind,
    LandNotificationState,
    NotificationType,
    PossessionState,
    SiaState,
    has_entered,
)


def _lines(record: Dict[str, Any], fields: List[Tuple[str, str]]) -> List[str]:
    lines = []
    for label, key in fields:
        value = record.get(key)
        if value is None or value == "":
            continue
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value)
        lines.append(f"{label}: {value}")
    return lines


def notification_title(notification: Dict[str, Any]) -> str:
    # a sec11 notification published a second time is the final declaration
    if notification.get("type") == NotificationType.SEC19 or has_entered(
        notification, LandNotificationState.OBJECTION_RESOLVED
    ):
        return "Section 19 Declaration / धारा 19 घोषणा"
    return "Section 11 Preliminary Notification / धारा 11 प्रारंभिक अधिसूचना"


def notification_renderer(renderer, notification: Dict[str, Any]):
    lines = _lines(notification, [
        ("Reference No", "ref_no"),
        ("Title", "title"),
        ("District", "district"),
        ("Tehsil", "tehsil"),
        ("Village", "village"),
        ("Parcels", "parcel_ids"),
        ("Publish Date", "publish_date"),
        ("Approved By", "approved_by"),
    ])
    if notification.get("description"):
        lines.append("")
        lines.extend(str(notification["description"]).splitlines())
    title = notification_title(notification)
    return lambda url: renderer.render(title, lines, url)


def sia_report_renderer(renderer, sia: Dict[str, Any]):
    lines = _lines(sia, [
        ("Notice No", "notice_no"),
        ("Title", "title"),
        ("Project", "project_name"),
        ("Start Date", "start_date"),
        ("End Date", "end_date"),
        ("Hearing Date", "hearing_date"),
        ("Venue", "venue"),
        ("Feedback Received", "feedback_count"),
    ])
    if sia.get("report_summary"):
        lines.append("")
        lines.extend(str(sia["report_summary"]).splitlines())
    return lambda url: renderer.render("Social Impact Assessment Report / सामाजिक समाघात निर्धारण प्रतिवेदन", lines, url)


def award_renderer(renderer, award: Dict[str, Any]):
    lines = _lines(award, [
        ("Award No", "award_no"),
        ("LOI No", "loi_no"),
        ("Parcel", "parcel_no"),
        ("Owner", "owner_name"),
        ("Share (%)", "share_pct"),
        ("Amount (INR)", "amount"),
        ("Award Date", "award_date"),
        ("Approved By", "approved_by"),
    ])
    return lambda url: renderer.render("Compensation Award / प्रतिकर अवार्ड", lines, url)


def loi_renderer(renderer, award: Dict[str, Any]):
    lines = _lines(award, [
        ("LOI No", "loi_no"),
        ("Parcel", "parcel_no"),
        ("Owner", "owner_name"),
        ("Share (%)", "share_pct"),
        ("Proposed Amount (INR)", "amount"),
    ])
    return lambda url: renderer.render("Letter of Intent / आशय पत्र", lines, url)


def receipt_renderer(renderer, award: Dict[str, Any], payment: Dict[str, Any]):
    lines = _lines(award, [("Award No", "award_no"), ("Owner", "owner_name")])
    lines += _lines(payment, [
        ("Amount (INR)", "amount"),
        ("Mode", "mode"),
        ("Reference No", "reference_no"),
        ("Paid On", "paid_on"),
    ])
    return lambda url: renderer.render("Payment Receipt / भुगतान रसीद", lines, url)


def possession_certificate_renderer(renderer, possession: Dict[str, Any]):
    lines = _lines(possession, [
        ("Reference No", "ref_no"),
        ("Parcel", "parcel_id"),
        ("Scheduled", "schedule_dt"),
        ("Started", "started_at"),
        ("Photos", "photo_count"),
        ("Remarks", "remarks"),
    ])
    return lambda url: renderer.render("Possession Certificate / कब्जा प्रमाणपत्र", lines, url)


def register_default_documents(executor: TransitionExecutor, renderer) -> TransitionExecutor:
    """Attach the document each document-producing state requires."""
    executor.register_document(
        EntityKind.LAND_NOTIFICATION, LandNotificationState.PUBLISHED,
        DocumentHook("notification", lambda e: notification_renderer(renderer, e)),
    )
    executor.register_document(
        EntityKind.SIA, SiaState.REPORT_GENERATED,
        DocumentHook("sia_report", lambda e: sia_report_renderer(renderer, e), path_field="report_pdf_path"),
    )
    executor.register_document(
        EntityKind.AWARD, AwardState.ISSUED,
        DocumentHook("award", lambda e: award_renderer(renderer, e), path_field="award_pdf_path"),
    )
    executor.register_document(
        EntityKind.POSSESSION, PossessionState.CERTIFICATE_ISSUED,
        DocumentHook("possession_certificate", lambda e: possession_certificate_renderer(renderer, e),
                     path_field="certificate_pdf_path"),
    )
    return executor
