# apps/api/views.py

import json
import logging
from functools import wraps

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt

from .services import get_executor, get_store, get_vault
from .services.document_integrity import DOCUMENT_TYPES
from .services.draw_engine import conduct_scheme_draw, load_draw_audit, verify_draw
from .services.errors import LamsError, ValidationError
from .services.workflow_registry import get_workflow, state_label, valid_next_states

_logger = logging.getLogger(__name__)


# -------------------------
# Helpers
# -------------------------
def _json_errors(view):
    """Map workflow errors to JSON responses with their HTTP status."""
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            return view(request, *args, **kwargs)
        except LamsError as e:
            return JsonResponse(e.to_dict(), status=e.http_status)
        except Exception as e:
            _logger.error(f"Unhandled error in {view.__name__}: {str(e)}", exc_info=True)
            return JsonResponse({"error": "Internal server error"}, status=500)
    return wrapper


def _read_json(request) -> dict:
    try:
        body = json.loads(request.body or b"{}")
    except ValueError:
        raise ValidationError("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _int_param(value, name: str):
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer", **{name: value}) from None


# -------------------------
# API: Document verification (public)
# -------------------------
@_json_errors
def verify_document_view(request, document_type, hash_sha256):
    """
    GET /api/verify/<document_type>/<hash>/
    Returns {verified, pdfVerified, metadata}; unknown hashes give 404 with verified=false.
    """
    if document_type not in DOCUMENT_TYPES:
        return JsonResponse({"error": "Invalid document type", "allowed": list(DOCUMENT_TYPES)}, status=400)
    payload = get_vault(get_store()).verify_by_hash(document_type, hash_sha256)
    return JsonResponse(payload, status=200 if payload["verified"] else 404)


@_json_errors
def verify_document_uuid_view(request, document_uuid):
    """
    GET /api/documents/<uuid>/verify/
    Target of the QR code printed on every sealed document.
    """
    payload = get_vault(get_store()).verify_by_uuid(str(document_uuid))
    return JsonResponse(payload, status=200 if payload["verified"] else 404)


# -------------------------
# API: Workflow
# -------------------------
@_json_errors
def next_states_view(request, kind):
    """
    GET /api/workflow/<kind>/next-states/?state=draft
    GET /api/workflow/<kind>/next-states/?id=12   (uses the entity's data)
    """
    workflow = get_workflow(kind)
    entity_id = _int_param(request.GET.get("id"), "id")
    entity = None
    if entity_id is not None:
        entity = get_store().require_entity(workflow.kind, entity_id)
        state = entity.get("status")
    else:
        state = (request.GET.get("state") or "").strip()
        if not state:
            return JsonResponse({"error": "state or id is required"}, status=400)

    states = valid_next_states(workflow.kind, state, entity)
    return JsonResponse({
        "kind": workflow.kind.value,
        "state": workflow.coerce_state(state).value,
        "next_states": [
            {"state": s, "label": state_label(s), "required_roles": sorted(workflow.required_roles(s))}
            for s in states
        ],
    })


@csrf_exempt
@_json_errors
def transition_view(request, kind, entity_id):
    """
    POST /api/workflow/<kind>/<id>/transition/
    body: {"target_state": "...", "actor_id": 3}
    Field values are set through the services, not through this endpoint.
    """
    if request.method != "POST":
        return JsonResponse({"error": "POST only"}, status=405)

    body = _read_json(request)
    target_state = (body.get("target_state") or "").strip()
    if not target_state:
        return JsonResponse({"error": "target_state is required"}, status=400)
    actor_id = _int_param(body.get("actor_id"), "actor_id")

    result = get_executor().transition(kind, entity_id, target_state, actor_id)
    return JsonResponse({
        "kind": result.kind.value,
        "id": result.entity.get("id"),
        "previous_state": result.previous_state,
        "status": result.state,
        "label": state_label(result.state),
        "document": {
            "document_uuid": result.document.document_uuid,
            "document_type": result.document.document_type,
            "hash_sha256": result.document.hash_sha256,
            "qr_verification_url": result.document.qr_verification_url,
        } if result.document else None,
        "entity": result.entity,
    })


# -------------------------
# API: E-draw
# -------------------------
@csrf_exempt
@_json_errors
def conduct_draw_view(request, scheme_id):
    """
    POST /api/schemes/<scheme_id>/draw/
    body: {"selected_count": 3, "actor_id": 1}
    """
    if request.method != "POST":
        return JsonResponse({"error": "POST only"}, status=405)
    body = _read_json(request)
    selected_count = body.get("selected_count")
    if not isinstance(selected_count, int) or isinstance(selected_count, bool):
        return JsonResponse({"error": "selected_count must be an integer"}, status=400)

    audit = conduct_scheme_draw(get_store(), scheme_id, selected_count,
                                actor_id=_int_param(body.get("actor_id"), "actor_id"))
    return JsonResponse({
        "draw_id": audit.draw_id,
        "audit_hash": audit.audit_hash,
        "selected_count": audit.selected_count,
        "total_applications": audit.total_applications,
        "verify": f"/api/draw/{audit.draw_id}/verify/",
    })


@_json_errors
def verify_draw_view(request, draw_id):
    """
    GET /api/draw/<draw_id>/verify/
    Recomputes the draw's hashes from the stored audit.
    """
    audit = load_draw_audit(get_store(), draw_id)
    return JsonResponse({
        "draw_id": audit.draw_id,
        "scheme_id": audit.scheme_id,
        "verified": verify_draw(audit),
        "audit_hash": audit.audit_hash,
        "draw_date": audit.draw_date,
        "selected": [
            {"application_id": r.application_id, "draw_sequence": r.draw_sequence}
            for r in sorted(audit.selected, key=lambda r: r.draw_sequence)
        ],
    })
