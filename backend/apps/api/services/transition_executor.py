# apps/api/services/transition_executor.py
"""
Single entry point for workflow state changes.

    transition(kind, entity_id, target_state, actor_id)

1. load the entity and its current status
2. check the edge against the workflow graph          -> InvalidTransition
3. check the role gate of the target state (admin passes) -> Unauthorized
4. land notification entering objection_resolved: every objection terminal
                                                       -> ObjectionsPending
   guards registered for the target state               -> ValidationError
5. generate + seal the document the target state needs (before any write)
6. compare-and-set the status                          -> ConcurrencyConflict
7. after commit: register hooks, notify (failures logged only)

A failure at any step before 6 leaves nothing persisted; a document written
in step 5 is discarded if step 6 does not commit.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .document_integrity import DocumentVault, Renderer, VerifiableDocument
from .errors import ConcurrencyConflict, LamsError, Unauthorized, ValidationError
from .notifier import Notifier, safe_notify
from .objection_gate import ensure_objections_cleared
from .workflow_registry import (
    EntityKind,
    LandNotificationState,
    Role,
    coerce_kind,
    get_workflow,
    state_label,
)

_logger = logging.getLogger(__name__)

# set by the workflow itself, never taken from caller values
WORKFLOW_OWNED_KEYS = frozenset({
    "type", "ref_no", "notice_no", "award_no", "loi_no", "created_by",
    "document_uuids", "last_actor_id", "pdf_path", "hash_sha256", "qr_verification_url",
})


@dataclass(frozen=True)
class DocumentHook:
    """Document a target state requires; its path/hash are stored on the entity."""

    document_type: str
    build: Callable[[Dict[str, Any]], Renderer]
    path_field: str = "pdf_path"
    hash_field: str = "hash_sha256"
    url_field: Optional[str] = "qr_verification_url"


@dataclass
class TransitionResult:
    kind: EntityKind
    entity: Dict[str, Any]
    previous_state: str
    state: str
    document: Optional[VerifiableDocument] = None
    notified: List[Any] = field(default_factory=list)


AfterCommit = Callable[[TransitionResult, Any], None]

# guard(store, entity, pending_values) -> extra values or None; raises to refuse
Guard = Callable[[Any, Dict[str, Any], Dict[str, Any]], Optional[Dict[str, Any]]]


class TransitionExecutor:
    def __init__(self, store, vault: Optional[DocumentVault] = None, notifier: Optional[Notifier] = None):
        self.store = store
        self.vault = vault
        self.notifier = notifier
        self._documents: Dict[Tuple[EntityKind, str], DocumentHook] = {}
        self._after_commit: Dict[Tuple[EntityKind, str], List[AfterCommit]] = {}
        self._guards: Dict[Tuple[EntityKind, str], List[Guard]] = {}

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def register_document(self, kind, target_state, hook: DocumentHook) -> None:
        workflow = get_workflow(kind)
        self._documents[(workflow.kind, workflow.coerce_state(target_state).value)] = hook

    def register_guard(self, kind, target_state, guard: Guard) -> None:
        workflow = get_workflow(kind)
        key = (workflow.kind, workflow.coerce_state(target_state).value)
        self._guards.setdefault(key, []).append(guard)

    def on_commit(self, kind, target_state, callback: AfterCommit) -> None:
        workflow = get_workflow(kind)
        key = (workflow.kind, workflow.coerce_state(target_state).value)
        self._after_commit.setdefault(key, []).append(callback)

    def document_hook(self, kind, target_state) -> Optional[DocumentHook]:
        workflow = get_workflow(kind)
        return self._documents.get((workflow.kind, workflow.coerce_state(target_state).value))

    def owned_keys(self) -> frozenset:
        """Fields only the workflow writes: identity, authorship and every document field."""
        keys = set(WORKFLOW_OWNED_KEYS)
        for hook in self._documents.values():
            keys.update(k for k in (hook.path_field, hook.hash_field, hook.url_field) if k)
        return frozenset(keys)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------
    def check_gate(self, kind, target_state, actor_id) -> Optional[str]:
        """Raise Unauthorized unless the actor may enter ``target_state``. Returns the actor's role."""
        required = get_workflow(kind).required_roles(target_state)
        if not required:
            return None
        if actor_id is None:
            raise Unauthorized(
                f"Login required to move to {state_label(target_state)}",
                required_roles=sorted(required),
                actor_role=None,
            )
        role = self.store.get_user_role(actor_id)
        if role == Role.ADMIN or role in required:
            return role
        raise Unauthorized(
            f"User does not have permission to move to {state_label(target_state)}",
            required_roles=sorted(required | {Role.ADMIN}),
            actor_role=role,
        )

    # ------------------------------------------------------------------
    # Transition
    # ------------------------------------------------------------------
    def transition(self, kind, entity_id, target_state, actor_id,
                   values: Optional[Dict[str, Any]] = None,
                   document: Optional[DocumentHook] = None) -> TransitionResult:
        """
        Move the entity to ``target_state``. ``values`` are written together
        with the status in the same atomic update; workflow-owned fields in
        them are dropped. ``document`` overrides the document hook registered
        for the target state.
        """
        kind = coerce_kind(kind)
        workflow = get_workflow(kind)
        entity = self.store.require_entity(kind, entity_id)
        current = workflow.coerce_state(entity.get("status"))

        owned = self.owned_keys()
        update = {k: v for k, v in (values or {}).items() if k not in owned}
        dropped = sorted(set(values or {}) - set(update))
        if dropped:
            _logger.warning(f"Ignoring workflow-owned fields for {kind.value} {entity_id}: {dropped}")

        try:
            target = workflow.ensure_transition(current, target_state, entity)
            self.check_gate(kind, target, actor_id)
            if kind == EntityKind.LAND_NOTIFICATION and target == LandNotificationState.OBJECTION_RESOLVED:
                ensure_objections_cleared(self.store, entity)
            for guard in self._guards.get((kind, target.value), []):
                update.update(guard(self.store, entity, update) or {})
        except LamsError as e:
            _logger.warning(f"Rejected {kind.value} {entity_id} {current.value} -> {target_state}: {e.message}")
            raise

        update["last_actor_id"] = actor_id
        hook = document or self._documents.get((kind, target.value))
        issued = None
        if hook is not None:
            issued = self._issue_document(kind, {**entity, **update}, hook)
            update[hook.path_field] = issued.file_path
            update[hook.hash_field] = issued.hash_sha256
            if hook.url_field:
                update[hook.url_field] = issued.qr_verification_url
            update["document_uuids"] = list(entity.get("document_uuids") or []) + [issued.document_uuid]

        try:
            committed = self.store.set_entity_status(kind, entity_id, current.value, target.value, update)
        except Exception:
            if issued is not None:
                self.vault.discard(issued)
            raise
        if not committed:
            if issued is not None:
                self.vault.discard(issued)
            _logger.warning(f"Concurrent update on {kind.value} {entity_id}; expected {current.value}")
            raise ConcurrencyConflict(
                f"{kind.value} {entity_id} changed while moving to {state_label(target)}; reload and retry",
                expected_state=current.value,
                target_state=target.value,
            )

        _logger.info(f"{kind.value} {entity_id}: {current.value} -> {target.value} by user {actor_id}")
        result = TransitionResult(
            kind=kind,
            entity=self.store.require_entity(kind, entity_id),
            previous_state=current.value,
            state=target.value,
            document=issued,
        )
        self._after(result, actor_id)
        return result

    def _issue_document(self, kind: EntityKind, entity: Dict[str, Any], hook: DocumentHook) -> VerifiableDocument:
        if self.vault is None:
            raise ValidationError(f"No document vault configured for {hook.document_type}")
        render = hook.build(entity)
        issued = self.vault.issue(hook.document_type, render, entity_kind=kind.value, entity_id=entity.get("id"))
        # registered before the status write so the hash is resolvable the
        # moment the entity shows it; voided again if the write fails
        try:
            self.vault.register(issued)
        except Exception:
            self.vault.discard(issued)
            raise
        return issued

    def _after(self, result: TransitionResult, actor_id) -> None:
        for callback in self._after_commit.get((result.kind, result.state), []):
            try:
                callback(result, actor_id)
            except Exception as e:
                _logger.error(
                    f"Post-transition hook failed for {result.kind.value} {result.entity.get('id')} "
                    f"({result.previous_state} -> {result.state}): {str(e)}",
                    exc_info=True,
                )

        owner = result.entity.get("created_by")
        if owner and owner != actor_id:
            ref = result.entity.get("ref_no") or f"#{result.entity.get('id')}"
            if safe_notify(
                self.notifier,
                owner,
                "Status Updated",
                f"{ref} moved from {state_label(result.previous_state)} to {state_label(result.state)}",
                related_type=result.kind.value,
                related_id=result.entity.get("id"),
            ):
                result.notified.append(owner)
