# apps/api/services/workflow_registry.py
"""
Workflow definitions for the LAMS process forms.

One ``WorkflowDefinition`` per entity kind declares the ordered states, the
legal transition graph, and the roles allowed to enter gated states. This is
the only place transitions are declared; the executor and the views read it.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .errors import InvalidTransition, ValidationError


class EntityKind(str, Enum):
    SIA = "sia"
    LAND_NOTIFICATION = "land_notification"
    AWARD = "award"
    POSSESSION = "possession"


class Role:
    ADMIN = "admin"
    LEGAL_OFFICER = "legal_officer"
    FINANCE_OFFICER = "finance_officer"
    CASE_OFFICER = "case_officer"
    CITIZEN = "citizen"


class SiaState(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    HEARING_SCHEDULED = "hearing_scheduled"
    HEARING_COMPLETED = "hearing_completed"
    REPORT_GENERATED = "report_generated"
    CLOSED = "closed"


class LandNotificationState(str, Enum):
    DRAFT = "draft"
    LEGAL_REVIEW = "legal_review"
    APPROVED = "approved"
    PUBLISHED = "published"
    OBJECTION_WINDOW_OPEN = "objection_window_open"
    OBJECTION_RESOLVED = "objection_resolved"
    CLOSED = "closed"


class AwardState(str, Enum):
    DRAFT = "draft"
    FIN_REVIEW = "fin_review"
    ISSUED = "issued"
    PAID = "paid"
    CLOSED = "closed"


class PossessionState(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    EVIDENCE_CAPTURED = "evidence_captured"
    CERTIFICATE_ISSUED = "certificate_issued"
    REGISTRY_UPDATED = "registry_updated"
    CLOSED = "closed"


class NotificationType:
    SEC11 = "sec11"
    SEC19 = "sec19"

    ALL = (SEC11, SEC19)


STATE_LABELS = {
    "draft": "Draft / मसौदा",
    "published": "Published / प्रकाशित",
    "hearing_scheduled": "Hearing Scheduled / सुनवाई निर्धारित",
    "hearing_completed": "Hearing Completed / सुनवाई पूर्ण",
    "report_generated": "Report Generated / रिपोर्ट तैयार",
    "legal_review": "Legal Review / विधिक समीक्षा",
    "approved": "Approved / अनुमोदित",
    "objection_window_open": "Objection Window Open / आपत्ति अवधि प्रारंभ",
    "objection_resolved": "Objections Resolved / आपत्तियां निराकृत",
    "fin_review": "Finance Review / वित्त समीक्षा",
    "issued": "Issued / जारी",
    "paid": "Paid / भुगतान किया गया",
    "scheduled": "Scheduled / निर्धारित",
    "in_progress": "In Progress / प्रगति में",
    "evidence_captured": "Evidence Captured / साक्ष्य संकलित",
    "certificate_issued": "Certificate Issued / प्रमाणपत्र जारी",
    "registry_updated": "Registry Updated / अभिलेख अद्यतन",
    "closed": "Closed / बंद",
}


def state_label(state) -> str:
    value = getattr(state, "value", state)
    return STATE_LABELS.get(value, str(value))


# Predicate over the stored entity record; decides whether an edge that
# depends on entity data (not just the state) is available.
EdgeCondition = Callable[[Mapping], bool]


@dataclass(frozen=True)
class WorkflowDefinition:
    kind: EntityKind
    states: Tuple[Enum, ...]
    transitions: Mapping[Enum, FrozenSet[Enum]]
    gated_by: Mapping[Enum, FrozenSet[str]] = field(default_factory=dict)
    conditions: Mapping[Tuple[Enum, Enum], EdgeCondition] = field(default_factory=dict)

    @property
    def state_enum(self):
        return type(self.states[0])

    @property
    def initial_state(self) -> Enum:
        return self.states[0]

    def coerce_state(self, value) -> Enum:
        """Return the enum member for ``value`` or raise ValidationError."""
        try:
            return self.state_enum(getattr(value, "value", value))
        except ValueError:
            raise ValidationError(
                f"Unknown {self.kind.value} state: {value!r}",
                kind=self.kind.value,
                state=str(getattr(value, "value", value)),
            ) from None

    def is_terminal(self, state) -> bool:
        return not self.transitions.get(self.coerce_state(state))

    def next_states(self, current_state, entity: Optional[Mapping] = None) -> List[Enum]:
        current = self.coerce_state(current_state)
        allowed = self.transitions.get(current, frozenset())
        result = []
        for state in self.states:
            if state not in allowed:
                continue
            condition = self.conditions.get((current, state))
            if entity is not None and condition is not None and not condition(entity):
                continue
            result.append(state)
        return result

    def allows(self, current_state, target_state, entity: Optional[Mapping] = None) -> bool:
        return self.coerce_state(target_state) in self.next_states(current_state, entity)

    def required_roles(self, target_state) -> FrozenSet[str]:
        return self.gated_by.get(self.coerce_state(target_state), frozenset())

    def ensure_transition(self, current_state, target_state, entity: Optional[Mapping] = None) -> Enum:
        current = self.coerce_state(current_state)
        target = self.coerce_state(target_state)
        if not self.allows(current, target, entity):
            raise InvalidTransition(
                f"Invalid state transition from {state_label(current)} to {state_label(target)}",
                kind=self.kind.value,
                current_state=current.value,
                target_state=target.value,
            )
        return target


def _graph(edges: Dict[Enum, Iterable[Enum]]) -> Mapping[Enum, FrozenSet[Enum]]:
    return MappingProxyType({state: frozenset(targets) for state, targets in edges.items()})


def has_entered(entity: Mapping, state) -> bool:
    entered = entity.get("state_entered_at") or {}
    return getattr(state, "value", state) in entered


def _sec11_window_not_yet_opened(entity: Mapping) -> bool:
    return (
        entity.get("type") == NotificationType.SEC11
        and not has_entered(entity, LandNotificationState.OBJECTION_RESOLVED)
    )


def _final_publication_done(entity: Mapping) -> bool:
    # A sec19 notification closes after its only publish; a sec11 one only
    # after the second (Sec 19) publish that follows objection resolution.
    if entity.get("type") == NotificationType.SEC19:
        return True
    return has_entered(entity, LandNotificationState.OBJECTION_RESOLVED)


_S = SiaState
_N = LandNotificationState
_A = AwardState
_P = PossessionState

SIA_WORKFLOW = WorkflowDefinition(
    kind=EntityKind.SIA,
    states=tuple(SiaState),
    transitions=_graph({
        _S.DRAFT: [_S.PUBLISHED],
        _S.PUBLISHED: [_S.HEARING_SCHEDULED],
        _S.HEARING_SCHEDULED: [_S.HEARING_COMPLETED],
        _S.HEARING_COMPLETED: [_S.REPORT_GENERATED],
        _S.REPORT_GENERATED: [_S.CLOSED],
    }),
)

LAND_NOTIFICATION_WORKFLOW = WorkflowDefinition(
    kind=EntityKind.LAND_NOTIFICATION,
    states=tuple(LandNotificationState),
    transitions=_graph({
        _N.DRAFT: [_N.LEGAL_REVIEW],
        _N.LEGAL_REVIEW: [_N.APPROVED, _N.DRAFT],
        _N.APPROVED: [_N.PUBLISHED],
        _N.PUBLISHED: [_N.OBJECTION_WINDOW_OPEN, _N.CLOSED],
        _N.OBJECTION_WINDOW_OPEN: [_N.OBJECTION_RESOLVED],
        _N.OBJECTION_RESOLVED: [_N.PUBLISHED],
    }),
    gated_by=MappingProxyType({
        _N.LEGAL_REVIEW: frozenset({Role.LEGAL_OFFICER}),
        _N.APPROVED: frozenset({Role.LEGAL_OFFICER}),
    }),
    conditions=MappingProxyType({
        (_N.PUBLISHED, _N.OBJECTION_WINDOW_OPEN): _sec11_window_not_yet_opened,
        (_N.PUBLISHED, _N.CLOSED): _final_publication_done,
    }),
)

AWARD_WORKFLOW = WorkflowDefinition(
    kind=EntityKind.AWARD,
    states=tuple(AwardState),
    transitions=_graph({
        _A.DRAFT: [_A.FIN_REVIEW],
        _A.FIN_REVIEW: [_A.ISSUED, _A.DRAFT],
        _A.ISSUED: [_A.PAID],
        _A.PAID: [_A.CLOSED],
    }),
    gated_by=MappingProxyType({
        _A.FIN_REVIEW: frozenset({Role.FINANCE_OFFICER}),
        _A.ISSUED: frozenset({Role.FINANCE_OFFICER}),
    }),
)

POSSESSION_WORKFLOW = WorkflowDefinition(
    kind=EntityKind.POSSESSION,
    states=tuple(PossessionState),
    transitions=_graph({
        _P.SCHEDULED: [_P.IN_PROGRESS],
        _P.IN_PROGRESS: [_P.EVIDENCE_CAPTURED],
        _P.EVIDENCE_CAPTURED: [_P.CERTIFICATE_ISSUED],
        _P.CERTIFICATE_ISSUED: [_P.REGISTRY_UPDATED],
        _P.REGISTRY_UPDATED: [_P.CLOSED],
    }),
)

WORKFLOWS = MappingProxyType({
    EntityKind.SIA: SIA_WORKFLOW,
    EntityKind.LAND_NOTIFICATION: LAND_NOTIFICATION_WORKFLOW,
    EntityKind.AWARD: AWARD_WORKFLOW,
    EntityKind.POSSESSION: POSSESSION_WORKFLOW,
})


def coerce_kind(kind) -> EntityKind:
    try:
        return EntityKind(getattr(kind, "value", kind))
    except ValueError:
        raise ValidationError(f"Unknown workflow kind: {kind!r}", kind=str(kind)) from None


def get_workflow(kind) -> WorkflowDefinition:
    return WORKFLOWS[coerce_kind(kind)]


def valid_next_states(kind, current_state, entity: Optional[Mapping] = None) -> List[str]:
    """
    States reachable in one step from ``current_state``.
    Without ``entity`` the answer ignores data-dependent edges (e.g. the
    sec11/sec19 split after ``published``); with it, only edges the entity
    can actually take are returned.
    """
    return [s.value for s in get_workflow(kind).next_states(current_state, entity)]
