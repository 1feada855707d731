# apps/api/services/draw_engine.py
"""
E-draw for scheme allotments.

The seed is drawn from the OS CSPRNG; the shuffle itself is a Fisher-Yates
pass driven by a PRNG seeded from that seed, so anyone holding the audit can
replay the exact order. Every result carries its own hash and the audit
carries an aggregate over all of them.
"""

import hashlib
import logging
import random
import secrets
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .errors import ConcurrencyConflict, InvalidSelectionSize, NotFound, ValidationError

_logger = logging.getLogger(__name__)


@dataclass
class DrawResult:
    application_id: int
    draw_sequence: int
    selected: bool
    audit_hash: str
    party_id: Optional[int] = None


@dataclass
class DrawAudit:
    draw_id: str
    scheme_id: int
    total_applications: int
    selected_count: int
    draw_date: str
    random_seed: str
    audit_hash: str
    results: List[DrawResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DrawAudit":
        results = [DrawResult(**r) for r in data.get("results") or []]
        fields = {k: data.get(k) for k in cls.__dataclass_fields__ if k != "results"}
        return cls(results=results, **fields)

    @property
    def selected(self) -> List[DrawResult]:
        return [r for r in self.results if r.selected]


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def result_hash(application_id, draw_sequence: int, selected: bool, seed: str) -> str:
    return _sha256(f"{application_id}-{draw_sequence}-{'true' if selected else 'false'}-{seed}")


def aggregate_hash(draw_id: str, scheme_id, result_hashes: Iterable[str], seed: str) -> str:
    joined = "-".join(sorted(result_hashes))
    return _sha256(f"{draw_id}-{scheme_id}-{joined}-{seed}")


def shuffle_with_seed(items: Sequence, seed: str) -> list:
    """Fisher-Yates over a copy of ``items``; same seed, same order."""
    shuffled = list(items)
    rng = random.Random(int(hashlib.sha256(seed.encode("utf-8")).hexdigest(), 16))
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randrange(i + 1)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def _normalize_pool(applicant_pool) -> List[Dict[str, Any]]:
    pool = []
    seen = set()
    for item in applicant_pool:
        if isinstance(item, dict):
            app_id = item.get("id", item.get("application_id"))
            party_id = item.get("party_id")
        else:
            app_id, party_id = item, None
        if app_id is None:
            raise ValidationError("Every application in the pool needs an id")
        if app_id in seen:
            raise ValidationError(f"Application {app_id} appears twice in the draw pool")
        seen.add(app_id)
        pool.append({"application_id": app_id, "party_id": party_id})
    return pool


def conduct_draw(scheme_id, applicant_pool, selected_count: int,
                 seed: Optional[str] = None, draw_id: Optional[str] = None) -> DrawAudit:
    """
    Shuffle ``applicant_pool`` and select the first ``selected_count``.
    Selected applications get draw sequence 1..selected_count, the rest 0.
    ``seed``/``draw_id`` are only passed explicitly when replaying a draw.
    """
    pool = _normalize_pool(applicant_pool)
    if not isinstance(selected_count, int) or isinstance(selected_count, bool) \
            or selected_count < 0 or selected_count > len(pool):
        raise InvalidSelectionSize(
            f"Selected count ({selected_count}) cannot exceed total applications ({len(pool)})",
            selected_count=selected_count,
            pool_size=len(pool),
        )

    seed = seed or secrets.token_hex(32)
    draw_id = draw_id or f"DRAW-{scheme_id}-{int(time.time() * 1000)}"

    results = []
    for position, app in enumerate(shuffle_with_seed(pool, seed)):
        selected = position < selected_count
        draw_sequence = position + 1 if selected else 0
        results.append(DrawResult(
            application_id=app["application_id"],
            party_id=app["party_id"],
            draw_sequence=draw_sequence,
            selected=selected,
            audit_hash=result_hash(app["application_id"], draw_sequence, selected, seed),
        ))

    audit = DrawAudit(
        draw_id=draw_id,
        scheme_id=scheme_id,
        total_applications=len(pool),
        selected_count=selected_count,
        draw_date=datetime.now(timezone.utc).isoformat(),
        random_seed=seed,
        audit_hash=aggregate_hash(draw_id, scheme_id, [r.audit_hash for r in results], seed),
        results=results,
    )
    _logger.info(f"Draw {draw_id} for scheme {scheme_id}: {selected_count} of {len(pool)} selected")
    return audit


def verify_draw(audit) -> bool:
    """
    Recompute every per-result hash from its fields, the aggregate hash, and
    the 1..selected_count sequence invariant. Any edit to a stored result
    makes this return False.
    """
    if isinstance(audit, dict):
        audit = DrawAudit.from_dict(audit)

    for r in audit.results:
        if r.audit_hash != result_hash(r.application_id, r.draw_sequence, r.selected, audit.random_seed):
            _logger.warning(f"Draw {audit.draw_id}: result hash mismatch for application {r.application_id}")
            return False

    expected = aggregate_hash(audit.draw_id, audit.scheme_id, [r.audit_hash for r in audit.results], audit.random_seed)
    if expected != audit.audit_hash:
        _logger.warning(f"Draw {audit.draw_id}: aggregate hash mismatch")
        return False

    sequences = sorted(r.draw_sequence for r in audit.results if r.selected)
    if sequences != list(range(1, len(sequences) + 1)) or len(sequences) != audit.selected_count:
        _logger.warning(f"Draw {audit.draw_id}: selected sequence numbers are not 1..{audit.selected_count}")
        return False
    if any(r.draw_sequence != 0 for r in audit.results if not r.selected):
        _logger.warning(f"Draw {audit.draw_id}: rejected application carries a sequence number")
        return False
    return True


# ----------------------------------------------------------------------
# Scheme draw (persistence side)
# ----------------------------------------------------------------------
def conduct_scheme_draw(store, scheme_id, selected_count: int, actor_id=None) -> DrawAudit:
    """Draw among the scheme's verified applications and record the outcome."""
    applications = store.get_applications(scheme_id=scheme_id, status="verified")
    if not applications:
        raise ValidationError("No verified applications found for this scheme", scheme_id=scheme_id)

    audit = conduct_draw(scheme_id, applications, selected_count)

    updates = {
        r.application_id: ("selected" if r.selected else "rejected",
                           {"draw_seq": r.draw_sequence, "draw_id": audit.draw_id})
        for r in audit.results
    }
    # applications, audit and scheme are written together or not at all
    if store.apply_draw(updates, dict(audit.to_dict(), conducted_by=actor_id), scheme_id=scheme_id) is None:
        raise ConcurrencyConflict(
            f"Applications of scheme {scheme_id} changed during draw {audit.draw_id}",
            expected_state="verified",
        )
    return audit


def load_draw_audit(store, draw_id: str) -> DrawAudit:
    records = store.list_entities("draw_audit", draw_id=draw_id)
    if not records:
        raise NotFound("Draw not found", draw_id=draw_id)
    return DrawAudit.from_dict(records[0])
