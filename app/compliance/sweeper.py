"""
ColdTrack Compliance — Missed-Occurrence Sweeper & Override

sweep() finalizes every REQUIRED occurrence whose due interval ended before
as_of. override() is the supervised path back from MISSED to COMPLETED.
"""
import logging
from datetime import datetime
from typing import Dict, Optional, Tuple

from app.eventstream import emit_event

from .errors import NotFoundError, StateConflictError, ValidationError
from .locks import owner_lock
from .models import (
    _ts, to_iso, Occurrence, OwnerKind,
    MonitorRepository, OccurrenceRepository,
)

logger = logging.getLogger(__name__)


def missed_reason(occ: Occurrence) -> str:
    if occ.owner_kind == OwnerKind.MONITOR:
        monitor = MonitorRepository.get(occ.owner_id)
        label = monitor.label if monitor else f"monitor {occ.owner_id}"
        return f"No reading logged for {label} window on {occ.target_key}"
    return f"Checklist not completed for {occ.target_key}"


def sweep(as_of: datetime, owner: Optional[Tuple[OwnerKind, int]] = None) -> Dict:
    """Mark overdue REQUIRED occurrences MISSED. Returns counts by owner kind."""
    if as_of.tzinfo is None:
        raise ValidationError("as_of must be timezone-aware")
    if owner is not None:
        owner = (OwnerKind(owner[0]), int(owner[1]))

    missed = 0
    by_kind = {OwnerKind.CHECKLIST.value: 0, OwnerKind.MONITOR.value: 0}
    for occ in OccurrenceRepository.list_overdue(as_of, owner):
        with owner_lock(occ.owner_kind, occ.owner_id):
            if OccurrenceRepository.mark_missed(occ.id, missed_reason(occ), as_of, _ts()):
                missed += 1
                by_kind[occ.owner_kind.value] += 1

    if missed:
        logger.info(f"[Compliance] Sweep as of {to_iso(as_of)}: {missed} occurrences missed")
        emit_event(
            "OCCURRENCES_MISSED",
            owner_kind=owner[0].value if owner else None,
            owner_id=owner[1] if owner else None,
            summary=f"{missed} occurrences marked missed",
            details={"count": missed, "by_kind": by_kind, "as_of": to_iso(as_of)},
            timestamp=to_iso(as_of),
        )
    return {"missed": missed, "by_kind": by_kind, "as_of": to_iso(as_of)}


def override(occurrence_id: int, actor_id: str, reason: str, now: datetime) -> Occurrence:
    """Supervisor override of a MISSED occurrence; it becomes COMPLETED, never on time."""
    if not reason or not str(reason).strip():
        raise ValidationError("Override reason is required")
    if not actor_id:
        raise ValidationError("Override requires an acting user")

    occ = OccurrenceRepository.get(occurrence_id)
    if occ is None:
        raise NotFoundError(f"Occurrence {occurrence_id} not found")

    with owner_lock(occ.owner_kind, occ.owner_id):
        applied = OccurrenceRepository.apply_override(occurrence_id, actor_id, str(reason).strip(), now, _ts())
        current = OccurrenceRepository.get(occurrence_id)

    if not applied:
        raise StateConflictError(
            f"Occurrence {occurrence_id} is {current.status.value}; only MISSED occurrences can be overridden"
        )

    logger.info(f"[Compliance] Occurrence {occurrence_id} overridden by {actor_id}")
    emit_event(
        "OCCURRENCE_OVERRIDDEN",
        owner_kind=current.owner_kind.value,
        owner_id=current.owner_id,
        occurrence_id=current.id,
        user=actor_id,
        summary=f"{current.target_key} overridden: {current.override_reason}",
        details={"reason": current.override_reason, "target_key": current.target_key},
        timestamp=to_iso(now),
    )
    return current
