"""
Pickup-progress status model.

Statuses are ranked ``not_picked < picked < arrived < checked < skipped``.
Moving up the ranking is forward progress, moving down is an undo.
``skipped`` sits at the top only as an out-of-band terminal state, so any
move out of it is classified as a reset rather than an undo.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any

from roster.core.exceptions import InvalidTransition, PickupPersonRequired, SkipNotEligible
from roster.models.roster import RosterStatus
from roster.services.eligibility import BusEligibility


STATUS_ORDER: Dict[RosterStatus, int] = {
    RosterStatus.NOT_PICKED: 0,
    RosterStatus.PICKED: 1,
    RosterStatus.ARRIVED: 2,
    RosterStatus.CHECKED: 3,
    RosterStatus.SKIPPED: 4,
}


class TransitionDirection(str, Enum):
    FORWARD = "forward"
    BACKWARD = "backward"
    LATERAL = "lateral"
    RESET = "reset"


def status_rank(status: RosterStatus) -> int:
    return STATUS_ORDER[RosterStatus.parse(status)]


def classify(current: RosterStatus, requested: RosterStatus) -> TransitionDirection:
    current = RosterStatus.parse(current)
    requested = RosterStatus.parse(requested)
    if current == requested:
        return TransitionDirection.LATERAL
    if current == RosterStatus.SKIPPED:
        return TransitionDirection.RESET
    if STATUS_ORDER[requested] > STATUS_ORDER[current]:
        return TransitionDirection.FORWARD
    return TransitionDirection.BACKWARD


def resolve_pickup_person(meta: Optional[Dict[str, Any]]) -> Optional[str]:
    """Pickup person from meta, falling back to the admin ``override`` field."""
    if not meta:
        return None
    for key in ("pickup_person", "override"):
        value = meta.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


@dataclass(frozen=True)
class TransitionDecision:
    current: RosterStatus
    requested: RosterStatus
    direction: TransitionDirection
    meta: Dict[str, Any] = field(default_factory=dict)
    pickup_person: Optional[str] = None


def transition(
    current: RosterStatus,
    requested: RosterStatus,
    meta: Optional[Dict[str, Any]] = None,
    *,
    student=None,
    eligibility: Optional[BusEligibility] = None,
    student_id: Optional[str] = None,
) -> TransitionDecision:
    """
    Validate a requested status change and normalize its metadata.

    Raises:
        PickupPersonRequired: ``checked`` without a non-empty pickup person
        InvalidTransition: skip from a started day, or leaving ``skipped``
            for anything other than ``not_picked``
        SkipNotEligible: skipping a student who is not on a bus route
    """
    current = RosterStatus.parse(current)
    requested = RosterStatus.parse(requested)
    normalized = dict(meta or {})
    pickup_person = None

    if current == RosterStatus.SKIPPED and requested not in (RosterStatus.SKIPPED, RosterStatus.NOT_PICKED):
        raise InvalidTransition(current.value, requested.value, "a skipped student can only be unskipped")

    if requested == RosterStatus.SKIPPED and current != RosterStatus.SKIPPED:
        if current != RosterStatus.NOT_PICKED:
            raise InvalidTransition(current.value, requested.value, "only students not yet picked can be skipped")
        if eligibility is not None:
            if student is None:
                raise SkipNotEligible(f"Unknown student {student_id}")
            if not eligibility.is_eligible(student):
                raise SkipNotEligible(f"Student {student.id} is not eligible for bus skip")

    if requested == RosterStatus.CHECKED:
        pickup_person = resolve_pickup_person(normalized)
        if not pickup_person:
            raise PickupPersonRequired(student_id)
        normalized["pickup_person"] = pickup_person

    return TransitionDecision(
        current=current,
        requested=requested,
        direction=classify(current, requested),
        meta=normalized,
        pickup_person=pickup_person,
    )
