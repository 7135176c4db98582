"""
Repair status state machine.

Pure functions over the status enum: the effective sequence is computed per
repair from its parts_in_stock flag, never cached. Persistence and
authorization live in services/lifecycle.py.
"""
import enum
from typing import List, Optional

from .errors import TransitionRejected


class RepairStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PARTS_ORDERED = "parts_ordered"
    PARTS_RECEIVED = "parts_received"
    SCHEDULED = "scheduled"
    EN_ROUTE = "en_route"
    ARRIVED = "arrived"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


STATUS_LABELS = {
    RepairStatus.PENDING: "Pending Review",
    RepairStatus.CONFIRMED: "Confirmed",
    RepairStatus.PARTS_ORDERED: "Parts Ordered",
    RepairStatus.PARTS_RECEIVED: "Parts Received",
    RepairStatus.SCHEDULED: "Scheduled",
    RepairStatus.EN_ROUTE: "Technician En Route",
    RepairStatus.ARRIVED: "Technician Arrived",
    RepairStatus.IN_PROGRESS: "Repair In Progress",
    RepairStatus.COMPLETE: "Repair Complete",
    RepairStatus.CANCELLED: "Cancelled",
}

FULL_SEQUENCE = (
    RepairStatus.PENDING,
    RepairStatus.CONFIRMED,
    RepairStatus.PARTS_ORDERED,
    RepairStatus.PARTS_RECEIVED,
    RepairStatus.SCHEDULED,
    RepairStatus.EN_ROUTE,
    RepairStatus.ARRIVED,
    RepairStatus.IN_PROGRESS,
    RepairStatus.COMPLETE,
)

PARTS_STATES = frozenset({RepairStatus.PARTS_ORDERED, RepairStatus.PARTS_RECEIVED})
TERMINAL_STATES = frozenset({RepairStatus.COMPLETE, RepairStatus.CANCELLED})


def effective_sequence(parts_in_stock: Optional[bool]) -> List[RepairStatus]:
    """Ordered statuses for one repair. Only an explicit True elides the parts states."""
    if parts_in_stock is True:
        return [s for s in FULL_SEQUENCE if s not in PARTS_STATES]
    return list(FULL_SEQUENCE)


def coerce(status) -> RepairStatus:
    try:
        return RepairStatus(status)
    except ValueError:
        raise TransitionRejected(f"Unknown status {status!r}")


def is_terminal(status) -> bool:
    return coerce(status) in TERMINAL_STATES


def next_status(status, parts_in_stock: Optional[bool]) -> RepairStatus:
    """The single status that follows `status` on the effective sequence."""
    current = coerce(status)
    if current in TERMINAL_STATES:
        raise TransitionRejected(f"Repair is already {current.value}")
    seq = effective_sequence(parts_in_stock)
    if current not in seq:
        # parts_in_stock flipped to True after the repair entered a parts state
        raise TransitionRejected(f"Status {current.value} is not on this repair's sequence")
    return seq[seq.index(current) + 1]


def can_transition(status, target, parts_in_stock: Optional[bool]) -> bool:
    current = coerce(status)
    target = coerce(target)
    if current in TERMINAL_STATES:
        return False
    if target == RepairStatus.CANCELLED:
        return True
    try:
        return next_status(current, parts_in_stock) == target
    except TransitionRejected:
        return False


def assert_can_transition(status, target, parts_in_stock: Optional[bool]) -> None:
    if not can_transition(status, target, parts_in_stock):
        raise TransitionRejected(f"Invalid status transition {coerce(status).value} -> {coerce(target).value}")


def progress(status, parts_in_stock: Optional[bool]) -> dict:
    """Stepper projection used by both apps: done/active flags per step."""
    current = coerce(status)
    seq = effective_sequence(parts_in_stock)
    index = seq.index(current) if current in seq else -1
    return {
        "status": current.value,
        "label": STATUS_LABELS[current],
        "steps": [
            {"status": s.value, "label": STATUS_LABELS[s], "done": 0 <= i < index, "active": i == index}
            for i, s in enumerate(seq)
        ],
        "cancelled": current == RepairStatus.CANCELLED,
    }
