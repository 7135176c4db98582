import pytest

from repairhub.services.errors import TransitionRejected
from repairhub.services.repair_state import (
    RepairStatus,
    assert_can_transition,
    can_transition,
    effective_sequence,
    next_status,
    progress,
)


def test_sequence_skips_parts_states_only_when_in_stock():
    in_stock = effective_sequence(True)
    assert len(in_stock) == 7
    assert RepairStatus.PARTS_ORDERED not in in_stock
    assert RepairStatus.PARTS_RECEIVED not in in_stock
    assert in_stock[0] == RepairStatus.PENDING and in_stock[-1] == RepairStatus.COMPLETE

    assert len(effective_sequence(False)) == 9
    # Unknown availability keeps the full sequence
    assert len(effective_sequence(None)) == 9


def test_next_status_follows_effective_sequence():
    assert next_status("confirmed", True) == RepairStatus.SCHEDULED
    assert next_status("confirmed", False) == RepairStatus.PARTS_ORDERED
    assert next_status("parts_ordered", False) == RepairStatus.PARTS_RECEIVED
    assert next_status("parts_received", None) == RepairStatus.SCHEDULED
    assert next_status("in_progress", True) == RepairStatus.COMPLETE


def test_next_status_rejects_terminal_and_unknown():
    with pytest.raises(TransitionRejected):
        next_status("complete", True)
    with pytest.raises(TransitionRejected):
        next_status("cancelled", False)
    with pytest.raises(TransitionRejected):
        next_status("teleported", False)


def test_parts_state_off_sequence_when_flag_flipped():
    with pytest.raises(TransitionRejected):
        next_status("parts_ordered", True)


def test_can_transition_forward_only_one_step():
    assert can_transition("scheduled", "en_route", True)
    assert not can_transition("scheduled", "arrived", True)
    assert not can_transition("en_route", "scheduled", True)
    assert not can_transition("confirmed", "parts_ordered", True)


@pytest.mark.parametrize("status", [s.value for s in RepairStatus if s not in (RepairStatus.COMPLETE, RepairStatus.CANCELLED)])
def test_cancel_allowed_from_any_open_status(status):
    assert can_transition(status, "cancelled", None)


def test_terminal_statuses_accept_nothing():
    for terminal in ("complete", "cancelled"):
        assert not can_transition(terminal, "cancelled", True)
        with pytest.raises(TransitionRejected):
            assert_can_transition(terminal, "pending", True)


def test_progress_marks_done_and_active_steps():
    p = progress("en_route", True)
    steps = {s["status"]: s for s in p["steps"]}
    assert steps["scheduled"]["done"] and not steps["scheduled"]["active"]
    assert steps["en_route"]["active"] and not steps["en_route"]["done"]
    assert not steps["arrived"]["done"]
    assert p["label"] == "Technician En Route"
    assert not p["cancelled"]


def test_progress_for_cancelled_repair():
    p = progress("cancelled", False)
    assert p["cancelled"]
    assert not any(s["active"] for s in p["steps"])
