import pytest

from errors import IllegalTransition
from models import EntityKind
from state_machine import (
    INITIAL_STATES,
    allowed_targets,
    is_noop,
    is_terminal,
    normalize_status,
    validate_transition,
)


def test_validate_transition_valid_and_invalid():
    assert validate_transition(EntityKind.LAB_ORDER, "ORDERED", "SAMPLE_COLLECTED") is True
    assert validate_transition(EntityKind.BILL, "PARTIALLY_PAID", "PAID") is True

    with pytest.raises(IllegalTransition):
        validate_transition(EntityKind.LAB_ORDER, "ORDERED", "COMPLETED")

    with pytest.raises(IllegalTransition):
        validate_transition(EntityKind.BILL, "PAID", "PENDING")


def test_terminal_states_have_no_outgoing_transitions():
    for kind, state in [
        (EntityKind.LAB_ORDER, "COMPLETED"),
        (EntityKind.LAB_ORDER, "CANCELLED"),
        (EntityKind.PRESCRIPTION, "DISPENSED"),
        (EntityKind.PRESCRIPTION, "CANCELLED"),
        (EntityKind.BILL, "CANCELLED"),
    ]:
        assert is_terminal(kind, state)
        assert allowed_targets(kind, state) == []
        with pytest.raises(IllegalTransition):
            validate_transition(kind, state, "CANCELLED")


def test_paid_bill_can_only_be_cancelled():
    assert not is_terminal(EntityKind.BILL, "PAID")
    assert allowed_targets(EntityKind.BILL, "PAID") == ["CANCELLED"]


def test_initial_states():
    assert INITIAL_STATES[EntityKind.LAB_ORDER] == "ORDERED"
    assert INITIAL_STATES[EntityKind.PRESCRIPTION] == "PENDING"
    assert INITIAL_STATES[EntityKind.BILL] == "PENDING"


def test_same_state_requests_are_noops_except_dispense():
    assert is_noop(EntityKind.BILL, "PAID", "PAID")
    assert is_noop(EntityKind.LAB_ORDER, "CANCELLED", "CANCELLED")
    assert is_noop(EntityKind.PRESCRIPTION, "CANCELLED", "CANCELLED")
    assert not is_noop(EntityKind.PRESCRIPTION, "DISPENSED", "DISPENSED")
    assert not is_noop(EntityKind.BILL, "PENDING", "PAID")


def test_normalize_status_accepts_aliases_and_rejects_unknown():
    assert normalize_status(EntityKind.LAB_ORDER, "in-progress") == "PROCESSING"
    assert normalize_status(EntityKind.LAB_ORDER, " sample_collected ") == "SAMPLE_COLLECTED"
    assert normalize_status(EntityKind.BILL, "partially paid") == "PARTIALLY_PAID"

    with pytest.raises(IllegalTransition):
        normalize_status(EntityKind.PRESCRIPTION, "SHIPPED")

    with pytest.raises(IllegalTransition):
        normalize_status(EntityKind.BILL, "IN_PROGRESS")
