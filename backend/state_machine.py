from errors import IllegalTransition
from models import BillStatus, EntityKind, LabOrderStatus, PrescriptionStatus

VALID_TRANSITIONS: dict[str, dict[str, list[str]]] = {
    EntityKind.LAB_ORDER: {
        "ORDERED": ["SAMPLE_COLLECTED", "CANCELLED"],
        "SAMPLE_COLLECTED": ["PROCESSING", "CANCELLED"],
        "PROCESSING": ["COMPLETED", "CANCELLED"],
    },
    EntityKind.PRESCRIPTION: {
        "PENDING": ["DISPENSED", "CANCELLED"],
    },
    EntityKind.BILL: {
        "PENDING": ["PAID", "CANCELLED"],
        "PARTIALLY_PAID": ["PAID", "CANCELLED"],
        "PAID": ["CANCELLED"],
    },
}

INITIAL_STATES: dict[str, str] = {
    EntityKind.LAB_ORDER: LabOrderStatus.ORDERED.value,
    EntityKind.PRESCRIPTION: PrescriptionStatus.PENDING.value,
    EntityKind.BILL: BillStatus.PENDING.value,
}

TERMINAL_STATES: dict[str, set[str]] = {
    EntityKind.LAB_ORDER: {"COMPLETED", "CANCELLED"},
    EntityKind.PRESCRIPTION: {"DISPENSED", "CANCELLED"},
    EntityKind.BILL: {"CANCELLED"},
}

STATUS_ENUMS = {
    EntityKind.LAB_ORDER: LabOrderStatus,
    EntityKind.PRESCRIPTION: PrescriptionStatus,
    EntityKind.BILL: BillStatus,
}

# Alternate spellings accepted from clients.
STATUS_ALIASES: dict[str, dict[str, str]] = {
    EntityKind.LAB_ORDER: {"IN_PROGRESS": "PROCESSING"},
}

# Requests for the current state that must be rejected rather than treated as a no-op.
NON_IDEMPOTENT_TARGETS: dict[str, set[str]] = {
    EntityKind.PRESCRIPTION: {"DISPENSED"},
}


def normalize_status(kind: EntityKind, raw: str) -> str:
    status = raw.strip().upper().replace("-", "_").replace(" ", "_")
    status = STATUS_ALIASES.get(kind, {}).get(status, status)
    if status not in {s.value for s in STATUS_ENUMS[kind]}:
        raise IllegalTransition(f"Unknown status '{raw}' for {kind.value}")
    return status


def is_terminal(kind: EntityKind, status: str) -> bool:
    return status in TERMINAL_STATES[kind]


def allowed_targets(kind: EntityKind, current_state: str) -> list[str]:
    return list(VALID_TRANSITIONS[kind].get(current_state, []))


def is_noop(kind: EntityKind, current_state: str, new_state: str) -> bool:
    """A request for the state the entity already holds succeeds without change,
    except for targets listed in NON_IDEMPOTENT_TARGETS."""
    if current_state != new_state:
        return False
    return new_state not in NON_IDEMPOTENT_TARGETS.get(kind, set())


def validate_transition(kind: EntityKind, current_state: str, new_state: str) -> bool:
    """Validate and return True if transition is allowed, raise IllegalTransition otherwise."""
    transitions = VALID_TRANSITIONS.get(kind)
    if transitions is None:
        raise IllegalTransition(f"Unknown entity kind: {kind}")

    allowed = transitions.get(current_state)
    if allowed is None:
        raise IllegalTransition(
            f"No transitions from state '{current_state}' for {kind.value}"
        )

    if new_state not in allowed:
        raise IllegalTransition(
            f"Invalid transition: {kind.value} cannot go from '{current_state}' to '{new_state}'. "
            f"Allowed: {allowed}"
        )

    return True
