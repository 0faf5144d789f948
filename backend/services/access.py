from __future__ import annotations

from enum import Enum
from typing import Iterable

from models import EntityKind, UserRole


class Capability(str, Enum):
    VIEW_INVOICES = "view_invoices"
    VIEW_INVOICE_DETAILS = "view_invoice_details"
    CREATE_INVOICE = "create_invoice"
    UPDATE_INVOICE_STATUS = "update_invoice_status"
    # Download and refund gate no endpoint here; they are published through
    # /auth/capabilities so clients can show or hide those actions.
    DOWNLOAD_INVOICE = "download_invoice"
    REFUND_INVOICE = "refund_invoice"
    CANCEL_INVOICE = "cancel_invoice"
    DELETE_INVOICE = "delete_invoice"
    CREATE_LAB_ORDER = "create_lab_order"
    PROGRESS_LAB_ORDER = "progress_lab_order"
    CREATE_MEDICAL_RECORD = "create_medical_record"
    DISPENSE_PRESCRIPTION = "dispense_prescription"


_VIEW = {Capability.VIEW_INVOICES, Capability.VIEW_INVOICE_DETAILS}

ROLE_CAPABILITIES: dict[UserRole, frozenset[Capability]] = {
    UserRole.ADMIN: frozenset(
        _VIEW
        | {
            Capability.CREATE_INVOICE,
            Capability.UPDATE_INVOICE_STATUS,
            Capability.DOWNLOAD_INVOICE,
            Capability.REFUND_INVOICE,
            Capability.CANCEL_INVOICE,
            Capability.DELETE_INVOICE,
            Capability.CREATE_LAB_ORDER,
            Capability.CREATE_MEDICAL_RECORD,
        }
    ),
    UserRole.RECEPTIONIST: frozenset(
        _VIEW
        | {
            Capability.CREATE_INVOICE,
            Capability.UPDATE_INVOICE_STATUS,
            Capability.DOWNLOAD_INVOICE,
        }
    ),
    UserRole.DOCTOR: frozenset(
        _VIEW | {Capability.CREATE_LAB_ORDER, Capability.CREATE_MEDICAL_RECORD}
    ),
    UserRole.PHARMACIST: frozenset(
        _VIEW | {Capability.CREATE_INVOICE, Capability.DISPENSE_PRESCRIPTION}
    ),
    UserRole.LAB_TECHNICIAN: frozenset(_VIEW | {Capability.PROGRESS_LAB_ORDER}),
    UserRole.PATIENT: frozenset(_VIEW | {Capability.DOWNLOAD_INVOICE}),
}

DEFAULT_TRANSITION_CAPABILITY: dict[str, Capability] = {
    EntityKind.LAB_ORDER: Capability.PROGRESS_LAB_ORDER,
    EntityKind.PRESCRIPTION: Capability.DISPENSE_PRESCRIPTION,
    EntityKind.BILL: Capability.UPDATE_INVOICE_STATUS,
}

TRANSITION_CAPABILITY_OVERRIDES: dict[tuple[str, str], Capability] = {
    (EntityKind.BILL, "CANCELLED"): Capability.CANCEL_INVOICE,
}


def capabilities_for_role(role: UserRole | str) -> frozenset[Capability]:
    try:
        role = UserRole(role)
    except ValueError:
        return frozenset()
    return ROLE_CAPABILITIES.get(role, frozenset())


def can_perform(actor_capabilities: Iterable[Capability | str], action: Capability | str) -> bool:
    wanted = action.value if isinstance(action, Capability) else str(action)
    held = {c.value if isinstance(c, Capability) else str(c) for c in actor_capabilities}
    return wanted in held


def required_capability(kind: EntityKind, new_status: str) -> Capability:
    """Capability needed to request ``new_status`` on an entity of ``kind``.

    Statuses the Status Model does not know still resolve to the entity's
    default capability so the gate always runs before the transition table.
    """
    override = TRANSITION_CAPABILITY_OVERRIDES.get((kind, new_status.strip().upper()))
    if override is not None:
        return override
    return DEFAULT_TRANSITION_CAPABILITY[kind]


def role_can_perform(role: UserRole | str, action: Capability | str) -> bool:
    return can_perform(capabilities_for_role(role), action)
