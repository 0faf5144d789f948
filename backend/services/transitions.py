"""The single mutation point for lab order, prescription and bill status.

Order of checks for every request:

1. permission gate (no store access on denial)
2. authoritative read of the entity
3. optimistic-concurrency check against what the caller believed
4. transition table (or idempotent no-op)
5. transition-specific payload validation
6. compare-and-swap write plus a ``StatusEvent`` row, in one transaction

The executor never retries; ``StaleState`` and ``TransientError`` are for the
caller to handle.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional, Union

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, func, select

from errors import EntityNotFound, PermissionDenied, StaleState, ValidationFailed, TransientError
from models import Bill, EntityKind, LabOrder, MedicalRecord, Prescription, StatusEvent, User
from services.access import can_perform, capabilities_for_role, required_capability
from state_machine import STATUS_ENUMS, is_noop, normalize_status, validate_transition

logger = logging.getLogger("medflow.transitions")

Entity = Union[LabOrder, MedicalRecord, Bill]

ENTITY_MODELS: dict[str, type] = {
    EntityKind.LAB_ORDER: LabOrder,
    EntityKind.PRESCRIPTION: MedicalRecord,
    EntityKind.BILL: Bill,
}

STATUS_FIELDS: dict[str, str] = {
    EntityKind.LAB_ORDER: "status",
    EntityKind.PRESCRIPTION: "prescription_status",
    EntityKind.BILL: "status",
}

MONEY_TOLERANCE = 0.005


def current_status(kind: EntityKind, entity: Entity) -> str:
    value = getattr(entity, STATUS_FIELDS[kind])
    return value.value if hasattr(value, "value") else str(value)


def load_entity(session: Session, kind: EntityKind, entity_id: int) -> Entity:
    entity = session.get(ENTITY_MODELS[kind], entity_id)
    if entity is None:
        raise EntityNotFound(f"{kind.value} #{entity_id} not found")
    return entity


def _check_permission(kind: EntityKind, requested: str, actor: User) -> None:
    capability = required_capability(kind, requested)
    if not can_perform(capabilities_for_role(actor.role), capability):
        logger.warning(
            "[DENIED] %s (%s) lacks '%s' for %s -> %s",
            actor.email,
            actor.role.value,
            capability.value,
            kind.value,
            requested,
        )
        raise PermissionDenied(
            f"Role '{actor.role.value}' lacks capability '{capability.value}'"
        )


def _check_fresh(
    kind: EntityKind,
    entity: Entity,
    expected_status: Optional[str],
    expected_version: Optional[int],
) -> None:
    status = current_status(kind, entity)
    if expected_status is not None and normalize_status(kind, expected_status) != status:
        raise StaleState(
            f"{kind.value} #{entity.id} is '{status}', not '{expected_status}'",
            current_status=status,
            current_version=entity.version,
        )
    if expected_version is not None and expected_version != entity.version:
        raise StaleState(
            f"{kind.value} #{entity.id} is at version {entity.version}, not {expected_version}",
            current_status=status,
            current_version=entity.version,
        )


def _lab_result_values(payload: dict, actor: User) -> dict[str, Any]:
    parameters = payload.get("parameters") or []
    attachments = payload.get("attachments") or []
    if not parameters and not attachments:
        raise ValidationFailed("A lab result needs at least one parameter or one attachment")

    cleaned = []
    for index, param in enumerate(parameters):
        name = str(param.get("name") or "").strip()
        value = str(param.get("value") or "").strip()
        if not name or not value:
            raise ValidationFailed(f"Result parameter #{index + 1} needs a name and a value")
        item = {"name": name, "value": value}
        if param.get("unit"):
            item["unit"] = str(param["unit"]).strip()
        if param.get("normal_range"):
            item["normal_range"] = str(param["normal_range"]).strip()
        cleaned.append(item)

    result = {
        "parameters": cleaned,
        "attachments": [str(a) for a in attachments],
        "interpretation": payload.get("interpretation"),
        "technician_id": actor.id,
        "completed_at": datetime.utcnow().isoformat(),
    }
    return {"result_json": json.dumps(result)}


def _dispense_values(record: MedicalRecord, session: Session, actor: User) -> dict[str, Any]:
    lines = session.exec(
        select(func.count()).select_from(Prescription).where(Prescription.medical_record_id == record.id)
    ).one()
    if not lines:
        raise ValidationFailed(f"Medical record #{record.id} has no prescriptions to dispense")
    return {"dispensed_by_id": actor.id, "dispensed_at": datetime.utcnow()}


def _payment_values(bill: Bill, payload: dict) -> dict[str, Any]:
    raw = payload.get("paid_amount")
    paid_amount = bill.grand_total if raw is None else float(raw)
    if paid_amount < 0:
        raise ValidationFailed("Paid amount cannot be negative")
    if paid_amount > bill.grand_total + MONEY_TOLERANCE:
        raise ValidationFailed(
            f"Paid amount {paid_amount:.2f} exceeds grand total {bill.grand_total:.2f}"
        )
    return {"paid_amount": round(paid_amount, 2)}


def _transition_values(
    kind: EntityKind,
    entity: Entity,
    new_status: str,
    payload: dict,
    session: Session,
    actor: User,
) -> dict[str, Any]:
    if kind == EntityKind.LAB_ORDER and new_status == "COMPLETED":
        return _lab_result_values(payload, actor)
    if kind == EntityKind.PRESCRIPTION and new_status == "DISPENSED":
        return _dispense_values(entity, session, actor)
    if kind == EntityKind.BILL and new_status == "PAID":
        return _payment_values(entity, payload)
    return {}


def execute_transition(
    session: Session,
    kind: EntityKind,
    entity_id: int,
    new_status: str,
    actor: User,
    *,
    expected_status: Optional[str] = None,
    expected_version: Optional[int] = None,
    payload: Optional[dict] = None,
    notes: str = "",
) -> Entity:
    _check_permission(kind, new_status, actor)

    entity = load_entity(session, kind, entity_id)
    _check_fresh(kind, entity, expected_status, expected_version)

    target = normalize_status(kind, new_status)
    prev = current_status(kind, entity)
    if is_noop(kind, prev, target):
        logger.info("[NOOP] %s #%s already %s", kind.value, entity_id, target)
        return entity

    validate_transition(kind, prev, target)
    values = _transition_values(kind, entity, target, payload or {}, session, actor)

    model = ENTITY_MODELS[kind]
    values[STATUS_FIELDS[kind]] = STATUS_ENUMS[kind](target)
    values["version"] = entity.version + 1
    values["updated_at"] = datetime.utcnow()

    try:
        outcome = session.exec(
            update(model)
            .where(model.id == entity_id, model.version == entity.version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount != 1:
            session.rollback()
            fresh = load_entity(session, kind, entity_id)
            session.refresh(fresh)
            raise StaleState(
                f"{kind.value} #{entity_id} changed while the transition was in flight",
                current_status=current_status(kind, fresh),
                current_version=fresh.version,
            )

        session.add(
            StatusEvent(
                entity_kind=kind,
                entity_id=entity_id,
                actor_id=actor.id,
                actor_role=actor.role,
                previous_status=prev,
                new_status=target,
                notes=notes.strip(),
            )
        )
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Failed to persist %s #%s -> %s", kind.value, entity_id, target)
        raise TransientError("Failed to save transition") from exc

    session.refresh(entity)
    logger.info("[TRANSITION] %s #%s: %s -> %s", kind.value, entity_id, prev, target)
    return entity
