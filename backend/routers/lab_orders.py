import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, func, select

from database import get_session
from errors import EntityNotFound, TransientError, ValidationFailed
from models import EntityKind, LabOrder, LabOrderStatus, LabPriority, Patient, User
from routers.common import StatusUpdate, lifecycle_fields, record_creation, status_history
from services.access import Capability
from services.auth import get_current_user, require_capability
from services.consistency import ensure_bill_belongs_to_patient, linked_bill_summary
from services.transitions import execute_transition, load_entity
from state_machine import INITIAL_STATES, normalize_status

router = APIRouter(prefix="/lab/orders", tags=["lab"])
logger = logging.getLogger("medflow.lab")

PRIORITY_ALIASES = {"normal": "routine"}
PRIORITY_RANK = {
    LabPriority.STAT: 0,
    LabPriority.URGENT: 1,
    LabPriority.ROUTINE: 2,
}


class LabOrderCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    patient_id: int = Field(alias="patientId")
    test_name: str = Field(min_length=1, max_length=200)
    test_code: Optional[str] = Field(default=None, max_length=40)
    priority: LabPriority = LabPriority.ROUTINE
    notes: Optional[str] = Field(default=None, max_length=2000)
    bill_id: Optional[int] = Field(default=None, alias="billId")

    @field_validator("priority", mode="before")
    @classmethod
    def _priority_alias(cls, value):
        if isinstance(value, str):
            value = value.strip().lower()
            return PRIORITY_ALIASES.get(value, value)
        return value


def lab_order_response(order: LabOrder, session: Session) -> dict:
    data = order.model_dump(exclude={"result_json"})
    data["result"] = order.result
    data["bill"] = linked_bill_summary(order, session)
    data.update(lifecycle_fields(EntityKind.LAB_ORDER, order.status.value))
    return data


def _list_orders(query, session: Session, limit: int) -> dict:
    total = session.exec(select(func.count()).select_from(query.subquery())).one()
    orders = session.exec(
        query.order_by(LabOrder.created_at.desc(), LabOrder.id.desc()).limit(limit)  # type: ignore[union-attr]
    ).all()
    items = [lab_order_response(order, session) for order in orders]
    items.sort(key=lambda item: PRIORITY_RANK[LabPriority(item["priority"])])
    return {"items": items, "total": total}


@router.post("", status_code=201)
def create_lab_order(
    body: LabOrderCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_capability(Capability.CREATE_LAB_ORDER)),
):
    if not session.get(Patient, body.patient_id):
        raise EntityNotFound(f"Patient #{body.patient_id} not found")
    if body.bill_id is not None:
        ensure_bill_belongs_to_patient(body.bill_id, body.patient_id, session)

    test_name = body.test_name.strip()
    if not test_name:
        raise ValidationFailed("Test name cannot be empty")

    order = LabOrder(
        patient_id=body.patient_id,
        ordered_by_id=current_user.id,
        bill_id=body.bill_id,
        test_name=test_name,
        test_code=(body.test_code or "").strip() or None,
        priority=body.priority,
        status=LabOrderStatus(INITIAL_STATES[EntityKind.LAB_ORDER]),
        notes=(body.notes or "").strip() or None,
    )
    try:
        session.add(order)
        session.flush()
        record_creation(EntityKind.LAB_ORDER, order.id, order.status.value, current_user, session)
        session.commit()
        session.refresh(order)
    except SQLAlchemyError as exc:
        session.rollback()
        raise TransientError("Failed to create lab order") from exc

    logger.info(
        "[LAB] Created order #%s '%s' (%s) for patient #%s",
        order.id,
        order.test_name,
        order.priority.value,
        order.patient_id,
    )
    return lab_order_response(order, session)


@router.get("")
def list_lab_orders(
    status: Optional[str] = None,
    patient_id: Optional[int] = Query(default=None, alias="patientId"),
    limit: int = Query(50, ge=1, le=200),
    session: Session = Depends(get_session),
    _current_user: User = Depends(get_current_user),
):
    query = select(LabOrder)
    if status:
        query = query.where(LabOrder.status == LabOrderStatus(normalize_status(EntityKind.LAB_ORDER, status)))
    if patient_id is not None:
        query = query.where(LabOrder.patient_id == patient_id)
    return _list_orders(query, session, limit)


@router.get("/my-orders")
def my_lab_orders(
    limit: int = Query(50, ge=1, le=200),
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    query = select(LabOrder).where(LabOrder.ordered_by_id == current_user.id)
    return _list_orders(query, session, limit)


@router.get("/{order_id}")
def get_lab_order(
    order_id: int,
    session: Session = Depends(get_session),
    _current_user: User = Depends(get_current_user),
):
    order = load_entity(session, EntityKind.LAB_ORDER, order_id)
    return lab_order_response(order, session)


@router.patch("/{order_id}/status")
async def update_lab_order_status(
    order_id: int,
    body: StatusUpdate,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    order = execute_transition(
        session,
        EntityKind.LAB_ORDER,
        order_id,
        body.status,
        current_user,
        expected_status=body.expected_status,
        expected_version=body.expected_version,
        payload=body.transition_payload(),
        notes=body.notes,
    )
    return lab_order_response(order, session)


@router.get("/{order_id}/history")
def lab_order_history(
    order_id: int,
    session: Session = Depends(get_session),
    _current_user: User = Depends(get_current_user),
):
    load_entity(session, EntityKind.LAB_ORDER, order_id)
    return status_history(EntityKind.LAB_ORDER, order_id, session)
