import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, func, select

from database import get_session
from errors import EntityNotFound, TransientError
from models import Bill, BillItem, BillStatus, EntityKind, Patient, StatusEvent, User
from routers.common import StatusUpdate, lifecycle_fields, record_creation, status_history
from services.access import Capability
from services.auth import get_current_user, require_capability
from services.billing import compute_totals, initial_paid_amount, next_bill_number
from services.consistency import detach_bill
from services.transitions import execute_transition, load_entity
from state_machine import normalize_status

router = APIRouter(prefix="/billing", tags=["billing"])
logger = logging.getLogger("medflow.billing")

BILL_NUMBER_ATTEMPTS = 3


class BillItemCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    description: str = Field(min_length=1, max_length=200)
    quantity: int = 1
    unit_price: float = Field(alias="unitPrice")
    medicine_id: Optional[str] = Field(default=None, alias="medicineId", max_length=64)


class BillCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    patient_id: int = Field(alias="patientId")
    items: list[BillItemCreate] = Field(min_length=1, max_length=200)
    discount: float = 0.0
    gst_percent: float = Field(default=0.0, alias="gstPercent")
    status: BillStatus = BillStatus.PENDING
    paid_amount: Optional[float] = Field(default=None, alias="paidAmount")
    notes: Optional[str] = Field(default=None, max_length=2000)


def bill_response(bill: Bill, session: Session) -> dict:
    data = bill.model_dump()
    items = session.exec(
        select(BillItem).where(BillItem.bill_id == bill.id).order_by(BillItem.id.asc())  # type: ignore[union-attr]
    ).all()
    data["items"] = [item.model_dump(exclude={"bill_id"}) for item in items]
    data.update(lifecycle_fields(EntityKind.BILL, bill.status.value))
    return data


@router.post("", status_code=201)
def create_bill(
    body: BillCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_capability(Capability.CREATE_INVOICE)),
):
    if not session.get(Patient, body.patient_id):
        raise EntityNotFound(f"Patient #{body.patient_id} not found")

    items = [
        {
            "description": item.description.strip(),
            "quantity": item.quantity,
            "unit_price": item.unit_price,
            "medicine_id": item.medicine_id,
        }
        for item in body.items
    ]
    totals = compute_totals(items, body.discount, body.gst_percent)
    paid_amount = initial_paid_amount(body.status, body.paid_amount, totals["grand_total"])

    for attempt in range(BILL_NUMBER_ATTEMPTS):
        bill = Bill(
            bill_number=next_bill_number(session),
            patient_id=body.patient_id,
            created_by_id=current_user.id,
            gst_percent=body.gst_percent,
            paid_amount=paid_amount,
            status=body.status,
            notes=(body.notes or "").strip() or None,
            **totals,
        )
        try:
            session.add(bill)
            session.flush()
            for item in items:
                session.add(BillItem(bill_id=bill.id, **item))
            record_creation(EntityKind.BILL, bill.id, bill.status.value, current_user, session)
            session.commit()
            session.refresh(bill)
            break
        except IntegrityError as exc:
            # Another desk took the same number; draw the next one.
            session.rollback()
            logger.warning("[BILL] %s already taken (attempt %d)", bill.bill_number, attempt + 1)
            if attempt + 1 >= BILL_NUMBER_ATTEMPTS:
                raise TransientError("Failed to create bill") from exc
        except SQLAlchemyError as exc:
            session.rollback()
            raise TransientError("Failed to create bill") from exc

    logger.info("[BILL] Created %s (%s) total %.2f", bill.bill_number, bill.status.value, bill.grand_total)
    return bill_response(bill, session)


@router.get("")
def list_bills(
    status: Optional[str] = None,
    patient_id: Optional[int] = Query(default=None, alias="patientId"),
    limit: int = Query(50, ge=1, le=200),
    session: Session = Depends(get_session),
    _current_user: User = Depends(require_capability(Capability.VIEW_INVOICES)),
):
    query = select(Bill)
    if status:
        query = query.where(Bill.status == BillStatus(normalize_status(EntityKind.BILL, status)))
    if patient_id is not None:
        query = query.where(Bill.patient_id == patient_id)
    total = session.exec(select(func.count()).select_from(query.subquery())).one()
    bills = session.exec(
        query.order_by(Bill.created_at.desc(), Bill.id.desc()).limit(limit)  # type: ignore[union-attr]
    ).all()
    return {"items": [bill_response(b, session) for b in bills], "total": total}


@router.get("/{bill_id}")
def get_bill(
    bill_id: int,
    session: Session = Depends(get_session),
    _current_user: User = Depends(require_capability(Capability.VIEW_INVOICE_DETAILS)),
):
    bill = load_entity(session, EntityKind.BILL, bill_id)
    return bill_response(bill, session)


@router.patch("/{bill_id}/status")
async def update_bill_status(
    bill_id: int,
    body: StatusUpdate,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    bill = execute_transition(
        session,
        EntityKind.BILL,
        bill_id,
        body.status,
        current_user,
        expected_status=body.expected_status,
        expected_version=body.expected_version,
        payload=body.transition_payload(),
        notes=body.notes,
    )
    return bill_response(bill, session)


@router.delete("/{bill_id}", status_code=204)
async def delete_bill(
    bill_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_capability(Capability.DELETE_INVOICE)),
):
    bill = load_entity(session, EntityKind.BILL, bill_id)
    bill_number = bill.bill_number
    try:
        detached = detach_bill(bill_id, session)
        for item in session.exec(select(BillItem).where(BillItem.bill_id == bill_id)).all():
            session.delete(item)
        session.add(
            StatusEvent(
                entity_kind=EntityKind.BILL,
                entity_id=bill_id,
                actor_id=current_user.id,
                actor_role=current_user.role,
                previous_status=bill.status.value,
                new_status="DELETED",
            )
        )
        session.delete(bill)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise TransientError("Failed to delete bill") from exc

    logger.info("[BILL] Deleted %s by %s (%d lab order link(s) dropped)", bill_number, current_user.email, detached)
    return Response(status_code=204)


@router.get("/{bill_id}/history")
def bill_history(
    bill_id: int,
    session: Session = Depends(get_session),
    _current_user: User = Depends(require_capability(Capability.VIEW_INVOICE_DETAILS)),
):
    return status_history(EntityKind.BILL, bill_id, session)
