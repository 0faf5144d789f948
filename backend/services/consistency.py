"""Coupling rules between the three status-bearing entities.

The lifecycles are independent: a transition only ever writes the row it
targets. Lab orders may point at a bill, but the link is a read-only
projection; completing an order does not touch the bill, and paying or
cancelling the bill does not touch the order. Dispensing a prescription set
is likewise unrelated to any bill covering the same encounter.
"""
from __future__ import annotations

from sqlmodel import Session, select

from errors import EntityNotFound, ValidationFailed
from models import Bill, EntityKind, LabOrder

COLLECTION_PATHS: dict[str, str] = {
    EntityKind.LAB_ORDER: "/lab/orders",
    EntityKind.PRESCRIPTION: "/medical-records",
    EntityKind.BILL: "/billing",
}

# Read paths whose cached responses embed data from another entity kind.
_EMBEDDED_IN: dict[str, list[str]] = {
    EntityKind.PRESCRIPTION: ["/pharmacy"],
    EntityKind.BILL: ["/lab/orders"],
}


def dependent_collections(kind: EntityKind) -> list[str]:
    """Path prefixes whose cached reads go stale when an entity of ``kind`` changes."""
    return [COLLECTION_PATHS[kind], *_EMBEDDED_IN.get(kind, [])]


def linked_bill_summary(order: LabOrder, session: Session) -> dict | None:
    if order.bill_id is None:
        return None
    bill = session.get(Bill, order.bill_id)
    if bill is None:
        return None
    return {"id": bill.id, "bill_number": bill.bill_number, "status": bill.status.value}


def ensure_bill_belongs_to_patient(bill_id: int, patient_id: int, session: Session) -> Bill:
    bill = session.get(Bill, bill_id)
    if bill is None:
        raise EntityNotFound(f"Bill #{bill_id} not found")
    if bill.patient_id != patient_id:
        raise ValidationFailed(f"Bill #{bill_id} belongs to a different patient")
    return bill


def detach_bill(bill_id: int, session: Session) -> int:
    """Drop the link from lab orders to a deleted bill; their status is left alone."""
    orders = session.exec(select(LabOrder).where(LabOrder.bill_id == bill_id)).all()
    for order in orders:
        order.bill_id = None
        session.add(order)
    return len(orders)
