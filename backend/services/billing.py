from __future__ import annotations

from datetime import datetime

from sqlmodel import Session, select

from errors import ValidationFailed
from models import Bill, BillStatus


def round_money(value: float) -> float:
    return round(value + 0.0, 2)


def compute_totals(items: list[dict], discount: float, gst_percent: float) -> dict[str, float]:
    """Totals fixed once at bill creation: grand_total = subtotal - discount + gst_amount.

    GST is charged on the discounted subtotal.
    """
    if not items:
        raise ValidationFailed("A bill needs at least one item")
    if discount < 0:
        raise ValidationFailed("Discount cannot be negative")
    if gst_percent < 0:
        raise ValidationFailed("GST percent cannot be negative")

    subtotal = 0.0
    for item in items:
        if item["quantity"] <= 0:
            raise ValidationFailed(f"Item '{item['description']}' needs a positive quantity")
        if item["unit_price"] < 0:
            raise ValidationFailed(f"Item '{item['description']}' has a negative unit price")
        item["total"] = round_money(item["quantity"] * item["unit_price"])
        subtotal += item["total"]

    subtotal = round_money(subtotal)
    if discount > subtotal:
        raise ValidationFailed("Discount cannot exceed the subtotal")
    gst_amount = round_money((subtotal - discount) * gst_percent / 100)
    return {
        "subtotal": subtotal,
        "discount": round_money(discount),
        "gst_amount": gst_amount,
        "grand_total": round_money(subtotal - discount + gst_amount),
    }


def initial_paid_amount(status: BillStatus, paid_amount: float | None, grand_total: float) -> float | None:
    if status == BillStatus.CANCELLED:
        raise ValidationFailed("A bill cannot be created as CANCELLED")
    if status == BillStatus.PENDING:
        return None
    if status == BillStatus.PAID:
        amount = grand_total if paid_amount is None else paid_amount
        if amount < 0 or round_money(amount) > grand_total:
            raise ValidationFailed("Paid amount must be between zero and the grand total")
        return round_money(amount)
    if paid_amount is None or paid_amount <= 0 or paid_amount >= grand_total:
        raise ValidationFailed("A partially paid bill needs a paid amount between zero and the grand total")
    return round_money(paid_amount)


def next_bill_number(session: Session, when: datetime | None = None) -> str:
    when = when or datetime.utcnow()
    prefix = f"BILL-{when:%Y%m%d}-"
    numbers = session.exec(
        select(Bill.bill_number).where(Bill.bill_number.startswith(prefix))  # type: ignore[union-attr]
    ).all()
    # Deleted bills leave gaps, so continue from the highest number issued today.
    highest = max((int(number[len(prefix):]) for number in numbers if number[len(prefix):].isdigit()), default=0)
    return f"{prefix}{highest + 1:04d}"
