from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, func, or_, select

from database import get_session
from errors import EntityNotFound, TransientError, ValidationFailed
from models import Patient, User, UserRole
from services.auth import get_current_user, require_roles

router = APIRouter(prefix="/patients", tags=["patients"])

requires_front_desk = require_roles(UserRole.ADMIN, UserRole.RECEPTIONIST, UserRole.DOCTOR)


class PatientCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=120)
    last_name: str = Field(default="", max_length=120)
    phone: Optional[str] = Field(default=None, max_length=32)


@router.post("", status_code=201)
def create_patient(
    body: PatientCreate,
    session: Session = Depends(get_session),
    _current_user: User = Depends(requires_front_desk),
):
    first_name = body.first_name.strip()
    if not first_name:
        raise ValidationFailed("Patient first name cannot be empty")

    patient = Patient(
        first_name=first_name,
        last_name=body.last_name.strip(),
        phone=(body.phone or "").strip() or None,
    )
    session.add(patient)
    try:
        session.commit()
        session.refresh(patient)
    except SQLAlchemyError as exc:
        session.rollback()
        raise TransientError("Failed to create patient") from exc
    return patient


@router.get("")
def list_patients(
    session: Session = Depends(get_session),
    _current_user: User = Depends(get_current_user),
    search: str = Query("", max_length=120),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
):
    query = select(Patient)
    if search.strip():
        term = search.strip()
        query = query.where(
            or_(Patient.first_name.contains(term), Patient.last_name.contains(term))  # type: ignore[union-attr]
        )
    total = session.exec(select(func.count()).select_from(query.subquery())).one()
    patients = session.exec(
        query.order_by(Patient.created_at.asc())  # type: ignore[union-attr]
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    return {"patients": patients, "total": total, "page": page, "page_size": page_size}


@router.get("/{patient_id}")
def get_patient(
    patient_id: int,
    session: Session = Depends(get_session),
    _current_user: User = Depends(get_current_user),
):
    patient = session.get(Patient, patient_id)
    if not patient:
        raise EntityNotFound(f"Patient #{patient_id} not found")
    return patient
