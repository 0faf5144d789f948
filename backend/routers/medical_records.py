import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, func, select

from database import get_session
from errors import EntityNotFound, TransientError
from models import EntityKind, MedicalRecord, Patient, Prescription, PrescriptionStatus, User
from routers.common import StatusUpdate, lifecycle_fields, record_creation, status_history
from services.access import Capability
from services.auth import get_current_user, require_capability
from services.transitions import execute_transition, load_entity
from state_machine import INITIAL_STATES, normalize_status

router = APIRouter(prefix="/medical-records", tags=["medical-records"])
pharmacy_router = APIRouter(prefix="/pharmacy", tags=["pharmacy"])
logger = logging.getLogger("medflow.records")


class PrescriptionLine(BaseModel):
    medicine_name: str = Field(min_length=1, max_length=200)
    dosage: str = Field(min_length=1, max_length=80)
    frequency: str = Field(min_length=1, max_length=80)
    duration: str = Field(min_length=1, max_length=80)
    instructions: Optional[str] = Field(default=None, max_length=500)


class MedicalRecordCreate(BaseModel):
    patient_id: int
    chief_complaint: str = Field(default="", max_length=2000)
    diagnosis: str = Field(default="", max_length=2000)
    treatment_notes: str = Field(default="", max_length=5000)
    prescriptions: list[PrescriptionLine] = Field(default_factory=list, max_length=50)


class DispenseRequest(BaseModel):
    expected_version: Optional[int] = Field(default=None, ge=1)
    notes: str = Field(default="", max_length=2000)


def _prescription_lines(record_id: int, session: Session) -> list[Prescription]:
    return session.exec(
        select(Prescription)
        .where(Prescription.medical_record_id == record_id)
        .order_by(Prescription.position.asc())  # type: ignore[union-attr]
    ).all()


def medical_record_response(record: MedicalRecord, session: Session) -> dict:
    data = record.model_dump()
    data["prescriptions"] = [
        line.model_dump(exclude={"medical_record_id"}) for line in _prescription_lines(record.id, session)
    ]
    data.update(lifecycle_fields(EntityKind.PRESCRIPTION, record.prescription_status.value))
    return data


def _transition(record_id: int, body: StatusUpdate, session: Session, current_user: User) -> dict:
    record = execute_transition(
        session,
        EntityKind.PRESCRIPTION,
        record_id,
        body.status,
        current_user,
        expected_status=body.expected_status,
        expected_version=body.expected_version,
        notes=body.notes,
    )
    return medical_record_response(record, session)


@router.post("", status_code=201)
def create_medical_record(
    body: MedicalRecordCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_capability(Capability.CREATE_MEDICAL_RECORD)),
):
    if not session.get(Patient, body.patient_id):
        raise EntityNotFound(f"Patient #{body.patient_id} not found")

    record = MedicalRecord(
        patient_id=body.patient_id,
        doctor_id=current_user.id,
        chief_complaint=body.chief_complaint.strip(),
        diagnosis=body.diagnosis.strip(),
        treatment_notes=body.treatment_notes.strip(),
        prescription_status=PrescriptionStatus(INITIAL_STATES[EntityKind.PRESCRIPTION]),
    )
    try:
        session.add(record)
        session.flush()
        for position, line in enumerate(body.prescriptions):
            session.add(
                Prescription(
                    medical_record_id=record.id,
                    position=position,
                    medicine_name=line.medicine_name.strip(),
                    dosage=line.dosage.strip(),
                    frequency=line.frequency.strip(),
                    duration=line.duration.strip(),
                    instructions=(line.instructions or "").strip() or None,
                )
            )
        record_creation(EntityKind.PRESCRIPTION, record.id, record.prescription_status.value, current_user, session)
        session.commit()
        session.refresh(record)
    except SQLAlchemyError as exc:
        session.rollback()
        raise TransientError("Failed to create medical record") from exc

    logger.info(
        "[RECORD] Created record #%s with %d prescription(s) for patient #%s",
        record.id,
        len(body.prescriptions),
        record.patient_id,
    )
    return medical_record_response(record, session)


@router.get("")
def list_medical_records(
    patient_id: Optional[int] = Query(default=None, alias="patientId"),
    prescription_status: Optional[str] = Query(default=None, alias="prescriptionStatus"),
    limit: int = Query(50, ge=1, le=200),
    session: Session = Depends(get_session),
    _current_user: User = Depends(get_current_user),
):
    query = select(MedicalRecord)
    if patient_id is not None:
        query = query.where(MedicalRecord.patient_id == patient_id)
    if prescription_status:
        status = normalize_status(EntityKind.PRESCRIPTION, prescription_status)
        query = query.where(MedicalRecord.prescription_status == PrescriptionStatus(status))
    total = session.exec(select(func.count()).select_from(query.subquery())).one()
    records = session.exec(
        query.order_by(MedicalRecord.created_at.desc(), MedicalRecord.id.desc()).limit(limit)  # type: ignore[union-attr]
    ).all()
    return {"items": [medical_record_response(r, session) for r in records], "total": total}


@router.get("/{record_id}")
def get_medical_record(
    record_id: int,
    session: Session = Depends(get_session),
    _current_user: User = Depends(get_current_user),
):
    record = load_entity(session, EntityKind.PRESCRIPTION, record_id)
    return medical_record_response(record, session)


@router.patch("/{record_id}/status")
async def update_prescription_status(
    record_id: int,
    body: StatusUpdate,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    return _transition(record_id, body, session, current_user)


@router.put("/{record_id}/dispense")
async def dispense_medical_record(
    record_id: int,
    body: Optional[DispenseRequest] = None,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    body = body or DispenseRequest()
    update = StatusUpdate(
        status=PrescriptionStatus.DISPENSED.value,
        expected_version=body.expected_version,
        notes=body.notes,
    )
    return _transition(record_id, update, session, current_user)


@router.get("/{record_id}/history")
def medical_record_history(
    record_id: int,
    session: Session = Depends(get_session),
    _current_user: User = Depends(get_current_user),
):
    load_entity(session, EntityKind.PRESCRIPTION, record_id)
    return status_history(EntityKind.PRESCRIPTION, record_id, session)


@pharmacy_router.get("/pending")
def pending_prescriptions(
    limit: int = Query(50, ge=1, le=200),
    session: Session = Depends(get_session),
    _current_user: User = Depends(get_current_user),
):
    with_lines = select(Prescription.medical_record_id).distinct()
    query = select(MedicalRecord).where(
        MedicalRecord.prescription_status == PrescriptionStatus.PENDING,
        MedicalRecord.id.in_(with_lines),  # type: ignore[union-attr]
    )
    total = session.exec(select(func.count()).select_from(query.subquery())).one()
    records = session.exec(
        query.order_by(MedicalRecord.created_at.asc(), MedicalRecord.id.asc()).limit(limit)  # type: ignore[union-attr]
    ).all()
    return {"items": [medical_record_response(r, session) for r in records], "total": total}
