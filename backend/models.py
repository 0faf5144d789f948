import json
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import SQLModel, Field


class EntityKind(str, Enum):
    LAB_ORDER = "lab_order"
    PRESCRIPTION = "prescription"
    BILL = "bill"


class LabPriority(str, Enum):
    ROUTINE = "routine"
    URGENT = "urgent"
    STAT = "stat"


class LabOrderStatus(str, Enum):
    ORDERED = "ORDERED"
    SAMPLE_COLLECTED = "SAMPLE_COLLECTED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PrescriptionStatus(str, Enum):
    PENDING = "PENDING"
    DISPENSED = "DISPENSED"
    CANCELLED = "CANCELLED"


class BillStatus(str, Enum):
    PENDING = "PENDING"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class UserRole(str, Enum):
    ADMIN = "admin"
    DOCTOR = "doctor"
    RECEPTIONIST = "receptionist"
    PHARMACIST = "pharmacist"
    LAB_TECHNICIAN = "lab_technician"
    PATIENT = "patient"


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(unique=True, index=True)
    password_hash: str
    role: UserRole
    department: str = ""
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Patient(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    first_name: str
    last_name: str = ""
    phone: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class LabOrder(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    patient_id: int = Field(foreign_key="patient.id", index=True)
    ordered_by_id: int = Field(foreign_key="user.id", index=True)
    bill_id: Optional[int] = Field(default=None, foreign_key="bill.id")
    test_name: str
    test_code: Optional[str] = None
    priority: LabPriority = LabPriority.ROUTINE
    status: LabOrderStatus = Field(default=LabOrderStatus.ORDERED, index=True)
    notes: Optional[str] = None
    result_json: Optional[str] = None
    version: int = 1
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def result(self) -> Optional[dict]:
        if self.result_json is None:
            return None
        return json.loads(self.result_json)


class MedicalRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    patient_id: int = Field(foreign_key="patient.id", index=True)
    doctor_id: int = Field(foreign_key="user.id", index=True)
    chief_complaint: str = ""
    diagnosis: str = ""
    treatment_notes: str = ""
    prescription_status: PrescriptionStatus = Field(default=PrescriptionStatus.PENDING, index=True)
    dispensed_by_id: Optional[int] = Field(default=None, foreign_key="user.id")
    dispensed_at: Optional[datetime] = None
    version: int = 1
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Prescription(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    medical_record_id: int = Field(foreign_key="medicalrecord.id", index=True)
    position: int = 0
    medicine_name: str
    dosage: str
    frequency: str
    duration: str
    instructions: Optional[str] = None


class Bill(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    bill_number: str = Field(unique=True, index=True)
    patient_id: int = Field(foreign_key="patient.id", index=True)
    created_by_id: Optional[int] = Field(default=None, foreign_key="user.id")
    subtotal: float = 0.0
    discount: float = 0.0
    gst_percent: float = 0.0
    gst_amount: float = 0.0
    grand_total: float = 0.0
    paid_amount: Optional[float] = None
    status: BillStatus = Field(default=BillStatus.PENDING, index=True)
    notes: Optional[str] = None
    version: int = 1
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class BillItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    bill_id: int = Field(foreign_key="bill.id", index=True)
    description: str
    quantity: int = 1
    unit_price: float = 0.0
    total: float = 0.0
    medicine_id: Optional[str] = None


class StatusEvent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    entity_kind: EntityKind = Field(index=True)
    entity_id: int = Field(index=True)
    actor_id: Optional[int] = Field(default=None, foreign_key="user.id")
    actor_role: Optional[UserRole] = None
    previous_status: str
    new_status: str
    notes: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
