import logging
import os
from pathlib import Path

from sqlalchemy import inspect
from sqlmodel import SQLModel, Session, create_engine

DB_FILE = Path(os.getenv("MEDFLOW_DB_FILE", str(Path(__file__).resolve().parent / "medflow.db")))
DATABASE_URL = f"sqlite:///{DB_FILE}"

engine = create_engine(DATABASE_URL, echo=False, connect_args={"check_same_thread": False})

logger = logging.getLogger("medflow.db")


REQUIRED_COLUMNS = {
    "user": {
        "id",
        "name",
        "email",
        "password_hash",
        "role",
        "department",
        "is_active",
        "created_at",
    },
    "patient": {"id", "first_name", "last_name", "created_at"},
    "laborder": {
        "id",
        "patient_id",
        "ordered_by_id",
        "bill_id",
        "test_name",
        "priority",
        "status",
        "result_json",
        "version",
    },
    "medicalrecord": {
        "id",
        "patient_id",
        "doctor_id",
        "prescription_status",
        "version",
    },
    "bill": {
        "id",
        "bill_number",
        "patient_id",
        "subtotal",
        "discount",
        "gst_amount",
        "grand_total",
        "paid_amount",
        "status",
        "version",
    },
    "statusevent": {
        "id",
        "entity_kind",
        "entity_id",
        "actor_id",
        "previous_status",
        "new_status",
        "timestamp",
    },
}


def _schema_needs_rebuild() -> bool:
    inspector = inspect(engine)
    existing_tables = set(inspector.get_table_names())

    for table_name, required_cols in REQUIRED_COLUMNS.items():
        if table_name not in existing_tables:
            continue
        existing_cols = {col["name"] for col in inspector.get_columns(table_name)}
        if not required_cols.issubset(existing_cols):
            return True

    return False


def create_db():
    if _schema_needs_rebuild():
        logger.warning("[DB] Schema mismatch detected. Rebuilding local SQLite schema.")
        SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session
