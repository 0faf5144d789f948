import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import SQLModel, Session, create_engine, func, select

from errors import EntityNotFound, PermissionDenied, StaleState, TransientError, ValidationFailed
from models import Bill, BillStatus, EntityKind, LabOrder, LabOrderStatus, Patient, StatusEvent, User, UserRole
from services.transitions import execute_transition


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'transitions.db'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def people(engine):
    with Session(engine) as session:
        users = {
            role: User(name=role.value.title(), email=f"{role.value}@medflow.local", password_hash="-", role=role)
            for role in UserRole
        }
        session.add_all(users.values())
        patient = Patient(first_name="Ravi", last_name="Menon")
        session.add(patient)
        session.commit()
        for user in users.values():
            session.refresh(user)
        session.refresh(patient)
    return users, patient


@pytest.fixture
def bill_id(engine, people):
    _, patient = people
    with Session(engine) as session:
        bill = Bill(bill_number="BILL-TEST-0001", patient_id=patient.id, subtotal=100.0, grand_total=100.0)
        session.add(bill)
        session.commit()
        return bill.id


def _event_count(engine, entity_id: int) -> int:
    with Session(engine) as session:
        return session.exec(
            select(func.count()).select_from(StatusEvent).where(StatusEvent.entity_id == entity_id)
        ).one()


def test_concurrent_writers_only_one_succeeds(engine, people, bill_id):
    users, _ = people
    receptionist = users[UserRole.RECEPTIONIST]

    with Session(engine) as first, Session(engine) as second:
        # Both sessions hold version 1 before either writes.
        assert first.get(Bill, bill_id).version == 1
        assert second.get(Bill, bill_id).version == 1

        won = execute_transition(first, EntityKind.BILL, bill_id, "PAID", receptionist, payload={"paid_amount": 100})
        assert won.status == BillStatus.PAID
        assert won.version == 2

        with pytest.raises(StaleState) as excinfo:
            execute_transition(second, EntityKind.BILL, bill_id, "PAID", receptionist, payload={"paid_amount": 40})
        assert excinfo.value.current_status == "PAID"
        assert excinfo.value.current_version == 2

    with Session(engine) as check:
        stored = check.get(Bill, bill_id)
        assert stored.paid_amount == 100
        assert stored.version == 2
    assert _event_count(engine, bill_id) == 1


def test_permission_is_checked_before_lookup(engine, people):
    users, _ = people
    with Session(engine) as session:
        with pytest.raises(PermissionDenied):
            execute_transition(session, EntityKind.BILL, 999, "PAID", users[UserRole.PHARMACIST])
        with pytest.raises(EntityNotFound):
            execute_transition(session, EntityKind.BILL, 999, "PAID", users[UserRole.RECEPTIONIST])


def test_expected_state_mismatch_writes_nothing(engine, people, bill_id):
    users, _ = people
    with Session(engine) as session:
        with pytest.raises(StaleState) as excinfo:
            execute_transition(
                session,
                EntityKind.BILL,
                bill_id,
                "PAID",
                users[UserRole.RECEPTIONIST],
                expected_status="PARTIALLY_PAID",
            )
        assert excinfo.value.current_status == "PENDING"

        with pytest.raises(StaleState):
            execute_transition(
                session,
                EntityKind.BILL,
                bill_id,
                "PAID",
                users[UserRole.RECEPTIONIST],
                expected_version=7,
            )
    assert _event_count(engine, bill_id) == 0


def test_noop_returns_entity_without_event(engine, people, bill_id):
    users, _ = people
    admin = users[UserRole.ADMIN]
    with Session(engine) as session:
        execute_transition(session, EntityKind.BILL, bill_id, "CANCELLED", admin)
        again = execute_transition(session, EntityKind.BILL, bill_id, "cancelled", admin)
        assert again.status == BillStatus.CANCELLED
        assert again.version == 2
    assert _event_count(engine, bill_id) == 1


def test_payload_validation_happens_after_transition_check(engine, people):
    users, patient = people
    with Session(engine) as session:
        order = LabOrder(
            patient_id=patient.id,
            ordered_by_id=users[UserRole.DOCTOR].id,
            test_name="Serum Creatinine",
            status=LabOrderStatus.PROCESSING,
        )
        session.add(order)
        session.commit()
        order_id = order.id

        with pytest.raises(ValidationFailed):
            execute_transition(session, EntityKind.LAB_ORDER, order_id, "COMPLETED", users[UserRole.LAB_TECHNICIAN])

        completed = execute_transition(
            session,
            EntityKind.LAB_ORDER,
            order_id,
            "COMPLETED",
            users[UserRole.LAB_TECHNICIAN],
            payload={"parameters": [{"name": "Creatinine", "value": "0.9", "unit": "mg/dL"}]},
        )
        assert completed.status == LabOrderStatus.COMPLETED
        assert completed.result["parameters"] == [{"name": "Creatinine", "value": "0.9", "unit": "mg/dL"}]
        assert completed.result["technician_id"] == users[UserRole.LAB_TECHNICIAN].id


def test_storage_failure_is_transient_and_rolled_back(engine, people, bill_id, monkeypatch):
    users, _ = people
    with Session(engine) as session:

        def broken_commit():
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(session, "commit", broken_commit)
        with pytest.raises(TransientError):
            execute_transition(session, EntityKind.BILL, bill_id, "PAID", users[UserRole.RECEPTIONIST])

    with Session(engine) as check:
        stored = check.get(Bill, bill_id)
        assert stored.status == BillStatus.PENDING
        assert stored.version == 1
    assert _event_count(engine, bill_id) == 0
