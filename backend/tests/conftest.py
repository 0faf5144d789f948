from __future__ import annotations

import pytest
import httpx
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine, select

from database import get_session
from main import app
from models import User, UserRole
from services.auth import hash_password
from sync.client import ClinicApiClient

TEST_ENGINE = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


def _override_get_session():
    with Session(TEST_ENGINE) as session:
        yield session


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture(autouse=True)
def reset_db():
    SQLModel.metadata.drop_all(TEST_ENGINE)
    SQLModel.metadata.create_all(TEST_ENGINE)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def client():
    app.dependency_overrides[get_session] = _override_get_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
async def async_client():
    app.dependency_overrides[get_session] = _override_get_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def seeded_users():
    users = {
        "admin": {
            "name": "Admin",
            "email": "admin@medflow.local",
            "password": "admin123",
            "role": UserRole.ADMIN,
            "department": "Operations",
        },
        "doctor": {
            "name": "Doctor",
            "email": "doctor@medflow.local",
            "password": "doctor123",
            "role": UserRole.DOCTOR,
            "department": "Medicine",
        },
        "receptionist": {
            "name": "Receptionist",
            "email": "front-desk@medflow.local",
            "password": "front123",
            "role": UserRole.RECEPTIONIST,
            "department": "Front Desk",
        },
        "pharmacist": {
            "name": "Pharmacist",
            "email": "pharmacy@medflow.local",
            "password": "pharmacy123",
            "role": UserRole.PHARMACIST,
            "department": "Pharmacy",
        },
        "lab_technician": {
            "name": "Lab Tech",
            "email": "lab@medflow.local",
            "password": "lab123",
            "role": UserRole.LAB_TECHNICIAN,
            "department": "Laboratory",
        },
        "patient": {
            "name": "Patient Portal",
            "email": "patient@medflow.local",
            "password": "patient123",
            "role": UserRole.PATIENT,
            "department": "",
        },
    }

    with Session(TEST_ENGINE) as session:
        for spec in users.values():
            user = User(
                name=spec["name"],
                email=spec["email"],
                password_hash=hash_password(spec["password"]),
                role=spec["role"],
                department=spec["department"],
            )
            session.add(user)
        session.commit()

    return users


@pytest.fixture
def staff(seeded_users):
    """Detached ``User`` rows keyed like ``seeded_users``, for calling services directly."""
    with Session(TEST_ENGINE) as session:
        rows = {user.email: user for user in session.exec(select(User)).all()}
    return {key: rows[spec["email"]] for key, spec in seeded_users.items()}


def _login(client: TestClient, email: str, password: str) -> dict[str, str]:
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    token = response.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(client: TestClient, seeded_users):
    return _login(client, seeded_users["admin"]["email"], seeded_users["admin"]["password"])


@pytest.fixture
def doctor_headers(client: TestClient, seeded_users):
    return _login(client, seeded_users["doctor"]["email"], seeded_users["doctor"]["password"])


@pytest.fixture
def receptionist_headers(client: TestClient, seeded_users):
    return _login(client, seeded_users["receptionist"]["email"], seeded_users["receptionist"]["password"])


@pytest.fixture
def pharmacist_headers(client: TestClient, seeded_users):
    return _login(client, seeded_users["pharmacist"]["email"], seeded_users["pharmacist"]["password"])


@pytest.fixture
def lab_headers(client: TestClient, seeded_users):
    return _login(client, seeded_users["lab_technician"]["email"], seeded_users["lab_technician"]["password"])


@pytest.fixture
def patient_headers(client: TestClient, seeded_users):
    return _login(client, seeded_users["patient"]["email"], seeded_users["patient"]["password"])


@pytest.fixture
def patient_id(client: TestClient, receptionist_headers):
    response = client.post(
        "/patients",
        headers=receptionist_headers,
        json={"first_name": "Asha", "last_name": "Rao", "phone": "+91-98450-00000"},
    )
    assert response.status_code == 201, response.text
    return response.json()["id"]


@pytest.fixture
def lab_order(client: TestClient, doctor_headers, patient_id):
    response = client.post(
        "/lab/orders",
        headers=doctor_headers,
        json={"patient_id": patient_id, "test_name": "Complete Blood Count", "test_code": "CBC", "priority": "stat"},
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.fixture
def medical_record(client: TestClient, doctor_headers, patient_id):
    response = client.post(
        "/medical-records",
        headers=doctor_headers,
        json={
            "patient_id": patient_id,
            "chief_complaint": "Fever for three days",
            "diagnosis": "Viral fever",
            "prescriptions": [
                {"medicine_name": "Paracetamol 500mg", "dosage": "1 tab", "frequency": "TID", "duration": "3 days"},
                {"medicine_name": "ORS", "dosage": "1 sachet", "frequency": "BID", "duration": "2 days"},
            ],
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.fixture
def bill(client: TestClient, receptionist_headers, patient_id):
    # subtotal 1000, discount 100, GST 18% of 900 = 162, grand total 1062
    response = client.post(
        "/billing",
        headers=receptionist_headers,
        json={
            "patientId": patient_id,
            "items": [
                {"description": "Consultation", "quantity": 1, "unitPrice": 500},
                {"description": "CBC panel", "quantity": 2, "unitPrice": 250},
            ],
            "discount": 100,
            "gstPercent": 18,
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.fixture
async def make_api(seeded_users):
    """Factory for logged-in ``ClinicApiClient`` instances talking to the app in-process."""
    app.dependency_overrides[get_session] = _override_get_session
    clients: list[ClinicApiClient] = []

    async def _make(role: str, **kwargs) -> ClinicApiClient:
        kwargs.setdefault("sleep", _no_sleep)
        kwargs.setdefault("transport", httpx.ASGITransport(app=app))
        api = ClinicApiClient("http://testserver", **kwargs)
        clients.append(api)
        await api.login(seeded_users[role]["email"], seeded_users[role]["password"])
        return api

    yield _make
    for api in clients:
        await api.aclose()
    app.dependency_overrides.clear()


@pytest.fixture
def advance(client: TestClient):
    """PATCH ``path``/status through each of ``statuses`` and return the final entity."""

    def _advance(headers: dict, path: str, *statuses: str) -> dict:
        body = None
        for status in statuses:
            response = client.patch(f"{path}/status", headers=headers, json={"status": status})
            assert response.status_code == 200, response.text
            body = response.json()
        return body

    return _advance
