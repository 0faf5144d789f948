from sqlmodel import Session, select

from conftest import TEST_ENGINE
from models import User, UserRole


def test_login_success_and_me(client, seeded_users):
    response = client.post(
        "/auth/login",
        json={
            "email": seeded_users["doctor"]["email"],
            "password": seeded_users["doctor"]["password"],
        },
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["token_type"] == "bearer"
    assert payload["user"]["role"] == "doctor"

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {payload['access_token']}"})
    assert me.status_code == 200
    assert me.json()["email"] == seeded_users["doctor"]["email"]


def test_login_invalid_password(client, seeded_users):
    response = client.post(
        "/auth/login",
        json={"email": seeded_users["doctor"]["email"], "password": "wrong-pass"},
    )
    assert response.status_code == 401


def test_auth_required_for_protected_endpoints(client, seeded_users):
    _ = seeded_users
    response = client.get("/patients")
    assert response.status_code == 401


def test_capability_map_is_published(client, doctor_headers):
    response = client.get("/auth/capabilities", headers=doctor_headers)
    assert response.status_code == 200
    capabilities = response.json()
    assert set(capabilities) == {"admin", "doctor", "receptionist", "pharmacist", "lab_technician", "patient"}
    assert "delete_invoice" in capabilities["admin"]
    assert capabilities["lab_technician"] == ["progress_lab_order", "view_invoice_details", "view_invoices"]


def test_token_rejected_after_role_change(client, seeded_users):
    login = client.post(
        "/auth/login",
        json={"email": seeded_users["receptionist"]["email"], "password": seeded_users["receptionist"]["password"]},
    )
    headers = {"Authorization": f"Bearer {login.json()['access_token']}"}
    assert client.get("/auth/me", headers=headers).status_code == 200

    with Session(TEST_ENGINE) as session:
        user = session.exec(select(User).where(User.email == seeded_users["receptionist"]["email"])).one()
        user.role = UserRole.PATIENT
        session.add(user)
        session.commit()

    stale = client.get("/auth/me", headers=headers)
    assert stale.status_code == 401
    assert stale.headers["WWW-Authenticate"] == "Bearer"
