from models import EntityKind
from services.consistency import dependent_collections


def _linked_order(client, doctor_headers, patient_id, bill_id):
    response = client.post(
        "/lab/orders",
        headers=doctor_headers,
        json={"patient_id": patient_id, "test_name": "Blood Sugar (Fasting)", "billId": bill_id},
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_lab_completion_leaves_bill_alone(client, doctor_headers, lab_headers, receptionist_headers, patient_id, bill, advance):
    order = _linked_order(client, doctor_headers, patient_id, bill["id"])
    assert order["bill"] == {"id": bill["id"], "bill_number": bill["bill_number"], "status": "PENDING"}

    path = f"/lab/orders/{order['id']}"
    advance(lab_headers, path, "SAMPLE_COLLECTED", "PROCESSING")
    done = client.patch(
        f"{path}/status",
        headers=lab_headers,
        json={"status": "COMPLETED", "parameters": [{"name": "Glucose", "value": "92", "unit": "mg/dL"}]},
    )
    assert done.status_code == 200, done.text

    current_bill = client.get(f"/billing/{bill['id']}", headers=receptionist_headers).json()
    assert current_bill["status"] == "PENDING"
    assert current_bill["version"] == 1


def test_bill_payment_leaves_lab_order_alone(client, doctor_headers, receptionist_headers, patient_id, bill, advance):
    order = _linked_order(client, doctor_headers, patient_id, bill["id"])
    advance(receptionist_headers, f"/billing/{bill['id']}", "PAID")

    current = client.get(f"/lab/orders/{order['id']}", headers=doctor_headers).json()
    assert current["status"] == "ORDERED"
    assert current["version"] == 1
    assert current["bill"]["status"] == "PAID"


def test_bill_deletion_detaches_lab_orders(client, doctor_headers, admin_headers, patient_id, bill):
    order = _linked_order(client, doctor_headers, patient_id, bill["id"])

    deleted = client.delete(f"/billing/{bill['id']}", headers=admin_headers)
    assert deleted.status_code == 204

    current = client.get(f"/lab/orders/{order['id']}", headers=doctor_headers).json()
    assert current["bill_id"] is None
    assert current["bill"] is None
    assert current["status"] == "ORDERED"


def test_lab_order_rejects_bill_of_other_patient(client, doctor_headers, receptionist_headers, bill):
    other = client.post("/patients", headers=receptionist_headers, json={"first_name": "Kiran"})
    assert other.status_code == 201

    response = client.post(
        "/lab/orders",
        headers=doctor_headers,
        json={"patient_id": other.json()["id"], "test_name": "CBC", "bill_id": bill["id"]},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "ValidationFailed"


def test_dispensing_does_not_touch_bills(client, pharmacist_headers, receptionist_headers, medical_record, bill):
    client.put(f"/medical-records/{medical_record['id']}/dispense", headers=pharmacist_headers)
    current_bill = client.get(f"/billing/{bill['id']}", headers=receptionist_headers).json()
    assert current_bill["status"] == "PENDING"


def test_dependent_collections():
    assert dependent_collections(EntityKind.LAB_ORDER) == ["/lab/orders"]
    assert dependent_collections(EntityKind.PRESCRIPTION) == ["/medical-records", "/pharmacy"]
    assert dependent_collections(EntityKind.BILL) == ["/billing", "/lab/orders"]
