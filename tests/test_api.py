"""End-to-end tests through the FastAPI app."""

from datetime import datetime, timedelta, timezone

import pytest

from medrecords.services.authorization import Caller, Role

MEDIC = Caller("medic-7", Role.EMERGENCY_PERSONNEL)


@pytest.fixture
def create(client, payload, doctor, auth_headers):
    def create(patient_id="patient-42", **kwargs):
        body = {"patient_id": patient_id, "payload": payload(), **kwargs}
        response = client.post("/api/v1/records", json=body, headers=auth_headers(doctor))
        assert response.status_code == 201, response.text
        return response.json()

    return create


def test_health(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["database"] == "connected"


def test_identity_headers_are_required(client):
    assert client.get("/api/v1/audit/system").status_code == 401
    response = client.get(
        "/api/v1/audit/system", headers={"X-Caller-Id": "x", "X-Caller-Role": "janitor"}
    )
    assert response.status_code == 401


def test_only_doctors_create_records(client, payload, patient, auth_headers):
    response = client.post(
        "/api/v1/records",
        json={"patient_id": "patient-42", "payload": payload()},
        headers=auth_headers(patient),
    )
    assert response.status_code == 403


def test_invalid_payload_is_rejected(client, payload, doctor, auth_headers):
    bad = payload()
    del bad["diagnosis"]
    response = client.post(
        "/api/v1/records", json={"patient_id": "patient-42", "payload": bad}, headers=auth_headers(doctor)
    )
    assert response.status_code == 422


def test_record_lifecycle(client, create, payload, doctor, patient, auth_headers):
    record = create()
    assert record["version"] == 1
    url = f"/api/v1/records/{record['id']}"

    assert client.get(url, headers=auth_headers(patient)).status_code == 200

    update = {
        "payload": payload(primary="Hypertension Stage 2"),
        "change_reason": "Worsened",
        "expected_version": 1,
    }
    response = client.put(url, json=update, headers=auth_headers(doctor))
    assert response.status_code == 200
    assert response.json()["version"] == 2

    stale = client.put(url, json=update, headers=auth_headers(doctor))
    assert stale.status_code == 409

    history = client.get(f"{url}/versions", headers=auth_headers(patient)).json()
    assert history["current_version"] == 2
    assert [v["version_number"] for v in history["versions"]] == [1, 2]

    v1 = client.get(f"{url}/versions/1", headers=auth_headers(patient)).json()
    assert v1["payload"]["diagnosis"]["primary"] == "Hypertension"
    assert client.get(f"{url}/versions/9", headers=auth_headers(patient)).status_code == 404


def test_patient_cannot_edit_own_record(client, create, payload, patient, auth_headers):
    record = create()
    response = client.put(
        f"/api/v1/records/{record['id']}", json={"payload": payload()}, headers=auth_headers(patient)
    )
    assert response.status_code == 403
    assert response.json()["errors"] == ["patient_cannot_modify"]


def test_sharing_flow(client, create, patient, other_doctor, auth_headers):
    record = create()
    url = f"/api/v1/records/{record['id']}"

    assert client.get(url, headers=auth_headers(other_doctor)).status_code == 403

    expires = (datetime.now(timezone.utc) + timedelta(hours=24)).isoformat()
    response = client.post(
        f"{url}/grants",
        json={"grantee_id": other_doctor.caller_id, "level": "read", "expires_at": expires},
        headers=auth_headers(patient),
    )
    assert response.status_code == 201
    assert response.json()["level"] == "read"

    assert client.get(url, headers=auth_headers(other_doctor)).status_code == 200
    grants = client.get(f"{url}/grants", headers=auth_headers(patient)).json()
    assert [g["grantee_id"] for g in grants] == ["dr-wilson"]

    revoked = client.delete(f"{url}/grants/dr-wilson", headers=auth_headers(patient)).json()
    assert revoked["revoked"] is True
    again = client.delete(f"{url}/grants/dr-wilson", headers=auth_headers(patient)).json()
    assert again["revoked"] is False

    assert client.get(url, headers=auth_headers(other_doctor)).status_code == 403


def test_invalidated_record_disappears(client, create, doctor, patient, auth_headers):
    record = create()
    url = f"/api/v1/records/{record['id']}"

    response = client.post(f"{url}/invalidate", json={"reason": "Duplicate"}, headers=auth_headers(doctor))
    assert response.status_code == 200
    assert response.json()["is_valid"] is False

    assert client.get(url, headers=auth_headers(doctor)).status_code == 404
    assert client.get(f"{url}/versions", headers=auth_headers(doctor)).status_code == 200
    timeline = client.get("/api/v1/patients/patient-42/records", headers=auth_headers(patient)).json()
    assert timeline == []


def test_timeline_only_shows_readable_records(client, create, doctor, other_doctor, auth_headers):
    create()
    create()
    assert len(client.get("/api/v1/patients/patient-42/records", headers=auth_headers(doctor)).json()) == 2
    assert client.get("/api/v1/patients/patient-42/records", headers=auth_headers(other_doctor)).json() == []


def test_timeline_pages_through_readable_records_only(client, create, patient, other_doctor, auth_headers):
    shared = create()
    create()
    create()
    response = client.post(
        f"/api/v1/records/{shared['id']}/grants",
        json={"grantee_id": other_doctor.caller_id, "level": "read"},
        headers=auth_headers(patient),
    )
    assert response.status_code == 201

    page = client.get("/api/v1/patients/patient-42/records?limit=1", headers=auth_headers(other_doctor)).json()
    assert [r["id"] for r in page] == [shared["id"]]
    rest = client.get(
        "/api/v1/patients/patient-42/records?limit=1&offset=1", headers=auth_headers(other_doctor)
    ).json()
    assert rest == []


def test_audit_endpoints(client, create, doctor, patient, admin, other_doctor, auth_headers):
    record = create()
    url = f"/api/v1/records/{record['id']}"
    client.get(url, headers=auth_headers(patient))

    trail = client.get(f"{url}/audit", headers=auth_headers(doctor)).json()
    assert [e["action"] for e in trail] == ["created", "viewed"]
    assert client.get(f"{url}/audit", headers=auth_headers(other_doctor)).status_code == 403

    mine = client.get("/api/v1/audit/patients/patient-42", headers=auth_headers(patient))
    assert mine.status_code == 200
    assert {e["patient_id"] for e in mine.json()} == {"patient-42"}
    assert client.get("/api/v1/audit/patients/patient-42", headers=auth_headers(other_doctor)).status_code == 403

    activity = client.get("/api/v1/audit/users/dr-house", headers=auth_headers(doctor)).json()
    assert [e["action"] for e in activity] == ["created"]

    assert client.get("/api/v1/audit/system", headers=auth_headers(doctor)).status_code == 403
    system = client.get("/api/v1/audit/system?action=viewed", headers=auth_headers(admin)).json()
    assert [e["performed_by"] for e in system] == ["patient-42"]


def test_emergency_access(client, create, payload, doctor, patient, auth_headers):
    allergy = {"allergen": "Penicillin", "reaction": "Anaphylaxis", "severity": "life_threatening"}
    body = {
        "patient_id": "patient-42",
        "payload": payload(allergies=[allergy], blood_group="B+"),
        "is_emergency_accessible": True,
    }
    assert client.post("/api/v1/records", json=body, headers=auth_headers(doctor)).status_code == 201

    assert client.get("/api/v1/emergency/patient-42", headers=auth_headers(doctor)).status_code == 403
    profile = client.get("/api/v1/emergency/patient-42", headers=auth_headers(MEDIC)).json()
    assert profile["patient"]["blood_group"] == "B+"

    assert client.get("/api/v1/emergency/patient-0", headers=auth_headers(MEDIC)).status_code == 404

    issued = client.post("/api/v1/emergency/patient-42/token", headers=auth_headers(patient))
    assert issued.status_code == 200
    token = issued.json()["token"]

    other_patient = Caller("patient-7", Role.PATIENT)
    assert client.post("/api/v1/emergency/patient-42/token", headers=auth_headers(other_patient)).status_code == 403

    scanned = client.post("/api/v1/emergency/scan", json={"token": token})
    assert scanned.status_code == 200
    assert scanned.json()["patient"]["allergies"][0]["allergen"] == "Penicillin"
    assert client.post("/api/v1/emergency/scan", json={"token": token}).status_code == 409

    assert client.post("/api/v1/emergency/scan", json={"token": "not-a-token"}).status_code == 400
    assert client.post("/api/v1/emergency/scan", json={"token": token}, headers=auth_headers(doctor)).status_code == 403
