# tests/test_api.py
import pytest
from datetime import timedelta

import dosing_safety
from auth import create_user
from conftest import login_headers
from database import UserRole
from exceptions import ConcurrentUpdateError


@pytest.fixture
def new_medication(client, caregiver_headers, patient, clock):
    """Caregiver adds a once-daily after-food medication through the API"""
    def factory(**overrides):
        payload = {
            "name": "Atorvastatin",
            "dosage": "20",
            "dosage_unit": "mg",
            "frequency": 1,
            "timing_relation": "after_food",
            "quantity": 10,
            "expiry_date": (clock() + timedelta(days=90)).isoformat(),
            "instructions": "Take after lunch",
        }
        payload.update(overrides)
        response = client.post(f"/caregiver/patients/{patient.id}/medications", json=payload, headers=caregiver_headers)
        assert response.status_code == 201, response.text
        return response.json()
    return factory


class TestCaregiverEndpoints:

    def test_add_medication(self, new_medication, patient):
        medication = new_medication()
        assert medication["patient_id"] == patient.id
        assert medication["remaining_quantity"] == 10
        assert medication["days_left"] == 10
        assert medication["barcode_data"] == f"MT{medication['id'][-8:].upper()}"

    def test_add_medication_validation(self, client, caregiver_headers, patient):
        response = client.post(
            f"/caregiver/patients/{patient.id}/medications",
            json={"name": "X", "dosage": "abc", "frequency": 9},
            headers=caregiver_headers
        )
        assert response.status_code == 422

    def test_add_medication_past_expiry(self, client, caregiver_headers, patient, clock):
        response = client.post(
            f"/caregiver/patients/{patient.id}/medications",
            json={
                "name": "Old stock",
                "dosage": "5",
                "dosage_unit": "mg",
                "frequency": 2,
                "timing_relation": "anytime",
                "quantity": 10,
                "expiry_date": (clock() - timedelta(days=1)).isoformat(),
            },
            headers=caregiver_headers
        )
        assert response.status_code == 400
        assert response.json()["detail"]["message"] == "Expiry date must be in the future"

    def test_unlinked_patient(self, client, caregiver_headers, db_session, clock):
        stranger = create_user(db_session, "patient_two", "patient.two@example.com", "PatientPass2!")
        response = client.post(
            f"/caregiver/patients/{stranger.id}/medications",
            json={
                "name": "Aspirin",
                "dosage": "75",
                "dosage_unit": "mg",
                "frequency": 1,
                "timing_relation": "with_food",
                "quantity": 30,
                "expiry_date": (clock() + timedelta(days=30)).isoformat(),
            },
            headers=caregiver_headers
        )
        assert response.status_code == 404

    def test_link_patient(self, client, caregiver_headers, db_session):
        create_user(db_session, "patient_two", "patient.two@example.com", "PatientPass2!")
        response = client.post("/caregiver/patients", json={"email": "patient.two@example.com"}, headers=caregiver_headers)
        assert response.status_code == 200
        assert response.json()["username"] == "patient_two"

        response = client.post("/caregiver/patients", json={"email": "nobody@example.com"}, headers=caregiver_headers)
        assert response.status_code == 400

    def test_pause_blocks_dosing(self, client, new_medication, caregiver_headers, patient_headers):
        medication = new_medication()
        response = client.patch(
            f"/caregiver/medications/{medication['id']}/status",
            json={"status": "paused"},
            headers=caregiver_headers
        )
        assert response.status_code == 200
        assert response.json()["status"] == "paused"

        response = client.post(f"/patient/medications/{medication['id']}/log", json={}, headers=patient_headers)
        assert response.status_code == 400
        assert response.json()["detail"]["message"] == "Medication not active"

    def test_cannot_complete_manually(self, client, new_medication, caregiver_headers):
        medication = new_medication()
        response = client.patch(
            f"/caregiver/medications/{medication['id']}/status",
            json={"status": "completed"},
            headers=caregiver_headers
        )
        assert response.status_code == 400


class TestDoseLoggingEndpoints:

    def test_medication_listing(self, client, new_medication, patient_headers):
        medication = new_medication()
        response = client.get("/patient/medications", headers=patient_headers)
        assert response.status_code == 200
        assert [m["id"] for m in response.json()] == [medication["id"]]

        response = client.get(f"/patient/medications/{medication['id']}", headers=patient_headers)
        assert response.status_code == 200

        response = client.get("/patient/medications/ffffffffffffffffffffffff", headers=patient_headers)
        assert response.status_code == 404

    def test_timing_check_does_not_log(self, client, new_medication, patient_headers):
        medication = new_medication()
        response = client.get(f"/patient/medications/{medication['id']}/timing-check", headers=patient_headers)
        assert response.status_code == 200
        verdict = response.json()
        assert verdict["can_take"] is True
        assert verdict["reason"] == "Safe to take"

        response = client.get(f"/patient/medications/{medication['id']}", headers=patient_headers)
        assert response.json()["remaining_quantity"] == 10

    def test_log_then_blocked_then_override(self, client, new_medication, patient_headers):
        medication = new_medication()
        url = f"/patient/medications/{medication['id']}/log"

        response = client.post(url, json={"notes": "with lunch"}, headers=patient_headers)
        assert response.status_code == 200
        assert response.json()["remaining_quantity"] == 9

        response = client.post(url, json={}, headers=patient_headers)
        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["message"] == "Too soon for next dose"
        assert detail["details"]["verdict"]["hours_remaining"] == 24
        assert detail["details"]["verdict"]["can_take"] is False

        response = client.post(url, json={"override": True}, headers=patient_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["was_overridden"] is True
        assert body["remaining_quantity"] == 8

    def test_meal_window_enforced_once_configured(self, client, new_medication, patient_headers, clock):
        medication = new_medication()
        client.get("/patient/meal-times", headers=patient_headers)

        clock.set_local(9, 0)
        response = client.get(f"/patient/medications/{medication['id']}/timing-check", headers=patient_headers)
        verdict = response.json()
        assert verdict["can_take"] is False
        assert verdict["next_window"]["meal_type"] == "lunch"
        assert verdict["time_until_next_window"] == "2h 30m"

    def test_concurrent_update_conflict(self, client, new_medication, patient_headers, monkeypatch):
        medication = new_medication()

        def always_stale(db, med, *args):
            db.rollback()
            raise ConcurrentUpdateError("Medication was updated by another request")

        monkeypatch.setattr(dosing_safety, "apply_dose_update", always_stale)

        response = client.post(f"/patient/medications/{medication['id']}/log", json={}, headers=patient_headers)
        assert response.status_code == 409


class TestBarcodeEndpoints:

    def test_scan_reports_verdict(self, client, new_medication, patient_headers, caregiver_headers):
        medication = new_medication()
        code = medication["barcode_data"]

        for headers in (patient_headers, caregiver_headers):
            response = client.get(f"/barcode/scan/{code.lower()}", headers=headers)
            assert response.status_code == 200
            body = response.json()
            assert body["medication"]["id"] == medication["id"]
            assert body["safety"]["can_take"] is True

    def test_scan_errors(self, client, patient_headers):
        assert client.get("/barcode/scan/hello", headers=patient_headers).status_code == 400
        assert client.get("/barcode/scan/MT00000000", headers=patient_headers).status_code == 404

    def test_scan_other_patients_medication(self, client, new_medication, db_session):
        medication = new_medication()
        create_user(db_session, "patient_two", "patient.two@example.com", "PatientPass2!")
        headers = login_headers(client, "patient_two", "PatientPass2!")

        response = client.get(f"/barcode/scan/{medication['barcode_data']}", headers=headers)
        assert response.status_code == 403

    def test_scan_and_log(self, client, new_medication, patient_headers, caregiver_headers):
        medication = new_medication()
        url = f"/barcode/scan/{medication['barcode_data']}/log"

        assert client.post(url, json={}, headers=caregiver_headers).status_code == 403

        response = client.post(url, json={}, headers=patient_headers)
        assert response.status_code == 200
        assert response.json()["remaining_quantity"] == 9

        feed = client.get("/patient/activities", headers=patient_headers).json()
        dose = next(a for a in feed["activities"] if a["type"] == "dose_taken")
        assert dose["metadata"]["method"] == "barcode_scan"
        assert dose["time_ago"] == "Just now"
        assert dose["medication_name"] == "Atorvastatin"

    def test_regenerate_is_stable(self, client, new_medication, caregiver_headers, patient_headers):
        medication = new_medication()
        url = f"/barcode/medications/{medication['id']}/regenerate"

        response = client.post(url, headers=caregiver_headers)
        assert response.status_code == 200
        assert response.json()["barcode_data"] == medication["barcode_data"]

        assert client.post(url, headers=patient_headers).status_code == 403


class TestMealTimeAndActivityEndpoints:

    def test_default_meal_times(self, client, patient_headers):
        response = client.get("/patient/meal-times", headers=patient_headers)
        assert response.status_code == 200
        assert [(m["id"], m["display_time"], m["enabled"]) for m in response.json()] == [
            ("breakfast", "8:00 AM", True),
            ("lunch", "12:30 PM", True),
            ("dinner", "7:00 PM", True),
            ("snack", "3:30 PM", False),
        ]

    def test_update_meal_times(self, client, patient_headers):
        response = client.put(
            "/patient/meal-times",
            json={"lunch": {"time": "13:15"}, "snack": {"time": "16:00", "enabled": True}},
            headers=patient_headers
        )
        assert response.status_code == 200
        meals = {m["id"]: m for m in response.json()}
        assert meals["lunch"]["time"] == "13:15"
        assert meals["lunch"]["display_time"] == "1:15 PM"
        assert meals["snack"]["enabled"] is True

    def test_required_meal_stays_enabled(self, client, patient_headers):
        response = client.put(
            "/patient/meal-times",
            json={"breakfast": {"time": "08:00", "enabled": False}},
            headers=patient_headers
        )
        assert response.status_code == 400
        assert response.json()["detail"]["message"] == "Breakfast is required and cannot be disabled"

    def test_activity_feed_read_flags(self, client, new_medication, patient_headers):
        medication = new_medication(quantity=4)
        client.post(f"/patient/medications/{medication['id']}/log", json={}, headers=patient_headers)

        feed = client.get("/patient/activities", headers=patient_headers).json()
        types = {a["type"] for a in feed["activities"]}
        assert types == {"medication_added", "dose_taken", "low_stock"}
        assert feed["unread_count"] == 3

        first_id = feed["activities"][0]["id"]
        assert client.patch(f"/patient/activities/{first_id}/read", headers=patient_headers).status_code == 200
        assert client.get("/patient/activities", headers=patient_headers).json()["unread_count"] == 2

        response = client.patch("/patient/activities/read-all", headers=patient_headers)
        assert response.json()["updated"] == 2
        assert client.get("/patient/activities", headers=patient_headers).json()["unread_count"] == 0

        assert client.patch("/patient/activities/9999/read", headers=patient_headers).status_code == 404


class TestCaregiverDashboardEndpoints:

    def test_list_patients(self, client, new_medication, caregiver_headers, patient):
        new_medication()
        response = client.get("/caregiver/patients", headers=caregiver_headers)
        assert response.status_code == 200
        (summary,) = response.json()
        assert summary["id"] == patient.id
        assert summary["medications_count"] == 1
        assert summary["unread_alerts"] == 0

    def test_patient_details(self, client, new_medication, caregiver_headers, patient, db_session):
        first = new_medication(name="Atorvastatin")
        second = new_medication(name="Lisinopril")

        response = client.get(f"/caregiver/patients/{patient.id}", headers=caregiver_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["patient"]["username"] == "patient_one"
        assert {m["id"] for m in body["medications"]} == {first["id"], second["id"]}

        stranger = create_user(db_session, "patient_two", "patient.two@example.com", "PatientPass2!")
        assert client.get(f"/caregiver/patients/{stranger.id}", headers=caregiver_headers).status_code == 404

    def test_patients_require_caregiver(self, client, patient_headers):
        assert client.get("/caregiver/patients", headers=patient_headers).status_code == 403

    def test_delete_medication(self, client, new_medication, caregiver_headers, patient_headers):
        medication = new_medication()
        client.post(f"/patient/medications/{medication['id']}/log", json={}, headers=patient_headers)

        response = client.delete(f"/caregiver/medications/{medication['id']}", headers=caregiver_headers)
        assert response.status_code == 200
        assert client.get(f"/patient/medications/{medication['id']}", headers=patient_headers).status_code == 404
        assert client.delete(f"/caregiver/medications/{medication['id']}", headers=caregiver_headers).status_code == 404

        feed = client.get("/patient/activities", headers=patient_headers).json()["activities"]
        assert feed[0]["type"] == "medication_removed"
        taken = next(a for a in feed if a["type"] == "dose_taken")
        assert taken["medication_id"] is None

    def test_list_barcodes(self, client, new_medication, caregiver_headers):
        medication = new_medication()
        response = client.get("/caregiver/barcodes", headers=caregiver_headers)
        assert response.status_code == 200
        (entry,) = response.json()
        assert entry["id"] == medication["id"]
        assert entry["barcode_data"] == medication["barcode_data"]
        assert entry["patient_name"] == "Pat One"
        assert entry["dosage"] == "20 mg"
        assert entry["frequency"] == "1x daily"
        assert entry["timing_relation"] == "after food"


class TestCaregiverNotificationEndpoints:

    def test_feed_and_read_flags(self, client, new_medication, caregiver_headers, patient_headers):
        medication = new_medication(quantity=4)
        client.post(f"/patient/medications/{medication['id']}/log", json={}, headers=patient_headers)

        feed = client.get("/caregiver/notifications", headers=caregiver_headers).json()
        assert {n["type"] for n in feed["notifications"]} == {"medication_added", "dose_taken", "low_stock"}
        assert feed["unread_count"] == 3
        assert all(n["patient_name"] == "Pat One" for n in feed["notifications"])
        titles = {n["type"]: n["title"] for n in feed["notifications"]}
        assert titles["dose_taken"] == "Patient Took Medication"
        assert titles["low_stock"] == "Low Medication Stock"

        taken = client.get("/caregiver/notifications", params={"type": "dose_taken"}, headers=caregiver_headers).json()
        (entry,) = taken["notifications"]
        assert client.patch(f"/caregiver/notifications/{entry['id']}/read", headers=caregiver_headers).status_code == 200
        assert client.get("/caregiver/notifications/count", headers=caregiver_headers).json()["unread_count"] == 2

        unread = client.get("/caregiver/notifications", params={"read": "false"}, headers=caregiver_headers).json()
        assert {n["type"] for n in unread["notifications"]} == {"medication_added", "low_stock"}

        response = client.patch("/caregiver/notifications/read-all", headers=caregiver_headers)
        assert response.json()["updated"] == 2
        assert client.get("/caregiver/notifications/count", headers=caregiver_headers).json()["unread_count"] == 0

    def test_other_caregivers_notifications(self, client, new_medication, db_session):
        new_medication()
        create_user(db_session, "other_carer", "other.carer@example.com", "OtherPass1!", role=UserRole.CAREGIVER)
        headers = login_headers(client, "other_carer", "OtherPass1!")

        assert client.get("/caregiver/notifications", headers=headers).json()["notifications"] == []
        assert client.patch("/caregiver/notifications/1/read", headers=headers).status_code == 404
