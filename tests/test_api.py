import base64

import numpy as np
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import main
from conftest import IST, FakeRecognizer, make_jpeg
from database import init_db, make_engine
from ledger import AttendanceLedger

CODE = "ABC12345678"


@pytest.fixture
def recognizer():
    return FakeRecognizer()


@pytest.fixture
def client(session_factory, ledger, recognizer):
    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[main.get_db] = override_db
    main.app.dependency_overrides[main.get_ledger] = lambda: ledger
    main.app.dependency_overrides[main.get_recognizer] = lambda: recognizer
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def add_student(client, code=CODE, name="Asha", **profile):
    data = {"name": name, "enrollment_code": code}
    data.update(profile)
    return client.post(
        "/students/",
        data=data,
        files={"file": ("photo.jpg", make_jpeg(), "image/jpeg")},
    )


def frame_b64():
    return "data:image/jpeg;base64," + base64.b64encode(make_jpeg()).decode("ascii")


def scan(client, code=CODE, **extra):
    data = {"enrollment_code": code, "image_base64": frame_b64()}
    data.update(extra)
    return client.post("/scan/", data=data)


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "running"
        assert body["face_verification"] is True
        assert body["timezone"] == "IST"

    def test_process_time_header(self, client):
        assert "x-process-time" in client.get("/health").headers


class TestStudents:

    def test_register_and_resolve(self, client):
        response = add_student(client, code=" abc12345678 ")
        assert response.status_code == 200
        student = response.json()["student"]
        assert student["enrollment_code"] == CODE
        assert student["has_embedding"] is True

        resolved = client.get(f"/students/{CODE.lower()}").json()
        assert resolved["id"] == student["id"]
        assert resolved["photo"].startswith("data:image/jpeg;base64,")

        listed = client.get("/students/").json()["students"]
        assert [s["enrollment_code"] for s in listed] == [CODE]

    def test_duplicate_code(self, client):
        add_student(client)
        assert add_student(client, name="Other").status_code == 400

    def test_invalid_code(self, client):
        assert add_student(client, code="12345").status_code == 400

    def test_no_face(self, client, recognizer):
        recognizer.faces = 0
        response = add_student(client)
        assert response.status_code == 400
        assert response.json()["detail"] == "No face detected in image"

    def test_invalid_image(self, client):
        response = client.post(
            "/students/",
            data={"name": "Asha", "enrollment_code": CODE},
            files={"file": ("photo.jpg", b"not a jpeg", "image/jpeg")},
        )
        assert response.status_code == 400

    def test_recognizer_not_loaded(self, client):
        main.app.dependency_overrides[main.get_recognizer] = lambda: None
        assert add_student(client).status_code == 503

    def test_unknown_student(self, client):
        assert client.get("/students/XYZ00000000").status_code == 404
        assert client.delete("/students/XYZ00000000").status_code == 404

    def test_delete_student_removes_records(self, client):
        add_student(client)
        scan(client)
        scan(client)
        scan(client)

        response = client.delete(f"/students/{CODE}")
        assert response.status_code == 200
        assert response.json()["records_deleted"] == 2
        assert client.get(f"/students/{CODE}").status_code == 404

    def test_delete_student_on_file_database(self, tmp_path, clock):
        engine = make_engine(f"sqlite:///{tmp_path / 'attendance.db'}")
        init_db(engine)
        session_factory = sessionmaker(autoflush=False, bind=engine)
        ledger = AttendanceLedger(session_factory, tz=IST, clock=clock)

        def override_db():
            db = session_factory()
            try:
                yield db
            finally:
                db.close()

        main.app.dependency_overrides[main.get_db] = override_db
        main.app.dependency_overrides[main.get_ledger] = lambda: ledger
        main.app.dependency_overrides[main.get_recognizer] = lambda: FakeRecognizer()
        try:
            client = TestClient(main.app)
            person_id = add_student(client).json()["student"]["person_id"]
            assert scan(client).json()["outcome"] == "entry"

            response = client.delete(f"/students/{CODE}")
            assert response.status_code == 200
            assert response.json()["records_deleted"] == 1
            assert client.get(f"/students/{CODE}").status_code == 404
            assert client.get(f"/attendance/person/{person_id}").json()["records"] == []
        finally:
            main.app.dependency_overrides.clear()
            engine.dispose()


class TestStudentProfile:

    def test_register_with_profile(self, client):
        response = add_student(client, phone="98765 43210", class_name="BSc 2", department="Physics")
        student = response.json()["student"]
        assert student["phone"] == "9876543210"
        assert student["class_name"] == "BSc 2"
        assert student["department"] == "Physics"
        assert student["address"] is None

    def test_update_profile(self, client):
        add_student(client, phone="9876543210")

        response = client.put(f"/students/{CODE.lower()}", json={"department": "Chemistry", "address": "12 Lake Road"})
        assert response.status_code == 200
        student = response.json()["student"]
        assert student["department"] == "Chemistry"
        assert student["address"] == "12 Lake Road"
        assert student["phone"] == "9876543210"
        assert student["enrollment_code"] == CODE

        assert client.get(f"/students/{CODE}").json()["department"] == "Chemistry"

    def test_enrollment_code_cannot_change(self, client):
        add_student(client)
        response = client.put(f"/students/{CODE}", json={"enrollment_code": "XYZ12345678"})
        assert response.status_code == 422
        assert client.get(f"/students/{CODE}").status_code == 200
        assert client.get("/students/XYZ12345678").status_code == 404

    def test_blank_name_is_rejected(self, client):
        add_student(client)
        assert client.put(f"/students/{CODE}", json={"name": " "}).status_code == 400
        assert client.get(f"/students/{CODE}").json()["name"] == "Asha"

    def test_update_unknown_student(self, client):
        assert client.put("/students/XYZ00000000", json={"name": "Ravi"}).status_code == 404

    def test_lookup_by_code_and_phone(self, client):
        add_student(client, phone="+91 98765 43210")

        response = client.get("/students/lookup", params={"enrollment_code": CODE.lower(), "phone": "+919876543210"})
        assert response.status_code == 200
        assert response.json()["name"] == "Asha"

        wrong = client.get("/students/lookup", params={"enrollment_code": CODE, "phone": "+911111111111"})
        assert wrong.status_code == 404
        assert client.get("/students/lookup", params={"enrollment_code": CODE}).status_code == 422


class TestScan:

    def test_entry_then_exit(self, client):
        person_id = add_student(client).json()["student"]["person_id"]

        first = scan(client)
        assert first.status_code == 200
        body = first.json()
        assert body["outcome"] == "entry"
        assert body["person_id"] == person_id
        assert body["display_name"] == "Asha"
        assert body["verification_method"] == "qr+face"
        assert body["confidence_score"] == pytest.approx(100.0)
        assert body["enrollment_code"] == CODE

        second = scan(client, source="manual", station_id="north_gate")
        assert second.json()["outcome"] == "exit"
        assert second.json()["record_id"] == body["record_id"]
        assert second.json()["exit_time"] is not None

    def test_face_mismatch_is_forbidden_and_not_recorded(self, client, recognizer):
        person_id = add_student(client).json()["student"]["person_id"]
        recognizer.embedding = np.array([0.0, 1.0, 0.0], dtype=np.float32)

        response = scan(client)
        assert response.status_code == 403
        assert response.json()["detail"]["reason"] == "Face does not match registered photo"
        assert client.get(f"/attendance/person/{person_id}").json()["records"] == []

    def test_unknown_code(self, client):
        assert scan(client, code="XYZ00000000").status_code == 404

    def test_malformed_code(self, client):
        assert scan(client, code="nope").status_code == 400

    def test_bad_source(self, client):
        add_student(client)
        assert scan(client, source="bluetooth").status_code == 400

    def test_bad_frame(self, client):
        add_student(client)
        response = client.post("/scan/", data={"enrollment_code": CODE, "image_base64": "%%%"})
        assert response.status_code == 400


class TestAttendance:

    def test_record_accepts_client_field_names(self, client):
        first = client.post("/attendance/", json={
            "personId": "P9",
            "displayName": "Ravi",
            "face_match_score": 80,
            "occurredAt": "2024-06-01T09:00:00+05:30",
        })
        assert first.status_code == 200
        assert first.json()["outcome"] == "entry"
        assert first.json()["confidence_score"] == 80
        assert first.json()["verification_method"] == "qr+face"

        second = client.post("/attendance/", json={
            "student_id": "P9",
            "student_name": "Ravi",
            "verification_method": "manual+face",
            "occurred_at": "2024-06-01T10:00:00",
        })
        assert second.json()["outcome"] == "exit"
        assert second.json()["exit_time"] == "2024-06-01T10:00:00+05:30"

    def test_future_scan_is_rejected(self, client):
        response = client.post("/attendance/", json={
            "person_id": "P9", "display_name": "Ravi", "occurred_at": "2024-06-02T09:00:00+05:30",
        })
        assert response.status_code == 422

    def test_exit_before_entry_is_rejected(self, client):
        client.post("/attendance/", json={
            "person_id": "P9", "display_name": "Ravi", "occurred_at": "2024-06-01T09:00:00",
        })
        response = client.post("/attendance/", json={
            "person_id": "P9", "display_name": "Ravi", "occurred_at": "2024-06-01T08:00:00",
        })
        assert response.status_code == 422

    def test_missing_person(self, client):
        assert client.post("/attendance/", json={"display_name": "Ravi"}).status_code == 422

    def test_day_person_summary_and_delete(self, client):
        for person, hour in (("P1", 9), ("P2", 10), ("P1", 11)):
            client.post("/attendance/", json={
                "person_id": person, "display_name": person, "occurred_at": f"2024-06-01T{hour:02d}:00:00",
            })

        day = client.get("/attendance/day", params={"date": "2024-06-01"}).json()
        assert day["date"] == "2024-06-01"
        assert [r["person_id"] for r in day["records"]] == ["P2", "P1"]

        # defaults to the ledger's today
        assert client.get("/attendance/day").json() == day
        assert client.get("/attendance/day", params={"date": "2024-06-02"}).json()["records"] == []

        summary = client.get("/attendance/summary", params={"date": "2024-06-01"}).json()
        assert summary == {"date": "2024-06-01", "entries": 2, "exits": 1, "inside": 1}

        history = client.get("/attendance/person/P1", params={"limit": 1}).json()
        assert len(history["records"]) == 1
        assert history["records"][0]["exit_time"] == "2024-06-01T11:00:00+05:30"

        assert client.delete("/attendance/person/P1").json()["deleted"] == 1
        assert client.delete("/attendance/person/P1").json()["deleted"] == 0
        assert client.get("/attendance/person/P1").json()["records"] == []

    def test_invalid_date(self, client):
        assert client.get("/attendance/day", params={"date": "01/06/2024"}).status_code == 400

    def test_invalid_limit(self, client):
        assert client.get("/attendance/person/P1", params={"limit": 0}).status_code == 422

    def test_store_unavailable(self, client, tmp_path, clock):
        engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'attendance.db'}")
        broken = AttendanceLedger(sessionmaker(bind=engine), tz=IST, clock=clock)
        main.app.dependency_overrides[main.get_ledger] = lambda: broken

        response = client.post("/attendance/", json={"person_id": "P9", "display_name": "Ravi"})
        assert response.status_code == 503
        assert client.get("/attendance/day", params={"date": "2024-06-01"}).status_code == 503
