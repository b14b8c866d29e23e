from fastapi.testclient import TestClient

from conftest import ADMIN_CREDENTIALS
from schemas import GradeLevel


def _bearer(response) -> dict:
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def _registered_student_headers(client: TestClient) -> dict:
    bootstrap = client.post("/auth/login", json={"username": "Bob Smith", "role": "student", "grade": "10th"})
    registered = client.post("/auth/register/student", headers=_bearer(bootstrap),
                             json={"password": "bobpass", "confirm_password": "bobpass"})
    return _bearer(registered)


def test_root(client: TestClient):
    assert client.get("/").status_code == 200


def test_admin_login_and_me(client: TestClient, owner_headers):
    response = client.get("/auth/me", headers=owner_headers)

    assert response.status_code == 200
    assert response.json()["role"] == "owner"
    assert "password_hash" not in response.json() or response.json()["password_hash"] is None


def test_login_invalid_credentials(client: TestClient):
    response = client.post("/auth/login", json={**ADMIN_CREDENTIALS, "password": "wrong"})

    assert response.status_code == 401
    assert response.json()["code"] == "AUTH_FAILED"


def test_unauthenticated_access(client: TestClient):
    assert client.get("/students").status_code == 401


def test_logout_clears_persisted_session(client: TestClient, store, owner_headers):
    assert store.get_current_user() is not None
    assert client.post("/auth/logout", headers=owner_headers).status_code == 200
    assert store.get_current_user() is None


def test_logout_requires_a_session(client: TestClient, store, owner_headers):
    assert client.post("/auth/logout").status_code == 401
    assert store.get_current_user() is not None


def test_token_is_rejected_after_logout(client: TestClient, owner_headers):
    assert client.post("/auth/logout", headers=owner_headers).status_code == 200

    assert client.get("/auth/me", headers=owner_headers).status_code == 401
    assert client.post("/auth/logout", headers=owner_headers).status_code == 401


def test_student_bootstrap_then_registration(client: TestClient):
    response = client.post("/auth/login", json={"username": "bob smith", "password": "", "role": "student",
                                                "grade": "10th"})
    assert response.status_code == 200
    assert response.json()["user"]["is_registered"] is False
    bootstrap = _bearer(response)

    assert client.get("/students/2", headers=bootstrap).status_code == 403

    mismatch = client.post("/auth/register/student", headers=bootstrap,
                           json={"password": "bobpass", "confirm_password": "other"})
    assert mismatch.status_code == 422

    registered = client.post("/auth/register/student", headers=bootstrap,
                             json={"password": "bobpass", "confirm_password": "bobpass"})
    assert registered.status_code == 200
    headers = _bearer(registered)

    assert client.get("/students/2", headers=headers).json()["is_registered"] is True
    assert client.get("/students/1", headers=headers).status_code == 403
    assert client.get("/students", headers=headers).status_code == 403

    balance = client.get("/students/2/balance", headers=headers).json()
    assert balance == {"student_id": "2", "total_fees": 12000, "paid": 0, "outstanding": 12000,
                       "fully_paid": False}


def test_teacher_registration_and_login(client: TestClient, owner_headers):
    response = client.post("/auth/register/teacher", headers=owner_headers,
                           json={"name": "Mrs. Anita Desai", "subject": "English", "email": "a.desai@school.edu"})
    assert response.status_code == 200
    body = response.json()
    assert body["user"]["username"] == "mrs_anita_desai"

    login = client.post("/auth/login", json={"username": "Mrs_Anita_Desai", "password": body["password"]})
    assert login.status_code == 200
    assert login.json()["user"]["role"] == "teacher"

    teacher_headers = _bearer(login)
    denied = client.post("/auth/register/teacher", headers=teacher_headers,
                         json={"name": "X", "subject": "Y", "email": "z"})
    assert denied.status_code == 403


def test_fee_quote_and_admission(client: TestClient, owner_headers):
    quote = client.get("/fees/quote", params={"grade": "10th", "courses": "Mathematics,Science"},
                       headers=owner_headers)
    assert quote.json()["total_fees"] == 19000

    empty = client.post("/students", headers=owner_headers,
                        json={"first_name": "No", "last_name": "Courses", "email": "n@c.edu", "grade": "10th"})
    assert empty.status_code == 422
    assert empty.json()["code"] == "INCOMPLETE_INPUT"

    admitted = client.post("/students", headers=owner_headers, json={
        "first_name": "Meera", "last_name": "Joshi", "email": "m@j.edu", "grade": "10th",
        "enrolled_courses": ["Mathematics", "Science"], "total_fees": quote.json()["total_fees"],
    })
    assert admitted.status_code == 200
    assert admitted.json()["student"]["total_fees"] == 19000
    assert admitted.json()["notice"] is None


def test_admission_without_fee_structure_returns_notice(client: TestClient, store, owner_headers):
    store.save_fee_structures([s for s in store.get_fee_structures() if s.grade != GradeLevel.TENTH])

    admitted = client.post("/students", headers=owner_headers, json={
        "first_name": "Meera", "last_name": "Joshi", "email": "m@j.edu", "grade": "10th",
        "enrolled_courses": ["Mathematics"],
    })

    assert admitted.status_code == 200
    assert admitted.json()["student"]["total_fees"] == 0
    assert "No fee structure configured for 10th Standard" in admitted.json()["notice"]


def test_fee_structure_rejects_repeated_grade(client: TestClient, store, owner_headers):
    structures = client.get("/fees/structure", headers=owner_headers).json()
    structures.append({"grade": "10th", "base_amount": 1, "course_fees": []})

    response = client.put("/fees/structure", headers=owner_headers, json=structures)

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"
    assert [s.grade for s in store.get_fee_structures()].count(GradeLevel.TENTH) == 1


def test_collect_fee_and_ledger(client: TestClient, owner_headers):
    response = client.post("/fees", headers=owner_headers,
                           json={"student_id": "2", "amount": 2000, "payment_method": "Cash"})
    assert response.status_code == 200
    assert response.json()["collected_by"] == "Manikgad Cbse classes"

    ledger = client.get("/fees/ledger/10th", headers=owner_headers).json()
    assert ledger[1]["paid"] == 2000
    assert ledger[1]["remaining"] == 10000

    assert client.post("/fees", headers=owner_headers, json={"student_id": "zzz", "amount": 1}).status_code == 404


def test_attendance_flow(client: TestClient, owner_headers):
    payload = {"grade": "10th", "marks": {"1": True, "2": False}}

    unconfirmed = client.post("/attendance", headers=owner_headers, json=payload)
    assert unconfirmed.status_code == 409

    incomplete = client.post("/attendance", headers=owner_headers, json={"grade": "10th", "marks": {"1": True}})
    assert incomplete.status_code == 422
    assert incomplete.json()["details"]["missing"] == 1

    saved = client.post("/attendance", headers=owner_headers, json={**payload, "confirm": True})
    assert saved.status_code == 200
    body = saved.json()
    assert body["record"]["present_ids"] == ["1"]
    assert body["record"]["absent_ids"] == ["2"]
    assert [f["student_id"] for f in body["failed"]] == ["2"]

    logs = client.get("/attendance/logs", headers=owner_headers).json()
    assert len(logs) == 1
    student = client.get("/students/2", headers=owner_headers).json()
    assert student["attendance"] == 81.5


def test_sessions_and_dashboard(client: TestClient, owner_headers):
    created = client.post("/sessions", headers=owner_headers,
                          json={"name": "2025-26", "start_date": "2025-04-01", "end_date": "2026-03-31"})
    assert created.status_code == 200

    sessions = client.get("/sessions", headers=owner_headers).json()
    assert [s["name"] for s in sessions if s["is_current"]] == ["2025-26"]

    dashboard = client.get("/dashboard", headers=owner_headers).json()
    assert dashboard["session"]["name"] == "2025-26"
    assert dashboard["session_students"] == 3


def test_notes_and_grades(client: TestClient, owner_headers):
    note = client.post("/notes", headers=owner_headers,
                       json={"title": "Exam", "content": "Bring pencils", "is_class_note": True,
                             "target_grade": "10th"})
    assert note.status_code == 200
    assert len(client.get("/notes", headers=owner_headers).json()) == 1

    batch = client.post("/grades/batch", headers=owner_headers, json={
        "subject": "Science", "test_name": "Quiz 1", "date": "2024-08-01",
        "scores": [{"student_id": "2", "score": 18}, {"student_id": "3"}],
    })
    assert batch.status_code == 200
    assert len(client.get("/grades", params={"student_id": "2"}, headers=owner_headers).json()) == 1

    note_id = note.json()["id"]
    assert client.delete(f"/notes/{note_id}", headers=owner_headers).status_code == 200
    assert client.get("/notes", headers=owner_headers).json() == []


def test_registration_report_endpoint(client: TestClient, owner_headers):
    report = client.get("/reports/registration", params={"status": "registered"}, headers=owner_headers).json()

    assert report["registered"] == 1
    assert [s["id"] for s in report["students"]] == ["1"]


def test_logo_upload_stores_data_url(client: TestClient, owner_headers):
    response = client.post("/school-profile/logo", headers=owner_headers,
                           files={"file": ("logo.png", b"\x89PNG\r\n", "image/png")})

    assert response.status_code == 200
    assert response.json()["logo_url"] == "data:image/png;base64,iVBORw0K"
    assert client.get("/school-profile").json()["logo_url"] == "data:image/png;base64,iVBORw0K"


def test_students_cannot_edit_or_delete_staff_notes(client: TestClient, store, owner_headers):
    note = client.post("/notes", headers=owner_headers,
                       json={"title": "Exam", "content": "Bring pencils", "is_class_note": True,
                             "target_grade": "10th"}).json()
    student_headers = _registered_student_headers(client)
    assert [n["id"] for n in client.get("/notes", headers=student_headers).json()] == [note["id"]]

    edit = client.post("/notes", headers=student_headers,
                       json={"id": note["id"], "title": "Changed", "content": "x"})
    assert edit.status_code == 403
    assert edit.json()["code"] == "FORBIDDEN"

    assert client.delete(f"/notes/{note['id']}", headers=student_headers).status_code == 403
    assert store.get_note(note["id"]).title == "Exam"
    assert store.get_note(note["id"]).user_id == "u1"


def test_delete_unknown_note(client: TestClient, owner_headers):
    response = client.delete("/notes/missing", headers=owner_headers)

    assert response.status_code == 404
