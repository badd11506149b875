import io
import json
from datetime import timedelta

import pytest

from models import db, utcnow, User, Course, Enrollment, Certificate
from config import load_config

from conftest import add_user, add_course, fresh, QUESTIONS

pytestmark = pytest.mark.api


def _employee(seed, email="jane@x.com", name="Jane Doe", **kw):
    kw.setdefault("employee_id", "EMP001")
    return seed(lambda: add_user(email, name=name, **kw).id)


def _course(seed, **kw):
    return seed(lambda: add_course(**kw).id)


# =========================
# Auth
# =========================
def test_protected_routes_require_session(client):
    assert client.get("/api/my-enrollments").status_code == 401
    assert client.get("/api/employees").status_code == 401
    assert client.get("/api/compliance-status").get_json() == {"message": "Authentication required"}


def test_employee_cannot_reach_admin_routes(seed, login_employee):
    _employee(seed)
    c = login_employee("jane@x.com")

    resp = c.get("/api/employees")

    assert resp.status_code == 403
    assert resp.get_json()["message"] == "Admin access required"
    assert c.get("/api/compliance-status").status_code == 403


def test_admin_login_rejects_bad_password(client, admin_client):
    resp = client.post("/api/auth/admin-login", json={"username": "admin@x.com", "password": "wrong"})

    assert resp.status_code == 401


def test_employee_login_rejects_inactive_and_unknown(client, seed):
    _employee(seed, is_active=False)

    assert client.post("/api/auth/employee-login", json={"email": "jane@x.com"}).status_code == 401
    assert client.post("/api/auth/employee-login", json={"email": "ghost@x.com"}).status_code == 401


def test_me_and_logout(seed, login_employee):
    _employee(seed)
    c = login_employee("jane@x.com")

    assert c.get("/api/auth/me").get_json()["email"] == "jane@x.com"
    assert c.post("/api/auth/logout").status_code == 200
    assert c.get("/api/auth/me").status_code == 401


def test_validation_errors_are_field_level(admin_client):
    resp = admin_client.post("/api/bulk-assign-emails", json={"courseId": "abc", "emails": []})

    assert resp.status_code == 400
    body = resp.get_json()
    assert body["message"] == "Invalid request data"
    fields = {e["field"] for e in body["errors"]}
    assert {"courseId", "emails"} <= fields


def test_security_headers(client):
    resp = client.get("/api/health")

    assert resp.status_code == 200
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_forgot_and_reset_password(app, client, seed, notifier):
    _employee(seed)

    resp = client.post("/api/auth/forgot-password", json={"email": "jane@x.com"})
    assert resp.status_code == 200
    assert client.post("/api/auth/forgot-password", json={"email": "ghost@x.com"}).status_code == 200
    assert len(notifier.sent) == 1

    token = seed(lambda: User.query.filter_by(email="jane@x.com").one().reset_token)
    assert token in notifier.sent[0].html
    assert client.post("/api/auth/reset-password", json={"token": token, "password": "123"}).status_code == 400
    assert client.post("/api/auth/reset-password", json={"token": token, "password": "newpass1"}).status_code == 200
    assert client.post("/api/auth/reset-password", json={"token": token, "password": "newpass1"}).status_code == 400


def test_missing_database_url_is_fatal(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)

    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        load_config()


# =========================
# Funcionários
# =========================
def test_create_employee_generates_employee_id_and_auto_enrolls(admin_client, seed):
    cid = _course(seed, title="Code of Conduct", is_compliance_course=True, is_auto_enroll_new_employees=True)

    resp = admin_client.post("/api/employees", json={"email": "New@X.com", "name": "New Hire"})

    assert resp.status_code == 201
    body = resp.get_json()
    assert body["email"] == "new@x.com"
    assert body["employeeId"] == "EMP001"
    assert seed(lambda: Enrollment.query.filter_by(user_id=body["id"], course_id=cid).count()) == 1

    dup = admin_client.post("/api/employees", json={"email": "new@x.com", "name": "Again"})
    assert dup.status_code == 400


def test_bulk_import_reports_created_updated_errors(admin_client, seed):
    _employee(seed, email="old@x.com", name="Old")

    resp = admin_client.post("/api/bulk-import-employees", json={"employees": [
        {"email": "old@x.com", "name": "Old Renamed", "department": "HR"},
        {"email": "fresh@x.com", "name": "Fresh"},
        {"email": "broken", "name": "Broken"},
    ]})

    assert resp.status_code == 200
    results = resp.get_json()["results"]
    assert (results["created"], results["updated"]) == (1, 1)
    assert results["errors"][0]["employee"] == "broken"
    assert seed(lambda: User.query.filter_by(email="old@x.com").one().department) == "HR"


def test_deactivate_employees(admin_client, seed):
    uid = _employee(seed)

    resp = admin_client.post("/api/deactivate-employees", json={"employeeIds": [uid]})

    assert resp.get_json()["deactivated"] == 1
    assert seed(lambda: fresh(User, uid).is_active) is False


def test_delete_employee_cascades(admin_client, seed):
    uid = _employee(seed)
    cid = _course(seed)
    admin_client.post("/api/bulk-assign-course", json={"courseId": cid, "userIds": [uid]})

    assert admin_client.delete(f"/api/employees/{uid}").status_code == 200
    assert seed(lambda: Enrollment.query.filter_by(user_id=uid).count()) == 0


# =========================
# Cursos
# =========================
def test_create_course_multipart_with_video(app, admin_client):
    resp = admin_client.post(
        "/api/courses",
        data={
            "title": "Forklift Safety",
            "courseType": "recurring",
            "renewalPeriodMonths": "6",
            "isComplianceCourse": "true",
            "questions": json.dumps(QUESTIONS),
            "video": (io.BytesIO(b"fake-mp4-bytes"), "intro.mp4"),
        },
        content_type="multipart/form-data",
    )

    assert resp.status_code == 201, resp.get_json()
    body = resp.get_json()
    assert body["courseType"] == "recurring"
    assert body["renewalPeriodMonths"] == 6
    assert body["isComplianceCourse"] is True
    assert body["videoPath"].endswith("intro.mp4")
    assert len(body["questions"]) == 2

    video = admin_client.get(f"/api/videos/{body['videoPath']}")
    assert video.status_code == 200
    assert video.data == b"fake-mp4-bytes"


def test_create_course_rejects_non_video_upload(admin_client):
    resp = admin_client.post(
        "/api/courses",
        data={"title": "Bad", "video": (io.BytesIO(b"MZ"), "malware.exe")},
        content_type="multipart/form-data",
    )

    assert resp.status_code == 400


def test_update_and_deactivate_course(admin_client, seed):
    cid = _course(seed)

    resp = admin_client.put(f"/api/courses/{cid}", json={"title": "Safety 102", "isActive": False})

    assert resp.get_json()["title"] == "Safety 102"
    assert resp.get_json()["isActive"] is False


def test_quiz_endpoint_falls_back_and_404s(seed, admin_client, login_employee):
    _employee(seed)
    with_questions = _course(seed)
    without = _course(seed, title="Empty", questions=[])
    c = login_employee("jane@x.com")

    quiz = c.get(f"/api/courses/{with_questions}/quiz")
    assert quiz.status_code == 200
    assert quiz.get_json()["passingScore"] == 70
    assert all("correctAnswer" not in q for q in quiz.get_json()["questions"])
    assert c.get(f"/api/courses/{without}/quiz").status_code == 404

    admin_client.post(f"/api/courses/{without}/quiz", json={
        "title": "Exam", "passingScore": 80,
        "questions": [{"question": "Q?", "options": ["a", "b"], "correctAnswer": 0}],
    })
    assert c.get(f"/api/courses/{without}/quiz").get_json()["passingScore"] == 80


def test_course_deletion_endpoints(admin_client, seed):
    uid = _employee(seed)
    cid = _course(seed)
    admin_client.post("/api/bulk-assign-course", json={"courseId": cid, "userIds": [uid]})

    impact = admin_client.get(f"/api/courses/{cid}/deletion-impact").get_json()
    assert impact["impact"]["usersWillBeDeleted"] == 1

    assert admin_client.delete(f"/api/courses/{cid}").status_code == 200
    assert seed(lambda: Course.query.count()) == 0
    assert seed(lambda: User.query.filter_by(id=uid).count()) == 0
    assert seed(lambda: User.query.filter_by(role="admin").count()) == 1
    assert admin_client.get(f"/api/courses/{cid}").status_code == 404


# =========================
# Fluxo completo: convite -> perfil -> quiz -> certificado
# =========================
def test_email_invitation_end_to_end(app, client, admin_client, seed, notifier):
    cid = _course(seed, title="Privacy Basics")

    resp = admin_client.post("/api/bulk-assign-emails", json={
        "courseId": cid, "emails": ["a@x.com", "b@x.com"], "deadlineDays": 30,
    })
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["created"] == 2
    tokens = {e["assignedEmail"]: e["assignmentToken"] for e in body["enrollments"]}
    assert len(set(tokens.values())) == 2
    assert {m.to for m in notifier.sent} == {"a@x.com", "b@x.com"}

    assert client.get("/api/course-access/not-a-token").status_code == 404

    access = client.get(f"/api/course-access/{tokens['a@x.com']}").get_json()
    assert access["isFirstTime"] is True
    assert access["course"]["title"] == "Privacy Basics"

    profile = client.post("/api/complete-profile", json={
        "token": tokens["a@x.com"],
        "userData": {"name": "Ann", "department": "Legal", "phoneNumber": "555"},
    })
    assert profile.status_code == 200
    enrollment = profile.get_json()["enrollment"]
    assert enrollment["status"] == "accessed"
    assert enrollment["userId"] == profile.get_json()["user"]["id"]

    # sessão aberta pelo complete-profile
    assert client.get("/api/auth/me").get_json()["email"] == "a@x.com"
    again = client.get(f"/api/course-access/{tokens['a@x.com']}").get_json()
    assert again["isFirstTime"] is False
    assert seed(lambda: User.query.filter_by(email="a@x.com").count()) == 1

    progress = client.put(f"/api/my-enrollments/{enrollment['id']}", json={"progress": 180})
    assert progress.get_json()["progress"] == 100

    quiz = client.post("/api/quiz-submission", json={"courseId": cid, "score": 85}).get_json()
    assert quiz["success"] is True
    assert quiz["isPassing"] is True
    assert quiz["needsAcknowledgment"] is True
    assert quiz["certificateIssued"] is False

    mine = client.get("/api/my-enrollments").get_json()
    assert (mine[0]["progress"], mine[0]["status"], mine[0]["quizScore"]) == (95, "accessed", 85)

    notifier.sent.clear()
    ack = client.post("/api/acknowledge-completion", json={"courseId": cid, "digitalSignature": "Ann"})
    assert ack.status_code == 200
    cert = ack.get_json()["certificate"]
    assert ack.get_json()["success"] is True
    assert cert["certificateData"]["participantName"] == "Ann"
    assert {m.to for m in notifier.sent} == {"a@x.com", "hr@x.com"}

    mine = client.get("/api/my-enrollments").get_json()
    assert (mine[0]["progress"], mine[0]["status"], mine[0]["certificateIssued"]) == (100, "completed", True)
    assert len(client.get("/api/my-certificates").get_json()) == 1

    pdf = client.get(f"/api/certificates/{cert['id']}/pdf")
    assert pdf.status_code == 200
    assert pdf.mimetype == "application/pdf"
    assert pdf.data.startswith(b"%PDF")
    assert admin_client.get(f"/api/certificates/{cert['id']}/pdf").status_code == 200


def test_course_access_after_deadline_is_gone(client, admin_client, seed):
    cid = _course(seed)
    body = admin_client.post("/api/bulk-assign-emails", json={
        "courseId": cid, "emails": ["late@x.com"], "deadlineDays": 1,
    }).get_json()
    token = body["enrollments"][0]["assignmentToken"]

    def _push_deadline_back():
        e = Enrollment.query.filter_by(assignment_token=token).one()
        e.deadline = utcnow() - timedelta(hours=1)
        db.session.commit()
    seed(_push_deadline_back)

    resp = client.get(f"/api/course-access/{token}")
    assert resp.status_code == 410
    assert resp.get_json()["message"] == "This course assignment has expired"


def test_acknowledge_before_passing_is_rejected(seed, admin_client, login_employee):
    uid = _employee(seed)
    cid = _course(seed)
    admin_client.post("/api/bulk-assign-course", json={"courseId": cid, "userIds": [uid]})
    c = login_employee("jane@x.com")

    resp = c.post("/api/acknowledge-completion", json={"courseId": cid, "digitalSignature": "Jane"})
    assert resp.status_code == 400
    assert "passing score" in resp.get_json()["message"]

    resp = c.post("/api/acknowledge-completion", json={"courseId": cid, "digitalSignature": ""})
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Digital signature is required"


def test_other_employee_cannot_download_certificate(seed, login_employee):
    owner = _employee(seed)
    _employee(seed, email="bob@x.com", name="Bob", employee_id="EMP002")
    cid = _course(seed)

    def _certify():
        cert = Certificate(user_id=owner, course_id=cid, certificate_data={"certificateId": "CERT-1-ABCDEFGHI"})
        db.session.add(cert)
        db.session.commit()
        return cert.id
    cert_id = seed(_certify)

    bob = login_employee("bob@x.com")
    assert bob.get(f"/api/certificates/{cert_id}/pdf").status_code == 403
    assert bob.get("/api/certificates/999/pdf").status_code == 404


def test_quiz_submission_with_answers_and_missing_fields(seed, admin_client, login_employee):
    uid = _employee(seed)
    cid = _course(seed)
    admin_client.post("/api/bulk-assign-course", json={"courseId": cid, "userIds": [uid]})
    c = login_employee("jane@x.com")

    assert c.post("/api/quiz-submission", json={"courseId": cid}).status_code == 400
    graded = c.post("/api/quiz-submission", json={"courseId": cid, "answers": [1, "blue"]}).get_json()
    assert graded["score"] == 100
    assert graded["isPassing"] is True


def test_non_finite_quiz_score_is_rejected(seed, admin_client, login_employee):
    uid = _employee(seed)
    cid = _course(seed)
    admin_client.post("/api/bulk-assign-course", json={"courseId": cid, "userIds": [uid]})
    c = login_employee("jane@x.com")

    resp = c.post("/api/quiz-submission", data=f'{{"courseId": {cid}, "score": NaN}}', content_type="application/json")

    assert resp.status_code == 400
    assert seed(lambda: Enrollment.query.filter_by(user_id=uid).one().quiz_score) is None


def test_complete_profile_never_signs_in_an_admin(client, admin_client, seed):
    cid = _course(seed)
    body = admin_client.post("/api/bulk-assign-emails", json={"courseId": cid, "emails": ["boss@x.com"]}).get_json()
    token = body["enrollments"][0]["assignmentToken"]
    seed(lambda: add_user("boss@x.com", name="Boss", role="admin", employee_id="ADMIN2").id)

    resp = client.post("/api/complete-profile", json={"token": token, "userData": {"name": "Boss"}})

    assert resp.status_code == 403
    assert client.get("/api/auth/me").status_code == 401


# =========================
# Admin: relatórios / lembretes / renovação
# =========================
def test_send_reminders_endpoint(admin_client, seed, notifier):
    uid = _employee(seed)
    cid = _course(seed)
    admin_client.post("/api/bulk-assign-course", json={"courseId": cid, "userIds": [uid]})

    resp = admin_client.post(f"/api/send-reminders/{cid}")

    assert resp.get_json()["sent"] == 1
    assert notifier.to("jane@x.com")[0].subject.startswith("Reminder")


def test_course_assignments_lists_pending_emails_and_users(admin_client, seed):
    uid = _employee(seed)
    cid = _course(seed)
    admin_client.post("/api/bulk-assign-course", json={"courseId": cid, "userIds": [uid]})
    admin_client.post("/api/bulk-assign-emails", json={"courseId": cid, "emails": ["x1@x.com"]})

    rows = admin_client.get(f"/api/course-assignments/{cid}").get_json()

    assert len(rows) == 2
    assert {r["user"]["email"] if r["user"] else r["assignedEmail"] for r in rows} == {"jane@x.com", "x1@x.com"}
    assert len(admin_client.get(f"/api/courses/{cid}/enrollments").get_json()) == 1
    assert admin_client.get(f"/api/users/{uid}/enrollments").get_json()[0]["course"]["id"] == cid


def test_renew_expired_certifications_endpoint(admin_client, seed):
    uid = _employee(seed)
    cid = _course(seed, course_type="recurring")

    def _expired():
        e = Enrollment(user_id=uid, course_id=cid, status="completed", progress=100,
                       certificate_issued=True, quiz_score=90, is_expired=True)
        db.session.add(e)
        db.session.commit()
        return e.id
    eid = seed(_expired)

    resp = admin_client.post("/api/renew-expired-certifications", json={"courseId": cid, "userIds": [uid]})

    assert resp.status_code == 200
    renewed = resp.get_json()["renewedEnrollments"]
    assert [r["id"] for r in renewed] == [eid]
    assert renewed[0]["renewalCount"] == 1
    assert renewed[0]["status"] == "pending"
    assert renewed[0]["quizScore"] is None


def test_compliance_status(admin_client, seed):
    alice = _employee(seed, email="alice@x.com", name="Alice", employee_id="EMP001")
    _employee(seed, email="bob@x.com", name="Bob", employee_id="EMP002")
    c1 = _course(seed, title="C1", is_compliance_course=True)
    _course(seed, title="C2", is_compliance_course=True, course_type="recurring")
    _course(seed, title="Optional")

    def _certify():
        db.session.add(Enrollment(user_id=alice, course_id=c1, status="completed", progress=100,
                                  certificate_issued=True, quiz_score=90))
        db.session.commit()
    seed(_certify)

    report = admin_client.get("/api/compliance-status").get_json()

    rows = {r["email"]: r for r in report["employees"]}
    assert rows["alice@x.com"]["compliantCourses"] == 1
    assert rows["alice@x.com"]["complianceRate"] == 50
    assert rows["alice@x.com"]["isCompliant"] is False
    assert rows["bob@x.com"]["complianceRate"] == 0
    assert report["overallComplianceRate"] == 25


def test_compliance_status_without_employees_is_full(admin_client):
    assert admin_client.get("/api/compliance-status").get_json() == {
        "employees": [], "overallComplianceRate": 100,
    }


def test_dashboard_stats_and_user_analytics(admin_client, seed):
    uid = _employee(seed)
    cid = _course(seed)
    admin_client.post("/api/bulk-assign-course", json={"courseId": cid, "userIds": [uid]})

    stats = admin_client.get("/api/dashboard-stats").get_json()
    assert stats == {"totalEmployees": 1, "activeCourses": 1, "pendingAssignments": 1, "certificatesIssued": 0}

    analytics = admin_client.get(f"/api/user-analytics/{uid}").get_json()
    assert analytics["totalEnrollments"] == 1
    assert analytics["averageQuizScore"] == 0
