"""
Rotas compartilhadas / do funcionário
"""
import os
from io import BytesIO

from flask import Blueprint, jsonify, request, g, send_file, send_from_directory, current_app
from sqlalchemy.orm import joinedload

from models import db, Course, Enrollment, Certificate
from errors import NotFound, Forbidden
from auth import require_auth, start_session
from schemas import CompleteProfile, ProgressUpdate, QuizSubmission, Acknowledge
from certificates import render_certificate_pdf
import courses as course_service
import enrollment as engine


employee_bp = Blueprint("employee_api", __name__, url_prefix="/api")


def _payload():
    return request.get_json(silent=True) or {}


# =========================
# CURSOS / QUIZ / VÍDEO
# =========================
@employee_bp.get("/courses")
@require_auth
def list_courses():
    q = Course.query
    if not g.auth.is_admin:
        q = q.filter_by(is_active=True)
    return jsonify([c.to_dict() for c in q.order_by(Course.created_at.desc(), Course.id.desc()).all()])


@employee_bp.get("/courses/<int:course_id>")
@require_auth
def get_course(course_id):
    course = course_service.get_course(course_id)
    data = course.to_dict()
    if not g.auth.is_admin:
        # gabarito não vai para o funcionário
        data["questions"] = [{k: v for k, v in q.items() if k != "correctAnswer"} for q in data["questions"]]
    return jsonify(data)


@employee_bp.get("/courses/<int:course_id>/quiz")
@require_auth
def get_quiz(course_id):
    course = course_service.get_course(course_id)
    quiz = course_service.resolve_quiz(course)
    if quiz is None:
        raise NotFound("Quiz not found")
    return jsonify(quiz.to_dict(include_answers=g.auth.is_admin))


@employee_bp.get("/videos/<path:filename>")
@require_auth
def serve_video(filename):
    upload_dir = current_app.config["UPLOAD_DIR"]
    if not os.path.isfile(os.path.join(upload_dir, os.path.basename(filename))):
        raise NotFound("Video not found")
    # send_from_directory responde Range/If-None-Match (streaming parcial)
    return send_from_directory(upload_dir, os.path.basename(filename), conditional=True)


# =========================
# CONVITE POR E-MAIL
# =========================
@employee_bp.get("/course-access/<token>")
def course_access(token):
    redemption = engine.redeem_token(token)
    return jsonify(redemption.to_dict())


@employee_bp.post("/complete-profile")
def complete_profile():
    data = CompleteProfile.model_validate(_payload())
    user, enrollment = engine.complete_profile(data.token, data.user_data)
    start_session(user)
    return jsonify({
        "message": "Profile completed successfully",
        "user": user.to_dict(),
        "enrollment": enrollment.to_dict(with_course=True),
    })


# =========================
# MATRÍCULAS DO FUNCIONÁRIO
# =========================
@employee_bp.get("/my-enrollments")
@require_auth
def my_enrollments():
    rows = (
        Enrollment.query.options(joinedload(Enrollment.course))
        .filter_by(user_id=g.auth.user_id)
        .order_by(Enrollment.enrolled_at.desc(), Enrollment.id.desc())
        .all()
    )
    return jsonify([e.to_dict(with_course=True) for e in rows])


@employee_bp.put("/my-enrollments/<int:enrollment_id>")
@require_auth
def update_my_enrollment(enrollment_id):
    data = ProgressUpdate.model_validate(_payload())
    enrollment = engine.update_progress(g.auth.user_id, enrollment_id, data.progress)
    return jsonify(enrollment.to_dict())


@employee_bp.post("/quiz-submission")
@require_auth
def quiz_submission():
    data = QuizSubmission.model_validate(_payload())
    outcome = engine.submit_quiz(g.auth.user_id, data.course_id, score=data.score, answers=data.answers)
    return jsonify(outcome)


@employee_bp.post("/acknowledge-completion")
@require_auth
def acknowledge_completion():
    data = Acknowledge.model_validate(_payload())
    certificate = engine.acknowledge_completion(g.auth.user_id, data.course_id, data.digital_signature)
    return jsonify({
        "success": True,
        "certificate": certificate.to_dict(),
        "message": "Certificate issued successfully",
    })


# =========================
# CERTIFICADOS
# =========================
@employee_bp.get("/my-certificates")
@require_auth
def my_certificates():
    rows = (
        Certificate.query.options(joinedload(Certificate.course))
        .filter_by(user_id=g.auth.user_id)
        .order_by(Certificate.issued_at.desc())
        .all()
    )
    return jsonify([c.to_dict(with_course=True) for c in rows])


@employee_bp.get("/certificates/<int:certificate_id>/pdf")
@require_auth
def certificate_pdf(certificate_id):
    certificate = db.session.get(Certificate, certificate_id)
    if certificate is None:
        raise NotFound("Certificate not found")
    if certificate.user_id != g.auth.user_id and not g.auth.is_admin:
        raise Forbidden()

    pdf = render_certificate_pdf(certificate)
    code = certificate.certificate_code or f"certificate-{certificate.id}"
    return send_file(
        BytesIO(pdf),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=f"{code}.pdf",
    )
