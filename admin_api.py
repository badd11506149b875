"""
Rotas do administrador (RH)
"""
import json

from flask import Blueprint, jsonify, request, g
from sqlalchemy import func
from sqlalchemy.orm import joinedload

from models import db, User, Course, Enrollment, Certificate
from errors import ValidationFailed
from auth import require_role
from schemas import (
    EmployeeIn, EmployeeUpdate, BulkImportEmployees, DeactivateEmployees,
    CourseIn, CourseUpdate, QuizIn, BulkAssignCourse, BulkAssignUsers,
    BulkAssignEmails, RenewExpired,
)
import courses as course_service
import employees as employee_service
import enrollment as engine
from utils_audit import audit


admin_bp = Blueprint("admin_api", __name__, url_prefix="/api")


@admin_bp.before_request
@require_role("admin")
def _admin_only():
    return None


def _payload():
    return request.get_json(silent=True) or {}


def _course_payload():
    """JSON puro ou multipart (campos + arquivo 'video' + questions em JSON)."""
    if request.is_json:
        return _payload(), None

    data = {k: v for k, v in request.form.to_dict().items() if v != ""}
    raw = data.get("questions")
    if raw:
        try:
            data["questions"] = json.loads(raw)
        except ValueError:
            raise ValidationFailed(
                "Invalid questions format",
                errors=[{"field": "questions", "message": "must be a JSON array"}],
            )
    return data, request.files.get("video")


# =========================
# FUNCIONÁRIOS
# =========================
@admin_bp.get("/employees")
def list_employees():
    users = User.query.filter_by(role="employee").order_by(User.created_at.desc(), User.id.desc()).all()
    return jsonify([u.to_dict() for u in users])


@admin_bp.post("/employees")
def create_employee():
    data = EmployeeIn.model_validate(_payload())
    user = employee_service.create_employee(data)
    audit("employee.create", object_type="User", object_id=user.id)
    return jsonify(user.to_dict()), 201


@admin_bp.put("/employees/<int:user_id>")
def update_employee(user_id):
    data = EmployeeUpdate.model_validate(_payload())
    user = employee_service.update_employee(user_id, data)
    audit("employee.update", object_type="User", object_id=user.id)
    return jsonify(user.to_dict())


@admin_bp.delete("/employees/<int:user_id>")
def delete_employee(user_id):
    employee_service.delete_employee(user_id, acting_user_id=g.auth.user_id)
    audit("employee.delete", object_type="User", object_id=user_id)
    return jsonify({"message": "Employee deleted successfully"})


@admin_bp.post("/bulk-import-employees")
def bulk_import_employees():
    data = BulkImportEmployees.model_validate(_payload())
    results = employee_service.bulk_import(data.employees)
    audit("employee.bulk_import", object_type="User", meta={k: v for k, v in results.items() if k != "errors"})
    return jsonify({
        "message": f"Import completed: {results['created']} created, {results['updated']} updated",
        "results": results,
    })


@admin_bp.post("/deactivate-employees")
def deactivate_employees():
    data = DeactivateEmployees.model_validate(_payload())
    count = employee_service.deactivate_employees(data.employee_ids)
    audit("employee.deactivate", object_type="User", meta={"ids": data.employee_ids})
    return jsonify({"message": f"Deactivated {count} employees successfully", "deactivated": count})


# =========================
# CURSOS
# =========================
@admin_bp.post("/courses")
def create_course():
    raw, video = _course_payload()
    data = CourseIn.model_validate(raw)
    course = course_service.create_course(data, created_by=g.auth.user_id, video_file=video)
    audit("course.create", object_type="Course", object_id=course.id, meta={"title": course.title})
    return jsonify(course.to_dict()), 201


@admin_bp.put("/courses/<int:course_id>")
def update_course(course_id):
    raw, video = _course_payload()
    data = CourseUpdate.model_validate(raw)
    course = course_service.update_course(course_id, data, video_file=video)
    audit("course.update", object_type="Course", object_id=course.id, meta={"fields": sorted(data.model_fields_set)})
    return jsonify(course.to_dict())


@admin_bp.get("/courses/<int:course_id>/deletion-impact")
def course_deletion_impact(course_id):
    return jsonify(course_service.course_deletion_impact(course_id).to_dict())


@admin_bp.delete("/courses/<int:course_id>")
def delete_course(course_id):
    summary = course_service.delete_course(course_id)
    audit("course.delete", object_type="Course", object_id=course_id, meta=summary["impact"])
    return jsonify({"message": "Course deleted successfully", **summary})


@admin_bp.post("/courses/<int:course_id>/quiz")
def save_quiz(course_id):
    data = QuizIn.model_validate(_payload())
    quiz = course_service.save_quiz(course_id, data)
    audit("quiz.save", object_type="Course", object_id=course_id)
    return jsonify(quiz.to_dict()), 201


# =========================
# ATRIBUIÇÕES
# =========================
@admin_bp.post("/bulk-assign-course")
def bulk_assign_course():
    data = BulkAssignCourse.model_validate(_payload())
    result = engine.bulk_assign_course(data.course_id, data.user_ids)
    audit("assign.course", object_type="Course", object_id=data.course_id, meta={"created": len(result.created)})
    return jsonify({
        **result.to_dict(),
        "message": f"Course assigned to {len(result.created)} users successfully",
    })


@admin_bp.post("/bulk-assign-users")
def bulk_assign_users():
    data = BulkAssignUsers.model_validate(_payload())
    result = engine.bulk_assign_users(data.user_ids, data.course_ids)
    audit("assign.users", object_type="Course", meta={"courses": data.course_ids, "created": len(result.created)})
    return jsonify({
        **result.to_dict(),
        "message": f"{len(data.user_ids)} users assigned to {len(data.course_ids)} courses successfully",
    })


@admin_bp.post("/bulk-assign-emails")
def bulk_assign_emails():
    data = BulkAssignEmails.model_validate(_payload())
    result = engine.bulk_assign_course_by_email(data.course_id, data.emails, data.deadline_days)
    audit("assign.emails", object_type="Course", object_id=data.course_id, meta={"created": len(result.created)})
    return jsonify({
        **result.to_dict(with_token=True),
        "message": f"Course assigned to {len(result.created)} email addresses",
    })


@admin_bp.get("/course-assignments/<int:course_id>")
def course_assignments(course_id):
    course = course_service.get_course(course_id)
    rows = (
        Enrollment.query.options(joinedload(Enrollment.user))
        .filter_by(course_id=course.id)
        .order_by(Enrollment.enrolled_at.desc(), Enrollment.id.desc())
        .all()
    )
    return jsonify([e.to_dict(with_user=True, with_token=True) for e in rows])


@admin_bp.get("/courses/<int:course_id>/enrollments")
def course_enrollments(course_id):
    course = course_service.get_course(course_id)
    rows = (
        Enrollment.query.options(joinedload(Enrollment.user))
        .filter(Enrollment.course_id == course.id, Enrollment.user_id.isnot(None))
        .all()
    )
    return jsonify([e.to_dict(with_user=True) for e in rows])


@admin_bp.get("/users/<int:user_id>/enrollments")
def user_enrollments(user_id):
    employee_service.get_user(user_id)
    rows = (
        Enrollment.query.options(joinedload(Enrollment.course))
        .filter_by(user_id=user_id)
        .all()
    )
    return jsonify([e.to_dict(with_course=True) for e in rows])


@admin_bp.post("/send-reminders/<int:course_id>")
def send_reminders(course_id):
    summary = engine.send_reminders(course_id)
    audit("reminders.send", object_type="Course", object_id=course_id, meta={"sent": summary["sent"]})
    return jsonify({"message": f"Sent {summary['sent']} reminder emails", **summary})


@admin_bp.post("/renew-expired-certifications")
def renew_expired_certifications():
    data = RenewExpired.model_validate(_payload())
    renewed = engine.renew_expired_certifications(data.course_id, data.user_ids)
    audit("certification.renew", object_type="Course", object_id=data.course_id, meta={"renewed": len(renewed)})
    return jsonify({
        "message": f"Renewed {len(renewed)} certifications",
        "renewedEnrollments": [e.to_dict() for e in renewed],
    })


# =========================
# DASHBOARD / ANALYTICS
# =========================
@admin_bp.get("/dashboard-stats")
def dashboard_stats():
    return jsonify({
        "totalEmployees": User.query.filter_by(role="employee").count(),
        "activeCourses": Course.query.filter_by(is_active=True).count(),
        "pendingAssignments": Enrollment.query.filter_by(status="pending").count(),
        "certificatesIssued": Certificate.query.count(),
    })


@admin_bp.get("/user-analytics/<int:user_id>")
def user_analytics(user_id):
    employee_service.get_user(user_id)
    avg = (
        db.session.query(func.avg(Enrollment.quiz_score))
        .filter(Enrollment.user_id == user_id, Enrollment.quiz_score.isnot(None))
        .scalar()
    )
    return jsonify({
        "totalEnrollments": Enrollment.query.filter_by(user_id=user_id).count(),
        "completedCourses": Enrollment.query.filter_by(user_id=user_id, certificate_issued=True).count(),
        "certificatesEarned": Certificate.query.filter_by(user_id=user_id).count(),
        "averageQuizScore": round(avg or 0),
    })
