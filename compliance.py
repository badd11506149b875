from flask import Blueprint, jsonify

from models import User, Course, Enrollment
from auth import require_role


compliance_bp = Blueprint("compliance", __name__, url_prefix="/api")


# ============================
# RELATÓRIO DE CONFORMIDADE
# ============================
def _is_compliant(enrollment: Enrollment, course: Course) -> bool:
    # certificado de curso único nunca vence
    return bool(enrollment.certificate_issued) and (not enrollment.is_expired or course.course_type == "one-time")


def compliance_report() -> dict:
    employees = (
        User.query.filter(User.role == "employee", User.is_active.is_(True))
        .order_by(User.name)
        .all()
    )
    courses = Course.query.filter(Course.is_compliance_course.is_(True), Course.is_active.is_(True)).all()
    by_id = {c.id: c for c in courses}
    total = len(courses)

    enrollments = {}
    if employees and courses:
        rows = Enrollment.query.filter(
            Enrollment.user_id.in_([u.id for u in employees]),
            Enrollment.course_id.in_(list(by_id)),
        ).all()
        for e in rows:
            enrollments.setdefault(e.user_id, []).append(e)

    data = []
    for u in employees:
        compliant = sum(1 for e in enrollments.get(u.id, []) if _is_compliant(e, by_id[e.course_id]))
        rate = round(compliant / total * 100) if total else 100
        data.append({
            "id": u.id,
            "name": u.name,
            "email": u.email,
            "employeeId": u.employee_id,
            "department": u.department,
            "totalComplianceCourses": total,
            "compliantCourses": compliant,
            "complianceRate": rate,
            "isCompliant": compliant == total,
        })

    overall = round(sum(d["complianceRate"] for d in data) / len(data)) if data else 100
    return {"employees": data, "overallComplianceRate": overall}


@compliance_bp.get("/compliance-status")
@require_role("admin")
def compliance_status():
    return jsonify(compliance_report())
