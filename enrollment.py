"""
Engine de matrículas / atribuições

Ciclo de vida de uma matrícula:
    pending  -> accessed -> completed
    pending  -> expired            (varredura periódica)
    expired  -> pending            (renovação pelo admin)

Toda operação recebe ids explícitos, grava, dá commit e só depois entrega
os e-mails ao dispatcher (best-effort).
"""
import logging
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from flask import current_app
from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from models import db, utcnow, User, Course, Enrollment, LinkedUser
from errors import NotFound, Gone, Forbidden, ValidationFailed, DomainRuleViolation
from schemas import email_adapter
from courses import get_course, resolve_quiz, grade_answers, passing_score_for, default_passing_score
from certificates import issue_certificate, compute_expiry
from notifications import (
    get_dispatcher, invitation_message, reminder_message,
    certificate_message, completion_notice,
)

log = logging.getLogger(__name__)

PASSED_AWAITING_ACK_PROGRESS = 95
FAILED_PROGRESS_CAP = 90
MAX_DEADLINE_DAYS = 365


@dataclass
class BulkResult:
    created: List[Enrollment] = field(default_factory=list)
    skipped: int = 0
    errors: List[dict] = field(default_factory=list)

    def to_dict(self, with_token=False):
        return {
            "created": len(self.created),
            "skipped": self.skipped,
            "errors": self.errors,
            "enrollments": [e.to_dict(with_token=with_token) for e in self.created],
        }


def _now(now=None):
    return now or utcnow()


def _clamp(value, lo=0, hi=100) -> int:
    return int(round(max(lo, min(hi, float(value)))))


def _base_url():
    return current_app.config["APP_BASE_URL"]


def find_user_by_email(email) -> Optional[User]:
    email = (email or "").strip().lower()
    if not email:
        return None
    return User.query.filter(func.lower(User.email) == email).first()


def get_user_enrollment(user_id, course_id) -> Optional[Enrollment]:
    return Enrollment.query.filter_by(user_id=user_id, course_id=course_id).first()


def _new_linked(user: User, course: Course, now, deadline_days=None) -> Enrollment:
    days = deadline_days or course.default_deadline_days or 30
    enrollment = Enrollment(
        user_id=user.id,
        course_id=course.id,
        enrolled_at=now,
        deadline=now + timedelta(days=days),
        status="pending",
        progress=0,
    )
    db.session.add(enrollment)
    return enrollment


def _assign_linked(result: BulkResult, user: User, course: Course, now, seen, deadline_days=None):
    key = (user.id, course.id)
    # duplicado: primeiro que gravou vence, sem erro
    if key in seen or get_user_enrollment(user.id, course.id) is not None:
        result.skipped += 1
        return None
    seen.add(key)
    # outra requisição pode ter gravado o mesmo par depois da checagem:
    # a unique constraint decide e só esta linha volta (savepoint)
    try:
        with db.session.begin_nested():
            enrollment = _new_linked(user, course, now, deadline_days)
            db.session.flush()
    except IntegrityError:
        log.info("Matrícula (%s, %s) já gravada por outra requisição", user.id, course.id)
        result.skipped += 1
        return None
    result.created.append(enrollment)
    return enrollment


# =========================
# Criação de matrículas
# =========================
def bulk_assign_course(course_id, user_ids, now=None) -> BulkResult:
    now = _now(now)
    course = get_course(course_id)
    result, seen = BulkResult(), set()

    for uid in dict.fromkeys(user_ids):
        user = db.session.get(User, uid)
        if user is None:
            result.errors.append({"userId": uid, "error": "User not found"})
            continue
        _assign_linked(result, user, course, now, seen)

    db.session.commit()
    log.info("Curso %s atribuído: %d nova(s), %d duplicada(s)", course.id, len(result.created), result.skipped)
    return result


def bulk_assign_users(user_ids, course_ids, now=None) -> BulkResult:
    now = _now(now)
    result, seen = BulkResult(), set()

    users = []
    for uid in dict.fromkeys(user_ids):
        user = db.session.get(User, uid)
        if user is None:
            result.errors.append({"userId": uid, "error": "User not found"})
        else:
            users.append(user)

    for cid in dict.fromkeys(course_ids):
        course = db.session.get(Course, cid)
        if course is None:
            result.errors.append({"courseId": cid, "error": "Course not found"})
            continue
        for user in users:
            _assign_linked(result, user, course, now, seen)

    db.session.commit()
    return result


def normalize_emails(emails) -> List[str]:
    out = []
    for raw in emails or []:
        email = (raw or "").strip().lower()
        if email and email not in out:
            out.append(email)
    return out


def _valid_email(email) -> Optional[str]:
    """Mesma validação dos schemas (EmailStr); None quando o endereço é inválido."""
    try:
        return email_adapter.validate_python(email)
    except ValidationError:
        return None


def bulk_assign_course_by_email(course_id, emails, deadline_days=30, now=None) -> BulkResult:
    if not isinstance(deadline_days, int) or not 1 <= deadline_days <= MAX_DEADLINE_DAYS:
        raise ValidationFailed(
            "Invalid deadline",
            errors=[{"field": "deadlineDays", "message": "must be between 1 and 365"}],
        )
    now = _now(now)
    course = get_course(course_id)
    result, seen = BulkResult(), set()
    outbox = []

    for raw in normalize_emails(emails):
        email = _valid_email(raw)
        if email is None:
            result.errors.append({"email": raw, "error": "Invalid email address"})
            continue

        user = find_user_by_email(email)
        if user is not None:
            enrollment = _assign_linked(result, user, course, now, seen, deadline_days)
            if enrollment is not None:
                outbox.append(enrollment)
            continue

        pending = Enrollment.query.filter_by(
            course_id=course.id, assigned_email=email, user_id=None, status="pending"
        ).first()
        if pending is not None or (email, course.id) in seen:
            result.skipped += 1
            continue
        seen.add((email, course.id))

        enrollment = Enrollment(
            course_id=course.id,
            assigned_email=email,
            assignment_token=secrets.token_hex(32),
            enrolled_at=now,
            deadline=now + timedelta(days=deadline_days),
            status="pending",
            progress=0,
        )
        db.session.add(enrollment)
        result.created.append(enrollment)
        outbox.append(enrollment)

    db.session.commit()

    dispatcher = get_dispatcher()
    for enrollment in outbox:
        dispatcher.dispatch(invitation_message(
            enrollment.recipient_email, course, enrollment.deadline, _base_url(),
            token=enrollment.invitation_token,
        ))
    log.info("Convites por e-mail do curso %s: %d criado(s)", course.id, len(result.created))
    return result


def auto_enroll_new_employee(user: User, now=None) -> int:
    """Matricula o funcionário novo nos cursos de compliance com auto-matrícula."""
    if user is None or user.is_admin:
        return 0
    now = _now(now)
    courses = Course.query.filter_by(
        is_active=True, is_compliance_course=True, is_auto_enroll_new_employees=True
    ).all()

    result, seen = BulkResult(), set()
    for course in courses:
        _assign_linked(result, user, course, now, seen)
    if result.created:
        db.session.commit()
        log.info("Auto-matriculamos %d curso(s) para %s.", len(result.created), user.email)
    return len(result.created)


# =========================
# Convite por token
# =========================
@dataclass
class Redemption:
    enrollment: Enrollment
    course: Course
    existing_user: Optional[User] = None

    @property
    def is_first_time(self) -> bool:
        return self.existing_user is None

    def to_dict(self):
        enrollment = self.enrollment.to_dict()
        enrollment["assignedEmail"] = self.enrollment.assigned_email or (
            self.existing_user.email if self.existing_user else None
        )
        out = {
            "isFirstTime": self.is_first_time,
            "enrollment": enrollment,
            "course": self.course.to_dict(),
        }
        if self.existing_user is not None:
            out["existingUser"] = self.existing_user.to_dict()
        return out


def _load_invitation(token, now) -> Enrollment:
    enrollment = Enrollment.query.filter_by(assignment_token=token).first() if token else None
    if enrollment is None or enrollment.status == "expired":
        raise NotFound("Invalid or expired access link")
    if enrollment.deadline is not None and enrollment.deadline < now:
        raise Gone("This course assignment has expired")
    return enrollment


def _link(enrollment: Enrollment, user: User) -> Enrollment:
    """Vincula o convite ao usuário; se ele já tem matrícula no curso, usa a existente."""
    if isinstance(enrollment.subject, LinkedUser):
        return enrollment
    existing = get_user_enrollment(user.id, enrollment.course_id)
    if existing is not None:
        return existing
    enrollment.link_user(user)
    return enrollment


def redeem_token(token, now=None) -> Redemption:
    now = _now(now)
    enrollment = _load_invitation(token, now)
    course = enrollment.course

    subject = enrollment.subject
    if isinstance(subject, LinkedUser):
        return Redemption(enrollment, course, existing_user=enrollment.user)

    user = find_user_by_email(subject.email)
    if user is None:
        return Redemption(enrollment, course)

    linked = _link(enrollment, user)
    db.session.commit()
    return Redemption(linked, course, existing_user=user)


def _require_employee(user: User):
    # o convite só abre sessão de funcionário; admin entra pelo login normal
    if user.role != "employee":
        raise Forbidden("This invitation cannot be used to sign in to this account")


def complete_profile(token, profile, now=None):
    """
    Cria o usuário a partir do convite (ou reaproveita o existente) e vincula a matrícula.
    Retorna (user, enrollment). O login fica por conta da view.
    """
    from employees import create_user_record

    now = _now(now)
    enrollment = _load_invitation(token, now)

    subject = enrollment.subject
    if isinstance(subject, LinkedUser):
        _require_employee(enrollment.user)
        return enrollment.user, enrollment

    user = find_user_by_email(subject.email)
    created = user is None
    if created:
        user = create_user_record(
            email=subject.email,
            name=profile.name,
            employee_id=profile.employee_id,
            designation=profile.designation,
            department=profile.department,
            client_name=profile.client_name,
            phone_number=profile.phone_number,
            now=now,
        )
    else:
        _require_employee(user)

    linked = _link(enrollment, user)
    db.session.commit()

    if created:
        auto_enroll_new_employee(user, now)
    return user, linked


# =========================
# Progresso / quiz / conclusão
# =========================
def _own_enrollment(user_id, course_id) -> Enrollment:
    enrollment = get_user_enrollment(user_id, course_id)
    if enrollment is None:
        raise DomainRuleViolation("Not enrolled in this course")
    return enrollment


def update_progress(user_id, enrollment_id, progress) -> Enrollment:
    enrollment = db.session.get(Enrollment, enrollment_id)
    if enrollment is None or enrollment.user_id != user_id:
        raise NotFound("Enrollment not found")

    enrollment.progress = 100 if enrollment.certificate_issued else _clamp(progress)
    db.session.commit()
    return enrollment


def submit_quiz(user_id, course_id, score=None, answers=None, now=None) -> dict:
    course = get_course(course_id)
    enrollment = _own_enrollment(user_id, course.id)
    if enrollment.status == "expired":
        raise Gone("This course assignment has expired")

    quiz = resolve_quiz(course)
    passing = quiz.passing_score if quiz else default_passing_score()

    if answers is not None and quiz is not None:
        graded = grade_answers(quiz, answers)
        if graded is not None:
            score = graded
    if score is None:
        raise ValidationFailed("Quiz score is required", errors=[{"field": "score", "message": "required"}])

    score = _clamp(score)
    is_passing = score >= passing
    certified = bool(enrollment.certificate_issued)

    enrollment.quiz_score = score
    if is_passing:
        enrollment.progress = 100 if certified else PASSED_AWAITING_ACK_PROGRESS
    else:
        enrollment.progress = 100 if certified else min(enrollment.progress or 0, FAILED_PROGRESS_CAP)
    if enrollment.status != "completed":
        enrollment.status = "accessed" if is_passing else "pending"
    db.session.commit()

    return {
        "success": True,
        "score": score,
        "passingScore": passing,
        "isPassing": is_passing,
        "certificateIssued": certified,
        "needsAcknowledgment": is_passing and not certified,
        "enrollment": enrollment.to_dict(),
    }


def acknowledge_completion(user_id, course_id, signature, now=None):
    signature = (signature or "").strip()
    if not signature:
        raise ValidationFailed(
            "Digital signature is required",
            errors=[{"field": "digitalSignature", "message": "required"}],
        )
    now = _now(now)
    course = get_course(course_id)
    enrollment = _own_enrollment(user_id, course.id)

    passing = passing_score_for(course)
    if enrollment.quiz_score is None or enrollment.quiz_score < passing:
        raise DomainRuleViolation("Quiz must be completed with passing score before acknowledgment")

    user = db.session.get(User, user_id)
    certificate = issue_certificate(enrollment, user, course, signature, now)

    enrollment.certificate_issued = True
    enrollment.progress = 100
    enrollment.status = "completed"
    enrollment.completed_at = now
    enrollment.expires_at = compute_expiry(course, now)
    enrollment.is_expired = False
    db.session.commit()

    dispatcher = get_dispatcher()
    dispatcher.dispatch(certificate_message(user, course, certificate))
    dispatcher.dispatch(completion_notice(current_app.config.get("HR_NOTIFICATION_EMAIL"), user, course, certificate))
    return certificate


# =========================
# Varreduras / renovação
# =========================
def expire_overdue_assignments(now=None) -> int:
    now = _now(now)
    count = (
        Enrollment.query
        .filter(Enrollment.status == "pending", Enrollment.deadline.isnot(None), Enrollment.deadline < now)
        .update({Enrollment.status: "expired", Enrollment.is_expired: True}, synchronize_session=False)
    )
    db.session.commit()
    if count:
        log.info("Varredura: %d matrícula(s) expirada(s)", count)
    return count


def flag_lapsed_certifications(now=None) -> int:
    """Certificado de curso recorrente vencido: marca is_expired, status segue completed."""
    now = _now(now)
    recurring = db.session.query(Course.id).filter(Course.course_type == "recurring")
    count = (
        Enrollment.query
        .filter(
            Enrollment.status == "completed",
            Enrollment.is_expired.is_(False),
            Enrollment.expires_at.isnot(None),
            Enrollment.expires_at < now,
            Enrollment.course_id.in_(recurring),
        )
        .update({Enrollment.is_expired: True}, synchronize_session=False)
    )
    db.session.commit()
    if count:
        log.info("Varredura: %d certificação(ões) vencida(s)", count)
    return count


def renew_expired_certifications(course_id, user_ids=None, now=None) -> List[Enrollment]:
    now = _now(now)
    course = get_course(course_id)
    q = Enrollment.query.filter(Enrollment.course_id == course.id, Enrollment.is_expired.is_(True))
    if user_ids:
        q = q.filter(Enrollment.user_id.in_(list(user_ids)))
    renewed = q.all()

    days = course.default_deadline_days or 30
    for e in renewed:
        e.progress = 0
        e.quiz_score = None
        e.certificate_issued = False
        e.completed_at = None
        e.expires_at = None
        e.deadline = now + timedelta(days=days)
        e.status = "pending"
        e.is_expired = False
        e.renewal_count = (e.renewal_count or 0) + 1
    db.session.commit()

    dispatcher = get_dispatcher()
    for e in renewed:
        dispatcher.dispatch(invitation_message(
            e.recipient_email, course, e.deadline, _base_url(), token=e.invitation_token,
        ))
    log.info("Curso %s: %d certificação(ões) renovada(s)", course.id, len(renewed))
    return renewed


# =========================
# Lembretes
# =========================
def reminder_candidates(course_id, now=None) -> List[Enrollment]:
    now = _now(now)
    return (
        Enrollment.query
        .filter(
            Enrollment.course_id == course_id,
            Enrollment.status.notin_(("completed", "expired")),
            Enrollment.certificate_issued.is_(False),
            Enrollment.progress < 100,
            (Enrollment.deadline.is_(None)) | (Enrollment.deadline >= now),
        )
        .all()
    )


def send_reminders(course_id, now=None) -> dict:
    """Envio síncrono: o contador só sobe quando o SMTP aceitou a mensagem."""
    now = _now(now)
    course = get_course(course_id)
    dispatcher = get_dispatcher()
    sent, failed, errors = 0, 0, []

    for e in reminder_candidates(course.id, now):
        to = e.recipient_email
        token = e.invitation_token
        try:
            dispatcher.deliver(reminder_message(to, course, e.deadline, _base_url(), token=token))
        except Exception as exc:
            failed += 1
            errors.append({"email": to, "error": str(exc)})
            log.warning("Falha ao enviar lembrete para %s: %s", to, exc)
            continue
        e.reminders_sent = (e.reminders_sent or 0) + 1
        sent += 1

    db.session.commit()
    return {"sent": sent, "failed": failed, "errors": errors}


def reset_reminder_counters(now=None, age_days=None) -> int:
    """Zera remindersSent das matrículas com mais de 30 dias (rearma os lembretes)."""
    now = _now(now)
    if age_days is None:
        age_days = current_app.config.get("REMINDER_RESET_AGE_DAYS", 30)
    cutoff = now - timedelta(days=age_days)
    count = (
        Enrollment.query
        .filter(Enrollment.enrolled_at < cutoff, Enrollment.reminders_sent >= 1)
        .update({Enrollment.reminders_sent: 0}, synchronize_session=False)
    )
    db.session.commit()
    return count
