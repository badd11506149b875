from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from sqlalchemy import UniqueConstraint, CheckConstraint, Index

db = SQLAlchemy()

ROLES = ("admin", "employee")
COURSE_TYPES = ("one-time", "recurring")
ENROLLMENT_STATUSES = ("pending", "accessed", "completed", "expired")


def utcnow() -> datetime:
    # tudo é gravado como UTC "naive" (SQLite e Postgres sem timezone)
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


# =====================
# USUÁRIOS
# =====================
class User(UserMixin, db.Model):
    __tablename__ = "users"
    id = db.Column(db.Integer, primary_key=True)

    employee_id = db.Column(db.String(40), unique=True, index=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255))
    name = db.Column(db.String(150), nullable=False)
    role = db.Column(db.String(20), nullable=False, default="employee")

    designation = db.Column(db.String(120))
    department = db.Column(db.String(120))
    client_name = db.Column(db.String(120))
    phone_number = db.Column(db.String(40))
    position = db.Column(db.String(120))
    join_date = db.Column(db.DateTime, default=utcnow)

    is_active = db.Column(db.Boolean, default=True, nullable=False)

    # Recuperação de senha
    reset_token = db.Column(db.String(128), index=True)
    reset_token_expiry = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utcnow)

    enrollments = db.relationship("Enrollment", back_populates="user", lazy=True, cascade="all, delete")
    certificates = db.relationship("Certificate", back_populates="user", lazy=True, cascade="all, delete")

    __table_args__ = (CheckConstraint("role IN ('admin', 'employee')", name="ck_users_role"),)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_dict(self):
        return {
            "id": self.id,
            "employeeId": self.employee_id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "designation": self.designation,
            "department": self.department,
            "clientName": self.client_name,
            "phoneNumber": self.phone_number,
            "position": self.position,
            "joinDate": _iso(self.join_date),
            "isActive": bool(self.is_active),
            "createdAt": _iso(self.created_at),
        }


# =====================
# CURSOS
# =====================
class Course(db.Model):
    __tablename__ = "courses"
    id = db.Column(db.Integer, primary_key=True)

    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)

    # vídeo: arquivo enviado (nome dentro de UPLOAD_DIR) ou URL externa
    video_path = db.Column(db.String(300))
    youtube_url = db.Column(db.String(500))
    duration = db.Column(db.Integer, default=0)  # minutos

    # perguntas embutidas (fallback quando não existe Quiz separado)
    questions = db.Column(db.JSON)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime, default=utcnow)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    is_compliance_course = db.Column(db.Boolean, default=False, nullable=False)
    renewal_period_months = db.Column(db.Integer, default=3)
    is_auto_enroll_new_employees = db.Column(db.Boolean, default=False, nullable=False)
    course_type = db.Column(db.String(20), default="one-time", nullable=False)

    default_deadline_days = db.Column(db.Integer, default=30)
    reminder_days = db.Column(db.Integer, default=7)

    quizzes = db.relationship("Quiz", back_populates="course", lazy=True, cascade="all, delete")
    enrollments = db.relationship("Enrollment", back_populates="course", lazy=True, cascade="all, delete")
    certificates = db.relationship("Certificate", back_populates="course", lazy=True, cascade="all, delete")

    __table_args__ = (
        CheckConstraint("course_type IN ('one-time', 'recurring')", name="ck_courses_type"),
    )

    @property
    def is_recurring(self) -> bool:
        return self.course_type == "recurring"

    @property
    def video_source(self) -> Optional[str]:
        """URL externa tem precedência sobre o arquivo enviado."""
        if self.youtube_url:
            return self.youtube_url
        if self.video_path:
            return f"/api/videos/{self.video_path}"
        return None

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "videoPath": self.video_path,
            "youtubeUrl": self.youtube_url,
            "videoSource": self.video_source,
            "duration": self.duration,
            "questions": self.questions or [],
            "createdBy": self.created_by,
            "createdAt": _iso(self.created_at),
            "isActive": bool(self.is_active),
            "isComplianceCourse": bool(self.is_compliance_course),
            "renewalPeriodMonths": self.renewal_period_months,
            "isAutoEnrollNewEmployees": bool(self.is_auto_enroll_new_employees),
            "courseType": self.course_type,
            "defaultDeadlineDays": self.default_deadline_days,
            "reminderDays": self.reminder_days,
        }


# =====================
# QUIZ (entidade separada, opcional)
# =====================
class Quiz(db.Model):
    __tablename__ = "quizzes"
    id = db.Column(db.Integer, primary_key=True)
    course_id = db.Column(db.Integer, db.ForeignKey("courses.id"), nullable=False, index=True)

    title = db.Column(db.String(200), nullable=False)
    questions = db.Column(db.JSON, nullable=False)
    passing_score = db.Column(db.Integer, default=70)
    created_at = db.Column(db.DateTime, default=utcnow)

    course = db.relationship("Course", back_populates="quizzes")

    def to_dict(self):
        return {
            "id": self.id,
            "courseId": self.course_id,
            "title": self.title,
            "questions": self.questions or [],
            "passingScore": self.passing_score,
            "createdAt": _iso(self.created_at),
        }


# =====================
# MATRÍCULAS
# =====================
@dataclass(frozen=True)
class LinkedUser:
    user_id: int


@dataclass(frozen=True)
class PendingEmail:
    email: str
    token: Optional[str]


EnrollmentSubject = Union[LinkedUser, PendingEmail]


class Enrollment(db.Model):
    __tablename__ = "enrollments"
    id = db.Column(db.Integer, primary_key=True)

    # nulo enquanto o convite por e-mail não foi resgatado
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), index=True)
    course_id = db.Column(db.Integer, db.ForeignKey("courses.id"), nullable=False, index=True)

    enrolled_at = db.Column(db.DateTime, default=utcnow)
    completed_at = db.Column(db.DateTime)
    progress = db.Column(db.Integer, default=0, nullable=False)
    quiz_score = db.Column(db.Integer)
    certificate_issued = db.Column(db.Boolean, default=False, nullable=False)

    # Convite por e-mail
    assigned_email = db.Column(db.String(255), index=True)
    assignment_token = db.Column(db.String(128), unique=True)
    deadline = db.Column(db.DateTime)
    status = db.Column(db.String(20), default="pending", nullable=False)
    reminders_sent = db.Column(db.Integer, default=0, nullable=False)

    # Compliance / renovação
    expires_at = db.Column(db.DateTime)
    is_expired = db.Column(db.Boolean, default=False, nullable=False)
    renewal_count = db.Column(db.Integer, default=0, nullable=False)

    user = db.relationship("User", back_populates="enrollments")
    course = db.relationship("Course", back_populates="enrollments")
    certificate = db.relationship("Certificate", back_populates="enrollment", uselist=False)

    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="uq_enrollment_user_course"),
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_enrollment_progress"),
        Index("ix_enrollment_status_deadline", "status", "deadline"),
    )

    @property
    def subject(self) -> EnrollmentSubject:
        if self.user_id is not None:
            return LinkedUser(self.user_id)
        return PendingEmail(self.assigned_email, self.assignment_token)

    @property
    def recipient_email(self) -> Optional[str]:
        subject = self.subject
        if isinstance(subject, PendingEmail):
            return subject.email
        return self.user.email if self.user is not None else None

    @property
    def invitation_token(self) -> Optional[str]:
        """Token do link de acesso; só existe enquanto o convite não foi vinculado."""
        subject = self.subject
        return subject.token if isinstance(subject, PendingEmail) else None

    def link_user(self, user: "User"):
        """Colapsa o convite pendente em matrícula vinculada."""
        self.user_id = user.id
        self.user = user
        if self.status == "pending":
            self.status = "accessed"

    def to_dict(self, with_course=False, with_user=False, with_token=False):
        out = {
            "id": self.id,
            "userId": self.user_id,
            "courseId": self.course_id,
            "enrolledAt": _iso(self.enrolled_at),
            "completedAt": _iso(self.completed_at),
            "progress": self.progress,
            "quizScore": self.quiz_score,
            "certificateIssued": bool(self.certificate_issued),
            "assignedEmail": self.assigned_email,
            "deadline": _iso(self.deadline),
            "status": self.status,
            "remindersSent": self.reminders_sent,
            "expiresAt": _iso(self.expires_at),
            "isExpired": bool(self.is_expired),
            "renewalCount": self.renewal_count,
        }
        if with_token:
            out["assignmentToken"] = self.assignment_token
        if with_course and self.course is not None:
            out["course"] = self.course.to_dict()
        if with_user:
            out["user"] = self.user.to_dict() if self.user is not None else None
        return out


# =====================
# CERTIFICADOS
# =====================
class Certificate(db.Model):
    __tablename__ = "certificates"
    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    course_id = db.Column(db.Integer, db.ForeignKey("courses.id"), nullable=False, index=True)
    enrollment_id = db.Column(db.Integer, db.ForeignKey("enrollments.id"), index=True)

    issued_at = db.Column(db.DateTime, default=utcnow)
    certificate_data = db.Column(db.JSON)
    digital_signature = db.Column(db.String(255))
    acknowledged_at = db.Column(db.DateTime)

    user = db.relationship("User", back_populates="certificates")
    course = db.relationship("Course", back_populates="certificates")
    enrollment = db.relationship("Enrollment", back_populates="certificate")

    __table_args__ = (UniqueConstraint("user_id", "course_id", name="uq_certificate_user_course"),)

    @property
    def certificate_code(self) -> Optional[str]:
        return (self.certificate_data or {}).get("certificateId")

    def to_dict(self, with_course=False):
        out = {
            "id": self.id,
            "userId": self.user_id,
            "courseId": self.course_id,
            "enrollmentId": self.enrollment_id,
            "issuedAt": _iso(self.issued_at),
            "certificateData": self.certificate_data,
            "digitalSignature": self.digital_signature,
            "acknowledgedAt": _iso(self.acknowledged_at),
        }
        if with_course and self.course is not None:
            out["course"] = self.course.to_dict()
        return out


# =====================
# LOG DE AUDITORIA
# =====================
class AuditLog(db.Model):
    __tablename__ = "audit_log"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), index=True)

    action = db.Column(db.String(120), nullable=False)
    object_type = db.Column(db.String(80))
    object_id = db.Column(db.String(64))

    created_at = db.Column(db.DateTime, default=utcnow)

    ip = db.Column(db.String(64))
    user_agent = db.Column(db.String(256))
    meta = db.Column(db.Text)
