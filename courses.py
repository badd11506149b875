"""
Cursos, quiz e exclusão em cascata
"""
import logging
import os
import time
from dataclasses import dataclass, field
from typing import List, Optional

from flask import current_app
from sqlalchemy import func
from werkzeug.utils import secure_filename

from models import db, User, Course, Quiz, Enrollment, Certificate
from errors import NotFound, ValidationFailed

log = logging.getLogger(__name__)

DEFAULT_PASSING_SCORE = 70


def default_passing_score() -> int:
    """Nota mínima quando o quiz não define a sua (config DEFAULT_PASSING_SCORE)."""
    return int(current_app.config.get("DEFAULT_PASSING_SCORE", DEFAULT_PASSING_SCORE))


# =========================
# Quiz resolvido (entidade separada > perguntas embutidas)
# =========================
@dataclass
class ResolvedQuiz:
    course_id: int
    title: str
    questions: List[dict]
    passing_score: int = DEFAULT_PASSING_SCORE
    quiz_id: Optional[int] = None
    source: str = "embedded"

    def to_dict(self, include_answers=False):
        questions = self.questions
        if not include_answers:
            questions = [{k: v for k, v in q.items() if k != "correctAnswer"} for q in questions]
        return {
            "id": self.quiz_id,
            "courseId": self.course_id,
            "title": self.title,
            "questions": questions,
            "passingScore": self.passing_score,
            "source": self.source,
        }


def resolve_quiz(course: Course) -> Optional[ResolvedQuiz]:
    quiz = (
        Quiz.query.filter_by(course_id=course.id)
        .order_by(Quiz.created_at.desc(), Quiz.id.desc())
        .first()
    )
    if quiz is not None:
        return ResolvedQuiz(
            course_id=course.id,
            title=quiz.title,
            questions=list(quiz.questions or []),
            passing_score=quiz.passing_score if quiz.passing_score is not None else default_passing_score(),
            quiz_id=quiz.id,
            source="quiz",
        )
    if course.questions:
        return ResolvedQuiz(
            course_id=course.id,
            title=f"{course.title} Quiz",
            questions=list(course.questions),
            passing_score=default_passing_score(),
        )
    return None


def passing_score_for(course: Course) -> int:
    quiz = resolve_quiz(course)
    return quiz.passing_score if quiz else default_passing_score()


def _is_correct(question: dict, answer) -> bool:
    correct = question.get("correctAnswer")
    options = question.get("options") or []
    if answer is None:
        return False
    # correctAnswer pode ser índice da opção ou o texto dela
    if isinstance(correct, int) and not isinstance(correct, bool):
        if isinstance(answer, int) and not isinstance(answer, bool):
            return answer == correct
        return 0 <= correct < len(options) and str(answer) == str(options[correct])
    if isinstance(answer, int) and not isinstance(answer, bool):
        return 0 <= answer < len(options) and str(options[answer]) == str(correct)
    return str(answer) == str(correct)


def grade_answers(quiz: ResolvedQuiz, answers) -> Optional[int]:
    """Nota 0..100 calculada no servidor; None se o quiz não tem gabarito."""
    questions = quiz.questions
    if not questions or any(q.get("correctAnswer") is None for q in questions):
        return None
    answers = list(answers or [])
    hits = 0
    for i, q in enumerate(questions):
        answer = answers[i] if i < len(answers) else None
        if _is_correct(q, answer):
            hits += 1
    return round(hits * 100 / len(questions))


def _questions_payload(questions):
    return [q.model_dump(by_alias=True, exclude_none=True) for q in (questions or [])]


# =========================
# Upload de vídeo
# =========================
def save_video(file_storage) -> str:
    """Grava o vídeo em UPLOAD_DIR e devolve o nome do arquivo."""
    filename = secure_filename(file_storage.filename or "")
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    allowed = current_app.config["ALLOWED_VIDEO_EXTENSIONS"]
    if ext not in allowed:
        raise ValidationFailed(
            "Invalid file type. Only video files are allowed.",
            errors=[{"field": "video", "message": f"allowed: {', '.join(sorted(allowed))}"}],
        )

    upload_dir = current_app.config["UPLOAD_DIR"]
    os.makedirs(upload_dir, exist_ok=True)
    stored = f"video-{int(time.time() * 1000)}-{filename}"
    file_storage.save(os.path.join(upload_dir, stored))
    return stored


# =========================
# CRUD
# =========================
def get_course(course_id) -> Course:
    course = db.session.get(Course, course_id)
    if course is None:
        raise NotFound("Course not found")
    return course


def create_course(data, created_by=None, video_file=None) -> Course:
    course = Course(
        title=data.title.strip(),
        description=data.description,
        youtube_url=(data.youtube_url or "").strip() or None,
        duration=data.duration,
        questions=_questions_payload(data.questions),
        created_by=created_by,
        is_active=data.is_active,
        is_compliance_course=data.is_compliance_course,
        renewal_period_months=data.renewal_period_months,
        is_auto_enroll_new_employees=data.is_auto_enroll_new_employees,
        course_type=data.course_type,
        default_deadline_days=data.default_deadline_days,
        reminder_days=data.reminder_days,
    )
    if video_file is not None and video_file.filename:
        course.video_path = save_video(video_file)
    db.session.add(course)
    db.session.commit()
    log.info("Curso criado: %s (%s)", course.id, course.title)
    return course


_UPDATABLE = (
    "title", "description", "youtube_url", "duration", "is_active", "is_compliance_course",
    "renewal_period_months", "is_auto_enroll_new_employees", "course_type",
    "default_deadline_days", "reminder_days",
)


def update_course(course_id, data, video_file=None) -> Course:
    course = get_course(course_id)
    fields = data.model_fields_set
    for name in _UPDATABLE:
        if name in fields:
            setattr(course, name, getattr(data, name))
    if "questions" in fields:
        course.questions = _questions_payload(data.questions)
    if video_file is not None and video_file.filename:
        course.video_path = save_video(video_file)
    db.session.commit()
    return course


def save_quiz(course_id, data) -> Quiz:
    """Cria ou substitui o quiz separado do curso."""
    course = get_course(course_id)
    quiz = Quiz.query.filter_by(course_id=course.id).first()
    if quiz is None:
        quiz = Quiz(course_id=course.id)
        db.session.add(quiz)
    quiz.title = data.title
    quiz.questions = _questions_payload(data.questions)
    quiz.passing_score = data.passing_score
    db.session.commit()
    return quiz


# =========================
# Exclusão de curso
# =========================
@dataclass
class DeletionPlan:
    course: Course
    enrollments: int = 0
    certificates: int = 0
    quizzes: int = 0
    users_to_delete: List[User] = field(default_factory=list)
    users_to_keep: List[User] = field(default_factory=list)

    def to_dict(self):
        return {
            "course": self.course.to_dict(),
            "impact": {
                "totalEnrollments": self.enrollments,
                "certificatesWillBeDeleted": self.certificates,
                "quizzesWillBeDeleted": self.quizzes,
                "usersWillBeDeleted": len(self.users_to_delete),
                "usersWillBeKept": len(self.users_to_keep),
            },
            "usersToDelete": [u.to_dict() for u in self.users_to_delete],
            "usersToKeep": [u.to_dict() for u in self.users_to_keep],
        }


def course_deletion_impact(course_id) -> DeletionPlan:
    course = get_course(course_id)
    plan = DeletionPlan(
        course=course,
        enrollments=Enrollment.query.filter_by(course_id=course.id).count(),
        certificates=Certificate.query.filter_by(course_id=course.id).count(),
        quizzes=Quiz.query.filter_by(course_id=course.id).count(),
    )

    enrolled = (
        User.query.join(Enrollment, Enrollment.user_id == User.id)
        .filter(Enrollment.course_id == course.id)
        .distinct()
        .all()
    )
    if not enrolled:
        return plan

    others = dict(
        db.session.query(Enrollment.user_id, func.count(Enrollment.id))
        .filter(Enrollment.user_id.in_([u.id for u in enrolled]), Enrollment.course_id != course.id)
        .group_by(Enrollment.user_id)
        .all()
    )
    for user in enrolled:
        # admin nunca é removido junto com o curso
        if user.is_admin or others.get(user.id, 0) > 0:
            plan.users_to_keep.append(user)
        else:
            plan.users_to_delete.append(user)
    return plan


def delete_course(course_id) -> dict:
    """Remove curso + quizzes/matrículas/certificados + usuários órfãos numa transação só."""
    plan = course_deletion_impact(course_id)
    summary = plan.to_dict()
    cid = plan.course.id
    orphan_ids = [u.id for u in plan.users_to_delete]

    try:
        Certificate.query.filter(Certificate.course_id == cid).delete(synchronize_session=False)
        Enrollment.query.filter(Enrollment.course_id == cid).delete(synchronize_session=False)
        Quiz.query.filter(Quiz.course_id == cid).delete(synchronize_session=False)
        if orphan_ids:
            Certificate.query.filter(Certificate.user_id.in_(orphan_ids)).delete(synchronize_session=False)
            Enrollment.query.filter(Enrollment.user_id.in_(orphan_ids)).delete(synchronize_session=False)
            User.query.filter(User.id.in_(orphan_ids)).delete(synchronize_session=False)
        Course.query.filter(Course.id == cid).delete(synchronize_session=False)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log.info(
        "Curso %s excluído: %d matrícula(s), %d certificado(s), %d usuário(s) removido(s)",
        cid, plan.enrollments, plan.certificates, len(orphan_ids),
    )
    return summary
