"""
Schemas de entrada da API (pydantic v2)
Os nomes em camelCase vêm do front-end; no Python usamos snake_case.
"""
from typing import Annotated, List, Optional, Union

from pydantic import (
    AfterValidator, BaseModel, BeforeValidator, ConfigDict, EmailStr, Field, TypeAdapter, model_validator,
)


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def _lower(v):
    return v.lower()


def _strip(v):
    return v.strip() if isinstance(v, str) else v


# e-mail sempre gravado/comparado em minúsculas
Email = Annotated[EmailStr, BeforeValidator(_strip), AfterValidator(_lower)]

email_adapter = TypeAdapter(Email)


# ========= Auth =========
class AdminLogin(ApiModel):
    username: Optional[str] = None
    email: Optional[str] = None
    password: str = Field(min_length=1)

    @property
    def login(self) -> str:
        return (self.email or self.username or "").strip().lower()


class EmployeeLogin(ApiModel):
    email: Email


class ForgotPassword(ApiModel):
    email: Email


class ResetPassword(ApiModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=6)


# ========= Funcionários =========
class EmployeeIn(ApiModel):
    email: Email
    name: str = Field(min_length=1)
    employee_id: Optional[str] = Field(default=None, alias="employeeId")
    designation: Optional[str] = None
    department: Optional[str] = None
    client_name: Optional[str] = Field(default=None, alias="clientName")
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")
    position: Optional[str] = None
    password: Optional[str] = None


class EmployeeUpdate(ApiModel):
    email: Optional[Email] = None
    name: Optional[str] = None
    employee_id: Optional[str] = Field(default=None, alias="employeeId")
    designation: Optional[str] = None
    department: Optional[str] = None
    client_name: Optional[str] = Field(default=None, alias="clientName")
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")
    position: Optional[str] = None
    is_active: Optional[bool] = Field(default=None, alias="isActive")


class BulkImportEmployees(ApiModel):
    employees: List[dict] = Field(min_length=1)


class DeactivateEmployees(ApiModel):
    employee_ids: List[int] = Field(alias="employeeIds", min_length=1)


# ========= Cursos / quiz =========
class QuizQuestionIn(ApiModel):
    question: str = Field(min_length=1)
    options: List[str] = Field(min_length=2)
    correct_answer: Optional[Union[int, str]] = Field(default=None, alias="correctAnswer")


class CourseIn(ApiModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    youtube_url: Optional[str] = Field(default=None, alias="youtubeUrl")
    duration: int = Field(default=0, ge=0)
    questions: List[QuizQuestionIn] = Field(default_factory=list)
    is_active: bool = Field(default=True, alias="isActive")
    is_compliance_course: bool = Field(default=False, alias="isComplianceCourse")
    renewal_period_months: int = Field(default=3, ge=1, alias="renewalPeriodMonths")
    is_auto_enroll_new_employees: bool = Field(default=False, alias="isAutoEnrollNewEmployees")
    course_type: str = Field(default="one-time", alias="courseType", pattern="^(one-time|recurring)$")
    default_deadline_days: int = Field(default=30, ge=1, le=365, alias="defaultDeadlineDays")
    reminder_days: int = Field(default=7, ge=0, alias="reminderDays")


class CourseUpdate(ApiModel):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    youtube_url: Optional[str] = Field(default=None, alias="youtubeUrl")
    duration: Optional[int] = Field(default=None, ge=0)
    questions: Optional[List[QuizQuestionIn]] = None
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    is_compliance_course: Optional[bool] = Field(default=None, alias="isComplianceCourse")
    renewal_period_months: Optional[int] = Field(default=None, ge=1, alias="renewalPeriodMonths")
    is_auto_enroll_new_employees: Optional[bool] = Field(default=None, alias="isAutoEnrollNewEmployees")
    course_type: Optional[str] = Field(default=None, alias="courseType", pattern="^(one-time|recurring)$")
    default_deadline_days: Optional[int] = Field(default=None, ge=1, le=365, alias="defaultDeadlineDays")
    reminder_days: Optional[int] = Field(default=None, ge=0, alias="reminderDays")


class QuizIn(ApiModel):
    title: str = Field(min_length=1)
    questions: List[QuizQuestionIn] = Field(min_length=1)
    passing_score: int = Field(default=70, ge=0, le=100, alias="passingScore")


# ========= Atribuições =========
class BulkAssignCourse(ApiModel):
    course_id: int = Field(alias="courseId")
    user_ids: List[int] = Field(alias="userIds", min_length=1)


class BulkAssignUsers(ApiModel):
    user_ids: List[int] = Field(alias="userIds", min_length=1)
    course_ids: List[int] = Field(alias="courseIds", min_length=1)


class BulkAssignEmails(ApiModel):
    course_id: int = Field(alias="courseId")
    emails: List[str] = Field(min_length=1)
    deadline_days: int = Field(default=30, ge=1, le=365, alias="deadlineDays")


class RenewExpired(ApiModel):
    course_id: int = Field(alias="courseId")
    user_ids: Optional[List[int]] = Field(default=None, alias="userIds")


# ========= Fluxo do funcionário =========
class ProfileData(ApiModel):
    name: str = Field(min_length=1)
    employee_id: Optional[str] = Field(default=None, alias="employeeId")
    designation: Optional[str] = None
    department: Optional[str] = None
    client_name: Optional[str] = Field(default=None, alias="clientName")
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")


class CompleteProfile(ApiModel):
    token: str = Field(min_length=1)
    user_data: ProfileData = Field(alias="userData")


class ProgressUpdate(ApiModel):
    # o clamp 0..100 é feito no engine; aqui só exige número
    progress: float = Field(allow_inf_nan=False)


class QuizSubmission(ApiModel):
    course_id: int = Field(alias="courseId")
    score: Optional[float] = Field(default=None, allow_inf_nan=False)
    answers: Optional[List[Union[int, str, None]]] = None

    @model_validator(mode="after")
    def _score_or_answers(self):
        if self.score is None and self.answers is None:
            raise ValueError("score or answers is required")
        return self


class Acknowledge(ApiModel):
    course_id: int = Field(alias="courseId")
    digital_signature: str = Field(default="", alias="digitalSignature")
