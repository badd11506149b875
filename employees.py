"""
Cadastro de funcionários (admin) e criação de usuário via convite
"""
import logging
import re
import secrets

from passlib.hash import pbkdf2_sha256
from pydantic import ValidationError

from models import db, utcnow, User
from errors import NotFound, ValidationFailed, DomainRuleViolation
from schemas import EmployeeIn
from enrollment import auto_enroll_new_employee, find_user_by_email

log = logging.getLogger(__name__)

_EMP_RE = re.compile(r"^EMP(\d+)$")


def next_employee_id() -> str:
    """EMP001, EMP002, ... sempre acima do maior número já usado."""
    highest = 0
    for (value,) in db.session.query(User.employee_id).filter(User.employee_id.like("EMP%")).all():
        m = _EMP_RE.match(value or "")
        if m:
            highest = max(highest, int(m.group(1)))
    return f"EMP{highest + 1:03d}"


def _check_unique(email=None, employee_id=None, exclude_id=None):
    if email:
        other = find_user_by_email(email)
        if other is not None and other.id != exclude_id:
            raise ValidationFailed(
                "User with this email already exists",
                errors=[{"field": "email", "message": "already registered"}],
            )
    if employee_id:
        other = User.query.filter_by(employee_id=employee_id).first()
        if other is not None and other.id != exclude_id:
            raise ValidationFailed(
                "Employee ID already exists",
                errors=[{"field": "employeeId", "message": "already registered"}],
            )


def create_user_record(email, name, employee_id=None, password=None, role="employee", now=None, **profile) -> User:
    """Monta o User e faz flush (sem commit)."""
    email = email.strip().lower()
    employee_id = (employee_id or "").strip() or None
    _check_unique(email=email, employee_id=employee_id)

    user = User(
        email=email,
        name=name.strip(),
        role=role,
        employee_id=employee_id or next_employee_id(),
        # senha provisória aleatória quando não informada
        password_hash=pbkdf2_sha256.hash(password or secrets.token_urlsafe(24)),
        join_date=now or utcnow(),
        is_active=True,
        **{k: v for k, v in profile.items() if v is not None},
    )
    db.session.add(user)
    db.session.flush()
    return user


def create_employee(data: EmployeeIn) -> User:
    user = create_user_record(
        email=data.email,
        name=data.name,
        employee_id=data.employee_id,
        password=data.password,
        designation=data.designation,
        department=data.department,
        client_name=data.client_name,
        phone_number=data.phone_number,
        position=data.position,
    )
    db.session.commit()
    auto_enroll_new_employee(user)
    log.info("Funcionário criado: %s (%s)", user.employee_id, user.email)
    return user


def get_user(user_id) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


_PROFILE_FIELDS = ("name", "designation", "department", "client_name", "phone_number", "position", "is_active")


def update_employee(user_id, data) -> User:
    user = get_user(user_id)
    fields = data.model_fields_set
    _check_unique(
        email=data.email if "email" in fields else None,
        employee_id=data.employee_id if "employee_id" in fields else None,
        exclude_id=user.id,
    )
    if "email" in fields and data.email:
        user.email = data.email
    if "employee_id" in fields and data.employee_id:
        user.employee_id = data.employee_id.strip()
    for name in _PROFILE_FIELDS:
        if name in fields and getattr(data, name) is not None:
            setattr(user, name, getattr(data, name))
    db.session.commit()
    return user


def delete_employee(user_id, acting_user_id=None):
    user = get_user(user_id)
    if user.id == acting_user_id:
        raise DomainRuleViolation("You cannot delete your own account")
    # cascade do ORM remove matrículas e certificados
    db.session.delete(user)
    db.session.commit()
    log.info("Usuário %s removido", user_id)


def deactivate_employees(user_ids) -> int:
    count = (
        User.query
        .filter(User.id.in_(list(user_ids)), User.role == "employee")
        .update({User.is_active: False}, synchronize_session=False)
    )
    db.session.commit()
    return count


def bulk_import(rows) -> dict:
    """Cria ou atualiza funcionários em lote; erro de uma linha não derruba as outras."""
    results = {"created": 0, "updated": 0, "errors": []}

    for row in rows:
        ident = (row or {}).get("email") or (row or {}).get("employeeId")
        try:
            data = EmployeeIn.model_validate(row or {})
        except ValidationError as e:
            results["errors"].append({"employee": ident, "error": e.errors()[0]["msg"]})
            continue

        existing = find_user_by_email(data.email)
        if existing is None and data.employee_id:
            existing = User.query.filter_by(employee_id=data.employee_id).first()

        try:
            if existing is not None:
                if existing.is_admin:
                    raise DomainRuleViolation("Cannot overwrite an admin account")
                _check_unique(email=data.email, exclude_id=existing.id)
                existing.email = data.email
                for name in ("name", "designation", "department", "client_name", "phone_number", "position"):
                    value = getattr(data, name)
                    if value is not None:
                        setattr(existing, name, value)
                existing.is_active = row.get("isActive") is not False
                db.session.commit()
                results["updated"] += 1
            else:
                create_employee(data)
                results["created"] += 1
        except (ValidationFailed, DomainRuleViolation) as e:
            db.session.rollback()
            results["errors"].append({"employee": ident, "error": e.message})

    return results
