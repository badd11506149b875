"""
Autenticação por sessão (Flask-Login) + contexto de auth por requisição

Cada requisição ganha um AuthContext em flask.g, montado a partir da sessão
assinada. As views passam auth.user_id adiante; o engine nunca lê current_user.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from functools import wraps

from flask import Blueprint, g, jsonify, request, current_app, session
from flask_login import LoginManager, login_user, logout_user, current_user
from passlib.hash import pbkdf2_sha256
from sqlalchemy import or_, func

from models import db, utcnow, User
from errors import AuthRequired, Forbidden, ValidationFailed
from schemas import AdminLogin, EmployeeLogin, ForgotPassword, ResetPassword
from notifications import get_dispatcher, password_reset_message
from utils_audit import audit

log = logging.getLogger(__name__)

login_manager = LoginManager()


@dataclass(frozen=True)
class AuthContext:
    user_id: int
    role: str
    email: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@login_manager.user_loader
def load_user(user_id):
    user = db.session.get(User, int(user_id))
    if user is None or not user.is_active:
        return None
    return user


@login_manager.unauthorized_handler
def _unauth():
    raise AuthRequired()


def load_auth_context():
    """before_request: sessão verificada -> g.auth (ou None)."""
    if current_user.is_authenticated:
        g.auth = AuthContext(current_user.id, current_user.role, current_user.email)
    else:
        g.auth = None


def current_auth() -> AuthContext:
    auth = getattr(g, "auth", None)
    if auth is None:
        raise AuthRequired()
    return auth


def require_auth(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        current_auth()
        return fn(*args, **kwargs)
    return wrapper


def require_role(*roles):
    def deco(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            auth = current_auth()
            if auth.role not in roles:
                raise Forbidden("Admin access required" if roles == ("admin",) else "Access denied")
            return fn(*args, **kwargs)
        return wrapper
    return deco


# =========================
# Rotas /api/auth
# =========================
auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _payload():
    return request.get_json(silent=True) or {}


def start_session(user: User):
    session.clear()
    login_user(user)
    g.auth = AuthContext(user.id, user.role, user.email)
    audit("login", object_type="User", object_id=user.id, meta={"role": user.role})


@auth_bp.post("/admin-login")
def admin_login():
    data = AdminLogin.model_validate(_payload())
    login = data.login
    if not login:
        raise ValidationFailed(
            "Username and password are required",
            errors=[{"field": "username", "message": "required"}],
        )
    user = User.query.filter(
        User.role == "admin",
        or_(func.lower(User.email) == login, User.employee_id == (data.username or data.email).strip()),
    ).first()

    if not user or not user.password_hash or not pbkdf2_sha256.verify(data.password, user.password_hash):
        raise AuthRequired("Invalid credentials")
    if not user.is_active:
        raise AuthRequired("Account is inactive")

    start_session(user)
    return jsonify({"user": user.to_dict()})


@auth_bp.post("/employee-login")
def employee_login():
    data = EmployeeLogin.model_validate(_payload())
    user = User.query.filter(func.lower(User.email) == data.email, User.role == "employee").first()
    if not user or not user.is_active:
        raise AuthRequired("Employee not found or inactive")

    start_session(user)
    return jsonify({"user": user.to_dict()})


@auth_bp.post("/logout")
def logout():
    logout_user()
    session.clear()
    g.auth = None
    return jsonify({"message": "Logged out successfully"})


@auth_bp.get("/me")
@require_auth
def me():
    user = db.session.get(User, g.auth.user_id)
    return jsonify(user.to_dict())


@auth_bp.post("/forgot-password")
def forgot_password():
    data = ForgotPassword.model_validate(_payload())
    user = User.query.filter(func.lower(User.email) == data.email).first()

    if user is not None and user.is_active:
        ttl = current_app.config.get("PASSWORD_RESET_TTL_MINUTES", 60)
        user.reset_token = secrets.token_hex(32)
        user.reset_token_expiry = utcnow() + timedelta(minutes=ttl)
        db.session.commit()
        get_dispatcher().dispatch(
            password_reset_message(user, user.reset_token, current_app.config["APP_BASE_URL"])
        )

    # mesma resposta exista ou não o e-mail
    return jsonify({"message": "If an account with that email exists, a reset link has been sent."})


@auth_bp.post("/reset-password")
def reset_password():
    data = ResetPassword.model_validate(_payload())
    user = User.query.filter_by(reset_token=data.token).first()
    if user is None or not user.reset_token_expiry or user.reset_token_expiry < utcnow():
        raise ValidationFailed("Invalid or expired reset token")

    user.password_hash = pbkdf2_sha256.hash(data.password)
    user.reset_token = None
    user.reset_token_expiry = None
    db.session.commit()
    log.info("Senha redefinida para o usuário %s", user.id)
    return jsonify({"message": "Password has been reset successfully"})
