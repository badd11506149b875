from datetime import datetime

import pytest
from passlib.hash import pbkdf2_sha256

from app import create_app
from models import db, User, Course
from notifications import MemoryNotifier

ADMIN_EMAIL = "admin@x.com"
ADMIN_PASSWORD = "secret123"
NOW = datetime(2024, 3, 1, 12, 0, 0)

QUESTIONS = [
    {"question": "2+2?", "options": ["3", "4"], "correctAnswer": 1},
    {"question": "Sky color?", "options": ["blue", "green"], "correctAnswer": "blue"},
]


@pytest.fixture
def notifier():
    return MemoryNotifier()


@pytest.fixture
def app(notifier, tmp_path):
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "SECRET_KEY": "test-secret",
        "APP_ENV": "development",
        "ENABLE_SCHEDULER": False,
        "DB_HEALTHCHECK": False,
        "NOTIFIER": notifier,
        "NOTIFY_SYNC": True,
        "UPLOAD_DIR": str(tmp_path / "uploads"),
        "HR_NOTIFICATION_EMAIL": "hr@x.com",
        "APP_BASE_URL": "http://lms.x.com",
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


# =========================
# Helpers (sem contexto ativo; devolvem ids)
# =========================
def add_user(email, name="Employee", role="employee", employee_id=None, password="x", **kw):
    user = User(
        email=email,
        name=name,
        role=role,
        employee_id=employee_id,
        password_hash=pbkdf2_sha256.hash(password),
        **kw,
    )
    db.session.add(user)
    db.session.commit()
    return user


def add_course(title="Safety 101", **kw):
    kw.setdefault("questions", [dict(q) for q in QUESTIONS])
    course = Course(title=title, **kw)
    db.session.add(course)
    db.session.commit()
    return course


def fresh(model, pk):
    """Relê do banco, ignorando o que estiver em cache na sessão."""
    db.session.expire_all()
    return db.session.get(model, pk)


# =========================
# Engine: contexto de app ativo durante o teste
# =========================
@pytest.fixture
def ctx(app):
    with app.app_context():
        yield app


@pytest.fixture
def admin(ctx):
    return add_user(ADMIN_EMAIL, name="Admin", role="admin", employee_id="ADMIN", password=ADMIN_PASSWORD)


@pytest.fixture
def make_employee(ctx):
    counter = {"n": 0}

    def _make(email=None, name="Employee", **kw):
        counter["n"] += 1
        kw.setdefault("employee_id", f"EMP{counter['n']:03d}")
        return add_user(email or f"emp{counter['n']}@x.com", name=name, **kw)

    return _make


@pytest.fixture
def employee(make_employee):
    return make_employee("jane@x.com", name="Jane Doe")


@pytest.fixture
def make_course(ctx):
    return add_course


@pytest.fixture
def course(make_course):
    return make_course()


# =========================
# API: cada request com seu próprio contexto
# =========================
@pytest.fixture
def seed(app):
    """seed(fn) roda fn dentro de um app context e devolve o resultado."""
    def _run(fn):
        with app.app_context():
            return fn()
    return _run


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_client(app, seed):
    seed(lambda: add_user(ADMIN_EMAIL, name="Admin", role="admin", employee_id="ADMIN", password=ADMIN_PASSWORD).id)
    c = app.test_client()
    resp = c.post("/api/auth/admin-login", json={"username": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert resp.status_code == 200
    return c


@pytest.fixture
def login_employee(app):
    def _login(email):
        c = app.test_client()
        resp = c.post("/api/auth/employee-login", json={"email": email})
        assert resp.status_code == 200, resp.get_json()
        return c
    return _login
