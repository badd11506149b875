import logging

import click
from flask import Flask, jsonify
from flask_migrate import Migrate
from passlib.hash import pbkdf2_sha256
from sqlalchemy import text
from tenacity import retry, stop_after_attempt, wait_exponential, before_sleep_log

from config import load_config
from models import db, User
from errors import register_error_handlers
from auth import login_manager, load_auth_context, auth_bp
from admin_api import admin_bp
from employee_api import employee_bp
from compliance import compliance_bp
from notifications import NotificationDispatcher, build_notifier
from scheduler import PeriodicSweeper, register_commands

log = logging.getLogger(__name__)

migrate = Migrate()


# =========================
# Logging
# =========================
def _configure_logging(app):
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    app.logger.setLevel(level)


# =========================
# Health check do banco (com backoff)
# =========================
def check_database(app):
    attempts = max(1, int(app.config.get("DB_HEALTHCHECK_ATTEMPTS", 5)))

    @retry(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        before_sleep=before_sleep_log(log, logging.WARNING),
        reraise=True,
    )
    def _ping():
        with app.app_context():
            try:
                db.session.execute(text("SELECT 1"))
            finally:
                db.session.remove()

    _ping()
    log.info("Banco de dados disponível.")


def ensure_admin_user(email, password) -> bool:
    """Cria o admin padrão se ainda não existe nenhum admin."""
    if User.query.filter_by(role="admin").first():
        return False
    admin = User(
        email=email.strip().lower(),
        name="Administrador",
        role="admin",
        employee_id="ADMIN",
        password_hash=pbkdf2_sha256.hash(password),
    )
    db.session.add(admin)
    db.session.commit()
    return True


# === Security headers (ISO/IEC 27002-aligned) ===
def add_security_headers(resp):
    resp.headers.setdefault("X-Frame-Options", "DENY")
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    resp.headers.setdefault("Permissions-Policy", "camera=(), microphone=(), geolocation=()")
    resp.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none';")
    resp.headers.setdefault("Cache-Control", "no-store")
    return resp


# =========================
# CONFIG DO APLICATIVO
# =========================
def create_app(overrides=None):
    app = Flask(__name__)
    app.config.update(load_config(overrides))
    _configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    register_error_handlers(app)
    app.before_request(load_auth_context)
    app.after_request(add_security_headers)

    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(employee_bp)
    app.register_blueprint(compliance_bp)

    dispatcher = NotificationDispatcher(build_notifier(app.config), sync=bool(app.config.get("NOTIFY_SYNC")))
    app.extensions["notifications"] = dispatcher

    register_commands(app)

    @app.cli.command("initdb")
    def initdb():
        """Cria as tabelas e o admin padrão."""
        db.create_all()
        created = ensure_admin_user(app.config["ADMIN_EMAIL"], app.config["ADMIN_PASSWORD"])
        click.echo("• Tabelas criadas.")
        if created:
            click.echo(f"• Admin criado: {app.config['ADMIN_EMAIL']}")

    @app.get("/api/health")
    def health():
        return jsonify({"status": "ok"})

    testing = bool(app.config.get("TESTING"))
    if app.config.get("DB_HEALTHCHECK") and not testing:
        check_database(app)

    if app.config.get("ENABLE_SCHEDULER") and not testing:
        sweeper = PeriodicSweeper(app, app.config.get("SWEEP_INTERVAL_SECONDS", 3600))
        sweeper.start()
        app.extensions["sweeper"] = sweeper

    return app


# =========================
# Run
# =========================
if __name__ == "__main__":
    app = create_app()
    with app.app_context():
        db.create_all()
        ensure_admin_user(app.config["ADMIN_EMAIL"], app.config["ADMIN_PASSWORD"])
    app.run(debug=not app.config["IS_PRODUCTION"])
