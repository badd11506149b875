"""
Configuração do TrainTrack LMS
Tudo vem do ambiente do processo; DATABASE_URL é obrigatório.
"""

import os


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Banco
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Sessão (cookie assinado do Flask)
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"

    # Upload de vídeo
    ALLOWED_VIDEO_EXTENSIONS = {"mp4", "avi", "mov", "wmv", "webm"}

    # Regras do engine
    DEFAULT_PASSING_SCORE = 70
    REMINDER_RESET_AGE_DAYS = 30
    PASSWORD_RESET_TTL_MINUTES = 60

    def __init__(self):
        self.SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL")
        self.SECRET_KEY = os.getenv("SECRET_KEY", "traintrack_dev_secret_key")
        self.APP_ENV = os.getenv("APP_ENV", "development")
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        self.APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000").rstrip("/")

        # SMTP
        self.SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
        self.SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
        self.SMTP_USER = os.getenv("SMTP_USER") or os.getenv("EMAIL_USER")
        self.SMTP_PASS = os.getenv("SMTP_PASS") or os.getenv("EMAIL_PASS")
        self.SMTP_FROM = os.getenv("SMTP_FROM", "noreply@traintrack.com")
        self.HR_NOTIFICATION_EMAIL = os.getenv("HR_NOTIFICATION_EMAIL")

        self.UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(os.getcwd(), "uploads"))
        self.MAX_CONTENT_LENGTH = int(os.getenv("MAX_UPLOAD_MB", "500")) * 1024 * 1024

        # Varredura periódica (expiração / lembretes)
        self.ENABLE_SCHEDULER = _bool("ENABLE_SCHEDULER", True)
        self.SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "3600"))

        # Health check do banco na subida
        self.DB_HEALTHCHECK = _bool("DB_HEALTHCHECK", True)
        self.DB_HEALTHCHECK_ATTEMPTS = int(os.getenv("DB_HEALTHCHECK_ATTEMPTS", "5"))

        # Admin padrão criado pelo initdb / reset_db --seed
        self.ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@traintrack.com")
        self.ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")

    @property
    def is_production(self) -> bool:
        return self.APP_ENV.lower() == "production"


def load_config(overrides=None) -> dict:
    """
    Monta o dict de config do app. Sem DATABASE_URL a aplicação não sobe.
    """
    cfg = Config()
    values = {k: getattr(cfg, k) for k in dir(cfg) if k.isupper()}
    values["IS_PRODUCTION"] = cfg.is_production
    values.update(overrides or {})

    if not values.get("SQLALCHEMY_DATABASE_URI"):
        raise RuntimeError(
            "DATABASE_URL must be set. Did you forget to provision a database?"
        )
    if "APP_ENV" in (overrides or {}):
        values["IS_PRODUCTION"] = values["APP_ENV"].lower() == "production"
    return values
