"""
Erros da API do TrainTrack
Toda falha de regra de negócio vira um ApiError com status HTTP próprio;
register_error_handlers() transforma tudo em JSON {"message": ...}.
"""

import logging

from flask import jsonify, current_app
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException

from models import db

log = logging.getLogger(__name__)


class ApiError(Exception):
    status_code = 400

    def __init__(self, message, status_code=None, errors=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.errors = errors

    def to_dict(self):
        body = {"message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationFailed(ApiError):
    status_code = 400


class AuthRequired(ApiError):
    status_code = 401

    def __init__(self, message="Authentication required"):
        super().__init__(message)


class Forbidden(ApiError):
    status_code = 403

    def __init__(self, message="Access denied"):
        super().__init__(message)


class NotFound(ApiError):
    status_code = 404


class DomainRuleViolation(ApiError):
    status_code = 400


class Gone(ApiError):
    status_code = 410


def _pydantic_errors(exc: ValidationError):
    out = []
    for err in exc.errors():
        out.append({
            "field": ".".join(str(p) for p in err.get("loc", ())),
            "message": err.get("msg"),
        })
    return out


def register_error_handlers(app):

    @app.errorhandler(ApiError)
    def _api_error(e: ApiError):
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(ValidationError)
    def _validation_error(e: ValidationError):
        db.session.rollback()
        return jsonify({"message": "Invalid request data", "errors": _pydantic_errors(e)}), 400

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        return jsonify({"message": e.description or e.name}), e.code

    @app.errorhandler(Exception)
    def _unexpected(e: Exception):
        db.session.rollback()
        log.exception("Erro inesperado: %s", e)
        body = {"message": "Internal server error"}
        if not current_app.config.get("IS_PRODUCTION"):
            body["error"] = str(e)
        return jsonify(body), 500
