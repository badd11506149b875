import json
import logging

from flask import request, g, has_request_context

from models import db, AuditLog

log = logging.getLogger(__name__)


def audit(action, object_type=None, object_id=None, meta=None):
    """Grava no log de auditoria após o commit da operação. Falha só vira warning."""
    auth = getattr(g, "auth", None) if has_request_context() else None
    try:
        entry = AuditLog(
            user_id=auth.user_id if auth else None,
            action=action,
            object_type=object_type,
            object_id=str(object_id) if object_id is not None else None,
            ip=request.remote_addr if has_request_context() else None,
            user_agent=(request.headers.get("User-Agent") or "")[:256] if has_request_context() else None,
            meta=json.dumps(meta or {}, default=str),
        )
        db.session.add(entry)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        log.warning("Falha ao registrar auditoria (%s): %s", action, e)
