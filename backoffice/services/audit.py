import json
import logging
from typing import Any, Dict, Optional

from flask import current_app

from backoffice.extensions import db
from backoffice.models import AuditLog
from backoffice.models.audit_log import LEVEL_INFO, LEVEL_WARNING, LEVEL_ERROR
from backoffice.observability import get_correlation_id
from .stripe_events import Event

_LOG_LEVELS = {
    LEVEL_INFO: logging.INFO,
    LEVEL_WARNING: logging.WARNING,
    LEVEL_ERROR: logging.ERROR,
}


def _jsonable(details: Dict[str, Any]) -> Dict[str, Any]:
    # datetimes and other objects become strings; JSON columns reject them
    return json.loads(json.dumps(details, default=str))


def record(
    action: str,
    *,
    org_id: Optional[int] = None,
    event: Optional[Event] = None,
    level: str = LEVEL_INFO,
    details: Optional[Dict[str, Any]] = None,
    actor: str = "system",
    commit: bool = False,
) -> AuditLog:
    """
    Append an audit entry to the current session.

    Without ``commit`` the entry rides in the caller's transaction, so state
    and audit trail land together or not at all.
    """
    payload = dict(details or {})
    if event is not None:
        payload.setdefault("stripe_event_id", event.id)
        payload.setdefault("event_type", event.type)
    correlation_id = get_correlation_id()
    if correlation_id:
        payload.setdefault("correlation_id", correlation_id)

    entry = AuditLog(
        org_id=org_id,
        actor=actor,
        action=action,
        level=level,
        stripe_event_id=event.id if event is not None else payload.get("stripe_event_id"),
        details=_jsonable(payload),
    )
    db.session.add(entry)

    current_app.logger.log(
        _LOG_LEVELS.get(level, logging.INFO),
        json.dumps({"event": "audit", "action": action, "org_id": org_id, **payload}, default=str),
    )

    if commit:
        db.session.commit()
    return entry


def try_record(action: str, **kwargs) -> Optional[AuditLog]:
    """Best-effort standalone entry for paths that are already failing."""
    try:
        return record(action, commit=True, **kwargs)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("audit.write_failed action=%s", action)
        return None


def entries_for_event(stripe_event_id: str):
    return (
        db.session.query(AuditLog)
        .filter(AuditLog.stripe_event_id == stripe_event_id)
        .order_by(AuditLog.id.asc())
        .all()
    )
