from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from app.extensions import db
from app.models import PlatformEvent
from app.utils.observability import get_request_id


def _safe_value(value: Any):
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def _safe_json(data: Any) -> str:
    normalized = _safe_value(data if isinstance(data, dict) else {"value": data})
    return json.dumps(normalized, separators=(",", ":"), ensure_ascii=False)


def log_event(
    event_type: str,
    *,
    actor_user_id: int | None = None,
    actor_role: str | None = None,
    subject_type: str | None = None,
    subject_id: int | str | None = None,
    severity: str = "INFO",
    metadata: dict | None = None,
) -> PlatformEvent | None:
    """Add an audit row to the current unit of work.

    The row is flushed inside a savepoint so a failing audit insert only
    discards itself; the caller's transaction decides whether it is kept.
    """
    event = PlatformEvent(
        event_type=(event_type or "unknown").strip()[:80],
        actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
        actor_role=(actor_role or "").strip()[:16] or None,
        subject_type=(subject_type or "").strip()[:40] or None,
        subject_id=str(subject_id)[:64] if subject_id is not None else None,
        request_id=(get_request_id() or "")[:80] or None,
        severity=(severity or "INFO").strip().upper()[:16] or "INFO",
        metadata_json=_safe_json(metadata or {}),
    )
    try:
        with db.session.begin_nested():
            db.session.add(event)
            db.session.flush()
        return event
    except SQLAlchemyError as exc:
        current_app.logger.warning("platform_event_write_failed event_type=%s err=%s", event_type, exc)
        return None
