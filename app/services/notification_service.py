from __future__ import annotations

import json
import os
from datetime import datetime

from flask import current_app

from app.extensions import db
from app.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from app.integrations.email.factory import build_email_provider
from app.integrations.messaging.factory import build_messaging_provider
from app.models import Notification
from app.utils.platform_settings import get_integration_settings

CHANNEL_SMS = "sms"
CHANNEL_EMAIL = "email"

MAX_ATTEMPTS = 5


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else int(default)
    except ValueError:
        value = int(default)
    return max(minimum, min(maximum, value))


def queue_notification(
    event_type: str,
    *,
    channel: str,
    recipient: str | None,
    message: str,
    title: str | None = None,
    subject_type: str | None = None,
    subject_id: int | str | None = None,
    dedupe_key: str | None = None,
    meta: dict | None = None,
) -> Notification | None:
    """Stage an outbox row in the caller's transaction.

    Returns None when there is nobody to notify or the same event was already
    queued for this recipient.
    """
    to = (recipient or "").strip()
    if not to:
        current_app.logger.info(
            "notification_skipped_no_recipient event_type=%s subject=%s:%s", event_type, subject_type, subject_id
        )
        return None
    ch = (channel or CHANNEL_SMS).strip().lower()
    key = dedupe_key or f"{event_type}:{subject_type or ''}:{subject_id or ''}:{ch}:{to}"
    key = key[:180]
    if Notification.query.filter_by(dedupe_key=key).first() is not None:
        return None
    row = Notification(
        event_type=(event_type or "unknown")[:64],
        channel=ch,
        recipient=to[:255],
        title=(title or "")[:160] or None,
        message=message,
        status="queued",
        subject_type=(subject_type or "")[:32] or None,
        subject_id=str(subject_id)[:64] if subject_id is not None else None,
        dedupe_key=key,
        meta=json.dumps(meta or {}, separators=(",", ":"), default=str),
    )
    db.session.add(row)
    return row


def schedule_dispatch(notifications) -> None:
    """Hand freshly committed outbox rows to the worker when running in celery mode.

    In the default ``outbox`` mode the periodic dispatcher picks them up.
    """
    mode = (os.getenv("NOTIFY_DISPATCH_MODE") or "outbox").strip().lower()
    ids = [int(n.id) for n in (notifications or []) if n is not None and n.id is not None]
    if mode != "celery" or not ids:
        return
    from app.tasks.notification_tasks import deliver_notification_task

    for nid in ids:
        try:
            deliver_notification_task.delay(notification_id=nid)
        except Exception:
            # Broker down: the row stays queued for the periodic dispatcher.
            current_app.logger.exception("notification_enqueue_failed notification_id=%s", nid)


def _send(row: Notification, settings):
    if row.channel == CHANNEL_EMAIL:
        provider = build_email_provider(settings)
        return provider.name, provider.send_email(
            to=row.recipient,
            subject=row.title or "BuyLock notification",
            body=row.message,
            reference=f"ntf-{row.id}",
        )
    provider = build_messaging_provider(settings)
    return provider.name, provider.send_sms(to=row.recipient, message=row.message, reference=f"ntf-{row.id}")


def dispatch_notification(notification_id: int, *, settings=None) -> dict:
    """Attempt delivery of one outbox row. Never raises; the outcome is stored and logged."""
    row = db.session.get(Notification, int(notification_id))
    if row is None:
        return {"ok": False, "status": "missing", "notification_id": int(notification_id)}
    if row.status not in ("queued", "failed"):
        return {"ok": row.status == "sent", "status": row.status, "notification_id": int(row.id)}

    settings = settings or get_integration_settings()
    row.attempts = int(row.attempts or 0) + 1
    try:
        provider_name, result = _send(row, settings)
    except IntegrationDisabledError as e:
        row.status = "skipped"
        row.last_error = str(e)[:500]
        db.session.commit()
        current_app.logger.info("notification_skipped id=%s reason=%s", row.id, e)
        return {"ok": False, "status": "skipped", "notification_id": int(row.id)}
    except IntegrationMisconfiguredError as e:
        row.status = "failed"
        row.last_error = str(e)[:500]
        db.session.commit()
        current_app.logger.warning("notification_misconfigured id=%s err=%s", row.id, e)
        return {"ok": False, "status": "failed", "notification_id": int(row.id), "error": str(e)}
    except Exception as e:
        row.status = "failed"
        row.last_error = f"{type(e).__name__}: {e}"[:500]
        db.session.commit()
        current_app.logger.exception("notification_send_crashed id=%s", row.id)
        return {"ok": False, "status": "failed", "notification_id": int(row.id), "error": row.last_error}

    row.provider = provider_name
    if result.ok:
        row.status = "sent"
        row.provider_ref = (result.provider_ref or "")[:120] or None
        row.sent_at = datetime.utcnow()
        row.last_error = None
    else:
        row.status = "failed"
        row.last_error = f"{result.code}: {result.message}"[:500]
    db.session.commit()
    current_app.logger.info(
        "notification_dispatched id=%s event_type=%s channel=%s status=%s attempts=%s",
        row.id,
        row.event_type,
        row.channel,
        row.status,
        row.attempts,
    )
    return {"ok": bool(result.ok), "status": row.status, "notification_id": int(row.id), "code": result.code}


def dispatch_pending(*, limit: int | None = None, max_attempts: int = MAX_ATTEMPTS) -> dict:
    batch = limit or _env_int("NOTIFY_DISPATCH_BATCH", 50, minimum=1, maximum=1000)
    settings = get_integration_settings()
    rows = (
        Notification.query.filter(
            Notification.status.in_(("queued", "failed")),
            Notification.attempts < int(max_attempts),
        )
        .order_by(Notification.created_at.asc(), Notification.id.asc())
        .limit(int(batch))
        .all()
    )
    summary = {"scanned": len(rows), "sent": 0, "failed": 0, "skipped": 0}
    for row in rows:
        outcome = dispatch_notification(int(row.id), settings=settings)
        status = outcome.get("status")
        if status in summary:
            summary[status] += 1
    return summary
