from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from app.services.notification_service import dispatch_notification, dispatch_pending


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


@shared_task(
    bind=True,
    name="app.tasks.notification_tasks.deliver_notification",
    max_retries=5,
)
def deliver_notification_task(self, *, notification_id: int, trace_id: str = ""):
    started = time.perf_counter()
    outcome = dispatch_notification(int(notification_id))
    status = outcome.get("status")
    if status == "failed" and int(self.request.retries or 0) < int(self.max_retries or 0):
        countdown = _retry_countdown(int(self.request.retries or 0))
        _task_log(
            "deliver_notification",
            status="retrying",
            started_at=started,
            trace_id=trace_id,
            notification_id=notification_id,
            error=outcome.get("error") or outcome.get("code") or "",
            countdown=countdown,
        )
        raise self.retry(exc=RuntimeError(str(outcome.get("error") or "notification_send_failed")), countdown=countdown)
    _task_log(
        "deliver_notification",
        status=status or "unknown",
        started_at=started,
        trace_id=trace_id,
        notification_id=notification_id,
    )
    return outcome


@shared_task(
    bind=True,
    name="app.tasks.notification_tasks.dispatch_pending_notifications",
    max_retries=0,
)
def dispatch_pending_notifications_task(self, *, limit: int | None = None, trace_id: str = ""):
    started = time.perf_counter()
    summary = dispatch_pending(limit=limit)
    _task_log(
        "dispatch_pending_notifications",
        status="ok",
        started_at=started,
        trace_id=trace_id,
        **summary,
    )
    return summary
