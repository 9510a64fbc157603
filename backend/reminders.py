"""Scheduler integration for premium payment reminders."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Dict, Optional

from backend.app.premium import PremiumService, ReminderDispatchSummary, load_premium_config
from backend.app.services.premium import get_premium_service

logger = logging.getLogger(__name__)

_scheduler_lock = Lock()
_worker: Optional["_ReminderWorker"] = None

_REMINDER_METRICS: Dict[str, object] = {
    "runs": 0,
    "reminders_sent": 0,
    "skipped": 0,
    "failures": 0,
    "last_run_at": None,
    "last_success_at": None,
    "last_error": None,
}
_metrics_lock = Lock()


def _record_run_start(started_at: datetime) -> None:
    with _metrics_lock:
        _REMINDER_METRICS["runs"] = int(_REMINDER_METRICS.get("runs", 0)) + 1
        _REMINDER_METRICS["last_run_at"] = started_at


def _record_run_success(completed_at: datetime, summary: ReminderDispatchSummary) -> None:
    with _metrics_lock:
        _REMINDER_METRICS["reminders_sent"] = int(_REMINDER_METRICS.get("reminders_sent", 0)) + summary.reminders_sent
        _REMINDER_METRICS["skipped"] = int(_REMINDER_METRICS.get("skipped", 0)) + summary.skipped
        _REMINDER_METRICS["last_success_at"] = completed_at
        _REMINDER_METRICS["last_error"] = None


def _record_run_failure(error: Exception) -> None:
    with _metrics_lock:
        _REMINDER_METRICS["failures"] = int(_REMINDER_METRICS.get("failures", 0)) + 1
        _REMINDER_METRICS["last_error"] = f"{type(error).__name__}: {error}"


def run_reminder_job(
    *,
    now: Optional[datetime] = None,
    service: Optional[PremiumService] = None,
) -> ReminderDispatchSummary:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    premium_service = service or get_premium_service()
    _record_run_start(current_time)
    try:
        summary = premium_service.dispatch_reminders(now=current_time)
    except Exception as exc:
        _record_run_failure(exc)
        logger.exception("Premium reminder job failed")
        raise
    else:
        _record_run_success(current_time, summary)
        logger.info(
            "Premium reminder job completed",
            extra={
                "reminders_sent": summary.reminders_sent,
                "skipped": summary.skipped,
            },
        )
        return summary


class _ReminderWorker(Thread):
    def __init__(self, *, interval: float, initial_delay: float = 0.0):
        super().__init__(daemon=True)
        self._interval = max(1.0, interval)
        self._initial_delay = max(0.0, initial_delay)
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                run_reminder_job()
            except Exception:
                # Errors are logged inside run_reminder_job; continue schedule.
                pass
            if self._stop_event.wait(self._interval):
                break


def start_reminder_scheduler(*, force: bool = False) -> bool:
    """Start the background worker when enabled; returns whether it runs."""

    global _worker
    config = load_premium_config()
    if not (force or config.reminder_scheduler_enabled):
        logger.info("Premium reminder scheduler disabled")
        return False

    with _scheduler_lock:
        if _worker is not None:
            return True
        _worker = _ReminderWorker(
            interval=config.reminder_interval_seconds,
            initial_delay=config.reminder_interval_seconds,
        )
        _worker.start()
        logger.info(
            "Premium reminder scheduler started",
            extra={"interval_seconds": config.reminder_interval_seconds},
        )
        return True


def shutdown_reminder_scheduler() -> None:
    global _worker
    with _scheduler_lock:
        worker = _worker
        _worker = None
        if worker is None:
            return
        worker.stop()
        worker.join(timeout=1.0)
        logger.info("Premium reminder scheduler stopped")


def get_reminder_metrics() -> Dict[str, object]:
    with _metrics_lock:
        return {
            **_REMINDER_METRICS,
            "last_run_at": _REMINDER_METRICS["last_run_at"].isoformat() if _REMINDER_METRICS.get("last_run_at") else None,
            "last_success_at": (
                _REMINDER_METRICS["last_success_at"].isoformat()
                if _REMINDER_METRICS.get("last_success_at")
                else None
            ),
        }


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _REMINDER_METRICS.update(
            {
                "runs": 0,
                "reminders_sent": 0,
                "skipped": 0,
                "failures": 0,
                "last_run_at": None,
                "last_success_at": None,
                "last_error": None,
            }
        )


__all__ = [
    "start_reminder_scheduler",
    "shutdown_reminder_scheduler",
    "get_reminder_metrics",
    "run_reminder_job",
]
