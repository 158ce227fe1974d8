"""
Schedulers.

MonitoringScheduler — runs DriftMonitor cycles on a fixed interval in a
daemon thread.  A tick that finds the previous cycle still running is
skipped, not queued.  ``stop()`` cancels an in-flight cycle between its
steps and joins the thread.

RetrainScheduler — advises whether the active lead model is stale.  It
never trains by itself; the caller decides whether to queue a job.

A model is worth retraining when, in this order:
    1. drift   the latest monitoring cycle raised a drift alert for it
    2. stale   it is at least ``retrain_interval_days`` old and enough
               leads have closed (converted or lost) since it was trained
    3. backlog closed leads since training reach ``backlog_multiplier``
               times that minimum, whatever the model's age
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .drift_monitor import CycleReport, DriftMonitor
from .records import to_utc

logger = logging.getLogger(__name__)

TRIGGER_DRIFT = "drift"
TRIGGER_STALE = "stale"
TRIGGER_BACKLOG = "backlog"


class MonitoringScheduler:
    def __init__(self, monitor: DriftMonitor, interval_seconds: float = 3600.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.monitor = monitor
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._cancel_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.ticks = 0
        self.skipped_ticks = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._cancel_event.clear()
        self._thread = threading.Thread(target=self._loop, name="monitoring-scheduler", daemon=True)
        self._thread.start()
        logger.info("Monitoring scheduler started (interval=%.0fs)", self.interval_seconds)

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        self._stop_event.set()
        self._cancel_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        # manual ticks after a stop must not inherit the cancellation
        self._cancel_event.clear()
        logger.info("Monitoring scheduler stopped")

    def tick(self) -> Optional[CycleReport]:
        """Run one cycle now unless one is already running."""
        self.ticks += 1
        report = self.monitor.run_cycle(cancel_event=self._cancel_event)
        if report is None:
            self.skipped_ticks += 1
        return report

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.tick()
            except Exception:
                logger.exception("Monitoring tick failed")


class RetrainScheduler:
    def __init__(
        self,
        retrain_interval_days: int = 7,
        min_new_labelled_leads: int = 200,
        backlog_multiplier: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.retrain_interval_days = retrain_interval_days
        self.min_new_labelled_leads = min_new_labelled_leads
        self.backlog_multiplier = backlog_multiplier
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def drift_reasons(model_id: str, cycle: Optional[CycleReport]) -> List[str]:
        """Details of the drift alerts *cycle* raised against *model_id*."""
        if cycle is None:
            return []
        return [
            alert["detail"]
            for alert in cycle.alerts
            if alert.get("alert_type") == TRIGGER_DRIFT and alert.get("model_id") == model_id
        ]

    def should_retrain(
        self,
        model_id: str,
        trained_at: Any,
        closed_leads_since_training: int = 0,
        cycle: Optional[CycleReport] = None,
    ) -> Dict[str, Any]:
        """Advice for the model *model_id*, trained at *trained_at*."""
        now = self._clock()
        trained = to_utc(trained_at)
        age_days = (now - trained).days if trained is not None else None
        closed = closed_leads_since_training
        enough = closed >= self.min_new_labelled_leads

        trigger: Optional[str] = None
        reasons = self.drift_reasons(model_id, cycle)
        if reasons:
            trigger = TRIGGER_DRIFT
        elif age_days is not None and age_days >= self.retrain_interval_days:
            if enough:
                trigger = TRIGGER_STALE
                reasons.append(
                    f"Model is {age_days} days old and {closed} leads have closed since it was trained"
                )
            else:
                reasons.append(
                    f"Model is {age_days} days old but only "
                    f"{closed}/{self.min_new_labelled_leads} leads have closed since it was trained"
                )
        if trigger is None and closed >= self.min_new_labelled_leads * self.backlog_multiplier:
            trigger = TRIGGER_BACKLOG
            reasons.append(f"{closed} leads have closed since training")

        if not reasons:
            reasons.append("No retrain triggers fired")

        logger.info("Retrain check for %s: trigger=%s", model_id, trigger)
        return {
            "should_retrain": trigger is not None,
            "trigger": trigger,
            "reasons": reasons,
            "active_model_id": model_id,
            "model_age_days": age_days,
            "new_labelled_leads": closed,
            "checked_at": now.isoformat(),
        }
