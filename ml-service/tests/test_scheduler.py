import threading
from datetime import datetime, timedelta, timezone

import pytest

from lead_pipeline.drift_monitor import CycleReport, DriftMonitor
from lead_pipeline.records import DriftAlert
from lead_pipeline.scheduler import MonitoringScheduler, RetrainScheduler

DETECTED_AT = datetime(2024, 6, 1, 11, 30, tzinfo=timezone.utc)


@pytest.fixture
def monitor(registry, lead_store, score_store, metric_store, alert_store, now):
    return DriftMonitor(
        registry, lead_store, score_store, metric_store, alert_store, clock=lambda: now
    )


def test_tick_runs_a_cycle(monitor):
    scheduler = MonitoringScheduler(monitor, interval_seconds=60)
    report = scheduler.tick()
    assert report is not None
    assert scheduler.ticks == 1
    assert scheduler.skipped_ticks == 0


def test_tick_is_skipped_while_a_cycle_runs(monitor):
    scheduler = MonitoringScheduler(monitor, interval_seconds=60)
    monitor._cycle_lock.acquire()
    try:
        assert scheduler.tick() is None
    finally:
        monitor._cycle_lock.release()
    assert scheduler.ticks == 1
    assert scheduler.skipped_ticks == 1


def test_background_loop_runs_and_stops(monitor):
    scheduler = MonitoringScheduler(monitor, interval_seconds=0.01)
    ran = threading.Event()
    original = monitor.run_cycle

    def run_cycle(now=None, cancel_event=None):
        ran.set()
        return original(now, cancel_event)

    monitor.run_cycle = run_cycle
    scheduler.start()
    try:
        assert ran.wait(5)
        assert scheduler.running
    finally:
        scheduler.stop()
    assert not scheduler.running


def test_interval_must_be_positive(monitor):
    with pytest.raises(ValueError):
        MonitoringScheduler(monitor, interval_seconds=0)


def test_manual_tick_after_stop_is_not_cancelled(monitor):
    scheduler = MonitoringScheduler(monitor, interval_seconds=60)
    scheduler.start()
    scheduler.stop()

    report = scheduler.tick()
    assert report.reason != "cancelled"
    assert "skipped" not in {s["status"] for s in report.steps.values()}


# ---------------------------------------------------------------------------
# Retrain advice
# ---------------------------------------------------------------------------

@pytest.fixture
def retrain(now):
    return RetrainScheduler(retrain_interval_days=7, min_new_labelled_leads=200, clock=lambda: now)


def _cycle(*alerts):
    return CycleReport(
        cycle_id="c1",
        state="completed",
        started_at="2024-06-01T11:00:00+00:00",
        alerts=[alert.to_dict() for alert in alerts],
    )


def _alert(model_id, alert_type="drift", detail="accuracy dropped 25%"):
    return DriftAlert(model_id, "accuracy", "high", detail, DETECTED_AT, alert_type=alert_type)


def test_drift_alert_for_the_active_model_triggers_retrain(retrain, now):
    cycle = _cycle(_alert("baseline_v1"), _alert("baseline_v1", alert_type="health", detail="slow"))
    decision = retrain.should_retrain("baseline_v1", now, cycle=cycle)

    assert decision["should_retrain"]
    assert decision["trigger"] == "drift"
    assert decision["reasons"] == ["accuracy dropped 25%"]
    assert decision["model_age_days"] == 0


def test_drift_on_another_model_is_ignored(retrain, now):
    decision = retrain.should_retrain("advanced_v2", now, cycle=_cycle(_alert("baseline_v1")))
    assert not decision["should_retrain"]


def test_stale_model_needs_enough_closed_leads(retrain, now):
    trained = (now - timedelta(days=10)).isoformat()

    due = retrain.should_retrain("baseline_v1", trained, closed_leads_since_training=250)
    assert due["trigger"] == "stale"
    assert due["model_age_days"] == 10

    starved = retrain.should_retrain("baseline_v1", trained, closed_leads_since_training=50)
    assert not starved["should_retrain"]
    assert "only 50/200" in starved["reasons"][0]


def test_backlog_triggers_retrain_of_a_young_model(retrain, now):
    trained = now - timedelta(days=1)
    decision = retrain.should_retrain("baseline_v1", trained, closed_leads_since_training=1000)
    assert decision["trigger"] == "backlog"


def test_nothing_fires(retrain, now):
    decision = retrain.should_retrain("baseline_v1", now.isoformat(), closed_leads_since_training=10)
    assert not decision["should_retrain"]
    assert decision["trigger"] is None
    assert decision["reasons"] == ["No retrain triggers fired"]
    assert decision["active_model_id"] == "baseline_v1"
