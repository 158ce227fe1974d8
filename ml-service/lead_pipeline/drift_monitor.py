"""
Drift Monitor — periodic performance tracking, drift detection and health.

One monitoring cycle runs four independent steps:
    1. performance   - metrics over the last 7 days of scores with known outcomes
    2. drift         - last-7-day average vs the day 8-30 baseline (relative change)
    3. distribution  - shape of the last 24h of scores in 0.1-wide buckets
    4. health        - active model, recent traffic, error rate, response time

Cycle state: idle -> running -> completed | failed.  A failing step is
logged and contributes no rows; the remaining steps still run and the cycle
ends ``failed``.  A cancel request is honoured between steps.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from .metrics import classification_metrics
from .model_registry import ModelRegistry
from .records import DriftAlert, MetricRecord
from .scoring import USAGE_ERROR, USAGE_RESPONSE_TIME
from .stores import AlertSink, AlertStore, LeadStore, MetricStore, ScoreStore

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_RUNNING = "running"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"

STEPS = ("performance", "drift", "distribution", "health")

PERFORMANCE_WINDOW = timedelta(days=7)
PERFORMANCE_LIMIT = 1000
BASELINE_WINDOW = timedelta(days=30)
DISTRIBUTION_WINDOW = timedelta(hours=24)
RECENT_TRAFFIC_WINDOW = timedelta(hours=1)
USAGE_WINDOW = timedelta(days=7)

DISTRIBUTION_BINS = 10
MAX_BUCKET_SHARE = 0.5
MAX_BUCKET_GAP = 2  # populated buckets more than 0.2 apart
DRIFT_METRICS = ("accuracy", "precision")

HEALTH_HEALTHY = "healthy"
HEALTH_WARNING = "warning"
HEALTH_UNHEALTHY = "unhealthy"


@dataclass
class CycleReport:
    cycle_id: str
    state: str
    started_at: str
    finished_at: Optional[str] = None
    reason: Optional[str] = None
    steps: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    alerts: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "state": self.state,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "reason": self.reason,
            "steps": self.steps,
            "alerts": self.alerts,
        }


def relative_change(current: float, baseline: float) -> float:
    """|current - baseline| / baseline, rounded so exact boundaries compare exactly."""
    return round(abs(current - baseline) / baseline, 10)


def bucket_index(score: float) -> int:
    return min(int(score * DISTRIBUTION_BINS), DISTRIBUTION_BINS - 1)


def overall_health(issues: List[str]) -> str:
    if not issues:
        return HEALTH_HEALTHY
    if len(issues) <= 2:
        return HEALTH_WARNING
    return HEALTH_UNHEALTHY


class DriftMonitor:
    """Reads score/metric history and writes metrics and alerts; never touches models."""

    def __init__(
        self,
        registry: ModelRegistry,
        lead_store: LeadStore,
        score_store: ScoreStore,
        metric_store: MetricStore,
        alert_store: AlertStore,
        alert_sink: Optional[AlertSink] = None,
        drift_threshold: float = 0.10,
        error_rate_threshold: float = 0.1,
        response_time_threshold_ms: float = 5000.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.registry = registry
        self.lead_store = lead_store
        self.score_store = score_store
        self.metric_store = metric_store
        self.alert_store = alert_store
        self.alert_sink = alert_sink
        self.drift_threshold = drift_threshold
        self.error_rate_threshold = error_rate_threshold
        self.response_time_threshold_ms = response_time_threshold_ms
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cycle_lock = threading.Lock()
        self.state = STATE_IDLE
        self.last_report: Optional[CycleReport] = None

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(
        self,
        now: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[CycleReport]:
        """Run one cycle; returns ``None`` if another cycle is still running."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Monitoring cycle still running; skipping this one")
            return None
        try:
            return self._run_cycle(now or self._clock(), cancel_event)
        finally:
            self._cycle_lock.release()

    def _run_cycle(self, now: datetime, cancel_event: Optional[threading.Event]) -> CycleReport:
        report = CycleReport(cycle_id=uuid.uuid4().hex[:12], state=STATE_RUNNING, started_at=now.isoformat())
        self.state = STATE_RUNNING
        logger.info("Monitoring cycle %s started", report.cycle_id)

        steps: Dict[str, Callable[[datetime, CycleReport], Dict[str, Any]]] = {
            "performance": self.track_performance,
            "drift": self.detect_drift,
            "distribution": self.monitor_distribution,
            "health": self.check_health_step,
        }
        failed = False
        for name in STEPS:
            if cancel_event is not None and cancel_event.is_set():
                report.reason = "cancelled"
                failed = True
                for remaining in STEPS[STEPS.index(name):]:
                    report.steps[remaining] = {"status": "skipped"}
                logger.warning("Monitoring cycle %s cancelled before %s", report.cycle_id, name)
                break
            try:
                result = steps[name](now, report)
                report.steps[name] = {"status": "ok", "result": result}
            except Exception as exc:
                failed = True
                report.steps[name] = {"status": "failed", "error": str(exc)}
                logger.exception("Monitoring step %s failed in cycle %s", name, report.cycle_id)

        report.state = STATE_FAILED if failed else STATE_COMPLETED
        if failed and report.reason is None:
            report.reason = "step failure"
        report.finished_at = self._clock().isoformat()
        self.state = report.state
        self.last_report = report
        logger.info(
            "Monitoring cycle %s %s (%d alerts)", report.cycle_id, report.state, len(report.alerts)
        )
        return report

    # ------------------------------------------------------------------
    # Step 1: performance
    # ------------------------------------------------------------------

    def track_performance(self, now: datetime, report: Optional[CycleReport] = None) -> Dict[str, Any]:
        records = self.score_store.query(start=now - PERFORMANCE_WINDOW, end=now, limit=PERFORMANCE_LIMIT)
        by_model: Dict[str, List] = defaultdict(list)
        for record in records:
            by_model[record.model_id].append(record)

        summary: Dict[str, Any] = {}
        for model_id, model_records in by_model.items():
            y_true, y_prob = [], []
            for record in model_records:
                if record.lead_id is None:
                    continue
                outcome = self.lead_store.get_outcome(record.lead_id)
                if outcome is not None:
                    y_true.append(outcome)
                    y_prob.append(record.score)

            rows = {
                "total_predictions": float(len(model_records)),
                "avg_confidence": sum(r.confidence for r in model_records) / len(model_records),
                "evaluated_predictions": float(len(y_true)),
            }
            if y_true:
                metrics = classification_metrics(y_true, y_prob)
                for name in ("accuracy", "precision", "recall", "f1"):
                    rows[name] = metrics[name]
            for name, value in rows.items():
                self.metric_store.write(MetricRecord(model_id, name, float(value), now))
            summary[model_id] = rows

        logger.info("Tracked performance for %d predictions across %d models", len(records), len(by_model))
        return {"predictions": len(records), "models": summary}

    # ------------------------------------------------------------------
    # Step 2: drift
    # ------------------------------------------------------------------

    def detect_drift(self, now: datetime, report: Optional[CycleReport] = None) -> Dict[str, Any]:
        current_start = now - PERFORMANCE_WINDOW
        baseline_start = now - BASELINE_WINDOW
        rows = [
            r for r in self.metric_store.query(start=baseline_start, end=now)
            if r.metric_name in DRIFT_METRICS
        ]
        grouped: Dict[tuple, Dict[str, List[float]]] = defaultdict(lambda: {"current": [], "baseline": []})
        for r in rows:
            window = "current" if r.recorded_at >= current_start else "baseline"
            grouped[(r.model_id, r.metric_name)][window].append(r.value)

        drifted: List[Dict[str, Any]] = []
        for (model_id, metric), windows in sorted(grouped.items()):
            if not windows["current"] or not windows["baseline"]:
                continue
            baseline = sum(windows["baseline"]) / len(windows["baseline"])
            current = sum(windows["current"]) / len(windows["current"])
            if baseline == 0:
                logger.info("Skipping drift on %s/%s: zero baseline", model_id, metric)
                continue
            change = relative_change(current, baseline)
            logger.info(
                "Drift check %s/%s: baseline=%.4f current=%.4f change=%.4f",
                model_id, metric, baseline, current, change,
            )
            if change > self.drift_threshold:
                severity = "high" if change > 2 * self.drift_threshold else "medium"
                alert = DriftAlert(
                    model_id=model_id,
                    metric_name=metric,
                    severity=severity,
                    detail=(
                        f"{metric} changed {change:.1%} "
                        f"(baseline {baseline:.4f}, current {current:.4f})"
                    ),
                    detected_at=now,
                    alert_type="drift",
                )
                self._emit(alert, report)
                drifted.append({"model_id": model_id, "metric": metric, "change": change})
        return {"drift_detected": bool(drifted), "drifted": drifted}

    # ------------------------------------------------------------------
    # Step 3: distribution
    # ------------------------------------------------------------------

    def analyze_distribution(self, scores: List[float]) -> Dict[str, Any]:
        counts = [0] * DISTRIBUTION_BINS
        for score in scores:
            counts[bucket_index(score)] += 1
        total = len(scores)
        anomalies: List[str] = []
        if total:
            populated = [i for i, c in enumerate(counts) if c]
            for low, high in zip(populated, populated[1:]):
                if high - low > MAX_BUCKET_GAP:
                    anomalies.append(
                        f"Gap in score distribution between {low / 10:.1f} and {high / 10:.1f}"
                    )
            top = max(range(DISTRIBUTION_BINS), key=lambda i: counts[i])
            share = counts[top] / total
            if share > MAX_BUCKET_SHARE:
                anomalies.append(
                    f"Extreme concentration in score bucket {top / 10:.1f} "
                    f"({share * 100:.1f}% of predictions)"
                )
        return {
            "total_predictions": total,
            "buckets": counts,
            "high_score_share": sum(counts[8:]) / total if total else 0.0,
            "low_score_share": sum(counts[:3]) / total if total else 0.0,
            "anomalies": anomalies,
        }

    def monitor_distribution(self, now: datetime, report: Optional[CycleReport] = None) -> Dict[str, Any]:
        records = self.score_store.query(start=now - DISTRIBUTION_WINDOW, end=now)
        analysis = self.analyze_distribution([r.score for r in records])
        active = self.registry.active
        model_id = active.id if active is not None else "none"
        self.metric_store.write(
            MetricRecord(model_id, "distribution_predictions", float(analysis["total_predictions"]), now)
        )
        if analysis["anomalies"]:
            self._emit(
                DriftAlert(
                    model_id=model_id,
                    metric_name="score_distribution",
                    severity="low",
                    detail="; ".join(analysis["anomalies"]),
                    detected_at=now,
                    alert_type="distribution",
                ),
                report,
            )
        return analysis

    # ------------------------------------------------------------------
    # Step 4: health
    # ------------------------------------------------------------------

    def check_health(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self._clock()
        active = self.registry.active
        recent = self.score_store.query(start=now - RECENT_TRAFFIC_WINDOW, end=now, limit=1)
        usage = self.metric_store.query(start=now - USAGE_WINDOW, end=now)
        errors = [r.value for r in usage if r.metric_name == USAGE_ERROR]
        times = [r.value for r in usage if r.metric_name == USAGE_RESPONSE_TIME]
        error_rate = sum(errors) / len(errors) if errors else 0.0
        response_time = sum(times) / len(times) if times else 0.0

        checks = {
            "model_exists": active is not None,
            "active_model_id": active.id if active is not None else None,
            "recent_predictions": bool(recent),
            "error_rate": round(error_rate, 6),
            "avg_response_time_ms": round(response_time, 3),
        }
        issues: List[str] = []
        if not checks["model_exists"]:
            issues.append("No active model")
        if not checks["recent_predictions"]:
            issues.append("No recent predictions")
        if not error_rate < self.error_rate_threshold:
            issues.append("High error rate")
        if not response_time < self.response_time_threshold_ms:
            issues.append("Slow response time")

        return {
            "status": overall_health(issues),
            "checks": checks,
            "issues": issues,
            "checked_at": now.isoformat(),
        }

    def check_health_step(self, now: datetime, report: Optional[CycleReport] = None) -> Dict[str, Any]:
        health = self.check_health(now)
        model_id = health["checks"]["active_model_id"] or "none"
        self.metric_store.write(MetricRecord(model_id, "health_issues", float(len(health["issues"])), now))
        if health["status"] != HEALTH_HEALTHY:
            severity = "high" if health["status"] == HEALTH_UNHEALTHY else "medium"
            self._emit(
                DriftAlert(
                    model_id=model_id,
                    metric_name="health",
                    severity=severity,
                    detail=f"Model health {health['status']}: {', '.join(health['issues'])}",
                    detected_at=now,
                    alert_type="health",
                ),
                report,
            )
        return health

    # ------------------------------------------------------------------
    # Metrics summary + alert fan-out
    # ------------------------------------------------------------------

    def get_metrics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Dict[str, Dict[str, float]]]:
        """``{model_id: {metric: {avg, min, max, sample_count}}}`` over the range."""
        records = self.metric_store.query(start=start, end=end)
        if not records:
            return {}
        df = pd.DataFrame(
            [{"model_id": r.model_id, "metric_name": r.metric_name, "value": r.value} for r in records]
        )
        stats = df.groupby(["model_id", "metric_name"])["value"].agg(["mean", "min", "max", "count"])
        result: Dict[str, Dict[str, Dict[str, float]]] = {}
        for (model_id, metric), row in stats.iterrows():
            result.setdefault(model_id, {})[metric] = {
                "avg": round(float(row["mean"]), 6),
                "min": float(row["min"]),
                "max": float(row["max"]),
                "sample_count": int(row["count"]),
            }
        return result

    def _emit(self, alert: DriftAlert, report: Optional[CycleReport]) -> None:
        self.alert_store.write(alert)
        if report is not None:
            report.alerts.append(alert.to_dict())
        if self.alert_sink is None:
            return
        try:
            self.alert_sink.publish(alert)
        except Exception:
            logger.exception("Alert sink failed for %s alert on %s", alert.alert_type, alert.model_id)
