"""
LeadScoringService -- wires the pipeline components behind one object.

The HTTP layer (``app.py``) and the scripts only talk to this facade.  It
owns the model registry, the stores (Postgres when ``DATABASE_URL`` is set,
in-memory otherwise), the scoring/explanation/monitoring components, the
background monitoring scheduler and a single-worker pool for training jobs.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from lead_pipeline.config import Settings
from lead_pipeline.data_versioner import DataVersioner
from lead_pipeline.drift_monitor import DriftMonitor
from lead_pipeline.errors import (
    NotFoundError,
    ServiceUnavailable,
    TrainingCancelled,
    TrainingInProgress,
    ValidationError,
)
from lead_pipeline.explainability import ExplainabilityEngine
from lead_pipeline.feature_extractor import FeatureExtractor
from lead_pipeline.model_registry import ModelRegistry
from lead_pipeline.records import HistoricalLead, LeadId, to_utc
from lead_pipeline.scheduler import MonitoringScheduler, RetrainScheduler
from lead_pipeline.scoring import ScoringService
from lead_pipeline.stores import (
    InMemoryAlertStore,
    InMemoryLeadStore,
    InMemoryMetricStore,
    InMemoryScoreStore,
    LoggingAlertSink,
)
from lead_pipeline.trainer import ModelTrainer, TrainingConfig

logger = logging.getLogger(__name__)

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_CANCELLED = "cancelled"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def coerce_lead_id(raw: Any) -> LeadId:
    """Lead ids arrive as strings in URL paths; numeric ones are stored as ints."""
    if isinstance(raw, bool) or raw is None:
        raise ValidationError("Invalid lead id: %r" % raw)
    if isinstance(raw, int):
        return raw
    text = str(raw).strip()
    if not text:
        raise ValidationError("Lead id must not be empty")
    if text.isdigit():
        return int(text)
    return text


@dataclass
class TrainingJob:
    job_id: str
    submitted_at: str
    status: str = JOB_QUEUED
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    validation_report: Optional[Dict[str, Any]] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    future: Optional[Future] = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.status in (JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "submitted_at": self.submitted_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "result": self.result,
            "error": self.error,
            "validation_report": self.validation_report,
        }


class LeadScoringService:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional[ModelRegistry] = None,
        lead_store=None,
        score_store=None,
        metric_store=None,
        alert_store=None,
        alert_sink=None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        if lead_store is None and self.settings.database_url:
            lead_store, score_store, metric_store, alert_store = _postgres_stores(
                self.settings.database_url, score_store, metric_store, alert_store
            )

        self.registry = registry or ModelRegistry(self.settings.models_dir)
        self.lead_store = lead_store if lead_store is not None else InMemoryLeadStore()
        self.score_store = score_store if score_store is not None else InMemoryScoreStore()
        self.metric_store = metric_store if metric_store is not None else InMemoryMetricStore()
        self.alert_store = alert_store if alert_store is not None else InMemoryAlertStore()
        self.alert_sink = alert_sink or LoggingAlertSink()

        self.extractor = FeatureExtractor()
        self.versioner = DataVersioner(self.settings.snapshots_dir)
        self.scoring = ScoringService(
            self.registry,
            self.lead_store,
            self.score_store,
            metric_store=self.metric_store,
            extractor=self.extractor,
            max_batch=self.settings.max_batch_size,
            clock=self._clock,
        )
        self.explainer = ExplainabilityEngine(self.score_store, clock=self._clock)
        self.monitor = DriftMonitor(
            self.registry,
            self.lead_store,
            self.score_store,
            self.metric_store,
            self.alert_store,
            alert_sink=self.alert_sink,
            drift_threshold=self.settings.drift_threshold,
            error_rate_threshold=self.settings.error_rate_threshold,
            response_time_threshold_ms=self.settings.response_time_threshold_ms,
            clock=self._clock,
        )
        self.trainer = ModelTrainer(
            self.registry,
            config=TrainingConfig.from_settings(self.settings),
            extractor=self.extractor,
            versioner=self.versioner,
        )
        self.monitoring = MonitoringScheduler(self.monitor, self.settings.monitor_interval_seconds)
        self.retrain_scheduler = RetrainScheduler(
            retrain_interval_days=self.settings.retrain_interval_days,
            min_new_labelled_leads=self.settings.min_new_labelled_leads,
            clock=self._clock,
        )

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="training")
        self._jobs: Dict[str, TrainingJob] = {}
        self._jobs_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Restore persisted models and start background monitoring."""
        count = self.registry.load()
        active = self.registry.active
        if active is not None:
            logger.info("Restored %d models; active model %s (%s)", count, active.id, active.type)
        else:
            logger.warning("No active model. Run 'python train.py --synthetic 1000' or POST /train.")
        if self.settings.monitor_enabled:
            self.monitoring.start()

    def close(self) -> None:
        self.monitoring.stop()
        with self._jobs_lock:
            for job in self._jobs.values():
                if not job.done:
                    job.cancel_event.set()
        self._executor.shutdown(wait=True)
        logger.info("Lead scoring service stopped")

    # ------------------------------------------------------------------
    # Scoring + explanations
    # ------------------------------------------------------------------

    def score(self, lead: Any) -> Dict[str, Any]:
        if not isinstance(lead, (dict, HistoricalLead)):
            lead = coerce_lead_id(lead)
        return self.scoring.score(lead).to_dict()

    def score_batch(self, lead_ids: Sequence[Any]) -> List[Dict[str, Any]]:
        ids = [coerce_lead_id(lead_id) for lead_id in lead_ids]
        return [result.to_dict() for result in self.scoring.score_batch(ids)]

    def explain(self, lead_id: Any) -> Dict[str, Any]:
        """Explain the lead's latest score, scoring it first when it has none."""
        lead_id = coerce_lead_id(lead_id)
        record = self.scoring.latest_record(lead_id)
        if record is None:
            self.scoring.score(lead_id)
            record = self.scoring.latest_record(lead_id)
        if record is None:
            raise NotFoundError("No score recorded for lead %s" % lead_id)
        return self.explainer.explain_record(record).to_dict()

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def health(self) -> Dict[str, Any]:
        health = self.monitor.check_health()
        last = self.monitor.last_report
        health["monitoring"] = {
            "state": self.monitor.state,
            "scheduler_running": self.monitoring.running,
            "last_cycle": last.to_dict() if last is not None else None,
        }
        return health

    def metrics(self, start: Any = None, end: Any = None) -> Dict[str, Any]:
        start_dt = to_utc(start)
        end_dt = to_utc(end)
        if start_dt is not None and end_dt is not None and start_dt > end_dt:
            raise ValidationError("start must not be after end")
        return {
            "start": start_dt.isoformat() if start_dt else None,
            "end": end_dt.isoformat() if end_dt else None,
            "models": self.monitor.get_metrics(start_dt, end_dt),
        }

    def run_monitoring_cycle(self) -> Optional[Dict[str, Any]]:
        report = self.monitoring.tick()
        return report.to_dict() if report is not None else None

    # ------------------------------------------------------------------
    # Training jobs
    # ------------------------------------------------------------------

    def start_training(self, leads: Optional[Sequence[HistoricalLead]] = None) -> TrainingJob:
        """Queue a training run; a second run while one is pending is rejected."""
        with self._jobs_lock:
            if self.trainer.is_running or any(not job.done for job in self._jobs.values()):
                raise TrainingInProgress("A training job is already queued or running")
            job = TrainingJob(job_id=uuid.uuid4().hex[:12], submitted_at=self._clock().isoformat())
            self._jobs[job.job_id] = job
            job.future = self._executor.submit(self._run_training, job, leads)
        logger.info("Training job %s queued", job.job_id)
        return job

    def job_status(self, job_id: str) -> Dict[str, Any]:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError("Training job %s not found" % job_id)
        return job.to_dict()

    def cancel_training(self, job_id: str) -> Dict[str, Any]:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError("Training job %s not found" % job_id)
        job.cancel_event.set()
        return job.to_dict()

    def _run_training(self, job: TrainingJob, leads: Optional[Sequence[HistoricalLead]]) -> None:
        job.status = JOB_RUNNING
        job.started_at = self._clock().isoformat()
        try:
            if leads is None:
                leads = self.lead_store.historical_leads()
            result = self.trainer.run(leads, cancel_event=job.cancel_event)
        except TrainingCancelled as exc:
            job.status = JOB_CANCELLED
            job.error = str(exc)
            logger.warning("Training job %s cancelled", job.job_id)
        except Exception as exc:
            job.status = JOB_FAILED
            job.error = str(exc)
            job.validation_report = getattr(exc, "validation_report", None) or None
            logger.exception("Training job %s failed", job.job_id)
        else:
            job.status = JOB_COMPLETED
            job.result = result.to_dict()
            logger.info("Training job %s completed: %s", job.job_id, result.model_id)
        finally:
            job.finished_at = self._clock().isoformat()

    # ------------------------------------------------------------------
    # Retrain advice
    # ------------------------------------------------------------------

    def check_retrain(self, trigger_retrain: bool = False) -> Dict[str, Any]:
        active = self.registry.active
        if active is None:
            raise ServiceUnavailable("No active model; train one first")

        last_trained = to_utc(active.training_date) or _EPOCH
        decision = self.retrain_scheduler.should_retrain(
            active.id,
            active.training_date,
            closed_leads_since_training=self.lead_store.count_labelled_since(last_trained),
            cycle=self.monitor.last_report,
        )
        if trigger_retrain and decision["should_retrain"]:
            job = self.start_training()
            decision["job_id"] = job.job_id
        return decision

    # ------------------------------------------------------------------
    # Model + data inspection
    # ------------------------------------------------------------------

    def model_info(self) -> Dict[str, Any]:
        active = self.registry.active
        if active is None:
            raise NotFoundError("No model is currently active")
        return active.to_metadata()

    def model_versions(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": a.id,
                "type": a.type,
                "version": a.version,
                "status": a.status,
                "metrics": dict(a.metrics),
                "training_date": a.training_date,
            }
            for a in self.registry.list()
        ]

    def feature_importance(self) -> Dict[str, Any]:
        return self.explainer.feature_importance_analysis()

    def list_snapshots(self) -> List[Dict[str, Any]]:
        return self.versioner.list_snapshots()


def _postgres_stores(db_url: str, score_store, metric_store, alert_store):
    from lead_pipeline.postgres_store import (
        PostgresAlertStore,
        PostgresLeadStore,
        PostgresMetricStore,
        PostgresScoreStore,
    )

    logger.info("Using PostgreSQL stores")
    return (
        PostgresLeadStore(db_url),
        score_store if score_store is not None else PostgresScoreStore(db_url),
        metric_store if metric_store is not None else PostgresMetricStore(db_url),
        alert_store if alert_store is not None else PostgresAlertStore(db_url),
    )
