"""
Scoring logic for the lead-scoring service.

Responsible for:
  - Resolving a lead by id (LeadStore) or from inline data.
  - Extracting its feature vector and aligning it to the model's order.
  - Running inference against the active artifact and deriving confidence.
  - Appending one ScoreRecord per scored lead, plus usage metrics
    (response time, error flag) for the health check.
"""

from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timezone
from typing import Callable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import (
    LeadScoringError,
    NotFoundError,
    PersistenceError,
    ServiceUnavailable,
    ValidationError,
)
from .feature_extractor import FeatureExtractor
from .model_registry import ModelArtifact, ModelRegistry
from .records import (
    HistoricalLead,
    LeadFeatureVector,
    LeadId,
    MetricRecord,
    ScoreRecord,
    ScoreResult,
    to_utc,
)
from .stores import LeadStore, MetricStore, ScoreStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_BATCH = 50

USAGE_RESPONSE_TIME = "response_time_ms"
USAGE_ERROR = "error"
NO_MODEL_ID = "none"

LeadInput = Union[LeadId, Mapping, HistoricalLead]


def calculate_confidence(score: float) -> float:
    """Distance from the 0.5 decision boundary scaled to [0, 1]."""
    return min(abs(score - 0.5) * 2.0, 1.0)


def align_features(expected_names: Sequence[str], vector: LeadFeatureVector) -> List[float]:
    """Feature values in the *exact* order the model was trained on.

    Names the vector does not carry are filled with ``0.0`` and logged.
    """
    values: List[float] = []
    missing: List[str] = []
    for name in expected_names:
        if name in vector.normalized:
            values.append(float(vector.normalized[name]))
        else:
            values.append(0.0)
            missing.append(name)
    if missing:
        logger.warning(
            "Missing %d feature(s) filled with 0.0: %s",
            len(missing),
            ", ".join(missing[:10]),
        )
    return values


def predict_score(artifact: ModelArtifact, vector: LeadFeatureVector) -> float:
    """Pure function of (vector, artifact): the positive-class probability."""
    X = np.array([align_features(artifact.feature_names, vector)], dtype=np.float64)
    score = float(artifact.predict_proba(X)[0])
    if not math.isfinite(score):
        raise LeadScoringError("Model %s produced a non-finite score" % artifact.id)
    return max(0.0, min(1.0, score))


class ScoringService:
    """Scores leads against whichever artifact is active at call time."""

    def __init__(
        self,
        registry: ModelRegistry,
        lead_store: LeadStore,
        score_store: ScoreStore,
        metric_store: Optional[MetricStore] = None,
        extractor: Optional[FeatureExtractor] = None,
        max_batch: int = DEFAULT_MAX_BATCH,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.registry = registry
        self.lead_store = lead_store
        self.score_store = score_store
        self.metric_store = metric_store
        self.extractor = extractor or FeatureExtractor()
        self.max_batch = max_batch
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def score(self, lead: LeadInput, now: Optional[datetime] = None) -> ScoreResult:
        """Score one lead (id, inline dict, or HistoricalLead)."""
        start = time.perf_counter()
        model_id = NO_MODEL_ID
        try:
            artifact = self._require_active()
            model_id = artifact.id
            item = self._resolve(lead)
            now = to_utc(now or self._clock())
            record, _ = self._score_item(artifact, item, now)
        except (ValidationError, NotFoundError):
            raise
        except LeadScoringError:
            self._record_usage(model_id, start, error=True)
            raise
        self._record_usage(model_id, start, error=False)
        return ScoreResult.from_record(record)

    def score_batch(
        self,
        lead_ids: Sequence[LeadInput],
        now: Optional[datetime] = None,
    ) -> List[ScoreResult]:
        """Score up to ``max_batch`` leads against one pinned artifact.

        Oversized or empty batches and unknown ids are rejected before any
        lead is scored, so a rejected batch appends no records.
        """
        if not lead_ids:
            raise ValidationError("Batch must contain at least one lead")
        if len(lead_ids) > self.max_batch:
            raise ValidationError(
                "Batch of %d exceeds the maximum of %d" % (len(lead_ids), self.max_batch)
            )

        start = time.perf_counter()
        model_id = NO_MODEL_ID
        try:
            artifact = self._require_active()
            model_id = artifact.id
            items = [self._resolve(lead) for lead in lead_ids]
            now = to_utc(now or self._clock())
            results = [
                ScoreResult.from_record(self._score_item(artifact, item, now)[0])
                for item in items
            ]
        except (ValidationError, NotFoundError):
            raise
        except LeadScoringError:
            self._record_usage(model_id, start, error=True)
            raise
        self._record_usage(model_id, start, error=False)
        logger.info("Scored batch of %d leads with model %s", len(results), model_id)
        return results

    def latest_record(self, lead_id: LeadId) -> Optional[ScoreRecord]:
        records = self.score_store.query(lead_id=lead_id, limit=1)
        return records[-1] if records else None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_active(self) -> ModelArtifact:
        artifact = self.registry.active
        if artifact is None:
            raise ServiceUnavailable("No active model; train and promote a model first")
        return artifact

    def _resolve(self, lead: LeadInput) -> HistoricalLead:
        if isinstance(lead, HistoricalLead):
            return lead
        if isinstance(lead, Mapping):
            return HistoricalLead.from_dict(lead)
        if lead is None or isinstance(lead, bool):
            raise ValidationError("Lead id or inline lead data is required")
        return HistoricalLead(
            lead=self.lead_store.get_lead(lead),
            interactions=self.lead_store.get_interactions(lead),
            property_prefs=self.lead_store.get_property_prefs(lead),
        )

    def _score_item(
        self,
        artifact: ModelArtifact,
        item: HistoricalLead,
        now: datetime,
    ) -> Tuple[ScoreRecord, LeadFeatureVector]:
        vector = self.extractor.extract(item.lead, item.interactions, item.property_prefs, now)
        score = predict_score(artifact, vector)
        record = ScoreRecord(
            lead_id=item.lead.id,
            model_id=artifact.id,
            model_version=artifact.version,
            score=score,
            confidence=calculate_confidence(score),
            features_used=list(artifact.feature_names),
            features=dict(vector.raw),
            scored_at=now,
        )
        self.score_store.write(record)
        logger.debug(
            "Scored lead %s: score=%.4f confidence=%.4f model=%s",
            record.lead_id, record.score, record.confidence, artifact.id,
        )
        return record, vector

    def _record_usage(self, model_id: str, start: float, error: bool) -> None:
        if self.metric_store is None:
            return
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        now = self._clock()
        try:
            self.metric_store.write(MetricRecord(model_id, USAGE_RESPONSE_TIME, elapsed_ms, now))
            self.metric_store.write(MetricRecord(model_id, USAGE_ERROR, 1.0 if error else 0.0, now))
        except PersistenceError:
            logger.exception("Could not record usage metrics for model %s", model_id)
