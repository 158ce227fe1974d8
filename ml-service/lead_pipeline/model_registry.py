"""
ModelRegistry -- artifact lifecycle, persistence, and the single active model.

Models are stored as joblib files under ``models_dir`` with the naming
convention ``model_<id>.joblib``.  A companion JSON sidecar
(``model_<id>_meta.json``) stores metrics and training metadata, and
``registry.json`` records every artifact's status and which one is active.

Registry state is one immutable snapshot held in a single attribute.
``promote`` builds the next snapshot under a lock and swaps it in with one
assignment, so ``get_active`` never blocks and never sees zero or two
active artifacts.
"""

from __future__ import annotations

import json
import logging
import math
import os
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import joblib
import numpy as np

from .errors import NotFoundError, PersistenceError, ValidationError

logger = logging.getLogger(__name__)

ARTIFACT_SCHEMA_VERSION = 1

MODEL_TYPES = ("baseline", "advanced")

STATUS_TRAINED = "trained"
STATUS_EVALUATED = "evaluated"
STATUS_ACTIVE = "active"
STATUS_RETIRED = "retired"
STATUSES = (STATUS_TRAINED, STATUS_EVALUATED, STATUS_ACTIVE, STATUS_RETIRED)

REQUIRED_METRICS = ("accuracy", "precision", "recall", "f1")

INDEX_FILE = "registry.json"


@dataclass(frozen=True)
class ModelArtifact:
    """A trained model plus its metadata. Never mutated; status changes copy it."""

    id: str
    type: str
    version: str
    status: str
    metrics: Mapping[str, float]
    training_date: str
    feature_names: Tuple[str, ...]
    model: Any = field(default=None, repr=False, compare=False)
    training_samples: int = 0
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False)
    schema_version: int = ARTIFACT_SCHEMA_VERSION

    @property
    def feature_count(self) -> int:
        return len(self.feature_names)

    def with_status(self, status: str) -> "ModelArtifact":
        return replace(self, status=status)

    def predict_proba(self, X: np.ndarray) -> np.ndarray:
        """Probability of the positive class for each row of *X*."""
        return self.model.predict_proba(X)[:, 1]

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "id": self.id,
            "type": self.type,
            "version": self.version,
            "status": self.status,
            "metrics": dict(self.metrics),
            "training_date": self.training_date,
            "feature_names": list(self.feature_names),
            "feature_count": self.feature_count,
            "training_samples": self.training_samples,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_metadata(cls, meta: Mapping[str, Any], model: Any) -> "ModelArtifact":
        return cls(
            id=meta["id"],
            type=meta["type"],
            version=meta["version"],
            status=meta.get("status", STATUS_TRAINED),
            metrics=dict(meta.get("metrics", {})),
            training_date=meta.get("training_date", ""),
            feature_names=tuple(meta.get("feature_names", [])),
            model=model,
            training_samples=int(meta.get("training_samples", 0)),
            metadata=dict(meta.get("metadata", {})),
            schema_version=int(meta.get("schema_version", ARTIFACT_SCHEMA_VERSION)),
        )


@dataclass(frozen=True)
class _RegistryState:
    artifacts: Mapping[str, ModelArtifact]
    active_id: Optional[str] = None


def validate_artifact(artifact: ModelArtifact) -> None:
    """Reject artifacts that cannot be served or compared."""
    if not isinstance(artifact, ModelArtifact):
        raise ValidationError("Expected a ModelArtifact, got %s" % type(artifact).__name__)
    if artifact.type not in MODEL_TYPES:
        raise ValidationError("Unknown model type %r" % artifact.type)
    if artifact.model is None:
        raise ValidationError("Artifact %s has no model weights" % artifact.id)
    if not artifact.feature_names:
        raise ValidationError("Artifact %s declares no features" % artifact.id)
    for name in REQUIRED_METRICS:
        value = artifact.metrics.get(name) if artifact.metrics else None
        if value is None:
            raise ValidationError("Artifact %s is missing metric '%s'" % (artifact.id, name))
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise ValidationError("Artifact %s metric '%s' is not numeric" % (artifact.id, name))
        if not math.isfinite(value) or not 0.0 <= value <= 1.0:
            raise ValidationError(
                "Artifact %s metric '%s' out of range: %r" % (artifact.id, name, value)
            )


class ModelRegistry:
    """Owns artifact status transitions and which artifact is active."""

    def __init__(self, models_dir: Optional[Path] = None) -> None:
        self.models_dir = Path(models_dir) if models_dir else None
        if self.models_dir:
            self.models_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._state = _RegistryState(artifacts=MappingProxyType({}))
        logger.info("ModelRegistry initialised. models_dir=%s", self.models_dir)

    # ------------------------------------------------------------------
    # Reads (lock-free: one attribute read gives a consistent snapshot)
    # ------------------------------------------------------------------

    @property
    def active(self) -> Optional[ModelArtifact]:
        """The active artifact, or ``None`` when nothing has been promoted."""
        state = self._state
        if state.active_id is None:
            return None
        return state.artifacts[state.active_id]

    def get_active(self) -> ModelArtifact:
        artifact = self.active
        if artifact is None:
            raise NotFoundError("No active model")
        return artifact

    def get(self, artifact_id: str) -> ModelArtifact:
        artifact = self._state.artifacts.get(artifact_id)
        if artifact is None:
            raise NotFoundError("Unknown model id %r" % artifact_id)
        return artifact

    def list(self, status: Optional[str] = None) -> List[ModelArtifact]:
        """All artifacts, newest first, optionally filtered by status."""
        if status is not None and status not in STATUSES:
            raise ValidationError("Unknown status %r" % status)
        artifacts = [
            a for a in self._state.artifacts.values() if status is None or a.status == status
        ]
        artifacts.sort(key=lambda a: (a.training_date, a.id), reverse=True)
        return artifacts

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def register(self, artifact: ModelArtifact, status: str = STATUS_EVALUATED) -> ModelArtifact:
        """Add a freshly trained artifact as ``trained`` or ``evaluated``."""
        if status not in (STATUS_TRAINED, STATUS_EVALUATED):
            raise ValidationError("Artifacts can only be registered as trained or evaluated")
        validate_artifact(artifact)
        stored = artifact.with_status(status)

        with self._lock:
            state = self._state
            if stored.id in state.artifacts:
                raise ValidationError("Artifact %s is already registered" % stored.id)
            artifacts = dict(state.artifacts)
            artifacts[stored.id] = stored
            self._save_model(stored)
            next_state = _RegistryState(MappingProxyType(artifacts), state.active_id)
            self._write_index(next_state)
            self._state = next_state

        logger.info("Registered %s model %s (status=%s)", stored.type, stored.id, status)
        return stored

    def promote(self, artifact: Union[ModelArtifact, str]) -> ModelArtifact:
        """Make *artifact* the single active model, retiring the previous one.

        Unregistered artifacts are registered as part of the same transition.
        On any failure the registry is left exactly as it was.
        """
        with self._lock:
            state = self._state
            if isinstance(artifact, str):
                candidate = state.artifacts.get(artifact)
                if candidate is None:
                    raise NotFoundError("Unknown model id %r" % artifact)
            else:
                candidate = artifact
            validate_artifact(candidate)

            existing = state.artifacts.get(candidate.id)
            if existing is not None and existing.status == STATUS_RETIRED:
                raise ValidationError("Retired artifact %s cannot be re-activated" % candidate.id)
            if state.active_id == candidate.id:
                return state.artifacts[candidate.id]

            artifacts = dict(state.artifacts)
            previous_id = state.active_id
            if previous_id is not None:
                artifacts[previous_id] = artifacts[previous_id].with_status(STATUS_RETIRED)
            promoted = (existing or candidate).with_status(STATUS_ACTIVE)
            artifacts[promoted.id] = promoted

            if existing is None:
                self._save_model(promoted)
            next_state = _RegistryState(MappingProxyType(artifacts), promoted.id)
            self._write_index(next_state)
            self._state = next_state

        logger.info(
            "Promoted %s model %s to active (retired=%s, accuracy=%.4f)",
            promoted.type, promoted.id, previous_id, promoted.metrics.get("accuracy", 0.0),
        )
        return promoted

    # ------------------------------------------------------------------
    # Model comparison
    # ------------------------------------------------------------------

    def compare_models(
        self,
        id_a: str,
        id_b: str,
        primary_metric: str = "accuracy",
    ) -> Dict[str, Any]:
        """Compare two artifacts metric by metric and name the better one."""
        a = self.get(id_a)
        b = self.get(id_b)
        return compare_artifacts(a, b, primary_metric)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Restore artifacts and statuses from ``models_dir``; returns the count."""
        if self.models_dir is None:
            return 0
        index_path = self.models_dir / INDEX_FILE
        statuses: Dict[str, str] = {}
        active_id: Optional[str] = None
        if index_path.exists():
            try:
                with open(index_path, "r") as fh:
                    index = json.load(fh)
            except (OSError, ValueError) as exc:
                raise PersistenceError("Unreadable registry index %s: %s" % (index_path, exc))
            statuses = dict(index.get("artifacts", {}))
            active_id = index.get("active_id")

        artifacts: Dict[str, ModelArtifact] = {}
        for meta_path in sorted(self.models_dir.glob("model_*_meta.json")):
            with open(meta_path, "r") as fh:
                meta = json.load(fh)
            if meta.get("schema_version") != ARTIFACT_SCHEMA_VERSION:
                logger.warning(
                    "Skipping %s: schema_version %r is not %d",
                    meta_path.name, meta.get("schema_version"), ARTIFACT_SCHEMA_VERSION,
                )
                continue
            model_path = self._model_path(meta["id"])
            if not model_path.exists():
                logger.warning("Model file missing for %s", meta["id"])
                continue
            try:
                model = joblib.load(model_path)
            except Exception as exc:
                raise PersistenceError("Could not load %s: %s" % (model_path, exc))
            artifact = ModelArtifact.from_metadata(meta, model)
            status = statuses.get(artifact.id, artifact.status)
            if status == STATUS_ACTIVE and artifact.id != active_id:
                status = STATUS_RETIRED
            artifacts[artifact.id] = artifact.with_status(status)

        if active_id not in artifacts:
            active_id = None
        with self._lock:
            self._state = _RegistryState(MappingProxyType(artifacts), active_id)
        logger.info("Registry loaded %d artifacts (active=%s)", len(artifacts), active_id)
        return len(artifacts)

    def _save_model(self, artifact: ModelArtifact) -> None:
        if self.models_dir is None:
            return
        try:
            joblib.dump(artifact.model, self._model_path(artifact.id))
            with open(self._meta_path(artifact.id), "w") as fh:
                json.dump(artifact.to_metadata(), fh, indent=2, default=str)
        except OSError as exc:
            raise PersistenceError("Could not save model %s: %s" % (artifact.id, exc))
        logger.info("Model saved to %s", self._model_path(artifact.id))

    def _write_index(self, state: _RegistryState) -> None:
        if self.models_dir is None:
            return
        index = {
            "schema_version": ARTIFACT_SCHEMA_VERSION,
            "active_id": state.active_id,
            "artifacts": {a.id: a.status for a in state.artifacts.values()},
        }
        index_path = self.models_dir / INDEX_FILE
        tmp_path = index_path.with_suffix(".json.tmp")
        try:
            with open(tmp_path, "w") as fh:
                json.dump(index, fh, indent=2)
            os.replace(tmp_path, index_path)
        except OSError as exc:
            raise PersistenceError("Could not write registry index: %s" % exc)

    def _model_path(self, artifact_id: str) -> Path:
        return self.models_dir / f"model_{artifact_id}.joblib"

    def _meta_path(self, artifact_id: str) -> Path:
        return self.models_dir / f"model_{artifact_id}_meta.json"


def compare_artifacts(
    a: ModelArtifact,
    b: ModelArtifact,
    primary_metric: str = "accuracy",
) -> Dict[str, Any]:
    comparison: Dict[str, Any] = {
        "model_a": a.id,
        "model_b": b.id,
        "primary_metric": primary_metric,
        "metrics": {},
    }
    for metric in REQUIRED_METRICS:
        val_a = float(a.metrics.get(metric, 0.0))
        val_b = float(b.metrics.get(metric, 0.0))
        comparison["metrics"][metric] = {
            "model_a": val_a,
            "model_b": val_b,
            "diff": round(val_b - val_a, 6),
            "better": "b" if val_b > val_a else ("a" if val_a > val_b else "tie"),
        }

    pa = float(a.metrics.get(primary_metric, 0.0))
    pb = float(b.metrics.get(primary_metric, 0.0))
    comparison["winner"] = b.id if pb >= pa else a.id
    comparison["winner_reason"] = (
        f"{comparison['winner']} has better {primary_metric}: "
        f"{max(pa, pb):.4f} vs {min(pa, pb):.4f}"
    )
    comparison["training_info"] = {
        "model_a": {"samples": a.training_samples, "trained_at": a.training_date},
        "model_b": {"samples": b.training_samples, "trained_at": b.training_date},
    }
    logger.info(
        "Model comparison: %s vs %s -> winner=%s (%s)",
        a.id, b.id, comparison["winner"], comparison["winner_reason"],
    )
    return comparison
