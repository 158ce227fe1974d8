"""
ModelTrainer — historical leads -> baseline + advanced artifacts -> promotion.

The trainer will:
  1. Extract the feature matrix for every historical lead.
  2. Validate the dataset (class balance, missing values; warnings only).
  3. Split chronologically: oldest 80% train (its last 20% is validation),
     newest 20% held out as the test set.
  4. Train a logistic-regression baseline (SGD on log loss, mini-batches).
  5. Train a feed-forward network (3 hidden layers, input dropout + L2).
  6. Evaluate both on train / validation / test with a 0.5 threshold.
  7. Register both as ``evaluated`` and promote the one with the higher
     test accuracy (F1 breaks ties, then the baseline wins).

Only one run may be in flight; a second concurrent ``run`` raises
``TrainingInProgress``.  A run checks its cancel event between epochs.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.linear_model import SGDClassifier
from sklearn.metrics import log_loss
from sklearn.neural_network import MLPClassifier

from .data_validator import ValidationReport, validate_dataset
from .data_versioner import LABEL_COLUMN, DataVersioner
from .errors import (
    LeadScoringError,
    TrainingCancelled,
    TrainingError,
    TrainingInProgress,
    ValidationError,
)
from .feature_extractor import FeatureExtractor
from .feature_map import FEATURE_NAMES, FEATURE_SCHEMA_VERSION
from .metrics import classification_metrics
from .model_registry import (
    STATUS_EVALUATED,
    STATUS_TRAINED,
    ModelArtifact,
    ModelRegistry,
    compare_artifacts,
)
from .records import HistoricalLead
from .stores import CONVERTED_STATUSES

logger = logging.getLogger(__name__)

LabelFn = Callable[[HistoricalLead], int]

MIN_TRAINING_SAMPLES = 10


def default_label(item: HistoricalLead) -> int:
    """1 when the lead converted, else 0."""
    status = (item.lead.status or "").strip().lower()
    return 1 if item.lead.converted_at is not None or status in CONVERTED_STATUSES else 0


@dataclass
class TrainingConfig:
    baseline_epochs: int = 50
    advanced_epochs: int = 100
    batch_size: int = 32
    learning_rate: float = 0.001
    baseline_learning_rate: float = 0.01
    random_seed: int = 42
    hidden_layers: Tuple[int, ...] = (64, 32, 16)
    dropout_rate: float = 0.2
    l2: float = 1e-4
    test_size: float = 0.2
    validation_size: float = 0.2
    min_samples: int = MIN_TRAINING_SAMPLES

    @classmethod
    def from_settings(cls, settings: Any) -> "TrainingConfig":
        return cls(
            baseline_epochs=settings.baseline_epochs,
            advanced_epochs=settings.advanced_epochs,
            batch_size=settings.train_batch_size,
            learning_rate=settings.learning_rate,
            baseline_learning_rate=settings.baseline_learning_rate,
            random_seed=settings.random_seed,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "baseline_epochs": self.baseline_epochs,
            "advanced_epochs": self.advanced_epochs,
            "batch_size": self.batch_size,
            "learning_rate": self.learning_rate,
            "baseline_learning_rate": self.baseline_learning_rate,
            "random_seed": self.random_seed,
            "hidden_layers": list(self.hidden_layers),
            "dropout_rate": self.dropout_rate,
            "l2": self.l2,
            "test_size": self.test_size,
            "validation_size": self.validation_size,
        }


@dataclass
class TrainingDataset:
    train_X: np.ndarray
    train_y: np.ndarray
    val_X: np.ndarray
    val_y: np.ndarray
    test_X: np.ndarray
    test_y: np.ndarray
    feature_names: List[str]
    frame: pd.DataFrame
    validation_report: ValidationReport
    split_boundary: Optional[str] = None

    @property
    def n_samples(self) -> int:
        return len(self.train_y) + len(self.val_y) + len(self.test_y)


@dataclass
class TrainingResult:
    model_id: str
    model_type: str
    metrics: Dict[str, float]
    runner_up_id: str
    candidates: Dict[str, Dict[str, float]] = field(default_factory=dict)
    comparison: Optional[Dict[str, Any]] = None
    data_version: Optional[str] = None
    validation_report: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "model_type": self.model_type,
            "metrics": self.metrics,
            "runner_up_id": self.runner_up_id,
            "candidates": self.candidates,
            "comparison": self.comparison,
            "data_version": self.data_version,
            "validation_report": self.validation_report,
        }


# ---------------------------------------------------------------------------
# Temporal train/test split (avoids data leakage)
# ---------------------------------------------------------------------------

def temporal_train_test_split(
    df: pd.DataFrame,
    time_col: str = "created_at",
    test_size: float = 0.2,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Split a dataframe by time: first (1-test_size) for train, last test_size for test."""
    df_sorted = df.sort_values(time_col, kind="mergesort").reset_index(drop=True)
    split_idx = int(round(len(df_sorted) * (1 - test_size)))
    split_idx = min(max(split_idx, 1), len(df_sorted) - 1)
    train_df = df_sorted.iloc[:split_idx]
    test_df = df_sorted.iloc[split_idx:]

    logger.info(
        "Temporal split boundary: %s (train: %d rows, test: %d rows)",
        df_sorted[time_col].iloc[split_idx],
        len(train_df),
        len(test_df),
    )
    return train_df, test_df


def _minibatches(n: int, batch_size: int, rng: np.random.Generator):
    order = rng.permutation(n)
    for start in range(0, n, batch_size):
        yield order[start:start + batch_size]


def _epoch_loss(model: Any, X: np.ndarray, y: np.ndarray) -> float:
    proba = model.predict_proba(X)[:, 1]
    return float(log_loss(y, proba, labels=[0, 1]))


class ModelTrainer:
    """Trains, evaluates and promotes candidate models."""

    def __init__(
        self,
        registry: ModelRegistry,
        config: Optional[TrainingConfig] = None,
        extractor: Optional[FeatureExtractor] = None,
        versioner: Optional[DataVersioner] = None,
    ) -> None:
        self.registry = registry
        self.config = config or TrainingConfig()
        self.extractor = extractor or FeatureExtractor()
        self.versioner = versioner
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------
    # Dataset
    # ------------------------------------------------------------------

    def prepare_dataset(
        self,
        leads: Sequence[HistoricalLead],
        label_fn: LabelFn = default_label,
        now: Optional[datetime] = None,
    ) -> TrainingDataset:
        """Extract, label, validate and split historical leads chronologically."""
        now = now or datetime.now(timezone.utc)
        if len(leads) < self.config.min_samples:
            raise ValidationError(
                "Need at least %d historical leads, got %d" % (self.config.min_samples, len(leads))
            )

        frame = self.extractor.extract_many(leads, now)
        labels = []
        for item in leads:
            label = label_fn(item)
            if label not in (0, 1):
                raise ValidationError(
                    "Label for lead %s must be 0 or 1, got %r" % (item.lead.id, label)
                )
            labels.append(int(label))
        frame[LABEL_COLUMN] = labels

        report = validate_dataset(frame[FEATURE_NAMES], labels)

        train_full, test_df = temporal_train_test_split(frame, test_size=self.config.test_size)
        train_df, val_df = temporal_train_test_split(
            train_full, test_size=self.config.validation_size
        )

        return TrainingDataset(
            train_X=train_df[FEATURE_NAMES].to_numpy(dtype=np.float64),
            train_y=train_df[LABEL_COLUMN].to_numpy(dtype=int),
            val_X=val_df[FEATURE_NAMES].to_numpy(dtype=np.float64),
            val_y=val_df[LABEL_COLUMN].to_numpy(dtype=int),
            test_X=test_df[FEATURE_NAMES].to_numpy(dtype=np.float64),
            test_y=test_df[LABEL_COLUMN].to_numpy(dtype=int),
            feature_names=list(FEATURE_NAMES),
            frame=frame,
            validation_report=report,
            split_boundary=str(test_df["created_at"].iloc[0]),
        )

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    def train_baseline(
        self,
        dataset: TrainingDataset,
        cancel_event: Optional[threading.Event] = None,
    ) -> ModelArtifact:
        """Logistic regression: one linear layer, sigmoid output, log loss.

        Plain SGD at a constant ``baseline_learning_rate``.  ``learning_rate``
        is the Adam step size of the advanced model and is too small for
        un-adapted SGD over the same epoch budget.
        """
        cfg = self.config
        model = SGDClassifier(
            loss="log_loss",
            alpha=cfg.l2,
            learning_rate="constant",
            eta0=cfg.baseline_learning_rate,
            random_state=cfg.random_seed,
        )
        rng = np.random.default_rng(cfg.random_seed)

        def step(X: np.ndarray, y: np.ndarray) -> None:
            model.partial_fit(X, y, classes=np.array([0, 1]))

        history = self._fit_epochs("baseline", dataset, cfg.baseline_epochs, step, model, rng, cancel_event)
        return self._build_artifact("baseline", model, dataset, history)

    def train_advanced(
        self,
        dataset: TrainingDataset,
        cancel_event: Optional[threading.Event] = None,
    ) -> ModelArtifact:
        """Feed-forward network (64-32-16, ReLU, Adam) with dropout on the input layer and L2.

        scikit-learn's MLP has no dropout between hidden layers, so dropout is
        applied only to the input features of each mini-batch (inverted
        dropout at ``dropout_rate``).  The hidden layers are regularised by the
        L2 penalty alone.
        """
        cfg = self.config
        model = MLPClassifier(
            hidden_layer_sizes=cfg.hidden_layers,
            activation="relu",
            solver="adam",
            alpha=cfg.l2,
            batch_size=cfg.batch_size,
            learning_rate_init=cfg.learning_rate,
            random_state=cfg.random_seed,
        )
        rng = np.random.default_rng(cfg.random_seed)
        keep = 1.0 - cfg.dropout_rate

        def step(X: np.ndarray, y: np.ndarray) -> None:
            if cfg.dropout_rate > 0:
                mask = rng.random(X.shape) < keep
                X = X * mask / keep
            model.partial_fit(X, y, classes=np.array([0, 1]))

        history = self._fit_epochs("advanced", dataset, cfg.advanced_epochs, step, model, rng, cancel_event)
        return self._build_artifact("advanced", model, dataset, history)

    def _fit_epochs(
        self,
        model_type: str,
        dataset: TrainingDataset,
        epochs: int,
        step: Callable[[np.ndarray, np.ndarray], None],
        model: Any,
        rng: np.random.Generator,
        cancel_event: Optional[threading.Event],
    ) -> List[Dict[str, float]]:
        if len(np.unique(dataset.train_y)) < 2:
            raise TrainingError(
                "Training split contains a single class",
                dataset.validation_report.to_dict(),
            )

        history: List[Dict[str, float]] = []
        X, y = dataset.train_X, dataset.train_y
        for epoch in range(1, epochs + 1):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("%s training cancelled before epoch %d", model_type, epoch)
                raise TrainingCancelled("%s training cancelled at epoch %d" % (model_type, epoch))
            try:
                for idx in _minibatches(len(y), self.config.batch_size, rng):
                    step(X[idx], y[idx])
                loss = _epoch_loss(model, X, y)
            except (ValueError, FloatingPointError) as exc:
                raise TrainingError(
                    "%s training failed at epoch %d: %s" % (model_type, epoch, exc),
                    dataset.validation_report.to_dict(),
                ) from exc
            if not np.isfinite(loss):
                raise TrainingError(
                    "%s training diverged at epoch %d (loss=%r)" % (model_type, epoch, loss),
                    dataset.validation_report.to_dict(),
                )
            entry = {"epoch": epoch, "loss": round(loss, 6)}
            if len(dataset.val_y):
                entry["val_loss"] = round(_epoch_loss(model, dataset.val_X, dataset.val_y), 6)
            history.append(entry)
            if epoch == 1 or epoch % 10 == 0 or epoch == epochs:
                logger.info("%s epoch %d/%d: %s", model_type, epoch, epochs, entry)
        return history

    def _build_artifact(
        self,
        model_type: str,
        model: Any,
        dataset: TrainingDataset,
        history: List[Dict[str, float]],
    ) -> ModelArtifact:
        def evaluate(X: np.ndarray, y: np.ndarray) -> Dict[str, float]:
            if len(y) == 0:
                return classification_metrics([], [])
            return classification_metrics(y, model.predict_proba(X)[:, 1])

        test_metrics = evaluate(dataset.test_X, dataset.test_y)
        now = datetime.now(timezone.utc)
        version = "v" + now.strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:6]

        artifact = ModelArtifact(
            id=f"{model_type}_{version}",
            type=model_type,
            version=version,
            status=STATUS_TRAINED,
            metrics={k: test_metrics[k] for k in ("accuracy", "precision", "recall", "f1")},
            training_date=now.isoformat(),
            feature_names=tuple(dataset.feature_names),
            model=model,
            training_samples=len(dataset.train_y),
            metadata={
                "feature_schema_version": FEATURE_SCHEMA_VERSION,
                "train_metrics": evaluate(dataset.train_X, dataset.train_y),
                "validation_metrics": evaluate(dataset.val_X, dataset.val_y),
                "test_metrics": test_metrics,
                "loss_history": history,
                "split_boundary": dataset.split_boundary,
                "training_config": self.config.to_dict(),
            },
        )
        logger.info("%s model %s test metrics: %s", model_type, artifact.id, dict(artifact.metrics))
        return artifact

    # ------------------------------------------------------------------
    # Selection + full run
    # ------------------------------------------------------------------

    @staticmethod
    def select(baseline: ModelArtifact, advanced: ModelArtifact) -> Tuple[ModelArtifact, ModelArtifact]:
        """Return (winner, runner_up): test accuracy, then F1, then baseline."""
        key_b = (baseline.metrics["accuracy"], baseline.metrics["f1"])
        key_a = (advanced.metrics["accuracy"], advanced.metrics["f1"])
        if key_a > key_b:
            return advanced, baseline
        return baseline, advanced

    def run(
        self,
        leads: Sequence[HistoricalLead],
        label_fn: LabelFn = default_label,
        now: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> TrainingResult:
        """Train both models and promote the better one. Exclusive."""
        if not self._lock.acquire(blocking=False):
            raise TrainingInProgress("A training run is already in progress")
        try:
            return self._run(leads, label_fn, now, cancel_event)
        finally:
            self._lock.release()

    def _run(
        self,
        leads: Sequence[HistoricalLead],
        label_fn: LabelFn,
        now: Optional[datetime],
        cancel_event: Optional[threading.Event],
    ) -> TrainingResult:
        logger.info("Training run started on %d historical leads", len(leads))
        dataset = self.prepare_dataset(leads, label_fn, now)
        report = dataset.validation_report.to_dict()

        data_version = None
        if self.versioner is not None:
            try:
                data_version = self.versioner.save_snapshot(
                    dataset.frame, extra_metadata={"validation_report": report}
                )
            except LeadScoringError:
                logger.exception("Could not save training snapshot (continuing without it)")

        try:
            baseline = self.train_baseline(dataset, cancel_event)
            advanced = self.train_advanced(dataset, cancel_event)
        except TrainingError as exc:
            if not exc.validation_report:
                exc.validation_report = report
            logger.error("Training aborted: %s | validation report: %s", exc, exc.validation_report)
            raise

        if cancel_event is not None and cancel_event.is_set():
            raise TrainingCancelled("Training cancelled before promotion")

        winner, runner_up = self.select(baseline, advanced)
        previous = self.registry.active
        comparison = compare_artifacts(previous, winner) if previous is not None else None

        extra = {"data_snapshot_version": data_version, "validation_report": report}
        winner = replace(winner, metadata={**winner.metadata, **extra, "comparison": comparison})
        runner_up = replace(runner_up, metadata={**runner_up.metadata, **extra})

        self.registry.register(runner_up, STATUS_EVALUATED)
        self.registry.register(winner, STATUS_EVALUATED)
        promoted = self.registry.promote(winner.id)

        logger.info(
            "Training run complete: promoted %s (%s) over %s",
            promoted.id, promoted.type, runner_up.id,
        )
        return TrainingResult(
            model_id=promoted.id,
            model_type=promoted.type,
            metrics=dict(promoted.metrics),
            runner_up_id=runner_up.id,
            candidates={
                baseline.id: dict(baseline.metrics),
                advanced.id: dict(advanced.metrics),
            },
            comparison=comparison,
            data_version=data_version,
            validation_report=report,
        )
