import threading

import pandas as pd
import pytest

from lead_pipeline.data_versioner import DataVersioner
from lead_pipeline.errors import (
    TrainingCancelled,
    TrainingError,
    TrainingInProgress,
    ValidationError,
)
from lead_pipeline import trainer as trainer_module
from lead_pipeline.model_registry import ModelRegistry
from lead_pipeline.trainer import ModelTrainer, temporal_train_test_split


def test_temporal_split_holds_out_most_recent_rows():
    df = pd.DataFrame({
        "created_at": pd.date_range("2024-01-01", periods=10, freq="D", tz="UTC")[::-1],
        "x": range(10),
    })
    train, test = temporal_train_test_split(df, test_size=0.2)
    assert len(train) == 8 and len(test) == 2
    assert train["created_at"].max() < test["created_at"].min()


def test_prepare_dataset_splits_chronologically(synthetic_leads, fast_config, now):
    trainer = ModelTrainer(ModelRegistry(), fast_config)
    dataset = trainer.prepare_dataset(synthetic_leads, now=now)

    assert dataset.n_samples == len(synthetic_leads)
    assert len(dataset.test_y) == 60
    assert len(dataset.val_y) == 48
    assert dataset.train_X.shape[1] == len(dataset.feature_names)

    created = sorted(dataset.frame["created_at"])
    assert dataset.split_boundary == str(created[240])


def test_prepare_dataset_rejects_tiny_or_mislabelled_sets(synthetic_leads, fast_config, now):
    trainer = ModelTrainer(ModelRegistry(), fast_config)
    with pytest.raises(ValidationError):
        trainer.prepare_dataset(synthetic_leads[:5], now=now)
    with pytest.raises(ValidationError):
        trainer.prepare_dataset(synthetic_leads, label_fn=lambda item: 2, now=now)


def test_select_prefers_accuracy_then_f1_then_baseline(artifact_factory):
    baseline = artifact_factory("baseline_x", accuracy=0.8, f1=0.6)

    better = artifact_factory("advanced_x", model_type="advanced", accuracy=0.81, f1=0.1)
    assert ModelTrainer.select(baseline, better)[0] is better

    same_acc_better_f1 = artifact_factory("advanced_y", model_type="advanced", accuracy=0.8, f1=0.7)
    assert ModelTrainer.select(baseline, same_acc_better_f1)[0] is same_acc_better_f1

    full_tie = artifact_factory("advanced_z", model_type="advanced", accuracy=0.8, f1=0.6)
    winner, runner_up = ModelTrainer.select(baseline, full_tie)
    assert winner is baseline and runner_up is full_tie


def test_run_registers_both_and_promotes_winner(trained_registry):
    artifacts = trained_registry.list()
    assert {a.type for a in artifacts} == {"baseline", "advanced"}
    statuses = sorted(a.status for a in artifacts)
    assert statuses == ["active", "evaluated"]

    active = trained_registry.get_active()
    for key in ("train_metrics", "validation_metrics", "test_metrics", "loss_history"):
        assert key in active.metadata
    assert len(active.metadata["loss_history"]) == 3
    assert set(active.metrics) == {"accuracy", "precision", "recall", "f1"}


def test_second_run_retires_previous_and_records_comparison(synthetic_leads, fast_config, now):
    registry = ModelRegistry()
    trainer = ModelTrainer(registry, fast_config)
    first = trainer.run(synthetic_leads, now=now)
    second = trainer.run(synthetic_leads, now=now)

    assert registry.get(first.model_id).status == "retired"
    assert registry.get_active().id == second.model_id
    assert second.comparison["model_a"] == first.model_id
    assert registry.get_active().metadata["comparison"]["model_b"] == second.model_id


def test_run_saves_a_dataset_snapshot(tmp_path, synthetic_leads, fast_config, now):
    versioner = DataVersioner(tmp_path)
    trainer = ModelTrainer(ModelRegistry(), fast_config, versioner=versioner)
    result = trainer.run(synthetic_leads, now=now)

    assert result.data_version is not None
    snapshots = versioner.list_snapshots()
    assert len(snapshots) == 1
    assert snapshots[0]["rows"] == len(synthetic_leads)
    assert len(versioner.load_snapshot(result.data_version)) == len(synthetic_leads)


def test_second_concurrent_run_is_rejected(synthetic_leads, fast_config, now):
    trainer = ModelTrainer(ModelRegistry(), fast_config)
    trainer._lock.acquire()
    try:
        assert trainer.is_running
        with pytest.raises(TrainingInProgress):
            trainer.run(synthetic_leads, now=now)
    finally:
        trainer._lock.release()


def test_cancelled_run_promotes_nothing(synthetic_leads, fast_config, now):
    registry = ModelRegistry()
    trainer = ModelTrainer(registry, fast_config)
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(TrainingCancelled):
        trainer.run(synthetic_leads, now=now, cancel_event=cancel)
    assert registry.list() == []
    assert not trainer.is_running


def test_single_class_training_fails_with_report(synthetic_leads, fast_config, now):
    registry = ModelRegistry()
    trainer = ModelTrainer(registry, fast_config)

    with pytest.raises(TrainingError) as excinfo:
        trainer.run(synthetic_leads, label_fn=lambda item: 0, now=now)
    assert excinfo.value.validation_report["positive_rate"] == 0.0
    assert registry.active is None


def test_cancel_between_epochs_keeps_active_model(registry, synthetic_leads, fast_config, now, monkeypatch):
    cancel = threading.Event()
    epoch_loss = trainer_module._epoch_loss

    def loss_then_cancel(model, X, y):
        cancel.set()
        return epoch_loss(model, X, y)

    monkeypatch.setattr(trainer_module, "_epoch_loss", loss_then_cancel)
    trainer = ModelTrainer(registry, fast_config)

    with pytest.raises(TrainingCancelled, match="epoch 2"):
        trainer.run(synthetic_leads, now=now, cancel_event=cancel)

    assert registry.get_active().id == "baseline_v1"
    assert [a.id for a in registry.list()] == ["baseline_v1"]
    assert not trainer.is_running


def test_failed_run_keeps_active_model(registry, synthetic_leads, fast_config, now):
    trainer = ModelTrainer(registry, fast_config)

    with pytest.raises(TrainingError):
        trainer.run(synthetic_leads, label_fn=lambda item: 1, now=now)

    assert registry.get_active().id == "baseline_v1"
    assert [a.status for a in registry.list()] == ["active"]


def test_baseline_uses_configured_learning_rate(synthetic_leads, fast_config, now):
    fast_config.baseline_learning_rate = 0.05
    trainer = ModelTrainer(ModelRegistry(), fast_config)
    artifact = trainer.train_baseline(trainer.prepare_dataset(synthetic_leads, now=now))

    assert artifact.model.learning_rate == "constant"
    assert artifact.model.eta0 == 0.05
    assert artifact.metadata["training_config"]["baseline_learning_rate"] == 0.05
