from datetime import datetime, timedelta, timezone

import numpy as np
import pytest
from sklearn.linear_model import LogisticRegression

from lead_pipeline.feature_map import FEATURE_NAMES
from lead_pipeline.model_registry import ModelArtifact, ModelRegistry
from lead_pipeline.records import HistoricalLead, Interaction, LeadSnapshot, PropertyPref
from lead_pipeline.stores import (
    InMemoryAlertStore,
    InMemoryLeadStore,
    InMemoryMetricStore,
    InMemoryScoreStore,
)
from lead_pipeline.synthetic import generate_leads
from lead_pipeline.trainer import ModelTrainer, TrainingConfig

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture(scope="session")
def synthetic_leads():
    return generate_leads(300, NOW, seed=7)


@pytest.fixture
def fast_config():
    return TrainingConfig(baseline_epochs=3, advanced_epochs=3, batch_size=32)


@pytest.fixture(scope="session")
def fitted_model():
    """A small logistic regression over the full feature width."""
    rng = np.random.default_rng(0)
    X = rng.random((200, len(FEATURE_NAMES)))
    y = (X[:, 0] + X[:, 1] > 1.0).astype(int)
    return LogisticRegression().fit(X, y)


def make_artifact(
    artifact_id,
    fitted,
    model_type="baseline",
    accuracy=0.8,
    f1=0.7,
    training_date="2024-05-01T00:00:00+00:00",
    **overrides,
):
    fields = dict(
        id=artifact_id,
        type=model_type,
        version=artifact_id,
        status="trained",
        metrics={"accuracy": accuracy, "precision": 0.7, "recall": 0.7, "f1": f1},
        training_date=training_date,
        feature_names=tuple(FEATURE_NAMES),
        model=fitted,
        training_samples=100,
    )
    fields.update(overrides)
    return ModelArtifact(**fields)


@pytest.fixture
def artifact_factory(fitted_model):
    def factory(artifact_id, **kwargs):
        return make_artifact(artifact_id, fitted_model, **kwargs)

    return factory


@pytest.fixture(scope="session")
def trained_registry(synthetic_leads):
    """Registry holding one real training run (both candidates, winner active)."""
    registry = ModelRegistry()
    trainer = ModelTrainer(registry, TrainingConfig(baseline_epochs=3, advanced_epochs=3))
    trainer.run(synthetic_leads, now=NOW)
    return registry


@pytest.fixture
def registry(artifact_factory):
    """In-memory registry with one active baseline model."""
    registry = ModelRegistry()
    registry.promote(artifact_factory("baseline_v1"))
    return registry


@pytest.fixture
def lead_store(synthetic_leads):
    return InMemoryLeadStore(synthetic_leads)


@pytest.fixture
def score_store():
    return InMemoryScoreStore()


@pytest.fixture
def metric_store():
    return InMemoryMetricStore()


@pytest.fixture
def alert_store():
    return InMemoryAlertStore()


@pytest.fixture
def bare_lead():
    """No interactions, no budget, no email."""
    return HistoricalLead(
        lead=LeadSnapshot(id=9001, created_at=NOW - timedelta(days=10), first_name="Pat"),
    )


@pytest.fixture
def engaged_lead():
    created = NOW - timedelta(days=60)
    return HistoricalLead(
        lead=LeadSnapshot(
            id=9002,
            created_at=created,
            first_name="Jane",
            last_name="Doe",
            email="jane@acme-realty.com",
            phone="+15550000001",
            address="1 Main St",
            status="contacted",
            updated_at=NOW - timedelta(days=2),
        ),
        interactions=[
            Interaction("email", NOW - timedelta(days=20)),
            Interaction("phone", NOW - timedelta(days=10)),
            Interaction("meeting", NOW - timedelta(days=5)),
            Interaction("website_visit", NOW - timedelta(days=1)),
        ],
        property_prefs=[
            PropertyPref(price_range_min=400_000, price_range_max=600_000, bedrooms=3, bathrooms=2),
            PropertyPref(price_range_min=300_000, price_range_max=500_000, bedrooms=4),
        ],
    )
