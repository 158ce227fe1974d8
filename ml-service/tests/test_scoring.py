from datetime import timedelta

import pytest

from lead_pipeline.errors import NotFoundError, ServiceUnavailable, ValidationError
from lead_pipeline.explainability import ExplainabilityEngine
from lead_pipeline.model_registry import ModelRegistry
from lead_pipeline.scoring import (
    USAGE_ERROR,
    USAGE_RESPONSE_TIME,
    ScoringService,
    align_features,
    calculate_confidence,
)
from lead_pipeline.feature_extractor import extract


@pytest.fixture
def service(registry, lead_store, score_store, metric_store, now):
    return ScoringService(registry, lead_store, score_store, metric_store, clock=lambda: now)


@pytest.mark.parametrize(
    "score,expected",
    [(0.5, 0.0), (1.0, 1.0), (0.0, 1.0), (0.75, 0.5), (0.2, 0.6)],
)
def test_confidence(score, expected):
    assert calculate_confidence(score) == pytest.approx(expected)


def test_score_stored_lead(service, score_store, synthetic_leads):
    result = service.score(synthetic_leads[0].lead.id)

    assert 0.0 <= result.score <= 1.0
    assert result.confidence == pytest.approx(calculate_confidence(result.score))
    assert result.model_version == "baseline_v1"
    records = score_store.query()
    assert len(records) == 1
    assert records[0].model_id == "baseline_v1"
    assert records[0].features["days_since_last_interaction"] >= 0


def test_scoring_is_deterministic(service, engaged_lead, now):
    first = service.score(engaged_lead, now)
    second = service.score(engaged_lead, now)
    assert first.score == second.score


def test_score_inline_lead_without_history(service, score_store):
    result = service.score({
        "lead": {"id": "draft-1", "created_at": "2024-05-01T00:00:00Z"},
    })
    assert 0.0 <= result.score <= 1.0
    assert score_store.query()[0].features["days_since_last_interaction"] == 999


def test_no_active_model_is_service_unavailable(lead_store, score_store, metric_store, synthetic_leads):
    service = ScoringService(ModelRegistry(), lead_store, score_store, metric_store)
    with pytest.raises(ServiceUnavailable):
        service.score(synthetic_leads[0].lead.id)
    assert score_store.query() == []
    errors = metric_store.query(metric_name=USAGE_ERROR)
    assert [r.value for r in errors] == [1.0]
    assert errors[0].model_id == "none"


def test_unknown_lead_is_not_found_and_not_counted_as_error(service, metric_store):
    with pytest.raises(NotFoundError):
        service.score(123456)
    assert metric_store.query(metric_name=USAGE_ERROR) == []


def test_usage_metrics_written_per_call(service, metric_store, synthetic_leads):
    service.score(synthetic_leads[0].lead.id)
    service.score_batch([item.lead.id for item in synthetic_leads[1:4]])

    assert [r.value for r in metric_store.query(metric_name=USAGE_ERROR)] == [0.0, 0.0]
    times = metric_store.query(metric_name=USAGE_RESPONSE_TIME)
    assert len(times) == 2
    assert all(t.value >= 0 for t in times)


def test_batch_scores_every_lead_with_one_model(service, score_store, synthetic_leads):
    ids = [item.lead.id for item in synthetic_leads[:50]]
    results = service.score_batch(ids)

    assert [r.lead_id for r in results] == ids
    assert {r.model_version for r in results} == {"baseline_v1"}
    assert len(score_store.query()) == 50


def test_batch_of_51_is_rejected_before_scoring(service, score_store, synthetic_leads):
    ids = [item.lead.id for item in synthetic_leads[:51]]
    with pytest.raises(ValidationError):
        service.score_batch(ids)
    assert score_store.query() == []


def test_empty_batch_is_rejected(service):
    with pytest.raises(ValidationError):
        service.score_batch([])


def test_batch_with_unknown_lead_scores_nothing(service, score_store, synthetic_leads):
    ids = [synthetic_leads[0].lead.id, 999999]
    with pytest.raises(NotFoundError):
        service.score_batch(ids)
    assert score_store.query() == []


def test_promotion_between_calls_switches_model(service, registry, artifact_factory, synthetic_leads):
    lead_id = synthetic_leads[0].lead.id
    assert service.score(lead_id).model_version == "baseline_v1"
    registry.promote(artifact_factory("advanced_v2", model_type="advanced"))
    assert service.score(lead_id).model_version == "advanced_v2"


def test_align_features_zero_fills_unknown_names(engaged_lead, now):
    vector = extract(engaged_lead.lead, engaged_lead.interactions, engaged_lead.property_prefs, now)
    aligned = align_features(["avg_budget", "retired_feature"], vector)
    assert aligned == [pytest.approx(0.45), 0.0]


def test_trained_model_scores_in_range(trained_registry, lead_store, score_store, synthetic_leads, now):
    service = ScoringService(trained_registry, lead_store, score_store)
    for item in synthetic_leads[:20]:
        result = service.score(item, now)
        assert 0.0 <= result.score <= 1.0
        assert 0.0 <= result.confidence <= 1.0


def test_naive_now_is_stored_as_utc(service, score_store, engaged_lead, synthetic_leads, now):
    service.score(engaged_lead, now.replace(tzinfo=None))
    service.score_batch([synthetic_leads[0].lead.id], now.replace(tzinfo=None))

    records = score_store.query(start=now - timedelta(hours=1), end=now)
    assert len(records) == 2
    assert all(r.scored_at == now and r.scored_at.tzinfo is not None for r in records)

    explanation = ExplainabilityEngine(score_store, clock=lambda: now).explain_record(records[0])
    assert explanation.score_distribution["total"] == 2
