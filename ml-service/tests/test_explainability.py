from datetime import timedelta

import pytest

from lead_pipeline.explainability import ExplainabilityEngine, ImportanceTable
from lead_pipeline.feature_extractor import extract
from lead_pipeline.feature_map import INTERACTION_FEATURES
from lead_pipeline.records import ScoreRecord


def _vector(item, now):
    return extract(item.lead, item.interactions, item.property_prefs, now)


def _record(lead_id, score, features, scored_at):
    return ScoreRecord(
        lead_id=lead_id,
        model_id="baseline_v1",
        model_version="v1",
        score=score,
        confidence=abs(score - 0.5) * 2,
        features_used=[],
        features=features,
        scored_at=scored_at,
    )


def test_contributions_sum_to_one(engaged_lead, now):
    contributions = ExplainabilityEngine.calculate_feature_contributions(_vector(engaged_lead, now).raw)
    assert contributions["total"] > 0
    assert sum(contributions["normalized"].values()) == pytest.approx(1.0, abs=1e-9)


def test_zero_total_contributions_are_all_zero():
    contributions = ExplainabilityEngine.calculate_feature_contributions(
        {"total_interactions": 0.0, "engagement_score": 0.0}
    )
    assert contributions["total"] == 0
    assert set(contributions["normalized"].values()) == {0.0}


def test_top_factors_follow_score_direction(engaged_lead, now):
    engine = ExplainabilityEngine()
    features = _vector(engaged_lead, now).raw

    high = engine.identify_top_factors(features, 0.9)
    assert high
    assert len(high) <= 5
    assert all(abs(f.impact) > 0.1 for f in high)
    assert [abs(f.impact) for f in high] == sorted((abs(f.impact) for f in high), reverse=True)

    low = engine.identify_top_factors(features, 0.1)
    assert {f.feature for f in low} == {f.feature for f in high}
    assert all(f.direction == "negative" for f in low if f.feature != "days_since_last_interaction")


def test_neutral_score_has_no_top_factors(engaged_lead, now):
    assert ExplainabilityEngine().identify_top_factors(_vector(engaged_lead, now).raw, 0.5) == []


def test_bare_lead_explanation_excludes_interaction_features(bare_lead, now):
    vector = _vector(bare_lead, now)
    assert vector.raw["days_since_last_interaction"] == 999

    explanation = ExplainabilityEngine().explain(bare_lead.lead.id, 0.2, vector, now)

    top = {f.feature for f in explanation.top_factors}
    assert not top & set(INTERACTION_FEATURES)
    messages = [r.message for r in explanation.recommendations]
    assert any("re-qualification" in m for m in messages)
    assert any("re-engagement" in m for m in messages)
    assert any("gather more data" in m for m in messages)


@pytest.mark.parametrize(
    "score,priority",
    [(0.95, "high"), (0.7, "medium"), (0.8, "medium"), (0.5, None), (0.25, "low")],
)
def test_score_band_recommendation(score, priority):
    features = {"days_since_last_interaction": 1.0, "total_interactions": 10.0}
    recs = ExplainabilityEngine.generate_recommendations(score, features)
    if priority is None:
        assert recs == []
    else:
        assert len(recs) == 1
        assert recs[0].priority == priority


def test_similar_leads_uses_latest_record_per_lead(score_store, now):
    target = {"total_interactions": 5.0, "avg_budget": 400_000.0, "lead_age": 30.0}
    score_store.write(_record(2, 0.4, {**target, "total_interactions": 6.0}, now - timedelta(days=3)))
    score_store.write(_record(2, 0.6, {**target, "total_interactions": 5.0}, now - timedelta(days=1)))
    score_store.write(_record(3, 0.7, {**target, "avg_budget": 500_000.0}, now - timedelta(days=2)))
    score_store.write(_record(4, 0.9, target, now - timedelta(days=45)))
    score_store.write(_record(1, 0.5, target, now - timedelta(days=1)))

    similar = ExplainabilityEngine(score_store).find_similar_leads(1, target, now)

    assert [s.lead_id for s in similar] == [2, 3]
    assert similar[0].score == 0.6
    assert similar[0].distance == 0.0


def test_explain_record_includes_distribution(score_store, engaged_lead, now):
    features = _vector(engaged_lead, now).raw
    for i, score in enumerate((0.1, 0.3, 0.9, 0.95)):
        score_store.write(_record(100 + i, score, features, now - timedelta(hours=i + 1)))

    engine = ExplainabilityEngine(score_store, clock=lambda: now)
    explanation = engine.explain_record(score_store.query(lead_id=102)[0]).to_dict()

    buckets = {b["range"]: b["count"] for b in explanation["score_distribution"]["buckets"]}
    assert buckets == {"0.0-0.2": 1, "0.2-0.4": 1, "0.4-0.6": 0, "0.6-0.8": 0, "0.8-1.0": 2}
    assert explanation["model_version"] == "v1"
    assert explanation["importance_table_version"] == "v1"
    assert len(explanation["similar_leads"]) == 3


def test_importance_table_is_swappable(engaged_lead, now):
    engine = ExplainabilityEngine()
    engine.set_importance_table(ImportanceTable("v2", {"avg_budget": 1.0}, default_weight=0.0))

    factors = engine.identify_top_factors(_vector(engaged_lead, now).raw, 0.9)
    assert [f.feature for f in factors] == ["avg_budget"]
    analysis = engine.feature_importance_analysis(now)
    assert analysis["version"] == "v2"
    assert analysis["top_features"][0]["feature"] == "avg_budget"


def test_distribution_bucket_edges_belong_to_upper_bucket(score_store, now):
    for i, score in enumerate((0.0, 0.2, 0.4, 0.6, 0.8, 1.0)):
        score_store.write(_record(200 + i, score, {}, now - timedelta(hours=1)))

    distribution = ExplainabilityEngine(score_store).score_distribution(now)

    buckets = {b["range"]: b["count"] for b in distribution["buckets"]}
    assert buckets == {"0.0-0.2": 1, "0.2-0.4": 1, "0.4-0.6": 1, "0.6-0.8": 1, "0.8-1.0": 2}
