import math
from datetime import timedelta

import pytest

from lead_pipeline.errors import ValidationError
from lead_pipeline.feature_extractor import (
    FeatureExtractor,
    email_domain_flags,
    engagement_score,
    extract,
    interaction_frequency,
)
from lead_pipeline.feature_map import FEATURE_NAMES, NO_INTERACTION_DAYS
from lead_pipeline.records import Interaction


def test_every_feature_present_and_finite(synthetic_leads, now):
    for item in synthetic_leads[:50]:
        vector = extract(item.lead, item.interactions, item.property_prefs, now)
        assert set(vector.raw) == set(FEATURE_NAMES)
        assert set(vector.normalized) == set(FEATURE_NAMES)
        assert all(math.isfinite(v) for v in vector.raw.values())
        assert all(0.0 <= v <= 1.0 for v in vector.normalized.values())


def test_empty_history_uses_defaults(bare_lead, now):
    vector = extract(bare_lead.lead, [], [], now)

    assert vector.raw["total_interactions"] == 0
    assert vector.raw["days_since_last_interaction"] == NO_INTERACTION_DAYS
    assert vector.normalized["days_since_last_interaction"] == 1.0
    assert vector.raw["avg_budget"] == 0
    assert vector.raw["engagement_score"] == 0
    assert vector.raw["has_email"] == 0
    assert vector.raw["is_corporate"] == 0
    assert vector.raw["lead_age"] == 10
    assert vector.raw["profile_completeness"] == pytest.approx(0.2)


def test_engaged_lead_features(engaged_lead, now):
    item = engaged_lead
    vector = extract(item.lead, item.interactions, item.property_prefs, now)
    raw = vector.raw

    assert raw["total_interactions"] == 4
    assert raw["email_interactions"] == 1
    assert raw["phone_interactions"] == 1
    assert raw["meeting_interactions"] == 1
    assert raw["website_interactions"] == 1
    assert raw["days_since_last_interaction"] == 1
    assert raw["interaction_span_days"] == 19
    assert raw["avg_budget"] == pytest.approx(450_000)
    assert raw["property_count"] == 2
    assert raw["avg_bedrooms"] == pytest.approx(3.5)
    assert raw["avg_bathrooms"] == pytest.approx(2.0)
    assert raw["profile_completeness"] == 1.0
    assert raw["is_corporate"] == 1.0
    assert raw["is_active"] == 1.0
    assert vector.normalized["avg_budget"] == pytest.approx(0.45)


def test_extraction_is_deterministic_for_fixed_now(engaged_lead, now):
    item = engaged_lead
    first = extract(item.lead, item.interactions, item.property_prefs, now)
    second = extract(item.lead, list(reversed(item.interactions)), item.property_prefs, now)
    assert first.raw == second.raw
    assert first.normalized == second.normalized


def test_extract_requires_now(bare_lead):
    with pytest.raises(ValidationError):
        extract(bare_lead.lead, [], [], None)


def test_engagement_subscores_are_capped(now):
    # 40 interactions over 2 days in 4 channels: every sub-score hits its cap.
    interactions = [
        Interaction(["email", "phone", "meeting", "website"][i % 4], now - timedelta(hours=i))
        for i in range(40)
    ]
    ordered = sorted(interactions, key=lambda i: i.created_at)
    assert engagement_score(ordered, now) == pytest.approx(1.0)

    single = [Interaction("email", now - timedelta(days=90))]
    # total 0.1, nothing recent, one channel 0.2, no frequency
    assert engagement_score(single, now) == pytest.approx(0.3)


def test_interaction_frequency_needs_two_points(now):
    assert interaction_frequency([Interaction("email", now)]) == 0.0
    pair = [Interaction("email", now - timedelta(days=2)), Interaction("phone", now)]
    assert interaction_frequency(pair) == pytest.approx(1.0)


@pytest.mark.parametrize(
    "email,flag",
    [
        ("a@gmail.com", "is_gmail"),
        ("a@YAHOO.com", "is_yahoo"),
        ("a@hotmail.com", "is_hotmail"),
        ("a@acme-realty.com", "is_corporate"),
    ],
)
def test_email_domain_flags(email, flag):
    flags = email_domain_flags(email)
    assert flags[flag] == 1.0
    assert sum(flags.values()) == 1.0


def test_email_domain_flags_without_domain():
    assert sum(email_domain_flags("not-an-email").values()) == 0.0
    assert sum(email_domain_flags(None).values()) == 0.0


def test_extract_many_builds_training_frame(synthetic_leads, now):
    frame = FeatureExtractor().extract_many(synthetic_leads[:20], now)
    assert len(frame) == 20
    assert list(frame.columns) == ["lead_id", "created_at"] + FEATURE_NAMES
    assert not frame[FEATURE_NAMES].isna().any().any()
