"""
Single source of truth for feature names between the extractor, the trainer
and the scoring service.

Feature Architecture (v1 — 25 features):
-----------------------------------------
Group A — Profile            (from the lead record itself)
Group B — Interaction        (from the lead's interaction history)
Group C — Property Prefs     (from the lead's property preferences)
Group D — Email Domain       (categorical flags from the email address)

NORMALIZATION_DIVISORS  — value / divisor, clamped to [0, 1], is the model input
BOOLEAN_FEATURES        — already {0, 1}; passed through unchanged
"""

from __future__ import annotations

from typing import Dict, List

FEATURE_SCHEMA_VERSION = 1

# Recency sentinel for a lead that has never interacted.
NO_INTERACTION_DAYS = 999.0

# ---------------------------------------------------------------------------
# The canonical features the models expect (sorted alphabetically).
# ---------------------------------------------------------------------------
FEATURE_NAMES: List[str] = sorted([
    "profile_completeness",
    "lead_age",
    "has_email",
    "has_phone",
    "days_since_update",
    "is_active",                    # profile updated within the last 30 days
    "total_interactions",
    "email_interactions",
    "phone_interactions",
    "meeting_interactions",
    "website_interactions",
    "days_since_last_interaction",  # 999 when there is no history
    "interaction_span_days",
    "interaction_frequency",        # interactions per day across the span
    "avg_response_time_hours",      # mean gap between consecutive interactions
    "engagement_score",
    "avg_budget",
    "property_count",
    "avg_bedrooms",
    "avg_bathrooms",
    "avg_square_feet",
    "is_gmail",
    "is_yahoo",
    "is_hotmail",
    "is_corporate",
])

FEATURE_GROUPS: Dict[str, List[str]] = {
    "A_profile": [
        "profile_completeness",
        "lead_age",
        "has_email",
        "has_phone",
        "days_since_update",
        "is_active",
    ],
    "B_interaction": [
        "total_interactions",
        "email_interactions",
        "phone_interactions",
        "meeting_interactions",
        "website_interactions",
        "days_since_last_interaction",
        "interaction_span_days",
        "interaction_frequency",
        "avg_response_time_hours",
        "engagement_score",
    ],
    "C_property_prefs": [
        "avg_budget",
        "property_count",
        "avg_bedrooms",
        "avg_bathrooms",
        "avg_square_feet",
    ],
    "D_email_domain": [
        "is_gmail",
        "is_yahoo",
        "is_hotmail",
        "is_corporate",
    ],
}

INTERACTION_FEATURES: List[str] = FEATURE_GROUPS["B_interaction"]

BOOLEAN_FEATURES: List[str] = [
    "has_email",
    "has_phone",
    "is_active",
    "is_gmail",
    "is_yahoo",
    "is_hotmail",
    "is_corporate",
]

NORMALIZATION_DIVISORS: Dict[str, float] = {
    "profile_completeness": 1.0,
    "lead_age": 365.0,
    "days_since_update": 365.0,
    "total_interactions": 50.0,
    "email_interactions": 20.0,
    "phone_interactions": 10.0,
    "meeting_interactions": 5.0,
    "website_interactions": 20.0,
    "days_since_last_interaction": 365.0,  # sentinel clamps to 1.0
    "interaction_span_days": 365.0,
    "interaction_frequency": 10.0,
    "avg_response_time_hours": 168.0,      # one week
    "engagement_score": 1.0,
    "avg_budget": 1_000_000.0,
    "property_count": 10.0,
    "avg_bedrooms": 10.0,
    "avg_bathrooms": 5.0,
    "avg_square_feet": 10_000.0,
}

# Interaction type -> per-channel count feature.
CHANNEL_FEATURES: Dict[str, str] = {
    "email": "email_interactions",
    "phone": "phone_interactions",
    "call": "phone_interactions",
    "meeting": "meeting_interactions",
    "website": "website_interactions",
    "website_visit": "website_interactions",
}

FREE_MAIL_DOMAINS: Dict[str, str] = {
    "gmail.com": "is_gmail",
    "yahoo.com": "is_yahoo",
    "hotmail.com": "is_hotmail",
    "outlook.com": "is_hotmail",
    "live.com": "is_hotmail",
}

def normalize_feature(name: str, value: float) -> float:
    """Scale one raw feature value into the model's [0, 1] input range."""
    if name in BOOLEAN_FEATURES:
        return 1.0 if value else 0.0
    divisor = NORMALIZATION_DIVISORS.get(name, 1.0)
    scaled = value / divisor
    return max(0.0, min(1.0, scaled))
