"""
Feature Extractor — lead snapshot + history -> LeadFeatureVector.

Every computation takes ``now`` explicitly so a vector is fully determined by
its inputs.  Missing history never raises: counts fall to zero and recency
falls to the ``NO_INTERACTION_DAYS`` sentinel.

Engagement score:
    total      = 0.1 per interaction              (capped at 0.25)
    recent     = 0.3 per interaction in last 30d  (capped at 0.25)
    diversity  = 0.2 per distinct channel         (capped at 0.25)
    frequency  = 0.4 x interactions per day       (capped at 0.25)
    engagement = clamp(sum, 0, 1)
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

import pandas as pd

from .errors import ValidationError
from .feature_map import (
    CHANNEL_FEATURES,
    FEATURE_NAMES,
    FREE_MAIL_DOMAINS,
    NO_INTERACTION_DAYS,
    normalize_feature,
)
from .records import (
    HistoricalLead,
    Interaction,
    LeadFeatureVector,
    LeadSnapshot,
    PropertyPref,
    to_utc,
)

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("first_name", "last_name", "email", "phone", "address")
RECENT_WINDOW_DAYS = 30
ACTIVE_WINDOW_DAYS = 30

ENGAGEMENT_WEIGHTS: Dict[str, float] = {
    "total": 0.1,
    "recent": 0.3,
    "diversity": 0.2,
    "frequency": 0.4,
}
ENGAGEMENT_SUBSCORE_CAP = 0.25

_SECONDS_PER_DAY = 86400.0


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------

def _days_between(earlier: datetime, later: datetime) -> float:
    """Whole days from *earlier* to *later*; never negative."""
    seconds = (later - earlier).total_seconds()
    return float(max(0, math.floor(seconds / _SECONDS_PER_DAY)))


def _filled(value: Optional[str]) -> bool:
    return bool(value and str(value).strip())


def _mean(values: Iterable[Optional[float]]) -> float:
    present = [v for v in values if v is not None and math.isfinite(v)]
    return sum(present) / len(present) if present else 0.0


def profile_completeness(lead: LeadSnapshot) -> float:
    filled = sum(1 for f in PROFILE_FIELDS if _filled(getattr(lead, f)))
    return filled / len(PROFILE_FIELDS)


def interaction_frequency(ordered: Sequence[Interaction]) -> float:
    """Interactions per day between first and last; 0 with fewer than two."""
    if len(ordered) < 2:
        return 0.0
    span_days = (ordered[-1].created_at - ordered[0].created_at).total_seconds() / _SECONDS_PER_DAY
    return len(ordered) / span_days if span_days > 0 else float(len(ordered))


def average_gap_hours(ordered: Sequence[Interaction]) -> float:
    if len(ordered) < 2:
        return 0.0
    gaps = [
        (b.created_at - a.created_at).total_seconds() / 3600.0
        for a, b in zip(ordered, ordered[1:])
    ]
    return sum(gaps) / len(gaps)


def engagement_score(ordered: Sequence[Interaction], now: datetime) -> float:
    if not ordered:
        return 0.0
    recent = [
        i for i in ordered
        if 0 <= (now - i.created_at).total_seconds() <= RECENT_WINDOW_DAYS * _SECONDS_PER_DAY
    ]
    raw = {
        "total": len(ordered),
        "recent": len(recent),
        "diversity": len({i.type for i in ordered}),
        "frequency": interaction_frequency(ordered),
    }
    total = sum(
        min(raw[name] * weight, ENGAGEMENT_SUBSCORE_CAP)
        for name, weight in ENGAGEMENT_WEIGHTS.items()
    )
    return max(0.0, min(1.0, total))


def email_domain_flags(email: Optional[str]) -> Dict[str, float]:
    flags = {"is_gmail": 0.0, "is_yahoo": 0.0, "is_hotmail": 0.0, "is_corporate": 0.0}
    if not _filled(email) or "@" not in email:
        return flags
    domain = email.rsplit("@", 1)[1].strip().lower()
    if not domain:
        return flags
    flag = FREE_MAIL_DOMAINS.get(domain)
    if flag:
        flags[flag] = 1.0
    else:
        flags["is_corporate"] = 1.0
    return flags


def _budget_midpoint(pref: PropertyPref) -> Optional[float]:
    bounds = [v for v in (pref.price_range_min, pref.price_range_max) if v is not None]
    if not bounds:
        return None
    return sum(bounds) / len(bounds)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def extract(
    lead: LeadSnapshot,
    interactions: Sequence[Interaction],
    property_prefs: Sequence[PropertyPref],
    now: datetime,
) -> LeadFeatureVector:
    """Compute every feature in ``FEATURE_NAMES`` for one lead as of *now*."""
    now = to_utc(now)
    if now is None:
        raise ValidationError("extract() requires an explicit 'now'")

    ordered: List[Interaction] = sorted(interactions or [], key=lambda i: i.created_at)
    prefs = list(property_prefs or [])

    raw: Dict[str, float] = {name: 0.0 for name in FEATURE_NAMES}

    # A: profile
    raw["profile_completeness"] = profile_completeness(lead)
    raw["lead_age"] = _days_between(lead.created_at, now)
    raw["has_email"] = 1.0 if _filled(lead.email) else 0.0
    raw["has_phone"] = 1.0 if _filled(lead.phone) else 0.0
    updated_at = lead.updated_at or lead.created_at
    raw["days_since_update"] = _days_between(updated_at, now)
    raw["is_active"] = 1.0 if raw["days_since_update"] < ACTIVE_WINDOW_DAYS else 0.0

    # B: interactions
    raw["total_interactions"] = float(len(ordered))
    for interaction in ordered:
        channel = CHANNEL_FEATURES.get(interaction.type)
        if channel:
            raw[channel] += 1.0
    if ordered:
        raw["days_since_last_interaction"] = _days_between(ordered[-1].created_at, now)
        raw["interaction_span_days"] = _days_between(ordered[0].created_at, ordered[-1].created_at)
    else:
        raw["days_since_last_interaction"] = NO_INTERACTION_DAYS
    raw["interaction_frequency"] = interaction_frequency(ordered)
    raw["avg_response_time_hours"] = average_gap_hours(ordered)
    raw["engagement_score"] = engagement_score(ordered, now)

    # C: property preferences
    raw["avg_budget"] = _mean(_budget_midpoint(p) for p in prefs)
    raw["property_count"] = float(len(prefs))
    raw["avg_bedrooms"] = _mean(p.bedrooms for p in prefs)
    raw["avg_bathrooms"] = _mean(p.bathrooms for p in prefs)
    raw["avg_square_feet"] = _mean(p.square_feet for p in prefs)

    # D: email domain
    raw.update(email_domain_flags(lead.email))

    for name, value in raw.items():
        if not math.isfinite(value):
            logger.warning("Non-finite value for %s on lead %s; using 0", name, lead.id)
            raw[name] = 0.0

    normalized = {name: normalize_feature(name, raw[name]) for name in FEATURE_NAMES}
    return LeadFeatureVector(raw=raw, normalized=normalized)


class FeatureExtractor:
    """Thin object wrapper so the extractor can be injected and swapped."""

    feature_names: List[str] = FEATURE_NAMES

    def extract(
        self,
        lead: LeadSnapshot,
        interactions: Sequence[Interaction],
        property_prefs: Sequence[PropertyPref],
        now: datetime,
    ) -> LeadFeatureVector:
        return extract(lead, interactions, property_prefs, now)

    def extract_many(self, leads: Sequence[HistoricalLead], now: datetime) -> pd.DataFrame:
        """Bulk extraction for training: one row of normalized features per lead.

        The frame also carries ``lead_id`` and ``created_at`` so callers can
        split chronologically without re-reading the snapshots.
        """
        rows = []
        for item in leads:
            vector = extract(item.lead, item.interactions, item.property_prefs, now)
            row = dict(vector.normalized)
            row["lead_id"] = item.lead.id
            row["created_at"] = item.lead.created_at
            rows.append(row)
        columns = ["lead_id", "created_at"] + FEATURE_NAMES
        df = pd.DataFrame(rows, columns=columns)
        logger.info("Extracted features for %d leads (%d features)", len(df), len(FEATURE_NAMES))
        return df
