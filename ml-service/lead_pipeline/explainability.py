"""
Explainability Engine — why a lead got its score, and what to do next.

Attribution uses a static, versioned importance table rather than the live
model's parameters; neither model type exposes a native per-feature
attribution, so the table is an explicit, swappable approximation:

    impact        = weight x normalize(value) x sign(score - 0.5)
    top factors   = |impact| > 0.1, by magnitude, at most 5
    contributions = per-feature heuristics, normalized to sum to 1
    similar leads = L1 over raw (total_interactions, avg_budget, lead_age)
                    against other leads scored in the last 30 days
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .feature_map import normalize_feature
from .records import LeadFeatureVector, LeadId, ScoreRecord
from .scoring import calculate_confidence
from .stores import ScoreStore

logger = logging.getLogger(__name__)

IMPACT_THRESHOLD = 0.1
MAX_TOP_FACTORS = 5
MAX_SIMILAR_LEADS = 5
SIMILAR_WINDOW_DAYS = 30
DISTRIBUTION_WINDOW_DAYS = 7
SIMILARITY_FEATURES = ("total_interactions", "avg_budget", "lead_age")
DISTRIBUTION_BUCKETS = ("0.0-0.2", "0.2-0.4", "0.4-0.6", "0.6-0.8", "0.8-1.0")


# ---------------------------------------------------------------------------
# Importance table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ImportanceTable:
    version: str
    weights: Mapping[str, float]
    default_weight: float = 0.1

    def weight(self, feature: str) -> float:
        return self.weights.get(feature, self.default_weight)


DEFAULT_IMPORTANCE_TABLE = ImportanceTable(
    version="v1",
    weights={
        "total_interactions": 0.25,
        "email_interactions": 0.15,
        "phone_interactions": 0.20,
        "meeting_interactions": 0.25,
        "days_since_last_interaction": -0.15,  # older activity is worth less
        "engagement_score": 0.30,
        "avg_budget": 0.20,
        "property_count": 0.15,
        "lead_age": 0.10,
        "profile_completeness": 0.15,
        "has_email": 0.10,
        "has_phone": 0.10,
    },
)

_NORMALIZERS: Dict[str, Callable[[float], float]] = {
    "total_interactions": lambda v: min(v / 50.0, 1.0),
    "email_interactions": lambda v: min(v / 20.0, 1.0),
    "phone_interactions": lambda v: min(v / 10.0, 1.0),
    "meeting_interactions": lambda v: min(v / 5.0, 1.0),
    "days_since_last_interaction": lambda v: max(0.0, 1.0 - v / 90.0),
    "engagement_score": lambda v: v,
    "avg_budget": lambda v: min(v / 1_000_000.0, 1.0),
    "property_count": lambda v: min(v / 10.0, 1.0),
    "lead_age": lambda v: min(v / 365.0, 1.0),
    "profile_completeness": lambda v: v,
    "has_email": lambda v: v,
    "has_phone": lambda v: v,
}

_CONTRIBUTIONS: Dict[str, Callable[[float], float]] = {
    "total_interactions": lambda v: v * 0.1,
    "email_interactions": lambda v: v * 0.05,
    "phone_interactions": lambda v: v * 0.08,
    "meeting_interactions": lambda v: v * 0.15,
    "days_since_last_interaction": lambda v: max(0.0, 30.0 - v) * 0.02,
    "engagement_score": lambda v: v * 0.2,
    "avg_budget": lambda v: min(v / 100_000.0, 1.0) * 0.15,
    "property_count": lambda v: min(v / 5.0, 1.0) * 0.1,
    "lead_age": lambda v: min(v / 30.0, 1.0) * 0.05,
    "profile_completeness": lambda v: v * 0.12,
    "has_email": lambda v: v * 0.08,
    "has_phone": lambda v: v * 0.08,
}


def normalize_value(feature: str, value: float) -> float:
    normalizer = _NORMALIZERS.get(feature)
    if normalizer is None:
        return normalize_feature(feature, value)
    return normalizer(value)


def _sign(x: float) -> float:
    return 0.0 if x == 0 else math.copysign(1.0, x)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class TopFactor:
    feature: str
    value: float
    impact: float
    direction: str
    explanation: str


@dataclass
class SimilarLead:
    lead_id: LeadId
    score: float
    confidence: float
    distance: float
    similarity: float
    scored_at: str


@dataclass
class Recommendation:
    type: str
    priority: str
    message: str
    actions: List[str] = field(default_factory=list)


@dataclass
class Explanation:
    lead_id: Optional[LeadId]
    score: float
    confidence: float
    importance_table_version: str
    top_factors: List[TopFactor]
    contributions: Dict[str, Any]
    similar_leads: List[SimilarLead]
    score_distribution: Dict[str, Any]
    recommendations: List[Recommendation]
    generated_at: str
    model_version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ExplainabilityEngine:
    def __init__(
        self,
        score_store: Optional[ScoreStore] = None,
        importance_table: ImportanceTable = DEFAULT_IMPORTANCE_TABLE,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.score_store = score_store
        self._table = importance_table
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def importance_table(self) -> ImportanceTable:
        return self._table

    def set_importance_table(self, table: ImportanceTable) -> None:
        logger.info("Importance table swapped: %s -> %s", self._table.version, table.version)
        self._table = table

    def explain(
        self,
        lead_id: Optional[LeadId],
        score: float,
        feature_vector: Union[LeadFeatureVector, Mapping[str, float]],
        now: Optional[datetime] = None,
        model_version: Optional[str] = None,
    ) -> Explanation:
        now = now or self._clock()
        table = self._table
        features = _raw_features(feature_vector)
        return Explanation(
            lead_id=lead_id,
            score=score,
            confidence=calculate_confidence(score),
            importance_table_version=table.version,
            top_factors=self.identify_top_factors(features, score, table),
            contributions=self.calculate_feature_contributions(features),
            similar_leads=self.find_similar_leads(lead_id, features, now),
            score_distribution=self.score_distribution(now),
            recommendations=self.generate_recommendations(score, features),
            generated_at=now.isoformat(),
            model_version=model_version,
        )

    def explain_record(self, record: ScoreRecord, now: Optional[datetime] = None) -> Explanation:
        return self.explain(
            record.lead_id, record.score, record.features, now, model_version=record.model_version
        )

    # ------------------------------------------------------------------
    # Factors + contributions
    # ------------------------------------------------------------------

    def identify_top_factors(
        self,
        features: Mapping[str, float],
        score: float,
        table: Optional[ImportanceTable] = None,
    ) -> List[TopFactor]:
        table = table or self._table
        direction_sign = _sign(score - 0.5)
        factors: List[TopFactor] = []
        for name, value in features.items():
            impact = table.weight(name) * normalize_value(name, value) * direction_sign
            if abs(impact) <= IMPACT_THRESHOLD:
                continue
            direction = "positive" if impact > 0 else "negative"
            factors.append(TopFactor(
                feature=name,
                value=value,
                impact=round(impact, 6),
                direction=direction,
                explanation=explain_feature(name, value, direction),
            ))
        factors.sort(key=lambda f: (-abs(f.impact), f.feature))
        return factors[:MAX_TOP_FACTORS]

    @staticmethod
    def calculate_feature_contributions(features: Mapping[str, float]) -> Dict[str, Any]:
        """Raw heuristic contributions plus their shares of the total.

        Shares sum to 1 when the total is non-zero and are all 0 otherwise.
        """
        raw: Dict[str, float] = {}
        for name, value in features.items():
            heuristic = _CONTRIBUTIONS.get(name)
            raw[name] = heuristic(value) if heuristic else value * 0.01
        total = sum(raw.values())
        if total == 0:
            normalized = {name: 0.0 for name in raw}
        else:
            normalized = {name: c / total for name, c in raw.items()}
        return {"raw": raw, "normalized": normalized, "total": total}

    # ------------------------------------------------------------------
    # History-backed sections
    # ------------------------------------------------------------------

    def find_similar_leads(
        self,
        lead_id: Optional[LeadId],
        features: Mapping[str, float],
        now: datetime,
    ) -> List[SimilarLead]:
        if self.score_store is None:
            return []
        since = now - timedelta(days=SIMILAR_WINDOW_DAYS)
        latest: Dict[LeadId, ScoreRecord] = {}
        for record in self.score_store.query(start=since, end=now):
            if record.lead_id is None or record.lead_id == lead_id:
                continue
            latest[record.lead_id] = record  # query is oldest-first

        target = {f: float(features.get(f, 0.0)) for f in SIMILARITY_FEATURES}
        ranked = []
        for other_id, record in latest.items():
            other = {f: float(record.features.get(f, 0.0)) for f in SIMILARITY_FEATURES}
            distance = sum(abs(target[f] - other[f]) for f in SIMILARITY_FEATURES)
            ranked.append((distance, str(other_id), record, other))
        ranked.sort(key=lambda r: (r[0], r[1]))

        return [
            SimilarLead(
                lead_id=record.lead_id,
                score=record.score,
                confidence=record.confidence,
                distance=round(distance, 6),
                similarity=round(_similarity(target, other), 6),
                scored_at=record.scored_at.isoformat(),
            )
            for distance, _, record, other in ranked[:MAX_SIMILAR_LEADS]
        ]

    def score_distribution(self, now: datetime) -> Dict[str, Any]:
        counts = {bucket: 0 for bucket in DISTRIBUTION_BUCKETS}
        if self.score_store is not None:
            since = now - timedelta(days=DISTRIBUTION_WINDOW_DAYS)
            for record in self.score_store.query(start=since, end=now):
                index = min(int(round(record.score * 5, 9)), len(DISTRIBUTION_BUCKETS) - 1)
                counts[DISTRIBUTION_BUCKETS[index]] += 1
        total = sum(counts.values())
        return {
            "buckets": [
                {
                    "range": bucket,
                    "count": count,
                    "percentage": round(count / total * 100, 1) if total else 0.0,
                }
                for bucket, count in counts.items()
            ],
            "total": total,
        }

    # ------------------------------------------------------------------
    # Recommendations + importance analysis
    # ------------------------------------------------------------------

    @staticmethod
    def generate_recommendations(score: float, features: Mapping[str, float]) -> List[Recommendation]:
        """Every matching rule contributes one recommendation."""
        recommendations: List[Recommendation] = []
        if score > 0.8:
            recommendations.append(Recommendation(
                type="action",
                priority="high",
                message="High-value lead detected - prioritize immediate follow-up",
                actions=[
                    "Schedule meeting within 24 hours",
                    "Prepare personalized proposal",
                    "Assign senior sales rep",
                ],
            ))
        elif score > 0.6:
            recommendations.append(Recommendation(
                type="action",
                priority="medium",
                message="Promising lead - nurture with targeted content",
                actions=[
                    "Add to email nurture sequence",
                    "Send property recommendations",
                    "Schedule follow-up call",
                ],
            ))
        elif score < 0.3:
            recommendations.append(Recommendation(
                type="assessment",
                priority="low",
                message="Low-potential lead - consider re-qualification",
                actions=[
                    "Review lead qualification criteria",
                    "Consider lead recycling program",
                    "Focus resources elsewhere",
                ],
            ))

        if features.get("days_since_last_interaction", 0.0) > 30:
            recommendations.append(Recommendation(
                type="engagement",
                priority="medium",
                message="Lead has been inactive - re-engagement needed",
                actions=["Send re-engagement email", "Make follow-up call", "Update lead status"],
            ))
        if features.get("total_interactions", 0.0) < 3:
            recommendations.append(Recommendation(
                type="engagement",
                priority="medium",
                message="Limited interaction history - gather more data",
                actions=["Send survey or questionnaire", "Request feedback", "Schedule discovery call"],
            ))
        return recommendations

    def feature_importance_analysis(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        table = self._table
        ranked = sorted(table.weights.items(), key=lambda kv: (-abs(kv[1]), kv[0]))
        features = [
            {
                "feature": name,
                "importance": abs(weight),
                "direction": "positive" if weight > 0 else "negative",
            }
            for name, weight in ranked
        ]
        return {
            "version": table.version,
            "default_weight": table.default_weight,
            "top_features": features[:10],
            "all_features": features,
            "analysis_date": (now or self._clock()).isoformat(),
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _raw_features(vector: Union[LeadFeatureVector, Mapping[str, float]]) -> Dict[str, float]:
    if isinstance(vector, LeadFeatureVector):
        return dict(vector.raw)
    return {name: float(value) for name, value in vector.items()}


def _similarity(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    total = 0.0
    for name in SIMILARITY_FEATURES:
        largest = max(a[name], b[name]) or 1.0
        total += 1.0 - abs(a[name] - b[name]) / largest
    return total / len(SIMILARITY_FEATURES)


def explain_feature(name: str, value: float, direction: str) -> str:
    positive = direction == "positive"
    if name == "total_interactions":
        verb = "increases" if positive else "decreases"
        return f"{value:g} total interactions {verb} the score; engaged leads convert more often."
    if name in ("email_interactions", "phone_interactions"):
        channel = name.split("_")[0]
        verb = "supports" if positive else "reduces"
        return f"{value:g} {channel} interactions {verb} the score."
    if name == "meeting_interactions":
        verb = "significantly boosts" if positive else "lowers"
        return f"{value:g} meetings {verb} the score; meetings show serious intent."
    if name == "days_since_last_interaction":
        verb = "helps" if positive else "hurts"
        return f"{value:g} days since last interaction {verb} the score; recent activity counts more."
    if name == "engagement_score":
        verb = "supports" if positive else "reduces"
        return f"Engagement score of {value:.2f} {verb} the prediction."
    if name == "avg_budget":
        verb = "increases" if positive else "decreases"
        return f"Average budget of ${value:,.0f} {verb} conversion likelihood."
    if name == "profile_completeness":
        verb = "builds" if positive else "reduces"
        return f"{value * 100:.0f}% profile completeness {verb} confidence in the lead."
    if name in ("has_email", "has_phone"):
        what = "email" if name == "has_email" else "phone"
        state = "Having" if value else "Missing"
        verb = "enables" if positive else "limits"
        return f"{state} {what} {verb} direct contact."
    verb = "positively" if positive else "negatively"
    return f"{name} with value {value:g} {verb} influences the score."
